import json
import logging
import os
from pathlib import Path
import tempfile
from threading import Lock
from typing import Any

from pydantic import ValidationError

from app.config import Settings
from app.models.schemas import DatasetOut, ScanCursorOut
from app.services.errors import DatasetStoreError
from src.polltrend.contracts import Dataset, utc_now_iso

logger = logging.getLogger(__name__)

_WRITE_LOCK = Lock()


def _dump_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a temporary file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise DatasetStoreError(f"could not write {path}: {exc}") from exc


class JsonDatasetRepository:
    def __init__(self, dataset_path: Path, cursor_path: Path, national_export_path: Path | None = None):
        self.dataset_path = Path(dataset_path)
        self.cursor_path = Path(cursor_path)
        self.national_export_path = Path(national_export_path) if national_export_path else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "JsonDatasetRepository":
        return cls(
            dataset_path=settings.resolved_dataset_path(),
            cursor_path=settings.resolved_cursor_path(),
            national_export_path=settings.resolved_national_export_path(),
        )

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise DatasetStoreError(f"could not read {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise DatasetStoreError(f"{path} is not valid json: {exc}") from exc

    def load_dataset(self) -> Dataset:
        if not self.dataset_path.exists():
            return Dataset()
        raw = self._read_json(self.dataset_path)
        try:
            validated = DatasetOut.model_validate(raw)
        except ValidationError as exc:
            raise DatasetStoreError(f"{self.dataset_path} does not match the dataset schema: {exc}") from exc
        dataset = Dataset.from_dict(validated.model_dump(mode="json"))
        seen: set[str] = set()
        for poll in dataset.iter_polls():
            if poll.id in seen:
                raise DatasetStoreError(f"{self.dataset_path} contains duplicate poll id {poll.id}")
            seen.add(poll.id)
        return dataset

    def save_dataset(self, dataset: Dataset) -> None:
        with _WRITE_LOCK:
            atomic_write_text(self.dataset_path, _dump_json(dataset.to_dict()))
        logger.info("dataset_saved path=%s polls=%s", self.dataset_path, len(dataset.poll_ids()))

    def load_cursor(self) -> int | None:
        if not self.cursor_path.exists():
            return None
        raw = self._read_json(self.cursor_path)
        try:
            cursor = ScanCursorOut.model_validate(raw)
        except ValidationError as exc:
            raise DatasetStoreError(f"{self.cursor_path} is not a valid scan cursor: {exc}") from exc
        return cursor.last_found_id

    def save_cursor(self, last_found_id: int) -> None:
        payload = {"last_found_id": int(last_found_id), "updated_at": utc_now_iso()}
        with _WRITE_LOCK:
            atomic_write_text(self.cursor_path, _dump_json(payload))

    def write_national_export(self, dataset: Dataset) -> Path | None:
        if self.national_export_path is None:
            return None
        projection = dataset.national_only()
        with _WRITE_LOCK:
            atomic_write_text(self.national_export_path, _dump_json(projection.to_dict()))
        return self.national_export_path
