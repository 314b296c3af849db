import pytest
from fastapi import HTTPException

import app.api.dependencies as deps
from app.config import get_settings
from app.services.repository import JsonDatasetRepository


@pytest.fixture(autouse=True)
def _settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_get_repository_uses_configured_paths(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("CURSOR_PATH", str(tmp_path / "state" / "cursor.json"))

    gen = deps.get_repository()
    repo = next(gen)

    assert isinstance(repo, JsonDatasetRepository)
    assert repo.dataset_path == tmp_path / "polling-data.json"
    assert repo.cursor_path == tmp_path / "state" / "cursor.json"
    with pytest.raises(StopIteration):
        next(gen)


@pytest.mark.parametrize(
    ("authorization", "status_code"),
    [(None, 401), ("Token dev-internal-token", 401), ("Bearer nope", 403)],
)
def test_internal_job_token_rejections(monkeypatch: pytest.MonkeyPatch, authorization, status_code):
    monkeypatch.setenv("INTERNAL_JOB_TOKEN", "dev-internal-token")

    with pytest.raises(HTTPException) as exc_info:
        deps.require_internal_job_token(authorization)

    assert exc_info.value.status_code == status_code


def test_internal_job_token_accepts_matching_bearer(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("INTERNAL_JOB_TOKEN", "dev-internal-token")
    assert deps.require_internal_job_token("Bearer dev-internal-token") is None


def test_internal_job_token_not_configured(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("INTERNAL_JOB_TOKEN", raising=False)

    with pytest.raises(HTTPException) as exc_info:
        deps.require_internal_job_token("Bearer anything")

    assert exc_info.value.status_code == 503
