from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    data_dir: Path = Path("data")
    dataset_path: Path | None = None
    cursor_path: Path | None = None
    national_export_path: Path | None = None
    report_dir: Path | None = None

    source_base_url: str = "https://www.pollofpolls.no"
    feed_url: str = "https://www.pollofpolls.no/rss_maling.php"
    user_agent: str = "PollTrendCollector/0.1"
    request_delay_sec: float = 1.0
    request_timeout_sec: float = 12.0
    max_consecutive_misses: int = 30
    max_scan_length: int | None = None
    checkpoint_every: int = 25

    tracked_party: str = "MDG"
    tracked_party_aliases: list[str] = ["miljøpartiet"]
    feed_title_keywords: list[str] = ["stortingsvalg"]
    region_mention_threshold: int = 2
    suspicious_percentages: list[float] = [1.0]
    national_percentage_ceiling: float | None = 6.0
    scope_tables_path: Path | None = None
    election_calendar_path: Path | None = None

    internal_job_token: str | None = None
    app_env: str = "dev"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    def resolved_dataset_path(self) -> Path:
        return self.dataset_path or self.data_dir / "polling-data.json"

    def resolved_cursor_path(self) -> Path:
        return self.cursor_path or self.data_dir / "scan-cursor.json"

    def resolved_national_export_path(self) -> Path:
        return self.national_export_path or self.data_dir / "polling-data-national.json"

    def resolved_report_dir(self) -> Path:
        return self.report_dir or self.data_dir / "reports"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
