from typing import Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    database_url: str = "postgresql://localhost:5432/agencyops"
    feature_project_finance: bool = True
    # "rolling" slices the project into fixed-length windows, "calendar" follows calendar months
    period_mode: str = "rolling"
    period_length_days: int = 30
    expense_auto_sync_interval_seconds: float = 180.0
    category_cache_seconds: float = 300.0
    category_rules_path: Optional[str] = None
    active_project_statuses: Tuple[str, ...] = ("active", "in_progress")
    max_conflict_attempts: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def model_post_init(self, __context):
        if self.period_mode not in ("rolling", "calendar"):
            self.period_mode = "rolling"
        if self.period_length_days < 1:
            self.period_length_days = 30

settings = Settings()
