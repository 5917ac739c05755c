from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FITSYNC_",
        case_sensitive=False,
    )

    # App
    env: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    base_url: str = "http://localhost:8000"

    # Database
    db_url: str = "sqlite+aiosqlite:///./fitsync.db"

    # OAuth
    oauth_state_secret: str = "change-me"
    oauth_state_ttl_minutes: int = 15
    token_refresh_skew_minutes: int = 5

    # Sync
    sync_page_size: int = 50
    sync_max_pages: int = 20
    sync_run_budget_seconds: float = 300.0
    provider_timeout_seconds: float = 20.0
    sync_claim_ttl_minutes: int = 30
    sync_initial_history_days: int = 30
    auto_import_activity_types: list[str] = [
        "strength_training",
        "weight_training",
        "weighttraining",
        "crossfit",
    ]

    # Scheduler
    scheduler_enabled: bool = True
    sync_interval_minutes: int = 15
    max_concurrent_syncs: int = 4
    backoff_base_minutes: int = 15
    backoff_ceiling_minutes: int = 240
    backoff_max_attempts: int = 5

    # Strava
    strava_client_id: str = ""
    strava_client_secret: str = ""
    strava_scopes: str = "read,activity:read_all"
    strava_webhook_secret: str = ""
    strava_webhook_verify_token: str = ""

    # MyFitnessPal
    myfitnesspal_client_id: str = ""
    myfitnesspal_client_secret: str = ""
    myfitnesspal_scopes: str = "diary"
    myfitnesspal_webhook_token: str = ""


def get_settings() -> Settings:
    return Settings()
