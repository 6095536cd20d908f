from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None
    # Local development / tests: keep every collection in process memory
    use_inmemory_store: bool = False
    # Length of the day_discuss countdown written to dayEndsAt
    discussion_seconds: int = 120
    # First-name (case-insensitive) allowed to bootstrap the admins collection
    seed_admin_name: str = ""
    default_judas_count: int = 1
    default_angel_count: int = 1
    # CORS origins: set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    # Extra production origin (e.g. Cloud Run URL); appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
