"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./trackermirror.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Sync
    default_sync_interval_minutes: int = 10
    # Overlap applied to the incremental pull window to absorb clock skew between servers.
    pull_overlap_minutes: int = 2
    # IANA zone that every stored (tz-naive) timestamp is normalized to.
    target_timezone: str = "UTC"

    # Remote trackers
    remote_timeout_seconds: float = 30.0
    remote_max_attempts: int = 3

    # Attachments pulled from remote trackers are stored below this directory.
    files_root: str = "./storage"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
