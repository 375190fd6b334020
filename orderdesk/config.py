"""Runtime configuration, read once from the environment at startup."""
import os
from typing import NamedTuple


class Settings(NamedTuple):
    database_url: str
    jwt_secret: str
    superadmin_email: str
    # Report visibility denials on read endpoints as 404 instead of 403
    hide_forbidden: bool
    log_level: str


def _flag(value: str | None) -> bool:
    return (value or "").lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./orderdesk.db"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        superadmin_email=os.getenv("SUPERADMIN_EMAIL", "").strip().lower(),
        hide_forbidden=_flag(os.getenv("HIDE_FORBIDDEN")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


settings = load_settings()


def get_settings() -> Settings:
    """FastAPI dependency; tests replace it through ``app.dependency_overrides``."""
    return settings
