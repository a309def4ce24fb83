import os
from dataclasses import dataclass

DEFAULT_PAGE_SIZE = 10
DEFAULT_MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    default_page_size: int
    max_page_size: int
    session_hours: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///crm.db"),
        default_page_size=_getenv_int("DEFAULT_PAGE_SIZE", DEFAULT_PAGE_SIZE),
        max_page_size=_getenv_int("MAX_PAGE_SIZE", DEFAULT_MAX_PAGE_SIZE),
        session_hours=_getenv_int("SESSION_HOURS", 8),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "DEFAULT_PAGE_SIZE": s.default_page_size,
        "MAX_PAGE_SIZE": s.max_page_size,
        "SESSION_HOURS": s.session_hours,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
    }
