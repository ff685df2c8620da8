import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        site_url: Optional[str],
        allowed_origins: list[str],
        allow_same_site: bool,
        rate_limit_backend: str,
        user_id: int,
        app_version: Optional[str],
        environment: Optional[str],
    ) -> None:
        self.database_url = database_url
        self.site_url = site_url
        self.allowed_origins = allowed_origins
        self.allow_same_site = allow_same_site
        self.rate_limit_backend = rate_limit_backend
        self.user_id = user_id
        self.app_version = app_version
        self.environment = environment


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip().rstrip("/") for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BUDGET_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "budget.db"
        database_url = f"sqlite:///{default_db}"
    site_url = os.getenv("BUDGET_SITE_URL") or None
    rate_limit_backend = os.getenv("BUDGET_RATE_LIMIT_BACKEND", "table").lower()
    return Settings(
        database_url=database_url,
        site_url=site_url,
        allowed_origins=_env_list("BUDGET_ALLOWED_ORIGINS"),
        allow_same_site=_env_flag("BUDGET_ALLOW_SAME_SITE", True),
        rate_limit_backend=rate_limit_backend,
        user_id=int(os.getenv("BUDGET_USER_ID", "1")),
        app_version=os.getenv("BUDGET_APP_VERSION") or None,
        environment=os.getenv("BUDGET_ENVIRONMENT") or None,
    )
