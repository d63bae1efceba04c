"""Environment-driven settings for the client and the reference server."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    app_env: str
    api_url: str
    state_dir: str
    autosave_ms: int
    http_timeout: float
    page_size: int
    max_page_size: int
    auth_secret: str | None
    disable_auth: bool
    log_level: str

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth_secret) and not self.disable_auth


def load_settings(env_file: Path | None = None) -> Settings:
    _load_env_file(env_file or ROOT / "app" / ".env")
    page_size = int(os.getenv("TPSYNC_PAGE_SIZE", "20"))
    max_page_size = int(os.getenv("TPSYNC_MAX_PAGE_SIZE", "100"))
    return Settings(
        app_env=os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev",
        api_url=(os.getenv("TPSYNC_API_URL", "").strip() or "http://localhost:4001/api").rstrip("/"),
        state_dir=os.getenv("TPSYNC_STATE_DIR", "").strip() or str(Path("~/.tpsync").expanduser()),
        autosave_ms=int(os.getenv("TPSYNC_AUTOSAVE_MS", "2000")),
        http_timeout=float(os.getenv("TPSYNC_HTTP_TIMEOUT", "30")),
        page_size=max(1, min(page_size, max_page_size)),
        max_page_size=max_page_size,
        auth_secret=os.getenv("TPSYNC_AUTH_SECRET", "").strip() or None,
        disable_auth=_flag("TPSYNC_DISABLE_AUTH"),
        log_level=os.getenv("TPSYNC_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
