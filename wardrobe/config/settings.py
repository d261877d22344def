"""Settings loader for the wardrobe upload client."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _load_env_file(path: str = ".env") -> None:
    """Populate environment variables from a .env file if present."""

    env_path = Path(path)
    if not env_path.exists():
        return

    for line in env_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


@dataclass(slots=True, frozen=True)
class Settings:
    """Settings required to talk to the wardrobe backend."""

    environment: str = "dev"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8080/api"
    request_timeout: float = 60.0
    session_path: str = "storage/session.json"
    max_batch_size: int = 10


def _build_settings() -> Settings:
    _load_env_file()
    return Settings(
        environment=os.getenv("ENVIRONMENT", "dev"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        api_base_url=os.getenv("WARDROBE_API_URL", "http://localhost:8080/api"),
        request_timeout=float(os.getenv("WARDROBE_REQUEST_TIMEOUT", "60")),
        session_path=os.getenv("WARDROBE_SESSION_PATH", "storage/session.json"),
        max_batch_size=int(os.getenv("WARDROBE_MAX_BATCH_SIZE", "10")),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""

    return _build_settings()
