"""
Process configuration.

Values come from environment variables (optionally a .env file at the project
root). Settings are read once at startup; in particular USE_REMOTE_STORE picks
the persistence backend for the lifetime of the process.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent

BROADCAST_BACKENDS = ("none", "local", "redis")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    use_remote_store: bool = False
    store_path: Path = PROJECT_ROOT / "data" / "store.json"
    seed_path: Path = PROJECT_ROOT / "data" / "seed.json"
    remote_api_url: Optional[str] = None
    remote_api_key: Optional[str] = None
    remote_timeout_seconds: float = 10.0
    broadcast_backend: str = "none"
    broadcast_channel_name: str = "care-realtime-hub"
    redis_url: Optional[str] = None
    log_level: str = "INFO"


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Build Settings from the environment.

    Raises:
        ValueError: if the remote store is selected without REMOTE_API_URL,
            or BROADCAST_BACKEND is not one of none/local/redis
    """
    load_dotenv(dotenv_path=env_file or PROJECT_ROOT / ".env")

    settings = Settings(
        use_remote_store=_env_bool("USE_REMOTE_STORE"),
        store_path=Path(os.getenv("STORE_PATH", str(PROJECT_ROOT / "data" / "store.json"))),
        seed_path=Path(os.getenv("SEED_PATH", str(PROJECT_ROOT / "data" / "seed.json"))),
        remote_api_url=os.getenv("REMOTE_API_URL"),
        remote_api_key=os.getenv("REMOTE_API_KEY"),
        remote_timeout_seconds=float(os.getenv("REMOTE_TIMEOUT_SECONDS", "10")),
        broadcast_backend=os.getenv("BROADCAST_BACKEND", "none").lower(),
        broadcast_channel_name=os.getenv("BROADCAST_CHANNEL_NAME", "care-realtime-hub"),
        redis_url=os.getenv("REDIS_URL"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    if settings.use_remote_store and not settings.remote_api_url:
        raise ValueError("USE_REMOTE_STORE is set but REMOTE_API_URL is missing")
    if settings.broadcast_backend not in BROADCAST_BACKENDS:
        raise ValueError(f"Unknown BROADCAST_BACKEND: {settings.broadcast_backend}")
    return settings
