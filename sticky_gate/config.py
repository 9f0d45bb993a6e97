"""
Configuration settings for the sticky proxy
"""
import math
import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def parse_shard_count(raw: Optional[str]) -> int:
    """Parse the instance count; anything unusable means a single shard."""
    if raw is None:
        return 1
    try:
        value = float(raw.strip() or "0")
    except ValueError:
        return 1
    if math.isnan(value) or math.isinf(value):
        return 1
    return max(1, int(value))


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings"""

    def __init__(self, env: Optional[dict] = None):
        env = os.environ if env is None else env

        # Sharding
        self.INSTANCE_COUNT: Optional[str] = env.get("INSTANCE_COUNT")

        # Readiness
        self.READY_TIMEOUT_MS: int = int(env.get("READY_TIMEOUT_MS", "180000"))
        self.DEDUPE_WARMUPS: bool = _as_bool(env.get("DEDUPE_WARMUPS", "false"))

        # Backends
        self.BACKEND_URLS: List[str] = [
            u.strip() for u in env.get("BACKEND_URLS", "").split(",") if u.strip()
        ]
        self.BACKEND_COMMAND: Optional[str] = env.get("BACKEND_COMMAND") or None
        self.BACKEND_HOST: str = env.get("BACKEND_HOST", "127.0.0.1")
        self.BACKEND_BASE_PORT: int = int(env.get("BACKEND_BASE_PORT", "8081"))
        self.MAX_INSTANCES: int = int(env.get("MAX_INSTANCES", "16"))
        self.SLEEP_AFTER_SECONDS: float = float(env.get("SLEEP_AFTER_SECONDS", "300"))
        self.SLEEP_CHECK_INTERVAL: float = float(env.get("SLEEP_CHECK_INTERVAL", "30"))
        self.UPSTREAM_TIMEOUT: float = float(env.get("UPSTREAM_TIMEOUT", "60"))

        # Server
        self.PROXY_HOST: str = env.get("PROXY_HOST", "0.0.0.0")
        self.PROXY_PORT: int = int(env.get("PROXY_PORT", "8080"))

        # Logging
        self.LOG_LEVEL: str = env.get("LOG_LEVEL", "INFO").upper()

    @property
    def instance_count(self) -> int:
        return parse_shard_count(self.INSTANCE_COUNT)


settings = Settings()
