"""
Server configuration.

All settings come from ZT_* environment variables; tests build a Settings
directly and pass it to create_app().
"""

import os
import logging
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime settings for the relay server"""
    database_url: str = field(default_factory=lambda: os.getenv("ZT_DATABASE_URL", "sqlite+aiosqlite:///./zerotrace.db"))
    # In production, always set ZT_SECRET_KEY
    secret_key: str = field(default_factory=lambda: os.getenv("ZT_SECRET_KEY", "change-this-secret-in-production"))
    token_expire_minutes: int = field(default_factory=lambda: int(os.getenv("ZT_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7))))
    sweep_interval: float = field(default_factory=lambda: float(os.getenv("ZT_SWEEP_INTERVAL", "60")))
    require_join_token: bool = field(default_factory=lambda: _env_bool("ZT_REQUIRE_JOIN_TOKEN"))
    host: str = field(default_factory=lambda: os.getenv("ZT_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("ZT_PORT", "3000")))
    log_level: str = field(default_factory=lambda: os.getenv("ZT_LOG_LEVEL", "INFO"))


def configure_logging(level: str = "INFO"):
    """Set up root logging for the server process"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
