"""Configuration loader for botpanel.

This module provides a small, dependency-light Settings class that reads
environment variables (and a .env file via python-dotenv). Every attribute can
be overridden with a keyword argument, which is how tests shorten the timer
intervals. `validate()` performs the startup `.env` check.
"""
from typing import Optional, List
import os
from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


class Settings:
    """Runtime settings.

    Intervals and delays are in seconds; retention caps are entry counts.
    """

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None

    # Storage
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
    DB_POOL_MIN: int = int(os.getenv("DB_POOL_MIN", "1"))
    DB_POOL_MAX: int = int(os.getenv("DB_POOL_MAX", "10"))
    LOG_RETENTION: int = int(os.getenv("LOG_RETENTION", "1000"))
    METRICS_RETENTION: int = int(os.getenv("METRICS_RETENTION", "100"))

    # Dashboard
    DASHBOARD_HOST: str = os.getenv("DASHBOARD_HOST", "0.0.0.0")
    DASHBOARD_PORT: int = int(os.getenv("DASHBOARD_PORT", "5000"))
    API_KEY: Optional[str] = os.getenv("BOTPANEL_API_KEY")

    # Lifecycle timers
    METRICS_INTERVAL: float = _env_float("METRICS_INTERVAL", "30")
    RECONCILE_INTERVAL: float = _env_float("RECONCILE_INTERVAL", "60")
    BOT_METRICS_INTERVAL: float = _env_float("BOT_METRICS_INTERVAL", "60")
    STARTUP_DELAY: float = _env_float("STARTUP_DELAY", "2")
    RECOVERY_RETRY_DELAY: float = _env_float("RECOVERY_RETRY_DELAY", "2")

    # Host probes
    DISK_PATH: str = os.getenv("DISK_PATH", "/")
    NETWORK_INTERFACE: Optional[str] = os.getenv("NETWORK_INTERFACE") or None

    def __init__(self, **overrides) -> None:
        for name, value in overrides.items():
            if not hasattr(type(self), name):
                raise AttributeError(f"Unknown setting: {name}")
            setattr(self, name, value)

    def validate(self, required: Optional[List[str]] = None) -> List[str]:
        """Validate required environment variables.

        Args:
            required: list of attribute names to check. If omitted, nothing is
                strictly required since storage falls back to memory.

        Returns:
            A list of missing attribute names (empty if all present).
        """
        if required is None:
            required = []

        missing: List[str] = []
        for name in required:
            val = getattr(self, name, None)
            if val is None or (isinstance(val, str) and not val.strip()):
                missing.append(name)

        return missing
