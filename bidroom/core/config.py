"""
Engine configuration parameters for bidroom.

Defines lock, sweep and settlement timings plus server settings. Values come
from the environment (prefix ``BIDROOM_``), optionally seeded from a .env file.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from bidroom.core.errors import InvalidConfiguration

ENV_PREFIX = "BIDROOM_"


@dataclass
class EngineConfig:
    """Engine-wide configuration parameters"""

    # Storage
    db_path: Optional[Path] = None  # None keeps everything in memory

    # Concurrency
    lock_timeout: float = 5.0  # Seconds to wait for a per-auction lock
    sweep_interval: float = 2.0  # Seconds between deadline sweeps

    # Settlement
    settlement_timeout: float = 5.0
    settlement_max_retries: int = 5
    settlement_backoff: float = 0.5  # First retry delay, doubled each attempt
    payment_status_timeout: float = 5.0
    order_service_url: Optional[str] = None  # None uses the in-memory service

    # Eligibility
    invite_only: bool = True

    # Authentication
    jwt_secret: Optional[str] = None  # HMAC key for bearer tokens
    jwt_algorithm: str = "HS256"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    log_to_file: bool = False

    def __post_init__(self):
        """Validate value ranges"""
        for name in ("lock_timeout", "sweep_interval", "settlement_timeout", "payment_status_timeout"):
            if getattr(self, name) <= 0:
                raise InvalidConfiguration(f"{name} must be positive")
        if self.settlement_max_retries < 0:
            raise InvalidConfiguration("settlement_max_retries must not be negative")
        if self.settlement_backoff < 0:
            raise InvalidConfiguration("settlement_backoff must not be negative")
        if not 0 < self.port < 65536:
            raise InvalidConfiguration(f"port out of range: {self.port}")


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _parse_field(name: str, raw: str, default):
    if isinstance(default, bool):
        return _parse_bool(raw)
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if name == "db_path":
        return Path(raw) if raw else None
    if isinstance(default, Path):
        return Path(raw)
    if name in ("order_service_url", "jwt_secret"):
        return raw or None
    return raw


def load_config(env_file: Optional[str] = None, **overrides) -> EngineConfig:
    """
    Load configuration from the environment.

    Args:
        env_file: Optional .env file loaded first (never overrides real env vars)
        overrides: Explicit values that win over the environment

    Returns:
        EngineConfig instance

    Raises:
        InvalidConfiguration: if a variable cannot be parsed
    """
    if env_file:
        load_dotenv(env_file, override=False)

    defaults = EngineConfig()
    values = {}
    for f in fields(EngineConfig):
        raw = os.environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        try:
            values[f.name] = _parse_field(f.name, raw, getattr(defaults, f.name))
        except ValueError:
            raise InvalidConfiguration(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}")

    values.update(overrides)
    return EngineConfig(**values)
