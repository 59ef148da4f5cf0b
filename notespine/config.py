"""
NoteSpine configuration.

Defaults live on SpineConfig; load_config() overlays NOTESPINE_* environment
variables after reading an optional .env file.

Usage:
    from notespine.config import load_config

    config = load_config()
    spine = NoteSpine(config)
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_PORT = 7790


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"[Config] {name}={value!r} is not an integer, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"[Config] {name}={value!r} is not a number, using {default}")
        return default


@dataclass
class SpineConfig:
    """Runtime settings for a NoteSpine instance."""
    data_dir: Path = field(default_factory=lambda: Path("data"))
    db_path: Optional[Path] = None          # Defaults to <data_dir>/notes.db
    snapshots_enabled: bool = True
    max_snapshots: int = 5
    max_records: int = 0                    # Append quota, 0 = unlimited
    compact_tombstone_ratio: float = 0.2    # Compact once this share of records is tombstoned
    compact_min_tombstones: int = 1
    compact_interval_seconds: float = 0.0   # Background poll, 0 = off
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.db_path is None:
            self.db_path = self.data_dir / "notes.db"
        else:
            self.db_path = Path(self.db_path)

    @property
    def snapshot_dir(self) -> Path:
        return self.data_dir / "snapshots"

    @property
    def metrics_dir(self) -> Path:
        return self.data_dir / "metrics"


def load_config(env_file: Optional[Path] = None) -> SpineConfig:
    """Build a SpineConfig from the environment (and .env, if present)."""
    load_dotenv(env_file)

    data_dir = Path(os.getenv("NOTESPINE_DATA_DIR", "data"))
    db_path = os.getenv("NOTESPINE_DB_PATH")

    config = SpineConfig(
        data_dir=data_dir,
        db_path=Path(db_path) if db_path else None,
        snapshots_enabled=_env_bool("NOTESPINE_SNAPSHOTS", True),
        max_snapshots=_env_int("NOTESPINE_MAX_SNAPSHOTS", 5),
        max_records=_env_int("NOTESPINE_MAX_RECORDS", 0),
        compact_tombstone_ratio=_env_float("NOTESPINE_COMPACT_RATIO", 0.2),
        compact_min_tombstones=_env_int("NOTESPINE_COMPACT_MIN_TOMBSTONES", 1),
        compact_interval_seconds=_env_float("NOTESPINE_COMPACT_INTERVAL", 0.0),
        host=os.getenv("NOTESPINE_HOST", "127.0.0.1"),
        port=_env_int("NOTESPINE_PORT", DEFAULT_PORT),
        log_level=os.getenv("NOTESPINE_LOG_LEVEL", "INFO").upper(),
    )
    logger.debug(f"[Config] Loaded: data_dir={config.data_dir}, db={config.db_path}")
    return config
