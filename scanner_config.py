"""
Runtime settings for the street-level grid scanner.
Values come from the environment (optionally a local .env file).
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Policy constants. Batch size and delay bound in-flight provider requests.
DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY_MS = 50
DEFAULT_RADIUS_M = 50
MIN_CELL_SIZE_DEG = 0.0005  # ~50-55 m
MAX_GRID = 8
MAX_POINTS = 1000
FOCUS_ZOOM = 15

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

NOISY_LOGGERS = ("urllib3", "werkzeug.serving", "psycopg", "asyncio")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    # Strip matching quotes copied from shell exports
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        raw = raw[1:-1]
    return raw or None


@dataclass
class ScannerSettings:
    """Tunable knobs for planning, probing, submission and result sync."""
    google_maps_api_key: Optional[str] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_delay_s: float = DEFAULT_BATCH_DELAY_MS / 1000.0
    radius_m: int = DEFAULT_RADIUS_M
    min_cell_size_deg: float = MIN_CELL_SIZE_DEG
    max_grid: int = MAX_GRID
    max_points: int = MAX_POINTS
    lookup_timeout_s: float = 10.0
    job_service_url: Optional[str] = None
    job_service_token: Optional[str] = None
    results_poll_interval_s: float = 2.0
    events_log: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ScannerSettings":
        settings = cls(
            google_maps_api_key=_env_str("GOOGLE_MAPS_API_KEY"),
            batch_size=_env_int("SCAN_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            batch_delay_s=_env_int("SCAN_BATCH_DELAY_MS", DEFAULT_BATCH_DELAY_MS) / 1000.0,
            radius_m=_env_int("SCAN_RADIUS_M", DEFAULT_RADIUS_M),
            min_cell_size_deg=_env_float("SCAN_MIN_CELL_DEG", MIN_CELL_SIZE_DEG),
            max_grid=_env_int("SCAN_MAX_GRID", MAX_GRID),
            max_points=_env_int("SCAN_MAX_POINTS", MAX_POINTS),
            lookup_timeout_s=_env_float("LOOKUP_TIMEOUT_S", 10.0),
            job_service_url=_env_str("JOB_SERVICE_URL"),
            job_service_token=_env_str("JOB_SERVICE_TOKEN"),
            results_poll_interval_s=_env_float("RESULTS_POLL_INTERVAL_S", 2.0),
            events_log=_env_str("SCAN_EVENTS_LOG"),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.batch_delay_s < 0:
            raise ValueError("batch_delay_s must be >= 0")
        if self.max_grid < 1:
            raise ValueError(f"max_grid must be >= 1, got {self.max_grid}")
        if self.min_cell_size_deg <= 0:
            raise ValueError("min_cell_size_deg must be positive")
        if self.max_points < 1:
            raise ValueError(f"max_points must be >= 1, got {self.max_points}")


def configure_logging(debug: bool = False) -> None:
    level_name = os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    silence_external_loggers()


def silence_external_loggers():
    """Reduce noisy INFO logs from HTTP/DB libs unless explicitly enabled.
    Controlled by env var SCANNER_SILENCE_HTTP (default: '1' = silence)."""
    if os.getenv("SCANNER_SILENCE_HTTP", "1") != "1":
        return
    for name in NOISY_LOGGERS:
        lg = logging.getLogger(name)
        lg.setLevel(logging.WARNING)
