"""Application Settings.

Combines the database configuration from the configuration manager with
batch-engine tunables read from MCU_* environment variables.
"""

import os
from typing import Optional

from mcu_batch.infrastructure.config_manager import DatabaseConfig, get_database_config

DEFAULT_MAX_WORKERS = 4
DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.25
DEFAULT_RETRY_MAX_DELAY = 2.0


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from the environment.

    Attributes:
        log_level: Root log level (MCU_LOG_LEVEL, default INFO)
        log_json: Emit JSON log lines (MCU_LOG_JSON, default false)
        max_workers: Concurrent per-item writes (MCU_MAX_WORKERS, default 4)
        retry_max_attempts: Attempts per transient failure (MCU_RETRY_MAX_ATTEMPTS)
        retry_base_delay: First backoff delay in seconds (MCU_RETRY_BASE_DELAY)
        retry_max_delay: Backoff ceiling in seconds (MCU_RETRY_MAX_DELAY)
        whitelist_path: JSON file overriding the default lab item table (MCU_WHITELIST_PATH)
        expected_measurement_count: Panel size for the soft completeness
            warning (MCU_EXPECTED_MEASUREMENT_COUNT, default: whitelist size)
    """

    def __init__(self):
        self._db_config: Optional[DatabaseConfig] = None

        self.log_level = os.getenv("MCU_LOG_LEVEL", "INFO")
        self.log_json = _env_bool("MCU_LOG_JSON", "false")

        self.max_workers = int(os.getenv("MCU_MAX_WORKERS", str(DEFAULT_MAX_WORKERS)))
        self.retry_max_attempts = int(os.getenv("MCU_RETRY_MAX_ATTEMPTS", str(DEFAULT_RETRY_MAX_ATTEMPTS)))
        self.retry_base_delay = float(os.getenv("MCU_RETRY_BASE_DELAY", str(DEFAULT_RETRY_BASE_DELAY)))
        self.retry_max_delay = float(os.getenv("MCU_RETRY_MAX_DELAY", str(DEFAULT_RETRY_MAX_DELAY)))

        self.whitelist_path = os.getenv("MCU_WHITELIST_PATH") or None
        expected = os.getenv("MCU_EXPECTED_MEASUREMENT_COUNT")
        self.expected_measurement_count = int(expected) if expected else None

    @property
    def db_config(self) -> DatabaseConfig:
        """Database configuration, loaded lazily on first access."""
        if self._db_config is None:
            self._db_config = get_database_config()
        return self._db_config

