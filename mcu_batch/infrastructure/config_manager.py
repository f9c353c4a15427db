"""Configuration Manager for Store Credentials.

Loads the database configuration of the batch engine from environment
variables (optionally seeded from a .env file) or from a JSON file.

Security Impact:
    - Passwords and connection strings are held as SecretStr
    - Credentials are never logged or included in error messages

Architecture:
    - Infrastructure layer, isolated from the domain
    - Type-safe configuration using Pydantic models
    - Fail-fast validation before any store is constructed
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, quote_plus, unquote, urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "MCU_"
SUPPORTED_DB_TYPES = ("duckdb", "postgresql")


class DatabaseConfig(BaseModel):
    """Store connection settings.

    Parameters:
        db_type: 'duckdb' or 'postgresql'
        db_path: DuckDB database file (or ':memory:')
        host: PostgreSQL host
        port: PostgreSQL port
        database: PostgreSQL database name
        username: PostgreSQL user
        password: PostgreSQL password (secret)
        connection_string: Full PostgreSQL URL (secret, wins over the fields)
        ssl_mode: PostgreSQL sslmode
        pool_size: Maximum pooled connections
    """

    db_type: str = Field("duckdb", description="Database type (duckdb, postgresql)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")
    host: Optional[str] = Field(None, description="Database host")
    port: Optional[int] = Field(None, description="Database port")
    database: Optional[str] = Field(None, description="Database name")
    username: Optional[str] = Field(None, description="Database username")
    password: Optional[SecretStr] = Field(None, description="Database password (secret)")
    connection_string: Optional[SecretStr] = Field(None, description="Full connection string (secret)")
    ssl_mode: Optional[str] = Field(None, description="SSL mode (require, prefer, disable)")
    pool_size: int = Field(default=5, ge=1, description="Connection pool size")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        if v.lower() not in SUPPORTED_DB_TYPES:
            raise ValueError(f"Unsupported database type: {v}. Supported: {list(SUPPORTED_DB_TYPES)}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """The parent directory must exist; the file itself may not yet."""
        if v is None or v == ":memory:":
            return v
        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    @staticmethod
    def _parse_postgresql_connection_string(conn_str: str) -> Dict[str, Any]:
        """Split a postgresql:// (or postgres://) URL into its components."""
        parsed = urlparse(conn_str)
        if parsed.scheme not in ('postgresql', 'postgres'):
            raise ValueError(f"Unsupported connection string scheme: {parsed.scheme}")

        result = {
            'host': parsed.hostname,
            'port': parsed.port,
            'database': parsed.path.lstrip('/') if parsed.path else None,
            'username': unquote(parsed.username) if parsed.username else None,
            'password': unquote(parsed.password) if parsed.password else None,
        }
        query_params = parse_qs(parsed.query)
        if 'sslmode' in query_params:
            result['ssl_mode'] = query_params['sslmode'][0]
        return result

    @model_validator(mode='after')
    def sync_connection_string_and_fields(self) -> 'DatabaseConfig':
        """Keep the connection string and the individual fields consistent.

        A supplied connection string always overrides the individual fields.
        """
        if self.db_type != "postgresql":
            return self

        if self.connection_string:
            try:
                parsed = self._parse_postgresql_connection_string(self.connection_string.get_secret_value())
            except ValueError as e:
                logger.warning(f"Failed to parse connection string, using as-is: {e}")
                return self
            for name in ('host', 'port', 'database', 'username', 'ssl_mode'):
                if parsed.get(name):
                    setattr(self, name, parsed[name])
            if parsed.get('password'):
                self.password = SecretStr(parsed['password'])
        elif self.host and self.database:
            self.connection_string = SecretStr(self._build_url(quote=True))

        return self

    def _build_url(self, quote: bool) -> str:
        encode = quote_plus if quote else (lambda s: s)
        username_part = encode(self.username) if self.username else ""
        password_part = f":{encode(self.password.get_secret_value())}" if self.password else ""
        ssl_part = f"?sslmode={self.ssl_mode}" if self.ssl_mode else ""
        return (
            f"postgresql://{username_part}{password_part}@{self.host}:{self.port or 5432}"
            f"/{self.database}{ssl_part}"
        )

    def get_connection_string(self) -> str:
        """Connection string for the configured backend.

        Raises:
            ValueError: If PostgreSQL is configured without host and database
        """
        if self.connection_string:
            return self.connection_string.get_secret_value()
        if self.db_type == "duckdb":
            return self.db_path or ":memory:"
        if not (self.host and self.database):
            raise ValueError("postgresql requires host and database")
        return self._build_url(quote=True)


class ConfigManager:
    """Unified access to configuration loaded from the environment or a file.

    Example Usage:
        ```python
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        config = ConfigManager.from_file("mcu-config.json")
        workers = config.get("batch.max_workers", 4)
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from MCU_* environment variables.

        Environment Variables:
            - MCU_DB_TYPE: duckdb (default) or postgresql
            - MCU_DB_PATH: DuckDB database file
            - MCU_DB_HOST, MCU_DB_PORT, MCU_DB_NAME: PostgreSQL location
            - MCU_DB_USER, MCU_DB_PASSWORD: PostgreSQL credentials (secret)
            - MCU_DB_CONNECTION_STRING: Full PostgreSQL URL (secret)
            - MCU_DB_SSL_MODE: PostgreSQL sslmode

        A .env file (the given one, or one in the working directory) is
        loaded first; variables already set in the process take precedence.
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        def env(name: str) -> Optional[str]:
            return os.getenv(f"{ENV_PREFIX}{name}") or None

        port = env("DB_PORT")
        config_data = {
            "database": {
                "db_type": env("DB_TYPE") or "duckdb",
                "db_path": env("DB_PATH"),
                "host": env("DB_HOST"),
                "port": int(port) if port else None,
                "database": env("DB_NAME"),
                "username": env("DB_USER"),
                "password": env("DB_PASSWORD"),
                "connection_string": env("DB_CONNECTION_STRING"),
                "ssl_mode": env("DB_SSL_MODE"),
            }
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not valid JSON
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        if config_file.stat().st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {e}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            db_config_data = {
                key: value
                for key, value in dict(self._config_data.get("database", {})).items()
                if value is not None
            }
            self._database_config = DatabaseConfig(**db_config_data)
        return self._database_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key (e.g. "database.host")."""
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default


def get_database_config() -> DatabaseConfig:
    """Database configuration from the environment, defaulting to in-memory DuckDB."""
    return ConfigManager.from_environment().get_database_config()
