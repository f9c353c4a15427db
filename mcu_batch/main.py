"""Composition Root.

Builds the whitelist registry, the configured store and the batch
orchestrator from Settings. Callers (the CLI, an HTTP layer, tests) go
through these factories instead of wiring adapters by hand.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from mcu_batch.adapters.storage.duckdb_store import DuckDBStore
from mcu_batch.adapters.storage.postgresql_store import PostgreSQLStore
from mcu_batch.adapters.storage.store_adapter import StoreAdapter
from mcu_batch.domain.guardrails import RetryPolicy
from mcu_batch.domain.services.batch_orchestrator import BatchOrchestrator
from mcu_batch.domain.whitelist import WhitelistRegistry
from mcu_batch.infrastructure.audit.change_audit_logger import ChangeAuditLogger
from mcu_batch.infrastructure.config_manager import DatabaseConfig
from mcu_batch.infrastructure.settings import Settings

logger = logging.getLogger(__name__)

Store = Union[DuckDBStore, PostgreSQLStore]


@dataclass
class BatchEngine:
    """The wired-up engine: store, registry, adapter and orchestrator."""
    store: Store
    registry: WhitelistRegistry
    store_adapter: StoreAdapter
    orchestrator: BatchOrchestrator

    def close(self) -> None:
        self.store.close()


def load_registry(settings: Settings) -> WhitelistRegistry:
    """Default lab item table, or the JSON file named by MCU_WHITELIST_PATH."""
    if settings.whitelist_path:
        logger.info(f"Loading measurement whitelist from {settings.whitelist_path}")
        return WhitelistRegistry.from_file(
            settings.whitelist_path,
            expected_count=settings.expected_measurement_count
        )
    if settings.expected_measurement_count is not None:
        return WhitelistRegistry(WhitelistRegistry.default(), expected_count=settings.expected_measurement_count)
    return WhitelistRegistry.default()


def create_store(db_config: DatabaseConfig, registry: Optional[WhitelistRegistry] = None) -> Store:
    """Create the store for the configured database type.

    Raises:
        ValueError: If the database type is unsupported
    """
    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB store with path: {db_config.db_path or ':memory:'}")
        return DuckDBStore(db_config=db_config, registry=registry)
    elif db_config.db_type == "postgresql":
        logger.info(f"Initializing PostgreSQL store with host: {db_config.host}")
        return PostgreSQLStore(db_config=db_config, registry=registry)
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_engine(settings: Optional[Settings] = None, store: Optional[Store] = None) -> BatchEngine:
    """Wire the orchestrator over the configured (or given) store."""
    settings = settings or Settings()
    registry = load_registry(settings)
    store = store or create_store(settings.db_config, registry)

    store_adapter = StoreAdapter(
        store.encounters,
        store.measurements,
        retry_policy=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay,
            max_delay_seconds=settings.retry_max_delay,
        ),
        max_workers=settings.max_workers,
    )
    orchestrator = BatchOrchestrator(
        store_adapter,
        registry,
        audit_logger=ChangeAuditLogger(),
        change_log=store,
    )
    return BatchEngine(store=store, registry=registry, store_adapter=store_adapter, orchestrator=orchestrator)
