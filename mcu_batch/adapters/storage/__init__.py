"""Storage adapters for the MCU batch engine.

Concrete encounter/measurement stores and the per-item StoreAdapter facade.
"""

from mcu_batch.adapters.storage.duckdb_store import DuckDBStore
from mcu_batch.adapters.storage.postgresql_store import PostgreSQLStore
from mcu_batch.adapters.storage.store_adapter import StoreAdapter

__all__ = ["DuckDBStore", "PostgreSQLStore", "StoreAdapter"]
