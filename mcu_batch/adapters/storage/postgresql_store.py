"""PostgreSQL Storage Adapter.

Production store for MCU encounters and lab measurements.

Architecture:
    - PostgreSQLStore owns a psycopg2 ThreadedConnectionPool, the schema
      and the change audit log
    - ``store.encounters`` implements EncounterStorePort
    - ``store.measurements`` implements MeasurementStorePort
    - Each call borrows a pooled connection and commits (or rolls back)
      its single statement before returning it

Integrity:
    - clinical_fields is jsonb; partial updates merge with ``||``
    - A partial unique index keeps one ACTIVE row per (encounter_id, type_id)
    - Measurement inserts are guarded by an EXISTS on the active encounter

Error mapping:
    - psycopg2.OperationalError / InterfaceError -> TransientStorageError
    - every other psycopg2.Error -> StorageError
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import psycopg2
from psycopg2 import pool, sql
from psycopg2.extras import Json, RealDictCursor, execute_values

from mcu_batch.domain.enums import LifecycleStatus
from mcu_batch.domain.models import EncounterRecord, MeasurementRecord
from mcu_batch.domain.ports import (
    ChangeLogPort,
    EncounterStorePort,
    MeasurementStorePort,
    NotFoundError,
    Result,
    StorageError,
    TransientStorageError,
    WhitelistRegistryPort,
)
from mcu_batch.domain.utils import generate_encounter_id, generate_measurement_id
from mcu_batch.domain.whitelist import WhitelistRegistry
from mcu_batch.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

ENCOUNTER_UPDATABLE_FIELDS = ("subject_id", "encounter_type", "encounter_date", "updated_by")
MEASUREMENT_UPDATABLE_FIELDS = (
    "value", "notes", "status_label", "unit", "min_reference", "max_reference", "updated_by",
)

CHANGE_LOG_COLUMNS = (
    'change_id', 'table_name', 'record_id', 'field_name', 'old_value', 'new_value',
    'change_type', 'changed_at', 'batch_id', 'changed_by',
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS encounters (
        encounter_id VARCHAR(64) PRIMARY KEY,
        subject_id VARCHAR(64) NOT NULL,
        encounter_type VARCHAR(100) NOT NULL,
        encounter_date DATE NOT NULL,
        clinical_fields JSONB NOT NULL DEFAULT '{}'::jsonb,
        lifecycle_status VARCHAR(16) NOT NULL DEFAULT 'active',
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        created_by VARCHAR(100),
        updated_by VARCHAR(100),
        deleted_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS measurements (
        measurement_id VARCHAR(64) PRIMARY KEY,
        encounter_id VARCHAR(64) NOT NULL REFERENCES encounters(encounter_id),
        subject_id VARCHAR(64),
        type_id INTEGER NOT NULL,
        value DOUBLE PRECISION NOT NULL,
        unit VARCHAR(32),
        min_reference DOUBLE PRECISION,
        max_reference DOUBLE PRECISION,
        status_label VARCHAR(16),
        notes TEXT,
        lifecycle_status VARCHAR(16) NOT NULL DEFAULT 'active',
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        created_by VARCHAR(100),
        updated_by VARCHAR(100),
        deleted_at TIMESTAMP
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_measurements_active_type
        ON measurements(encounter_id, type_id) WHERE lifecycle_status = 'active'
    """,
    "CREATE INDEX IF NOT EXISTS idx_encounters_subject ON encounters(subject_id)",
    """
    CREATE TABLE IF NOT EXISTS change_audit_log (
        change_id VARCHAR(64) PRIMARY KEY,
        table_name VARCHAR(64) NOT NULL,
        record_id VARCHAR(64) NOT NULL,
        field_name VARCHAR(128) NOT NULL,
        old_value TEXT,
        new_value TEXT,
        change_type VARCHAR(16) NOT NULL,
        changed_at TIMESTAMP NOT NULL,
        batch_id VARCHAR(64),
        changed_by VARCHAR(100)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_change_log_record ON change_audit_log(table_name, record_id)",
)


class PostgreSQLStore(ChangeLogPort):
    """PostgreSQL implementation of the encounter store, measurement store and change log.

    Parameters:
        db_config: DatabaseConfig with db_type 'postgresql'
        registry: Whitelist used to filter measurement listings (default: built-in table)

    Example Usage:
        ```python
        store = PostgreSQLStore(db_config=get_database_config())
        store.initialize_schema()
        adapter = StoreAdapter(store.encounters, store.measurements, max_workers=4)
        ```
    """

    def __init__(self, db_config: DatabaseConfig, registry: Optional[WhitelistRegistryPort] = None):
        if db_config.db_type != "postgresql":
            raise StorageError(
                f"DatabaseConfig type '{db_config.db_type}' does not match PostgreSQL store",
                operation="__init__"
            )

        if db_config.connection_string:
            self.connection_params = {"dsn": db_config.connection_string.get_secret_value()}
        else:
            if not (db_config.host and db_config.database):
                raise StorageError(
                    "PostgreSQL DatabaseConfig requires host and database",
                    operation="__init__"
                )
            self.connection_params = {
                "host": db_config.host,
                "port": db_config.port or 5432,
                "database": db_config.database,
                "user": db_config.username,
                "sslmode": db_config.ssl_mode or "prefer",
            }
            if db_config.password:
                self.connection_params["password"] = db_config.password.get_secret_value()

        self.pool_size = db_config.pool_size
        self.registry = registry or WhitelistRegistry.default()
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()

        self.encounters = PostgreSQLEncounterStore(self)
        self.measurements = PostgreSQLMeasurementStore(self)

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        with self._pool_lock:
            if self._connection_pool is None:
                try:
                    self._connection_pool = pool.ThreadedConnectionPool(
                        minconn=1,
                        maxconn=self.pool_size,
                        **self.connection_params
                    )
                    logger.info("Created PostgreSQL connection pool")
                except psycopg2.OperationalError as e:
                    raise TransientStorageError(
                        f"Failed to create PostgreSQL connection pool: {e}",
                        operation="connect",
                        details={"host": self.connection_params.get("host", "N/A")}
                    )
                except psycopg2.Error as e:
                    raise StorageError(
                        f"Failed to create PostgreSQL connection pool: {e}",
                        operation="connect",
                        details={"host": self.connection_params.get("host", "N/A")}
                    )
            return self._connection_pool

    @contextmanager
    def cursor(self, operation: str, dict_rows: bool = False) -> Iterator:
        """Borrow a pooled connection for one statement.

        Commits on success, rolls back and maps the driver error otherwise.
        """
        connection_pool = self._get_connection_pool()
        try:
            conn = connection_pool.getconn()
        except pool.PoolError as e:
            raise TransientStorageError(f"Failed to get connection from pool: {e}", operation=operation)

        try:
            cursor = conn.cursor(cursor_factory=RealDictCursor) if dict_rows else conn.cursor()
            try:
                yield cursor
                conn.commit()
            finally:
                cursor.close()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            _safe_rollback(conn)
            raise TransientStorageError(f"PostgreSQL {operation} failed: {e}", operation=operation)
        except psycopg2.Error as e:
            _safe_rollback(conn)
            raise StorageError(f"PostgreSQL {operation} failed: {e}", operation=operation)
        except Exception:
            _safe_rollback(conn)
            raise
        finally:
            connection_pool.putconn(conn)

    def initialize_schema(self) -> Result[None]:
        """Create tables and indexes if they do not exist."""
        try:
            with self.cursor("initialize_schema") as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            logger.info("PostgreSQL schema initialized")
            return Result.success_result(None)
        except StorageError as e:
            logger.error(f"Failed to initialize schema: {e}", exc_info=True)
            return Result.failure_result(e, error_type=type(e).__name__)

    def flush_change_logs(self, change_logs: list[dict]) -> Result[int]:
        """Bulk-append change audit entries with execute_values."""
        if not change_logs:
            return Result.success_result(0)

        values = [
            (
                entry.get('change_id') or str(uuid.uuid4()),
                entry.get('table_name'),
                entry.get('record_id'),
                entry.get('field_name'),
                entry.get('old_value'),
                entry.get('new_value'),
                entry.get('change_type'),
                entry.get('changed_at') or datetime.now(),
                entry.get('batch_id'),
                entry.get('changed_by') or 'system',
            )
            for entry in change_logs
        ]

        try:
            with self.cursor("flush_change_logs") as cur:
                execute_values(
                    cur,
                    f"INSERT INTO change_audit_log ({', '.join(CHANGE_LOG_COLUMNS)}) VALUES %s",
                    values,
                    page_size=1000
                )
            logger.info(f"Flushed {len(values)} change audit logs to database")
            return Result.success_result(len(values))
        except StorageError as e:
            error_msg = f"Failed to flush change logs: {e}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="flush_change_logs"),
                error_type=type(e).__name__
            )

    def get_change_history(self, record_id: str) -> list[dict]:
        """Change audit entries of one record, oldest first."""
        with self.cursor("get_change_history", dict_rows=True) as cur:
            cur.execute(
                "SELECT * FROM change_audit_log WHERE record_id = %s ORDER BY changed_at, change_id",
                (record_id,)
            )
            return [dict(row) for row in cur.fetchall()]

    def close(self) -> None:
        """Close the connection pool and release resources."""
        if self._connection_pool is not None:
            try:
                self._connection_pool.closeall()
                self._connection_pool = None
                logger.info("Closed PostgreSQL connection pool")
            except psycopg2.Error as e:
                logger.warning(f"Error closing connection pool: {e}")


def _safe_rollback(conn) -> None:
    try:
        conn.rollback()
    except psycopg2.Error as e:
        logger.warning(f"Rollback failed: {e}")


class PostgreSQLEncounterStore(EncounterStorePort):
    """Encounter (MCU header) table of a PostgreSQLStore."""

    def __init__(self, store: PostgreSQLStore):
        self._store = store

    def create(self, fields: dict) -> EncounterRecord:
        encounter_id = fields.get("encounter_id") or generate_encounter_id(fields.get("encounter_date"))
        with self._store.cursor("create_encounter", dict_rows=True) as cur:
            cur.execute(
                """
                INSERT INTO encounters (
                    encounter_id, subject_id, encounter_type, encounter_date, clinical_fields,
                    lifecycle_status, created_by, updated_by
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    encounter_id, fields["subject_id"], fields["encounter_type"],
                    fields["encounter_date"], Json(fields.get("clinical_fields") or {}),
                    LifecycleStatus.ACTIVE.value, fields.get("created_by"), fields.get("created_by"),
                )
            )
            row = cur.fetchone()
        logger.debug(f"Created encounter {encounter_id}")
        return EncounterRecord(**row)

    def update(self, encounter_id: str, fields: dict) -> None:
        assignments = [sql.SQL("updated_at = CURRENT_TIMESTAMP")]
        params: list = []
        for name in ENCOUNTER_UPDATABLE_FIELDS:
            if name in fields:
                assignments.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
                params.append(fields[name])
        if fields.get("clinical_fields"):
            assignments.append(sql.SQL("clinical_fields = clinical_fields || %s"))
            params.append(Json(fields["clinical_fields"]))

        query = sql.SQL("UPDATE encounters SET {} WHERE encounter_id = %s AND lifecycle_status = %s").format(
            sql.SQL(", ").join(assignments)
        )
        with self._store.cursor("update_encounter") as cur:
            cur.execute(query, params + [encounter_id, LifecycleStatus.ACTIVE.value])
            updated = cur.rowcount
        if updated == 0:
            raise NotFoundError(f"Encounter not found or deleted: {encounter_id}", operation="update_encounter")

    def soft_delete(self, encounter_id: str) -> None:
        with self._store.cursor("soft_delete_encounter") as cur:
            cur.execute(
                "UPDATE encounters SET lifecycle_status = %s, deleted_at = CURRENT_TIMESTAMP, "
                "updated_at = CURRENT_TIMESTAMP WHERE encounter_id = %s",
                (LifecycleStatus.DELETED.value, encounter_id)
            )
            updated = cur.rowcount
        if updated == 0:
            raise NotFoundError(f"Encounter not found: {encounter_id}", operation="soft_delete_encounter")
        logger.info(f"Soft-deleted encounter {encounter_id}")

    def get(self, encounter_id: str, include_deleted: bool = False) -> Optional[EncounterRecord]:
        query = "SELECT * FROM encounters WHERE encounter_id = %s"
        params: list = [encounter_id]
        if not include_deleted:
            query += " AND lifecycle_status = %s"
            params.append(LifecycleStatus.ACTIVE.value)
        with self._store.cursor("get_encounter", dict_rows=True) as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return EncounterRecord(**row) if row else None


class PostgreSQLMeasurementStore(MeasurementStorePort):
    """Measurement (lab result) table of a PostgreSQLStore."""

    def __init__(self, store: PostgreSQLStore):
        self._store = store

    def create(self, measurement: MeasurementRecord) -> MeasurementRecord:
        measurement_id = measurement.measurement_id or generate_measurement_id()
        with self._store.cursor("create_measurement", dict_rows=True) as cur:
            # Single statement: the row is only written while its encounter is active
            cur.execute(
                """
                INSERT INTO measurements (
                    measurement_id, encounter_id, subject_id, type_id, value, unit,
                    min_reference, max_reference, status_label, notes, lifecycle_status,
                    created_by, updated_by
                )
                SELECT %s, e.encounter_id, COALESCE(%s, e.subject_id), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
                FROM encounters e
                WHERE e.encounter_id = %s AND e.lifecycle_status = %s
                RETURNING *
                """,
                (
                    measurement_id, measurement.subject_id, measurement.type_id, measurement.value,
                    measurement.unit, measurement.min_reference, measurement.max_reference,
                    measurement.status_label.value, measurement.notes, LifecycleStatus.ACTIVE.value,
                    measurement.created_by, measurement.created_by,
                    measurement.encounter_id, LifecycleStatus.ACTIVE.value,
                )
            )
            row = cur.fetchone()
        if row is None:
            raise NotFoundError(
                f"Encounter not found or deleted: {measurement.encounter_id}",
                operation="create_measurement"
            )
        return MeasurementRecord(**row)

    def update(self, measurement_id: str, fields: dict) -> None:
        assignments = [sql.SQL("updated_at = CURRENT_TIMESTAMP")]
        params: list = []
        for name in MEASUREMENT_UPDATABLE_FIELDS:
            if name in fields:
                value = fields[name]
                assignments.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
                params.append(value.value if hasattr(value, "value") else value)

        query = sql.SQL("UPDATE measurements SET {} WHERE measurement_id = %s AND lifecycle_status = %s").format(
            sql.SQL(", ").join(assignments)
        )
        with self._store.cursor("update_measurement") as cur:
            cur.execute(query, params + [measurement_id, LifecycleStatus.ACTIVE.value])
            updated = cur.rowcount
        if updated == 0:
            raise NotFoundError(f"Measurement not found or deleted: {measurement_id}", operation="update_measurement")

    def soft_delete(self, measurement_id: str) -> None:
        with self._store.cursor("soft_delete_measurement") as cur:
            cur.execute(
                "UPDATE measurements SET lifecycle_status = %s, deleted_at = CURRENT_TIMESTAMP, "
                "updated_at = CURRENT_TIMESTAMP WHERE measurement_id = %s",
                (LifecycleStatus.DELETED.value, measurement_id)
            )
            updated = cur.rowcount
        if updated == 0:
            raise NotFoundError(f"Measurement not found: {measurement_id}", operation="soft_delete_measurement")

    def list_by_encounter_id(self, encounter_id: str) -> list[MeasurementRecord]:
        with self._store.cursor("list_measurements", dict_rows=True) as cur:
            cur.execute(
                "SELECT * FROM measurements "
                "WHERE encounter_id = %s AND lifecycle_status = %s AND value > 0 "
                "ORDER BY type_id, created_at",
                (encounter_id, LifecycleStatus.ACTIVE.value)
            )
            rows = cur.fetchall()
        return [
            MeasurementRecord(**row)
            for row in rows
            if self._store.registry.is_valid(row["type_id"])
        ]

    def get(self, measurement_id: str) -> Optional[MeasurementRecord]:
        with self._store.cursor("get_measurement", dict_rows=True) as cur:
            cur.execute("SELECT * FROM measurements WHERE measurement_id = %s", (measurement_id,))
            row = cur.fetchone()
        return MeasurementRecord(**row) if row else None
