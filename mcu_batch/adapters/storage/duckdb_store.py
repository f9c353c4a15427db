"""DuckDB Storage Adapter.

In-process store for MCU encounters and lab measurements. Used for local
runs, the CLI default and as the real store in integration tests.

Architecture:
    - DuckDBStore owns the connection, the schema and the change audit log
    - ``store.encounters`` implements EncounterStorePort
    - ``store.measurements`` implements MeasurementStorePort
    - Every call is one statement (or one read-check-write under the store
      lock); there is no multi-table transaction to rely on

Integrity:
    - Soft delete sets lifecycle_status='deleted' plus deleted_at
    - Measurements can only be written against an ACTIVE encounter
    - At most one ACTIVE measurement per (encounter_id, type_id); DuckDB has
      no partial unique index, so the rule is checked under the store lock
"""

import json
import logging
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import duckdb

from mcu_batch.domain.enums import LifecycleStatus
from mcu_batch.domain.models import EncounterRecord, MeasurementRecord
from mcu_batch.domain.ports import (
    ChangeLogPort,
    EncounterStorePort,
    MeasurementStorePort,
    NotFoundError,
    Result,
    StorageError,
    WhitelistRegistryPort,
)
from mcu_batch.domain.utils import generate_encounter_id, generate_measurement_id
from mcu_batch.domain.whitelist import WhitelistRegistry
from mcu_batch.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

ENCOUNTER_UPDATABLE_FIELDS = ("subject_id", "encounter_type", "encounter_date", "clinical_fields", "updated_by")
MEASUREMENT_UPDATABLE_FIELDS = (
    "value", "notes", "status_label", "unit", "min_reference", "max_reference", "updated_by",
)

CHANGE_LOG_COLUMNS = (
    'change_id', 'table_name', 'record_id', 'field_name', 'old_value', 'new_value',
    'change_type', 'changed_at', 'batch_id', 'changed_by',
)


class DuckDBStore(ChangeLogPort):
    """DuckDB implementation of the encounter store, measurement store and change log.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)
        registry: Whitelist used to filter measurement listings (default: built-in table)

    Example Usage:
        ```python
        store = DuckDBStore(db_path=":memory:")
        store.initialize_schema()
        adapter = StoreAdapter(store.encounters, store.measurements)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
        registry: Optional[WhitelistRegistryPort] = None
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB store",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

        self.registry = registry or WhitelistRegistry.default()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        # One connection is shared by the per-item worker threads
        self._lock = threading.RLock()

        self.encounters = DuckDBEncounterStore(self)
        self.measurements = DuckDBMeasurementStore(self)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {e}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Create the encounters, measurements and change_audit_log tables."""
        try:
            with self._lock:
                conn = self._get_connection()
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS encounters (
                        encounter_id VARCHAR PRIMARY KEY,
                        subject_id VARCHAR NOT NULL,
                        encounter_type VARCHAR NOT NULL,
                        encounter_date DATE NOT NULL,
                        clinical_fields VARCHAR,
                        lifecycle_status VARCHAR NOT NULL DEFAULT 'active',
                        created_at TIMESTAMP,
                        updated_at TIMESTAMP,
                        created_by VARCHAR,
                        updated_by VARCHAR,
                        deleted_at TIMESTAMP
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS measurements (
                        measurement_id VARCHAR PRIMARY KEY,
                        encounter_id VARCHAR NOT NULL,
                        subject_id VARCHAR,
                        type_id INTEGER NOT NULL,
                        value DOUBLE NOT NULL,
                        unit VARCHAR,
                        min_reference DOUBLE,
                        max_reference DOUBLE,
                        status_label VARCHAR,
                        notes VARCHAR,
                        lifecycle_status VARCHAR NOT NULL DEFAULT 'active',
                        created_at TIMESTAMP,
                        updated_at TIMESTAMP,
                        created_by VARCHAR,
                        updated_by VARCHAR,
                        deleted_at TIMESTAMP
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS change_audit_log (
                        change_id VARCHAR PRIMARY KEY,
                        table_name VARCHAR NOT NULL,
                        record_id VARCHAR NOT NULL,
                        field_name VARCHAR NOT NULL,
                        old_value VARCHAR,
                        new_value VARCHAR,
                        change_type VARCHAR NOT NULL,
                        changed_at TIMESTAMP NOT NULL,
                        batch_id VARCHAR,
                        changed_by VARCHAR
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_encounters_subject ON encounters(subject_id)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_measurements_encounter ON measurements(encounter_id)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_change_log_record ON change_audit_log(table_name, record_id)"
                )
                self._initialized = True
            logger.info("DuckDB schema initialized")
            return Result.success_result(None)
        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to initialize schema: {e}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def _ensure_schema(self) -> None:
        if not self._initialized:
            result = self.initialize_schema()
            if result.is_failure():
                raise StorageError(result.error, operation="initialize_schema")

    def execute(self, query: str, params: Optional[list] = None, operation: str = "query") -> None:
        with self._lock:
            self._ensure_schema()
            try:
                self._get_connection().execute(query, params or [])
            except duckdb.Error as e:
                raise StorageError(f"DuckDB {operation} failed: {e}", operation=operation)

    def fetch_dicts(self, query: str, params: Optional[list] = None, operation: str = "query") -> list[dict]:
        with self._lock:
            self._ensure_schema()
            try:
                cursor = self._get_connection().execute(query, params or [])
                columns = [column[0] for column in cursor.description]
                return [dict(zip(columns, row)) for row in cursor.fetchall()]
            except duckdb.Error as e:
                raise StorageError(f"DuckDB {operation} failed: {e}", operation=operation)

    def flush_change_logs(self, change_logs: list[dict]) -> Result[int]:
        """Append change audit entries (from ChangeAuditLogger.get_logs())."""
        if not change_logs:
            return Result.success_result(0)

        rows = [
            [
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
            ]
            for entry in change_logs
        ]
        placeholders = ", ".join("?" for _ in CHANGE_LOG_COLUMNS)

        try:
            with self._lock:
                self._ensure_schema()
                self._get_connection().executemany(
                    f"INSERT INTO change_audit_log ({', '.join(CHANGE_LOG_COLUMNS)}) VALUES ({placeholders})",
                    rows
                )
            count = len(rows)
            logger.info(f"Flushed {count} change audit logs to database")
            return Result.success_result(count)
        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to flush change logs: {e}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="flush_change_logs"),
                error_type="StorageError"
            )

    def get_change_history(self, record_id: str) -> list[dict]:
        """Change audit entries of one record, oldest first."""
        return self.fetch_dicts(
            "SELECT * FROM change_audit_log WHERE record_id = ? ORDER BY changed_at, change_id",
            [record_id],
            operation="get_change_history"
        )

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                self._initialized = False
                logger.info("Closed DuckDB connection")
            except duckdb.Error as e:
                logger.warning(f"Error closing connection: {e}")


def _encounter_from_row(row: dict) -> EncounterRecord:
    row = dict(row)
    clinical = row.get("clinical_fields")
    row["clinical_fields"] = json.loads(clinical) if clinical else {}
    return EncounterRecord(**row)


class DuckDBEncounterStore(EncounterStorePort):
    """Encounter (MCU header) table of a DuckDBStore."""

    def __init__(self, store: DuckDBStore):
        self._store = store

    def create(self, fields: dict) -> EncounterRecord:
        now = datetime.now()
        encounter_id = fields.get("encounter_id") or generate_encounter_id(fields.get("encounter_date"))
        record = EncounterRecord(
            encounter_id=encounter_id,
            subject_id=fields["subject_id"],
            encounter_type=fields["encounter_type"],
            encounter_date=fields["encounter_date"],
            clinical_fields=fields.get("clinical_fields") or {},
            lifecycle_status=LifecycleStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            created_by=fields.get("created_by"),
            updated_by=fields.get("created_by"),
        )
        self._store.execute(
            """
            INSERT INTO encounters (
                encounter_id, subject_id, encounter_type, encounter_date, clinical_fields,
                lifecycle_status, created_at, updated_at, created_by, updated_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                record.encounter_id, record.subject_id, record.encounter_type, record.encounter_date,
                json.dumps(record.clinical_fields, default=str), record.lifecycle_status.value,
                record.created_at, record.updated_at, record.created_by, record.updated_by,
            ],
            operation="create_encounter"
        )
        logger.debug(f"Created encounter {record.encounter_id}")
        return record

    def update(self, encounter_id: str, fields: dict) -> None:
        """Partial update; supplied clinical fields are merged into the stored ones."""
        with self._store._lock:
            current = self.get(encounter_id)
            if current is None:
                raise NotFoundError(f"Encounter not found or deleted: {encounter_id}", operation="update_encounter")

            updates = {k: v for k, v in fields.items() if k in ENCOUNTER_UPDATABLE_FIELDS}
            if "clinical_fields" in updates:
                merged = dict(current.clinical_fields)
                merged.update(updates["clinical_fields"] or {})
                updates["clinical_fields"] = json.dumps(merged, default=str)
            updates["updated_at"] = datetime.now()

            assignments = ", ".join(f"{name} = ?" for name in updates)
            self._store.execute(
                f"UPDATE encounters SET {assignments} WHERE encounter_id = ?",
                list(updates.values()) + [encounter_id],
                operation="update_encounter"
            )

    def soft_delete(self, encounter_id: str) -> None:
        with self._store._lock:
            if self.get(encounter_id, include_deleted=True) is None:
                raise NotFoundError(f"Encounter not found: {encounter_id}", operation="soft_delete_encounter")
            now = datetime.now()
            self._store.execute(
                "UPDATE encounters SET lifecycle_status = ?, deleted_at = ?, updated_at = ? "
                "WHERE encounter_id = ?",
                [LifecycleStatus.DELETED.value, now, now, encounter_id],
                operation="soft_delete_encounter"
            )
        logger.info(f"Soft-deleted encounter {encounter_id}")

    def get(self, encounter_id: str, include_deleted: bool = False) -> Optional[EncounterRecord]:
        query = "SELECT * FROM encounters WHERE encounter_id = ?"
        params: list[Any] = [encounter_id]
        if not include_deleted:
            query += " AND lifecycle_status = ?"
            params.append(LifecycleStatus.ACTIVE.value)
        rows = self._store.fetch_dicts(query, params, operation="get_encounter")
        return _encounter_from_row(rows[0]) if rows else None


class DuckDBMeasurementStore(MeasurementStorePort):
    """Measurement (lab result) table of a DuckDBStore."""

    def __init__(self, store: DuckDBStore):
        self._store = store

    def create(self, measurement: MeasurementRecord) -> MeasurementRecord:
        with self._store._lock:
            owner = self._store.encounters.get(measurement.encounter_id)
            if owner is None:
                raise NotFoundError(
                    f"Encounter not found or deleted: {measurement.encounter_id}",
                    operation="create_measurement"
                )

            clash = self._store.fetch_dicts(
                "SELECT measurement_id FROM measurements "
                "WHERE encounter_id = ? AND type_id = ? AND lifecycle_status = ?",
                [measurement.encounter_id, measurement.type_id, LifecycleStatus.ACTIVE.value],
                operation="create_measurement"
            )
            if clash:
                raise StorageError(
                    f"Encounter {measurement.encounter_id} already has an active measurement "
                    f"for lab item {measurement.type_id}",
                    operation="create_measurement"
                )

            now = datetime.now()
            record = measurement.model_copy(update={
                "measurement_id": measurement.measurement_id or generate_measurement_id(),
                "subject_id": measurement.subject_id or owner.subject_id,
                "lifecycle_status": LifecycleStatus.ACTIVE,
                "created_at": now,
                "updated_at": now,
                "updated_by": measurement.created_by,
            })
            self._store.execute(
                """
                INSERT INTO measurements (
                    measurement_id, encounter_id, subject_id, type_id, value, unit,
                    min_reference, max_reference, status_label, notes, lifecycle_status,
                    created_at, updated_at, created_by, updated_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    record.measurement_id, record.encounter_id, record.subject_id, record.type_id,
                    record.value, record.unit, record.min_reference, record.max_reference,
                    record.status_label.value, record.notes, record.lifecycle_status.value,
                    record.created_at, record.updated_at, record.created_by, record.updated_by,
                ],
                operation="create_measurement"
            )
        return record

    def update(self, measurement_id: str, fields: dict) -> None:
        with self._store._lock:
            current = self.get(measurement_id)
            if current is None or not current.is_active:
                raise NotFoundError(
                    f"Measurement not found or deleted: {measurement_id}",
                    operation="update_measurement"
                )

            updates = {k: v for k, v in fields.items() if k in MEASUREMENT_UPDATABLE_FIELDS}
            if "status_label" in updates and hasattr(updates["status_label"], "value"):
                updates["status_label"] = updates["status_label"].value
            updates["updated_at"] = datetime.now()

            assignments = ", ".join(f"{name} = ?" for name in updates)
            self._store.execute(
                f"UPDATE measurements SET {assignments} WHERE measurement_id = ?",
                list(updates.values()) + [measurement_id],
                operation="update_measurement"
            )

    def soft_delete(self, measurement_id: str) -> None:
        with self._store._lock:
            if self.get(measurement_id) is None:
                raise NotFoundError(f"Measurement not found: {measurement_id}", operation="soft_delete_measurement")
            now = datetime.now()
            self._store.execute(
                "UPDATE measurements SET lifecycle_status = ?, deleted_at = ?, updated_at = ? "
                "WHERE measurement_id = ?",
                [LifecycleStatus.DELETED.value, now, now, measurement_id],
                operation="soft_delete_measurement"
            )

    def list_by_encounter_id(self, encounter_id: str) -> list[MeasurementRecord]:
        rows = self._store.fetch_dicts(
            "SELECT * FROM measurements "
            "WHERE encounter_id = ? AND lifecycle_status = ? AND value > 0 "
            "ORDER BY type_id, created_at",
            [encounter_id, LifecycleStatus.ACTIVE.value],
            operation="list_measurements"
        )
        return [
            MeasurementRecord(**row)
            for row in rows
            if self._store.registry.is_valid(row["type_id"])
        ]

    def get(self, measurement_id: str) -> Optional[MeasurementRecord]:
        rows = self._store.fetch_dicts(
            "SELECT * FROM measurements WHERE measurement_id = ?",
            [measurement_id],
            operation="get_measurement"
        )
        return MeasurementRecord(**rows[0]) if rows else None
