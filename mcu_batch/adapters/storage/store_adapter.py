"""Store Adapter - Per-Item Facade over the Encounter and Measurement Stores.

This adapter is the mechanism that gives the batch orchestrator per-item
failure isolation. Header operations (encounter create/update/delete) are
single calls whose exceptions propagate. Measurement writes are issued
independently, one call per item, and every failure is captured as a
failed Result instead of being raised.

Concurrency:
    - Per-item writes fan out over a bounded ThreadPoolExecutor
    - Each call returns only after every item has settled
    - Results are ordered by ascending type id, independent of completion order
    - Transient storage errors are retried with bounded backoff per item
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional, Sequence

from mcu_batch.domain.enums import ItemOperation, LifecycleStatus
from mcu_batch.domain.guardrails import RetryPolicy, call_with_retry
from mcu_batch.domain.models import EncounterRecord, MeasurementRecord, NormalizedEncounterFields
from mcu_batch.domain.ports import (
    EncounterStorePort,
    MeasurementStorePort,
    PerItemWriteError,
    Result,
)
from mcu_batch.domain.utils import generate_encounter_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class StoreAdapter:
    """Facade over the external encounter store and measurement store.

    Parameters:
        encounter_store: EncounterStorePort implementation
        measurement_store: MeasurementStorePort implementation
        retry_policy: Retry policy for transient errors (default: RetryPolicy())
        max_workers: Upper bound on concurrent per-item writes
        sleep: Sleep function used between retries (injectable for tests)

    Example Usage:
        ```python
        store = DuckDBStore(db_path=":memory:", registry=registry)
        adapter = StoreAdapter(store.encounters, store.measurements, max_workers=4)
        encounter = adapter.create_encounter(fields, actor="dr.sari")
        results = adapter.insert_measurements(records)
        failures = [r for r in results if r.is_failure()]
        ```
    """

    def __init__(
        self,
        encounter_store: EncounterStorePort,
        measurement_store: MeasurementStorePort,
        retry_policy: Optional[RetryPolicy] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        sleep: Callable[[float], None] = time.sleep
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.encounter_store = encounter_store
        self.measurement_store = measurement_store
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_workers = max_workers
        self._sleep = sleep

    def _retry(self, operation: Callable, description: str):
        return call_with_retry(operation, self.retry_policy, description, sleep=self._sleep)

    # ------------------------------------------------------------------
    # Encounter (header) operations: exceptions propagate
    # ------------------------------------------------------------------

    def create_encounter(self, fields: NormalizedEncounterFields, actor: Optional[str] = None) -> EncounterRecord:
        """Write a new encounter header.

        The identifier is fixed before the first attempt so a retried call
        targets the same row.
        """
        store_fields = fields.to_store_fields()
        store_fields.setdefault("encounter_id", generate_encounter_id(fields.encounter_date))
        store_fields["created_by"] = actor
        return self._retry(
            lambda: self.encounter_store.create(store_fields),
            f"create encounter {store_fields['encounter_id']}"
        )

    def update_encounter(self, encounter_id: str, fields: dict, actor: Optional[str] = None) -> None:
        update_fields = dict(fields)
        update_fields["updated_by"] = actor
        self._retry(
            lambda: self.encounter_store.update(encounter_id, update_fields),
            f"update encounter {encounter_id}"
        )

    def soft_delete_encounter(self, encounter_id: str) -> None:
        self._retry(
            lambda: self.encounter_store.soft_delete(encounter_id),
            f"soft-delete encounter {encounter_id}"
        )

    def get_encounter(self, encounter_id: str, include_deleted: bool = False) -> Optional[EncounterRecord]:
        return self._retry(
            lambda: self.encounter_store.get(encounter_id, include_deleted=include_deleted),
            f"get encounter {encounter_id}"
        )

    # ------------------------------------------------------------------
    # Measurement reads
    # ------------------------------------------------------------------

    def list_active_measurements(self, encounter_id: str) -> dict[int, MeasurementRecord]:
        """Active measurements of an encounter keyed by type id.

        Should the store ever hold two active rows for one type, the most
        recently listed one wins and a warning is logged.
        """
        records = self._retry(
            lambda: self.measurement_store.list_by_encounter_id(encounter_id),
            f"list measurements of {encounter_id}"
        )
        by_type: dict[int, MeasurementRecord] = {}
        for record in records:
            if record.type_id in by_type:
                logger.warning(
                    f"Encounter {encounter_id} has duplicate active rows for lab item "
                    f"{record.type_id}; using {record.measurement_id}"
                )
            by_type[record.type_id] = record
        return by_type

    def count_active_measurements(self, encounter_id: str) -> int:
        return len(self.list_active_measurements(encounter_id))

    # ------------------------------------------------------------------
    # Measurement writes: isolated per item
    # ------------------------------------------------------------------

    def insert_measurements(self, records: Sequence[MeasurementRecord]) -> list[Result[MeasurementRecord]]:
        """Insert each record independently."""
        return self._fan_out(
            records,
            lambda record: self.measurement_store.create(record),
            ItemOperation.INSERT,
        )

    def update_measurements(
        self,
        records: Sequence[MeasurementRecord],
        actor: Optional[str] = None
    ) -> list[Result[MeasurementRecord]]:
        """Apply value/notes/status revisions to existing rows.

        Each record carries the measurement_id of the row to revise and
        its desired post-update values.
        """
        def apply(record: MeasurementRecord) -> MeasurementRecord:
            fields = {
                "value": record.value,
                "notes": record.notes,
                "status_label": record.status_label,
                "updated_by": actor,
            }
            self.measurement_store.update(record.measurement_id, fields)
            return record.model_copy(update={"updated_by": actor, "updated_at": datetime.now()})

        return self._fan_out(records, apply, ItemOperation.UPDATE)

    def delete_measurements(
        self,
        records: Sequence[MeasurementRecord],
        actor: Optional[str] = None
    ) -> list[Result[MeasurementRecord]]:
        """Soft-delete each row independently."""
        def apply(record: MeasurementRecord) -> MeasurementRecord:
            self.measurement_store.soft_delete(record.measurement_id)
            return record.model_copy(update={
                "lifecycle_status": LifecycleStatus.DELETED,
                "deleted_at": datetime.now(),
                "updated_by": actor,
            })

        return self._fan_out(records, apply, ItemOperation.DELETE)

    def _write_one(
        self,
        record: MeasurementRecord,
        write: Callable[[MeasurementRecord], MeasurementRecord],
        operation: ItemOperation
    ) -> Result[MeasurementRecord]:
        description = f"{operation.value} lab item {record.type_id} of {record.encounter_id}"
        try:
            value = self._retry(lambda: write(record), description)
            return Result.success_result(value)
        except Exception as e:
            logger.error(f"Failed to {description}: {e}")
            return Result.failure_result(
                PerItemWriteError(str(e), type_id=record.type_id, operation=operation.value),
                error_type=type(e).__name__,
                error_details={
                    "type_id": record.type_id,
                    "operation": operation.value,
                    "measurement_id": record.measurement_id,
                },
            )

    def _fan_out(
        self,
        records: Sequence[MeasurementRecord],
        write: Callable[[MeasurementRecord], MeasurementRecord],
        operation: ItemOperation
    ) -> list[Result[MeasurementRecord]]:
        ordered = sorted(records, key=lambda record: record.type_id)
        if not ordered:
            return []

        if self.max_workers == 1 or len(ordered) == 1:
            return [self._write_one(record, write, operation) for record in ordered]

        workers = min(self.max_workers, len(ordered))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"mcu-{operation.value}") as executor:
            futures = [executor.submit(self._write_one, record, write, operation) for record in ordered]
            # _write_one never raises, so result() only waits for the item to settle
            return [future.result() for future in futures]
