"""Batch Orchestrator.

Public entry point of the engine. Sequences validation, the encounter
header write, reconciliation, isolated per-item writes, verification
read-back and compensation for the two supported operations:

    create_with_measurements(encounter_fields, measurements, actor)
    update_with_measurements(encounter_id, update_fields, measurements, actor)

Failure semantics:
    - Validation failures are raised before any write (no state changed)
    - Per-item write failures are isolated and listed in the result
    - A fatal error after the create path wrote its header is compensated
      by soft-deleting that header; the outcome is returned as data
    - A fatal error after the update path began writing is returned as data
    - Verification read-back only warns and never triggers compensation
    - CompensationFailureError is the only error raised once writes began
"""

import logging
import uuid
import warnings
from typing import Any, Iterable, Mapping, Optional

from mcu_batch.adapters.storage.store_adapter import StoreAdapter
from mcu_batch.domain.enums import ItemOperation
from mcu_batch.domain.models import EncounterRecord, MeasurementRecord, NormalizedMeasurement
from mcu_batch.domain.ports import (
    ChangeLogPort,
    CompensationFailureError,
    NotFoundError,
    Result,
    StorageError,
    VerificationMismatchWarning,
    WhitelistRegistryPort,
)
from mcu_batch.domain.results import BatchResult, ItemFailure
from mcu_batch.domain.saga import EncounterCompensator, Saga
from mcu_batch.domain.services.change_detector import ChangeDetector
from mcu_batch.domain.services.reconciler import MeasurementUpdate, ReconciliationPlan, diff
from mcu_batch.domain.validator import (
    partition_measurements,
    validate_encounter_fields,
    validate_encounter_update,
    validate_measurements,
)
from mcu_batch.infrastructure.audit.change_audit_logger import ChangeAuditLogger

logger = logging.getLogger(__name__)


class BatchOrchestrator:
    """Coordinates an encounter and its lab measurements on a non-transactional store.

    Parameters:
        store_adapter: Facade over the encounter and measurement stores
        registry: Whitelist of measurement types
        audit_logger: Buffer for change audit entries (default: a new ChangeAuditLogger)
        change_log: Store that persists audit entries; auditing is skipped when None

    Example Usage:
        ```python
        orchestrator = BatchOrchestrator(adapter, WhitelistRegistry.default(), change_log=store)
        result = orchestrator.create_with_measurements(
            {"employeeId": "EMP-001", "mcuType": "Annual", "mcuDate": "2024-03-01"},
            [{"labItemId": 1, "value": 35}],
            actor="dr.sari",
        )
        if result.is_partial:
            print(result.errors)
        ```
    """

    def __init__(
        self,
        store_adapter: StoreAdapter,
        registry: WhitelistRegistryPort,
        audit_logger: Optional[ChangeAuditLogger] = None,
        change_log: Optional[ChangeLogPort] = None
    ):
        self.store_adapter = store_adapter
        self.registry = registry
        self.audit_logger = audit_logger or ChangeAuditLogger()
        self.change_log = change_log

    # ------------------------------------------------------------------
    # Create path
    # ------------------------------------------------------------------

    def create_with_measurements(
        self,
        encounter_fields: Mapping[str, Any],
        measurements: Optional[Iterable[Mapping[str, Any]]],
        actor: Optional[str] = None
    ) -> BatchResult:
        """Create an encounter together with its measurement set.

        Raises:
            BatchValidationError: On any invalid field or measurement (nothing written)
            StorageError: If the encounter header cannot be written (nothing written)
            CompensationFailureError: If a fatal error could not be compensated
        """
        fields = validate_encounter_fields(encounter_fields)
        items = validate_measurements(measurements, self.registry)

        result = BatchResult(batch_id=str(uuid.uuid4()))
        detector = self._start_audit(result.batch_id, actor)
        self._check_panel_size(items, result)

        encounter = self.store_adapter.create_encounter(fields, actor=actor)
        result.encounter = encounter
        log_context = {"batch_id": result.batch_id, "encounter_id": encounter.encounter_id, "actor": actor}
        logger.info(
            f"Created encounter {encounter.encounter_id} for subject {encounter.subject_id}",
            extra=log_context
        )

        saga = Saga(encounter_id=encounter.encounter_id)
        EncounterCompensator(self.store_adapter.encounter_store).register(saga, encounter.encounter_id)

        try:
            records = [self._build_record(encounter, item, actor) for item in items]
            outcomes = self.store_adapter.insert_measurements(records)
            result.saved = [outcome.value for outcome in outcomes if outcome.is_success()]
            result.failed = self._failures(outcomes)
        except Exception as e:
            logger.error(
                f"Batch {result.batch_id} failed after encounter {encounter.encounter_id} "
                f"was written; compensating: {e}",
                exc_info=True,
                extra=log_context
            )
            return self._compensate(saga, e, result, detector)

        self.audit_logger.log_change_event(detector.encounter_created_event(encounter))
        self.audit_logger.log_changes_batch(detector.measurement_inserted_events(result.saved))
        self._flush_audit(result)
        result.success = True

        # Read-back is advisory: it runs after the batch is settled and never compensates
        result.expected_count = len(items)
        self._verify(encounter.encounter_id, result.expected_count, result)
        logger.info(
            f"Create batch {result.batch_id} finished: {len(result.saved)} saved, "
            f"{len(result.failed)} failed",
            extra=log_context
        )
        return result

    def _compensate(
        self,
        saga: Saga,
        error: Exception,
        result: BatchResult,
        detector: ChangeDetector
    ) -> BatchResult:
        encounter_id = saga.encounter_id
        try:
            saga.compensate(error)
        except CompensationFailureError:
            logger.critical(
                f"Encounter {encounter_id} could not be compensated; manual cleanup required",
                extra={"batch_id": result.batch_id, "encounter_id": encounter_id}
            )
            raise

        self.audit_logger.clear_logs()
        self.audit_logger.log_change_event(detector.encounter_compensated_event(encounter_id))
        self._flush_audit(result)

        result.compensated = True
        result.fatal_error = str(error)
        result.success = False
        return result

    # ------------------------------------------------------------------
    # Update path
    # ------------------------------------------------------------------

    def update_with_measurements(
        self,
        encounter_id: str,
        update_fields: Optional[Mapping[str, Any]],
        measurements: Optional[Iterable[Mapping[str, Any]]],
        actor: Optional[str] = None
    ) -> BatchResult:
        """Revise an encounter and reconcile its measurement set.

        Measurements absent from the submission are soft-deleted; invalid
        items are reported as failures while the rest proceed, and a stored
        row whose revision was rejected is kept. ``measurements=None`` leaves
        the lab panel untouched, while an empty list removes every active
        measurement. Errors after the header write are returned in
        ``fatal_error``.

        Raises:
            NotFoundError: If the encounter does not exist or is deleted (nothing written)
            BatchValidationError: If the encounter update fields are invalid (nothing written)
        """
        before = self.store_adapter.get_encounter(encounter_id)
        if before is None:
            raise NotFoundError(f"Encounter not found or deleted: {encounter_id}", operation="update")

        header_update = validate_encounter_update(update_fields) if update_fields else {}
        result = BatchResult(batch_id=str(uuid.uuid4()), encounter=before)
        detector = self._start_audit(result.batch_id, actor)
        log_context = {"batch_id": result.batch_id, "encounter_id": encounter_id, "actor": actor}

        if header_update:
            self.store_adapter.update_encounter(encounter_id, header_update, actor=actor)
            result.encounter_updated = True

        try:
            if result.encounter_updated:
                after = self.store_adapter.get_encounter(encounter_id) or before
                result.encounter = after
                self.audit_logger.log_changes_batch(detector.encounter_revision_events(before, after))

            if measurements is None:
                plan, existing_count = None, 0
                logger.info(
                    f"No measurements submitted for encounter {encounter_id}; lab panel left unchanged",
                    extra=log_context
                )
            else:
                plan, existing_count = self._reconcile_measurements(
                    result, measurements, detector, actor, log_context
                )
        except Exception as e:
            logger.error(f"Update batch {result.batch_id} aborted: {e}", exc_info=True, extra=log_context)
            result.fatal_error = str(e)
            self._flush_audit(result)
            return result

        self._flush_audit(result)
        result.success = True
        logger.info(
            f"Update batch {result.batch_id} finished: {len(result.inserted)} inserted, "
            f"{len(result.updated)} updated, {len(result.deleted)} deleted, "
            f"{len(result.failed)} failed",
            extra=log_context
        )

        if plan is not None:
            result.expected_count = plan.expected_active_count(existing_count)
            self._verify(encounter_id, result.expected_count, result)
        return result

    def _reconcile_measurements(
        self,
        result: BatchResult,
        measurements: Iterable[Mapping[str, Any]],
        detector: ChangeDetector,
        actor: Optional[str],
        log_context: dict
    ) -> tuple[ReconciliationPlan, int]:
        """Diff the submission against the active rows and apply the plan item by item.

        Returns:
            tuple: (applied plan, active count before the batch)
        """
        encounter = result.encounter
        valid, invalid = partition_measurements(measurements, self.registry)
        result.failed.extend(invalid)
        self._check_panel_size(valid, result)

        existing = self.store_adapter.list_active_measurements(encounter.encounter_id)
        # A rejected revision must not remove the row it was meant to revise
        rejected = {failure.type_id for failure in invalid if failure.type_id is not None}
        plan = diff(existing, valid, retain=rejected)
        logger.info(
            f"Reconciled encounter {encounter.encounter_id}: insert={plan.insert_ids()} "
            f"update={plan.update_ids()} delete={plan.delete_ids()} retained={plan.retained}",
            extra=log_context
        )

        inserted = self.store_adapter.insert_measurements(
            [self._build_record(encounter, item, actor) for item in plan.to_insert]
        )
        updated = self.store_adapter.update_measurements(
            [self._revise_record(update) for update in plan.to_update],
            actor=actor
        )
        deleted = self.store_adapter.delete_measurements(plan.to_delete, actor=actor)

        result.inserted = [outcome.value for outcome in inserted if outcome.is_success()]
        result.updated = [outcome.value for outcome in updated if outcome.is_success()]
        result.deleted = [outcome.value for outcome in deleted if outcome.is_success()]
        result.failed.extend(self._failures(inserted + updated + deleted))

        previous = {update.type_id: update.existing for update in plan.to_update}
        self.audit_logger.log_changes_batch(detector.measurement_inserted_events(result.inserted))
        self.audit_logger.log_changes_batch(detector.measurement_updated_events(
            (previous[record.type_id], record) for record in result.updated
        ))
        self.audit_logger.log_changes_batch(detector.measurement_deleted_events(result.deleted))
        return plan, len(existing)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_record(
        self,
        encounter: EncounterRecord,
        item: NormalizedMeasurement,
        actor: Optional[str]
    ) -> MeasurementRecord:
        """New measurement row carrying the whitelist unit and reference range."""
        entry = self.registry.get(item.type_id)
        return MeasurementRecord(
            encounter_id=encounter.encounter_id,
            subject_id=encounter.subject_id,
            type_id=item.type_id,
            value=item.value,
            unit=entry.unit if entry else None,
            min_reference=entry.min_value if entry else None,
            max_reference=entry.max_value if entry else None,
            status_label=self.registry.classify(item.type_id, item.value),
            notes=item.notes,
            created_by=actor,
        )

    def _revise_record(self, update: MeasurementUpdate) -> MeasurementRecord:
        return update.existing.model_copy(update={
            "value": update.incoming.value,
            "notes": update.incoming.notes,
            "status_label": self.registry.classify(update.type_id, update.incoming.value),
        })

    @staticmethod
    def _failures(outcomes: list[Result[MeasurementRecord]]) -> list[ItemFailure]:
        failures = []
        for outcome in outcomes:
            if outcome.is_success():
                continue
            details = outcome.error_details or {}
            failures.append(ItemFailure(
                type_id=details.get("type_id"),
                operation=ItemOperation(details.get("operation", ItemOperation.INSERT.value)),
                error=outcome.error or "Unknown error",
                error_type=outcome.error_type,
            ))
        return failures

    def _verify(self, encounter_id: str, expected: int, result: BatchResult) -> None:
        """Read back the active count; a mismatch is only a warning."""
        try:
            verified = self.store_adapter.count_active_measurements(encounter_id)
        except StorageError as e:
            self._warn(result, f"Verification read-back failed for encounter {encounter_id}: {e}")
            return

        result.verified_count = verified
        if verified != expected:
            self._warn(
                result,
                f"Verification mismatch for encounter {encounter_id}: "
                f"expected {expected} active measurements, found {verified}"
            )

    def _check_panel_size(self, items: list, result: BatchResult) -> None:
        expected = self.registry.expected_count()
        if expected and len(items) != expected:
            message = f"Submitted {len(items)} of {expected} panel measurements"
            logger.info(message, extra={"batch_id": result.batch_id})
            result.warnings.append(message)

    @staticmethod
    def _warn(result: BatchResult, message: str) -> None:
        logger.warning(message, extra={"batch_id": result.batch_id})
        result.warnings.append(message)
        warnings.warn(message, VerificationMismatchWarning, stacklevel=3)

    def _start_audit(self, batch_id: str, actor: Optional[str]) -> ChangeDetector:
        self.audit_logger.clear_logs()
        self.audit_logger.set_batch_context(batch_id=batch_id, changed_by=actor)
        return ChangeDetector(batch_id=batch_id, changed_by=actor)

    def _flush_audit(self, result: BatchResult) -> None:
        if self.change_log is None:
            self.audit_logger.clear_logs()
            return
        flushed = self.audit_logger.flush(self.change_log)
        if flushed.is_failure():
            result.warnings.append(f"Change history not saved: {flushed.error}")
