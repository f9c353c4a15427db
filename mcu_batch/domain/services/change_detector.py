"""Change Detection Service.

Detects field-level changes on encounter revisions and turns reconciled
measurement operations into change events for the audit trail.

Architecture:
    - Pure domain service with no infrastructure dependencies
    - Returns domain models (ChangeEvent) for the audit logger
"""

import logging
from typing import Any, Iterable, List, Mapping, Optional

import pandas as pd

from mcu_batch.domain.cdc_models import ChangeEvent
from mcu_batch.domain.enums import ChangeType
from mcu_batch.domain.models import EncounterRecord, MeasurementRecord

logger = logging.getLogger(__name__)

ENCOUNTERS_TABLE = "encounters"
MEASUREMENTS_TABLE = "measurements"

# Header fields compared on an encounter revision, besides clinical fields
_ENCOUNTER_HEADER_FIELDS = ("subject_id", "encounter_type", "encounter_date")


class ChangeDetector:
    """Service for detecting field-level changes between record versions."""

    def __init__(self, batch_id: Optional[str] = None, changed_by: Optional[str] = None):
        """Initialize change detector.

        Parameters:
            batch_id: ID of the current batch run
            changed_by: Actor performing the batch
        """
        self.batch_id = batch_id
        self.changed_by = changed_by

    def _event(self, **kwargs) -> ChangeEvent:
        return ChangeEvent(batch_id=self.batch_id, changed_by=self.changed_by, **kwargs)

    def detect_field_changes(
        self,
        old_fields: Mapping[str, Any],
        new_fields: Mapping[str, Any],
        table_name: str,
        record_id: str
    ) -> List[ChangeEvent]:
        """Compare two flat field mappings and emit one UPDATE per changed field.

        Fields are compared over the union of both key sets, in sorted order.
        """
        events = []
        for field_name in sorted(set(old_fields) | set(new_fields)):
            old_value = old_fields.get(field_name)
            new_value = new_fields.get(field_name)
            if self.values_equal(old_value, new_value):
                continue
            events.append(self._event(
                table_name=table_name,
                record_id=str(record_id),
                field_name=field_name,
                old_value=old_value,
                new_value=new_value,
                change_type=ChangeType.UPDATE,
            ))
        return events

    def encounter_revision_events(
        self,
        before: EncounterRecord,
        after: EncounterRecord
    ) -> List[ChangeEvent]:
        """Change events for an encounter revised by a follow-up update."""
        return self.detect_field_changes(
            _flatten_encounter(before),
            _flatten_encounter(after),
            ENCOUNTERS_TABLE,
            after.encounter_id,
        )

    def encounter_created_event(self, encounter: EncounterRecord) -> ChangeEvent:
        """Initial creation entry for a new encounter."""
        return self._event(
            table_name=ENCOUNTERS_TABLE,
            record_id=encounter.encounter_id,
            field_name="created",
            old_value=None,
            new_value="Record created",
            change_type=ChangeType.INSERT,
        )

    def encounter_compensated_event(self, encounter_id: str) -> ChangeEvent:
        """Entry recording that an encounter was soft-deleted by compensation."""
        return self._event(
            table_name=ENCOUNTERS_TABLE,
            record_id=encounter_id,
            field_name="lifecycle_status",
            old_value="active",
            new_value="deleted",
            change_type=ChangeType.COMPENSATE,
        )

    def measurement_inserted_events(self, records: Iterable[MeasurementRecord]) -> List[ChangeEvent]:
        return [
            self._event(
                table_name=MEASUREMENTS_TABLE,
                record_id=record.measurement_id or f"{record.encounter_id}:{record.type_id}",
                field_name="value",
                old_value=None,
                new_value=record.value,
                change_type=ChangeType.INSERT,
            )
            for record in records
        ]

    def measurement_updated_events(
        self,
        pairs: Iterable[tuple[MeasurementRecord, MeasurementRecord]]
    ) -> List[ChangeEvent]:
        """UPDATE events for (before, after) measurement pairs."""
        events = []
        for before, after in pairs:
            events.extend(self.detect_field_changes(
                {"value": before.value, "notes": before.notes},
                {"value": after.value, "notes": after.notes},
                MEASUREMENTS_TABLE,
                after.measurement_id or f"{after.encounter_id}:{after.type_id}",
            ))
        return events

    def measurement_deleted_events(self, records: Iterable[MeasurementRecord]) -> List[ChangeEvent]:
        return [
            self._event(
                table_name=MEASUREMENTS_TABLE,
                record_id=record.measurement_id or f"{record.encounter_id}:{record.type_id}",
                field_name="value",
                old_value=record.value,
                new_value=None,
                change_type=ChangeType.DELETE,
            )
            for record in records
        ]

    @staticmethod
    def values_equal(old: Any, new: Any) -> bool:
        """Compare two values accounting for NaN, None, arrays, etc.

        Parameters:
            old: Old value
            new: New value

        Returns:
            True if values are equal, False otherwise
        """
        # Handle arrays/lists first (pd.isna() doesn't work on lists)
        if isinstance(old, (list, tuple)) and isinstance(new, (list, tuple)):
            return list(old) == list(new)
        if isinstance(old, (list, tuple)) or isinstance(new, (list, tuple)):
            return False

        if isinstance(old, dict) and isinstance(new, dict):
            return old == new
        if isinstance(old, dict) or isinstance(new, dict):
            return False

        try:
            if pd.isna(old) and pd.isna(new):
                return True
            if pd.isna(old) or pd.isna(new):
                return False
        except (ValueError, TypeError):
            pass

        return old == new


def _flatten_encounter(encounter: EncounterRecord) -> dict:
    flat = {name: getattr(encounter, name) for name in _ENCOUNTER_HEADER_FIELDS}
    flat.update(encounter.clinical_fields)
    return flat
