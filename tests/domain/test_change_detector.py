"""Unit tests for ChangeDetector service."""

from datetime import date

import pandas as pd
import pytest

from mcu_batch.domain.enums import ChangeType
from mcu_batch.domain.models import EncounterRecord, MeasurementRecord
from mcu_batch.domain.services.change_detector import (
    ENCOUNTERS_TABLE,
    MEASUREMENTS_TABLE,
    ChangeDetector,
)


def _encounter(**overrides) -> EncounterRecord:
    fields = {
        "encounter_id": "MCU-20240301-AAAA0001",
        "subject_id": "EMP-001",
        "encounter_type": "Annual",
        "encounter_date": date(2024, 3, 1),
        "clinical_fields": {"blood_pressure": "120/80", "bmi": 22.5},
    }
    fields.update(overrides)
    return EncounterRecord(**fields)


def _measurement(type_id: int, value: float, notes=None, measurement_id=None) -> MeasurementRecord:
    return MeasurementRecord(
        measurement_id=measurement_id,
        encounter_id="MCU-20240301-AAAA0001",
        type_id=type_id,
        value=value,
        notes=notes,
    )


class TestChangeDetector:
    """Test suite for ChangeDetector service."""

    def test_init(self):
        """Test ChangeDetector initialization."""
        detector = ChangeDetector(batch_id="batch-123", changed_by="dr.sari")
        assert detector.batch_id == "batch-123"
        assert detector.changed_by == "dr.sari"

    def test_detect_field_changes_no_changes(self):
        """Identical mappings produce no events."""
        detector = ChangeDetector()
        events = detector.detect_field_changes({"a": 1, "b": "x"}, {"a": 1, "b": "x"}, "t", "r1")
        assert events == []

    def test_detect_field_changes_union_of_keys(self):
        """Added and removed keys are both reported, in sorted order."""
        detector = ChangeDetector(batch_id="b1")
        events = detector.detect_field_changes({"a": 1, "b": 2}, {"b": 3, "c": 4}, "t", "r1")

        assert [e.field_name for e in events] == ["a", "b", "c"]
        assert (events[0].old_value, events[0].new_value) == (1, None)
        assert (events[1].old_value, events[1].new_value) == (2, 3)
        assert (events[2].old_value, events[2].new_value) == (None, 4)
        assert all(e.change_type == ChangeType.UPDATE for e in events)
        assert all(e.batch_id == "b1" for e in events)

    def test_encounter_revision_events(self):
        """Header and clinical field revisions become UPDATE events."""
        detector = ChangeDetector(batch_id="b1", changed_by="dr.sari")
        before = _encounter()
        after = _encounter(
            encounter_type="Follow-up",
            clinical_fields={"blood_pressure": "130/85", "bmi": 22.5},
        )

        events = detector.encounter_revision_events(before, after)

        assert {e.field_name for e in events} == {"encounter_type", "blood_pressure"}
        assert all(e.table_name == ENCOUNTERS_TABLE for e in events)
        assert all(e.record_id == "MCU-20240301-AAAA0001" for e in events)

    def test_encounter_created_and_compensated_events(self):
        detector = ChangeDetector(batch_id="b1")
        created = detector.encounter_created_event(_encounter())
        compensated = detector.encounter_compensated_event("MCU-20240301-AAAA0001")

        assert created.change_type == ChangeType.INSERT
        assert created.field_name == "created"
        assert compensated.change_type == ChangeType.COMPENSATE
        assert (compensated.old_value, compensated.new_value) == ("active", "deleted")

    def test_measurement_events(self):
        """Inserted, updated and deleted measurements map to one event per change."""
        detector = ChangeDetector(batch_id="b1")
        inserted = detector.measurement_inserted_events([_measurement(1, 35, measurement_id="m1")])
        updated = detector.measurement_updated_events([
            (_measurement(5, 40, measurement_id="m5"), _measurement(5, 45, measurement_id="m5")),
            (_measurement(6, 300, measurement_id="m6"), _measurement(6, 300, "recheck", measurement_id="m6")),
        ])
        deleted = detector.measurement_deleted_events([_measurement(7, 90, measurement_id="m7")])

        assert inserted[0].table_name == MEASUREMENTS_TABLE
        assert (inserted[0].record_id, inserted[0].new_value) == ("m1", 35)
        assert [(e.record_id, e.field_name) for e in updated] == [("m5", "value"), ("m6", "notes")]
        assert deleted[0].change_type == ChangeType.DELETE
        assert (deleted[0].old_value, deleted[0].new_value) == (90, None)

    def test_measurement_event_without_id_uses_composite_key(self):
        detector = ChangeDetector()
        event = detector.measurement_inserted_events([_measurement(3, 14)])[0]
        assert event.record_id == "MCU-20240301-AAAA0001:3"


class TestValuesEqual:
    """Test suite for ChangeDetector.values_equal."""

    @pytest.mark.parametrize("old,new", [
        (None, None),
        (pd.NA, None),
        (float("nan"), pd.NA),
        (40.0, 40),
        ("x", "x"),
        ([1, 2], (1, 2)),
        ({"a": 1}, {"a": 1}),
    ])
    def test_equal(self, old, new):
        assert ChangeDetector.values_equal(old, new)

    @pytest.mark.parametrize("old,new", [
        (None, 0),
        (40.0, 45.0),
        ("x", None),
        ([1], [1, 2]),
        ([1], "1"),
        ({"a": 1}, {"a": 2}),
        ({"a": 1}, "a"),
    ])
    def test_not_equal(self, old, new):
        assert not ChangeDetector.values_equal(old, new)
