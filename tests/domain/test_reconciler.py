"""Tests for the measurement reconciliation diff."""

from mcu_batch.domain.models import MeasurementRecord, NormalizedMeasurement
from mcu_batch.domain.services.reconciler import ReconciliationPlan, diff


def _existing(values: dict, notes: dict = None) -> dict:
    notes = notes or {}
    return {
        type_id: MeasurementRecord(
            measurement_id=f"m-{type_id}",
            encounter_id="MCU-20240301-00000001",
            type_id=type_id,
            value=value,
            notes=notes.get(type_id),
        )
        for type_id, value in values.items()
    }


def _incoming(*pairs, notes: dict = None) -> list:
    notes = notes or {}
    return [NormalizedMeasurement(type_id=t, value=v, notes=notes.get(t)) for t, v in pairs]


class TestDiff:
    """Test suite for insert/update/delete partitioning."""

    def test_mixed_scenario(self):
        plan = diff(_existing({5: 40, 6: 300}), _incoming((5, 45), (7, 90)))
        assert plan.update_ids() == [5]
        assert plan.insert_ids() == [7]
        assert plan.delete_ids() == [6]
        assert plan.unchanged == []
        assert plan.to_update[0].existing.measurement_id == "m-5"
        assert plan.to_update[0].incoming.value == 45

    def test_unchanged_set_is_empty_plan(self):
        plan = diff(_existing({1: 35, 5: 6.5}), _incoming((5, 6.5), (1, 35)))
        assert plan.is_empty
        assert plan.unchanged == [1, 5]

    def test_notes_change_is_an_update(self):
        plan = diff(_existing({1: 35}, notes={1: "fasting"}), _incoming((1, 35), notes={1: "non-fasting"}))
        assert plan.update_ids() == [1]

    def test_blank_and_missing_notes_are_equal(self):
        plan = diff(_existing({1: 35}, notes={1: ""}), _incoming((1, 35)))
        assert plan.is_empty

    def test_empty_submission_deletes_everything(self):
        plan = diff(_existing({1: 35, 2: 20}), [])
        assert plan.delete_ids() == [1, 2]
        assert plan.expected_active_count(2) == 0

    def test_empty_existing_inserts_everything(self):
        plan = diff({}, _incoming((7, 90), (3, 14)))
        assert plan.insert_ids() == [3, 7]
        assert plan.expected_active_count(0) == 2

    def test_both_empty(self):
        assert diff({}, []) == ReconciliationPlan()

    def test_repeated_incoming_type_last_wins(self):
        plan = diff(_existing({5: 40}), _incoming((5, 41), (5, 40)))
        assert plan.is_empty

    def test_output_ordered_by_type_id(self):
        plan = diff(
            _existing({32: 5, 2: 10, 11: 100}),
            _incoming((31, 1), (13, 1.0), (1, 20))
        )
        assert plan.insert_ids() == [1, 13, 31]
        assert plan.delete_ids() == [2, 11, 32]

    def test_retained_type_is_not_deleted(self):
        plan = diff(_existing({5: 40, 6: 300}), _incoming((5, 40)), retain={6})
        assert plan.delete_ids() == []
        assert plan.retained == [6]
        assert plan.expected_active_count(2) == 2

    def test_retain_only_covers_named_types(self):
        plan = diff(_existing({1: 35, 2: 20}), [], retain=[2, 999])
        assert plan.delete_ids() == [1]
        assert plan.retained == [2]
