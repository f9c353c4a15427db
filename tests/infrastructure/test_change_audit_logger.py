"""Unit tests for ChangeAuditLogger."""

import threading
from unittest.mock import MagicMock

from mcu_batch.domain.cdc_models import ChangeEvent
from mcu_batch.domain.enums import ChangeType
from mcu_batch.domain.ports import Result
from mcu_batch.infrastructure.audit.change_audit_logger import ChangeAuditLogger


def _event(**overrides) -> ChangeEvent:
    fields = {
        "table_name": "measurements",
        "record_id": "m-1",
        "field_name": "value",
        "old_value": 40.0,
        "new_value": 45.0,
        "change_type": ChangeType.UPDATE,
    }
    fields.update(overrides)
    return ChangeEvent(**fields)


class TestChangeAuditLogger:
    """Test suite for ChangeAuditLogger."""

    def test_init(self):
        """Test ChangeAuditLogger initialization."""
        audit = ChangeAuditLogger()
        assert audit.get_log_count() == 0
        assert not audit.has_logs()

    def test_log_change(self):
        """Plain-value entries pick up the batch context."""
        audit = ChangeAuditLogger()
        audit.set_batch_context(batch_id="b-1", changed_by="dr.sari")
        audit.log_change("encounters", "MCU-1", "encounter_type", "Annual", "Follow-up")

        entry = audit.get_logs()[0]
        assert entry["record_id"] == "MCU-1"
        assert entry["change_type"] == "UPDATE"
        assert entry["batch_id"] == "b-1"
        assert entry["changed_by"] == "dr.sari"
        assert entry["change_id"]

    def test_log_change_without_actor_is_system(self):
        audit = ChangeAuditLogger()
        audit.log_change("encounters", "MCU-1", "created", change_type="INSERT")
        assert audit.get_logs()[0]["changed_by"] == "system"

    def test_log_change_event_serializes_values(self):
        audit = ChangeAuditLogger()
        audit.set_batch_context(batch_id="b-1", changed_by="dr.budi")
        audit.log_change_event(_event())

        entry = audit.get_logs()[0]
        assert (entry["old_value"], entry["new_value"]) == ("40.0", "45.0")
        assert entry["batch_id"] == "b-1"
        assert entry["changed_by"] == "dr.budi"

    def test_event_values_win_over_context(self):
        audit = ChangeAuditLogger()
        audit.set_batch_context(batch_id="b-1", changed_by="dr.budi")
        audit.log_change_event(_event(batch_id="b-2", changed_by="importer"))

        entry = audit.get_logs()[0]
        assert (entry["batch_id"], entry["changed_by"]) == ("b-2", "importer")

    def test_log_changes_batch_and_clear(self):
        audit = ChangeAuditLogger()
        audit.log_changes_batch([_event(record_id="m-1"), _event(record_id="m-2")])
        assert audit.get_log_count() == 2

        audit.clear_logs()
        assert not audit.has_logs()

    def test_get_logs_returns_copy(self):
        audit = ChangeAuditLogger()
        audit.log_change_event(_event())
        audit.get_logs().clear()
        assert audit.get_log_count() == 1

    def test_thread_safety(self):
        """Concurrent writers never lose entries."""
        audit = ChangeAuditLogger()

        def worker(n):
            for i in range(50):
                audit.log_change("measurements", f"m-{n}-{i}", "value")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert audit.get_log_count() == 200


class TestFlush:
    """Flushing through a ChangeLogPort."""

    def test_flush_success_clears_buffer(self):
        audit = ChangeAuditLogger()
        audit.log_change_event(_event())
        store = MagicMock()
        store.flush_change_logs.return_value = Result.success_result(1)

        result = audit.flush(store)

        assert result.value == 1
        assert not audit.has_logs()
        flushed = store.flush_change_logs.call_args[0][0]
        assert flushed[0]["record_id"] == "m-1"

    def test_flush_failure_keeps_buffer(self):
        audit = ChangeAuditLogger()
        audit.log_change_event(_event())
        store = MagicMock()
        store.flush_change_logs.return_value = Result.failure_result("disk full", error_type="StorageError")

        result = audit.flush(store)

        assert result.is_failure()
        assert audit.get_log_count() == 1

    def test_flush_empty_buffer_skips_store(self):
        store = MagicMock()
        assert ChangeAuditLogger().flush(store).value == 0
        store.flush_change_logs.assert_not_called()
