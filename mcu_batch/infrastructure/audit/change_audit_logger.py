"""Change Audit Logger.

Buffers field-level change entries for one batch run and hands them to a
store that implements ChangeLogPort. This is the persistence side of the
MCU change-history screen: every encounter revision and every measurement
insert, revision and removal is recorded with its old and new value.
"""

import logging
import threading
from typing import List, Optional, Union

from mcu_batch.domain.cdc_models import ChangeEvent
from mcu_batch.domain.enums import ChangeType
from mcu_batch.domain.ports import ChangeLogPort, Result

logger = logging.getLogger(__name__)


class ChangeAuditLogger:
    """In-memory buffer of change entries, flushed per batch.

    Per-item writes run on worker threads, so the buffer is guarded by a lock.

    Example Usage:
        ```python
        audit = ChangeAuditLogger()
        audit.set_batch_context(batch_id="b-123", changed_by="dr.sari")
        audit.log_changes_batch(detector.measurement_inserted_events(saved))
        result = audit.flush(store)
        ```
    """

    def __init__(self):
        self._entries: List[dict] = []
        self._lock = threading.Lock()
        self._batch_id: Optional[str] = None
        self._changed_by: Optional[str] = None

    def set_batch_context(self, batch_id: Optional[str] = None, changed_by: Optional[str] = None) -> None:
        """Set the batch id and actor stamped on subsequent entries."""
        self._batch_id = batch_id
        self._changed_by = changed_by

    def log_change(
        self,
        table_name: str,
        record_id: str,
        field_name: str,
        old_value=None,
        new_value=None,
        change_type: Union[ChangeType, str] = ChangeType.UPDATE,
        batch_id: Optional[str] = None,
        changed_by: Optional[str] = None
    ) -> None:
        """Log a single change from plain values."""
        self.log_change_event(ChangeEvent(
            table_name=table_name,
            record_id=str(record_id),
            field_name=field_name,
            old_value=old_value,
            new_value=new_value,
            change_type=ChangeType(change_type),
            batch_id=batch_id,
            changed_by=changed_by,
        ))

    def log_change_event(self, change_event: ChangeEvent) -> None:
        """Log a ChangeEvent; the batch context fills a missing batch id or actor."""
        entry = change_event.to_audit_dict()
        entry["batch_id"] = entry["batch_id"] or self._batch_id
        if change_event.changed_by is None:
            entry["changed_by"] = self._changed_by or "system"

        with self._lock:
            self._entries.append(entry)
        logger.debug(
            f"Logged {entry['change_type']} {entry['table_name']}."
            f"{entry['record_id']}.{entry['field_name']}"
        )

    def log_changes_batch(self, change_events: List[ChangeEvent]) -> None:
        for event in change_events:
            self.log_change_event(event)

    def get_logs(self) -> List[dict]:
        """Copy of the buffered entries, ready for database insertion."""
        with self._lock:
            return list(self._entries)

    def clear_logs(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_log_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def has_logs(self) -> bool:
        return self.get_log_count() > 0

    def flush(self, store: ChangeLogPort) -> Result[int]:
        """Persist buffered entries through the store.

        Only the flushed entries leave the buffer, and only on success; on
        failure they stay buffered and the failed Result is returned.
        """
        pending = self.get_logs()
        if not pending:
            return Result.success_result(0)

        result = store.flush_change_logs(pending)
        if result.is_success():
            with self._lock:
                del self._entries[:len(pending)]
        else:
            logger.warning(f"Failed to flush {len(pending)} change log entries: {result.error}")
        return result
