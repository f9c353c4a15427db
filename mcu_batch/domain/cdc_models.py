"""Change Data Capture (CDC) Models.

Field-level change events for encounters and measurements. They feed the
change audit log that backs the MCU change-history screen; entries are
append-only.
"""

import json
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from mcu_batch.domain.enums import ChangeType


def serialize_audit_value(value: Any) -> Optional[str]:
    """Render a field value as the text stored in the audit log.

    Lists and dicts become sorted JSON, dates ISO strings, NA-like values None.
    """
    if value is None:
        return None
    if isinstance(value, (list, dict)):
        try:
            return json.dumps(value, sort_keys=True, default=str)
        except (TypeError, ValueError):
            return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return str(value)


class ChangeEvent(BaseModel):
    """One changed field of an encounter or measurement row.

    Parameters:
        table_name: encounters or measurements
        record_id: encounter_id or measurement_id of the changed row
        field_name: Changed field ("created" for a new encounter header)
        old_value: Value before the batch (None on INSERT)
        new_value: Value after the batch (None on DELETE)
        change_type: INSERT, UPDATE, DELETE or COMPENSATE
        changed_at: When the change was detected
        batch_id: Batch run that made the change
        changed_by: Acting user; stored as 'system' when absent
    """

    model_config = ConfigDict(validate_assignment=True)

    table_name: str = Field(..., description="Table of the changed row")
    record_id: str = Field(..., description="Identifier of the changed row")
    field_name: str = Field(..., description="Changed field")
    old_value: Optional[Any] = Field(None, description="Value before the batch")
    new_value: Optional[Any] = Field(None, description="Value after the batch")
    change_type: ChangeType = Field(..., description="Kind of change")
    changed_at: datetime = Field(default_factory=datetime.now)
    batch_id: Optional[str] = Field(None, description="Batch run identifier")
    changed_by: Optional[str] = Field(None, description="Acting user")

    def to_audit_dict(self) -> dict:
        """Row for the change_audit_log table, values rendered as text."""
        return {
            'change_id': str(uuid.uuid4()),
            'table_name': self.table_name,
            'record_id': self.record_id,
            'field_name': self.field_name,
            'old_value': serialize_audit_value(self.old_value),
            'new_value': serialize_audit_value(self.new_value),
            'change_type': self.change_type.value,
            'changed_at': self.changed_at,
            'batch_id': self.batch_id,
            'changed_by': self.changed_by or 'system',
        }
