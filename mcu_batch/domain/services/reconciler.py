"""Measurement Reconciliation Service.

Computes the insert/update/delete partitions that turn the persisted
measurement set of an encounter into a newly submitted set.

Architecture:
    - Pure domain service with no storage knowledge; it cannot fail
    - Uses a pandas outer merge with indicator, the same technique the
      storage layer uses to split smart updates into inserts and updates
    - Output is ordered by ascending type id for reproducible assertions
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

import pandas as pd

from mcu_batch.domain.models import MeasurementRecord, NormalizedMeasurement
from mcu_batch.domain.services.change_detector import ChangeDetector

logger = logging.getLogger(__name__)

_COLUMNS = ['type_id', 'value', 'notes']


@dataclass(frozen=True)
class MeasurementUpdate:
    """An incoming measurement that revises an existing active row."""
    existing: MeasurementRecord
    incoming: NormalizedMeasurement

    @property
    def type_id(self) -> int:
        return self.incoming.type_id


@dataclass(frozen=True)
class ReconciliationPlan:
    """Insert/update/delete partitions produced by diff().

    Attributes:
        to_insert: Incoming items whose type id has no active row
        to_update: Incoming items whose value or notes differ from the active row
        to_delete: Active rows whose type id is absent from the submission
        unchanged: Type ids present on both sides with identical value and notes
        retained: Active type ids kept although absent from the valid submission
    """
    to_insert: list[NormalizedMeasurement] = field(default_factory=list)
    to_update: list[MeasurementUpdate] = field(default_factory=list)
    to_delete: list[MeasurementRecord] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    retained: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_insert or self.to_update or self.to_delete)

    def expected_active_count(self, existing_count: int) -> int:
        """Active row count once the plan has been fully applied."""
        return existing_count + len(self.to_insert) - len(self.to_delete)

    def insert_ids(self) -> list[int]:
        return [item.type_id for item in self.to_insert]

    def update_ids(self) -> list[int]:
        return [item.type_id for item in self.to_update]

    def delete_ids(self) -> list[int]:
        return [record.type_id for record in self.to_delete]


def _frame(rows: list[dict]) -> pd.DataFrame:
    df = pd.DataFrame(rows, columns=_COLUMNS)
    return df.astype({'type_id': 'int64', 'value': 'float64'})


def diff(
    existing: Mapping[int, MeasurementRecord],
    incoming: Sequence[NormalizedMeasurement],
    retain: Iterable[int] = ()
) -> ReconciliationPlan:
    """Diff the persisted measurement set against a submitted set.

    Parameters:
        existing: Active measurements keyed by type id
        incoming: Validated submissions (if a type id repeats, the last one wins)
        retain: Type ids submitted but rejected by validation; their active
            rows are left in place rather than deleted

    Returns:
        ReconciliationPlan: Partitions ordered by ascending type id
    """
    keep = set(retain)
    incoming_by_type: dict[int, NormalizedMeasurement] = {}
    for item in incoming:
        incoming_by_type[item.type_id] = item

    if not existing and not incoming_by_type:
        return ReconciliationPlan()

    existing_df = _frame([
        {'type_id': type_id, 'value': record.value, 'notes': record.notes}
        for type_id, record in existing.items()
    ])
    incoming_df = _frame([
        {'type_id': item.type_id, 'value': item.value, 'notes': item.notes}
        for item in incoming_by_type.values()
    ])

    merged = existing_df.merge(
        incoming_df,
        on='type_id',
        suffixes=('_old', '_new'),
        how='outer',
        indicator='side'
    ).sort_values('type_id', kind='mergesort')

    to_insert: list[NormalizedMeasurement] = []
    to_update: list[MeasurementUpdate] = []
    to_delete: list[MeasurementRecord] = []
    unchanged: list[int] = []
    retained: list[int] = []

    for row in merged.itertuples(index=False):
        type_id = int(row.type_id)
        side = row.side

        if side == 'right_only':
            to_insert.append(incoming_by_type[type_id])
        elif side == 'left_only' and type_id in keep:
            retained.append(type_id)
        elif side == 'left_only':
            to_delete.append(existing[type_id])
        else:
            value_changed = not ChangeDetector.values_equal(row.value_old, row.value_new)
            notes_changed = not ChangeDetector.values_equal(
                _blank_to_none(row.notes_old), _blank_to_none(row.notes_new)
            )
            if value_changed or notes_changed:
                to_update.append(MeasurementUpdate(existing[type_id], incoming_by_type[type_id]))
            else:
                unchanged.append(type_id)

    plan = ReconciliationPlan(
        to_insert=to_insert,
        to_update=to_update,
        to_delete=to_delete,
        unchanged=unchanged,
        retained=retained,
    )
    logger.debug(
        f"Reconciled {len(existing)} existing vs {len(incoming_by_type)} incoming: "
        f"insert={plan.insert_ids()} update={plan.update_ids()} delete={plan.delete_ids()}"
    )
    return plan


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value
