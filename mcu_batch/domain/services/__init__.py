"""Domain Services.

Business logic without infrastructure dependencies: change detection and
measurement reconciliation.
"""

from mcu_batch.domain.services.change_detector import ChangeDetector
from mcu_batch.domain.services.reconciler import MeasurementUpdate, ReconciliationPlan, diff

__all__ = ['ChangeDetector', 'MeasurementUpdate', 'ReconciliationPlan', 'diff']
