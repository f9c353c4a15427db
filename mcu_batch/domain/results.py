"""Batch Result Models.

Composite outcome of a create or update batch. Per-item failures are data
here, never exceptions: callers render success/failure summaries from
these models and decide on any user-facing retry.
"""

from typing import Optional

from pydantic import BaseModel, Field

from mcu_batch.domain.enums import ItemOperation
from mcu_batch.domain.models import EncounterRecord, MeasurementRecord


class ItemFailure(BaseModel):
    """One measurement that could not be validated or written.

    Parameters:
        type_id: Measurement type identifier as submitted (None if missing)
        operation: The operation that failed (validate, insert, update, delete)
        error: Human-readable failure reason
        error_type: Exception class name of the underlying error
    """

    type_id: Optional[int] = Field(None, description="Measurement type identifier")
    operation: ItemOperation = Field(..., description="Failed operation")
    error: str = Field(..., description="Failure reason")
    error_type: Optional[str] = Field(None, description="Underlying error type")

    def describe(self) -> str:
        prefix = f"Lab item {self.type_id}"
        return self.error if self.error.startswith(prefix) else f"{prefix}: {self.error}"


class BatchResult(BaseModel):
    """Composite result of a batch operation.

    The create path fills ``saved``; the update path fills ``inserted``,
    ``updated`` and ``deleted``. ``success`` is True when the encounter
    write succeeded and no fatal error occurred. Isolated item failures
    are listed in ``failed`` but do not flip ``success``.

    Parameters:
        batch_id: Identifier of this batch run (groups audit entries)
        encounter: The created or revised encounter
        encounter_updated: Whether header fields were revised (update path)
        saved: Measurements inserted by a create batch
        inserted: Measurements inserted by an update batch
        updated: Measurements revised by an update batch (post-update state)
        deleted: Measurements soft-deleted by an update batch
        failed: Isolated per-item failures
        warnings: Non-fatal warnings (verification mismatch, panel size)
        expected_count: Active measurement count expected after the batch
        verified_count: Active measurement count read back from the store
        compensated: The encounter was soft-deleted after a fatal error (create path)
        fatal_error: Message of the error that aborted the batch
        success: Overall success flag
    """

    batch_id: str
    encounter: Optional[EncounterRecord] = None
    encounter_updated: bool = False
    saved: list[MeasurementRecord] = Field(default_factory=list)
    inserted: list[MeasurementRecord] = Field(default_factory=list)
    updated: list[MeasurementRecord] = Field(default_factory=list)
    deleted: list[MeasurementRecord] = Field(default_factory=list)
    failed: list[ItemFailure] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    expected_count: Optional[int] = None
    verified_count: Optional[int] = None
    compensated: bool = False
    fatal_error: Optional[str] = None
    success: bool = False

    @property
    def errors(self) -> list[str]:
        """Per-item failure messages, one line per failed item."""
        return [failure.describe() for failure in self.failed]

    @property
    def is_partial(self) -> bool:
        """True when the batch succeeded overall but some items failed."""
        return self.success and bool(self.failed)

    def summary(self) -> dict:
        """Counts suitable for logging or a caller-side summary dialog."""
        return {
            "batch_id": self.batch_id,
            "encounter_id": self.encounter.encounter_id if self.encounter else None,
            "saved": len(self.saved),
            "inserted": len(self.inserted),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
            "failed": len(self.failed),
            "warnings": len(self.warnings),
            "compensated": self.compensated,
            "success": self.success,
        }
