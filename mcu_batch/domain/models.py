"""MCU Record Schema Definitions.

This module defines the canonical data models for the batch engine: the
encounter (MCU header), the measurement (lab result row), the whitelist
entry, and the normalized inputs produced by the validator.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Type safety enforced at runtime via Pydantic V2
    - Lifecycle is an explicit enum, never inferred from a nullable timestamp
"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mcu_batch.domain.enums import LifecycleStatus, MeasurementStatus


class WhitelistEntry(BaseModel):
    """Permitted measurement type with display metadata and reference range.

    Parameters:
        type_id: Measurement type identifier (lab item id)
        name: Display name (e.g., "SGOT")
        unit: Measurement unit (e.g., "IU/L")
        min_value: Lower bound of the reference range
        max_value: Upper bound of the reference range
    """

    model_config = ConfigDict(frozen=True)

    type_id: int = Field(..., description="Measurement type identifier")
    name: str = Field(..., description="Display name")
    unit: Optional[str] = Field(None, description="Measurement unit")
    min_value: Optional[float] = Field(None, description="Reference range minimum")
    max_value: Optional[float] = Field(None, description="Reference range maximum")

    def classify(self, value: float) -> MeasurementStatus:
        """Derive the status label of a value against this entry's range."""
        if self.min_value is None or self.max_value is None:
            return MeasurementStatus.UNKNOWN
        if value < self.min_value:
            return MeasurementStatus.LOW
        if value > self.max_value:
            return MeasurementStatus.HIGH
        return MeasurementStatus.NORMAL


class NormalizedEncounterFields(BaseModel):
    """Encounter fields after boundary normalization and validation.

    Parameters:
        encounter_id: Pre-generated identifier (optional; the store assigns one otherwise)
        subject_id: Employee identifier the checkup belongs to
        encounter_type: MCU type (e.g., "Annual", "Pre-employment")
        encounter_date: Date of the visit
        clinical_fields: Free-form clinical fields (vitals, exams, results, notes)
    """

    model_config = ConfigDict(frozen=True)

    encounter_id: Optional[str] = Field(None, description="Pre-generated encounter identifier")
    subject_id: str = Field(..., description="Subject (employee) identifier")
    encounter_type: str = Field(..., description="Encounter type")
    encounter_date: date = Field(..., description="Encounter date")
    clinical_fields: dict[str, Any] = Field(default_factory=dict, description="Free-form clinical fields")

    def to_store_fields(self) -> dict:
        """Flatten into the dictionary accepted by EncounterStorePort.create()."""
        fields = {
            "subject_id": self.subject_id,
            "encounter_type": self.encounter_type,
            "encounter_date": self.encounter_date,
            "clinical_fields": dict(self.clinical_fields),
        }
        if self.encounter_id:
            fields["encounter_id"] = self.encounter_id
        return fields


class NormalizedMeasurement(BaseModel):
    """A validated measurement submission.

    Parameters:
        type_id: Whitelisted measurement type identifier
        value: Finite positive value
        notes: Optional free-text notes
    """

    model_config = ConfigDict(frozen=True)

    type_id: int = Field(..., description="Measurement type identifier")
    value: float = Field(..., gt=0, description="Measurement value (> 0)")
    notes: Optional[str] = Field(None, description="Free-text notes")


class EncounterRecord(BaseModel):
    """Stored MCU encounter.

    Parameters:
        encounter_id: Encounter identifier
        subject_id: Subject (employee) identifier
        encounter_type: Encounter type
        encounter_date: Date of the visit
        clinical_fields: Free-form clinical fields
        lifecycle_status: ACTIVE or DELETED
        created_at: Creation timestamp
        updated_at: Last revision timestamp
        created_by: Actor that created the encounter
        updated_by: Actor of the last revision
        deleted_at: Soft-deletion timestamp (audit only)
    """

    encounter_id: str = Field(..., description="Encounter identifier")
    subject_id: str = Field(..., description="Subject (employee) identifier")
    encounter_type: str = Field(..., description="Encounter type")
    encounter_date: date = Field(..., description="Encounter date")
    clinical_fields: dict[str, Any] = Field(default_factory=dict)
    lifecycle_status: LifecycleStatus = Field(LifecycleStatus.ACTIVE)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @field_validator("clinical_fields", mode="before")
    @classmethod
    def default_clinical_fields(cls, v) -> dict:
        return v or {}

    @property
    def is_active(self) -> bool:
        return self.lifecycle_status == LifecycleStatus.ACTIVE


class MeasurementRecord(BaseModel):
    """Stored lab measurement row owned by an encounter.

    Parameters:
        measurement_id: Row identifier (assigned by the store on create)
        encounter_id: Owning encounter identifier
        subject_id: Subject (employee) identifier, denormalized for reporting
        type_id: Whitelisted measurement type identifier
        value: Measurement value
        unit: Unit copied from the whitelist entry
        min_reference: Reference range minimum copied from the whitelist entry
        max_reference: Reference range maximum copied from the whitelist entry
        status_label: Derived interpretation (Normal, Low, High, Unknown)
        notes: Free-text notes
        lifecycle_status: ACTIVE or DELETED
    """

    measurement_id: Optional[str] = None
    encounter_id: str = Field(..., description="Owning encounter identifier")
    subject_id: Optional[str] = None
    type_id: int = Field(..., description="Measurement type identifier")
    value: float = Field(..., description="Measurement value")
    unit: Optional[str] = None
    min_reference: Optional[float] = None
    max_reference: Optional[float] = None
    status_label: MeasurementStatus = Field(MeasurementStatus.UNKNOWN)
    notes: Optional[str] = None
    lifecycle_status: LifecycleStatus = Field(LifecycleStatus.ACTIVE)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.lifecycle_status == LifecycleStatus.ACTIVE

    @field_validator("status_label", mode="before")
    @classmethod
    def default_status_label(cls, v):
        # Rows written outside the engine may carry no label
        return v or MeasurementStatus.UNKNOWN
