"""Boundary Field-Name Mapping.

Callers submit the same logical field under two casing conventions
(camelCase from the web forms, snake_case from the database layer), and a
few legacy names on top of that. This module maps every incoming key to a
single canonical snake_case name exactly once, at the boundary. Nothing
downstream of the validator ever looks at the original key.
"""

import logging
import re
from typing import Any, Mapping

logger = logging.getLogger(__name__)


# Encounter header fields and their accepted aliases
ENCOUNTER_FIELD_ALIASES: dict[str, str] = {
    "encounter_id": "encounter_id",
    "encounterId": "encounter_id",
    "mcu_id": "encounter_id",
    "mcuId": "encounter_id",
    "subject_id": "subject_id",
    "subjectId": "subject_id",
    "employee_id": "subject_id",
    "employeeId": "subject_id",
    "encounter_type": "encounter_type",
    "encounterType": "encounter_type",
    "mcu_type": "encounter_type",
    "mcuType": "encounter_type",
    "encounter_date": "encounter_date",
    "encounterDate": "encounter_date",
    "mcu_date": "encounter_date",
    "mcuDate": "encounter_date",
}

# Clinical fields whose camelCase spelling does not convert mechanically
CLINICAL_FIELD_ALIASES: dict[str, str] = {
    "visionDistantUnaideLeft": "vision_distant_unaided_left",
    "visionDistantUnaideRight": "vision_distant_unaided_right",
    "visionNearUnaideLeft": "vision_near_unaided_left",
    "visionNearUnaideRight": "vision_near_unaided_right",
    "xRay": "xray",
    "hbsAg": "hbsag",
}

MEASUREMENT_FIELD_ALIASES: dict[str, str] = {
    "type_id": "type_id",
    "typeId": "type_id",
    "lab_item_id": "type_id",
    "labItemId": "type_id",
    "id": "type_id",
    "value": "value",
    "notes": "notes",
    "note": "notes",
}

# Header keys never stored among the free-form clinical fields
_RESERVED_ENCOUNTER_KEYS = frozenset({
    "lifecycle_status", "deleted_at", "created_at", "updated_at",
    "created_by", "updated_by",
})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def camel_to_snake(name: str) -> str:
    """Convert a camelCase identifier to snake_case ("bloodPressure" -> "blood_pressure")."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _canonical_clinical_key(key: str) -> str:
    if key in CLINICAL_FIELD_ALIASES:
        return CLINICAL_FIELD_ALIASES[key]
    return camel_to_snake(key)


def _put(target: dict, canonical: str, value: Any, original: str) -> None:
    if canonical in target and target[canonical] != value:
        logger.warning(
            f"Field '{original}' conflicts with an earlier alias of '{canonical}'; "
            f"keeping the first value"
        )
        return
    target.setdefault(canonical, value)


def normalize_encounter_fields(fields: Mapping[str, Any]) -> dict:
    """Map raw encounter fields to canonical names.

    Header fields land at the top level; everything else is collected
    under "clinical_fields" with snake_case keys. A nested
    "clinical_fields"/"clinicalFields" mapping is merged in the same way.

    Parameters:
        fields: Raw encounter fields in any accepted convention

    Returns:
        dict: Canonical fields (header keys plus "clinical_fields")
    """
    header: dict[str, Any] = {}
    clinical: dict[str, Any] = {}

    for key, value in (fields or {}).items():
        if key in ("clinical_fields", "clinicalFields"):
            for nested_key, nested_value in (value or {}).items():
                _put(clinical, _canonical_clinical_key(nested_key), nested_value, nested_key)
            continue
        if key in ENCOUNTER_FIELD_ALIASES:
            _put(header, ENCOUNTER_FIELD_ALIASES[key], value, key)
            continue
        canonical = _canonical_clinical_key(key)
        if canonical in _RESERVED_ENCOUNTER_KEYS:
            logger.debug(f"Ignoring reserved encounter field '{key}'")
            continue
        _put(clinical, canonical, value, key)

    header["clinical_fields"] = clinical
    return header


def normalize_measurement_item(item: Mapping[str, Any]) -> dict:
    """Map a raw measurement submission to canonical names.

    Unknown keys (e.g. "employeeId" echoed back by a form) are dropped.
    """
    normalized: dict[str, Any] = {}
    for key, value in (item or {}).items():
        canonical = MEASUREMENT_FIELD_ALIASES.get(key)
        if canonical is None:
            continue
        _put(normalized, canonical, value, key)
    return normalized
