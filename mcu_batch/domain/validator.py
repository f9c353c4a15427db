"""Batch Validator.

Checks encounter fields and measurement submissions before any write.
Every function here is pure and deterministic: no storage access, no
side effects beyond logging.

Two policies share the same per-item rule:
    - create path: the first invalid item raises, so nothing is written
    - update path: invalid items are isolated as ItemFailure entries and
      the remaining items go on to reconciliation
"""

import logging
from typing import Any, Iterable, Mapping, Optional

from mcu_batch.domain.enums import ItemOperation
from mcu_batch.domain.field_mapping import normalize_encounter_fields, normalize_measurement_item
from mcu_batch.domain.models import NormalizedEncounterFields, NormalizedMeasurement
from mcu_batch.domain.ports import (
    BatchValidationError,
    InvalidDateError,
    InvalidValueError,
    InvalidWhitelistIdError,
    MissingFieldError,
    WhitelistRegistryPort,
)
from mcu_batch.domain.results import ItemFailure
from mcu_batch.domain.utils import is_blank, parse_date, to_finite_float
from mcu_batch.domain.whitelist import coerce_type_id

logger = logging.getLogger(__name__)

REQUIRED_ENCOUNTER_FIELDS = ("subject_id", "encounter_type", "encounter_date")


def validate_encounter_fields(fields: Mapping[str, Any]) -> NormalizedEncounterFields:
    """Validate and normalize the fields of a new encounter.

    Parameters:
        fields: Raw encounter fields in either naming convention

    Returns:
        NormalizedEncounterFields: Canonical, typed encounter fields

    Raises:
        MissingFieldError: If subject id, encounter type or date is absent
        InvalidDateError: If the encounter date does not parse
    """
    canonical = normalize_encounter_fields(fields)

    for field_name in REQUIRED_ENCOUNTER_FIELDS:
        if is_blank(canonical.get(field_name)):
            raise MissingFieldError(
                f"Missing required encounter field: {field_name}",
                field=field_name
            )

    encounter_date = parse_date(canonical["encounter_date"])
    if encounter_date is None:
        raise InvalidDateError(
            f"Invalid encounter date: {canonical['encounter_date']!r}",
            field="encounter_date"
        )

    encounter_id = canonical.get("encounter_id")
    return NormalizedEncounterFields(
        encounter_id=str(encounter_id).strip() if not is_blank(encounter_id) else None,
        subject_id=str(canonical["subject_id"]).strip(),
        encounter_type=str(canonical["encounter_type"]).strip(),
        encounter_date=encounter_date,
        clinical_fields=canonical.get("clinical_fields", {}),
    )


def validate_encounter_update(fields: Mapping[str, Any]) -> dict:
    """Validate a partial encounter revision.

    Only fields present in the update are checked: required header fields
    may be omitted but not blanked, and a supplied date must parse.

    Returns:
        dict: Canonical partial update (only keys that were supplied)

    Raises:
        MissingFieldError: If a required header field is supplied blank
        InvalidDateError: If a supplied encounter date does not parse
    """
    canonical = normalize_encounter_fields(fields)
    update: dict[str, Any] = {}

    for field_name in REQUIRED_ENCOUNTER_FIELDS:
        if field_name not in canonical:
            continue
        if is_blank(canonical[field_name]):
            raise MissingFieldError(
                f"Encounter field cannot be cleared: {field_name}",
                field=field_name
            )
        update[field_name] = canonical[field_name]

    if "encounter_date" in update:
        parsed = parse_date(update["encounter_date"])
        if parsed is None:
            raise InvalidDateError(
                f"Invalid encounter date: {update['encounter_date']!r}",
                field="encounter_date"
            )
        update["encounter_date"] = parsed

    for field_name in ("subject_id", "encounter_type"):
        if field_name in update:
            update[field_name] = str(update[field_name]).strip()

    if canonical.get("clinical_fields"):
        update["clinical_fields"] = canonical["clinical_fields"]

    return update


def validate_measurement(item: Mapping[str, Any], registry: WhitelistRegistryPort) -> NormalizedMeasurement:
    """Validate a single measurement submission.

    Raises:
        InvalidWhitelistIdError: If the type id is missing, non-integral or not whitelisted
        InvalidValueError: If the value is non-numeric, non-finite or <= 0
    """
    canonical = normalize_measurement_item(item)
    raw_type_id = canonical.get("type_id")
    type_id = coerce_type_id(raw_type_id)

    if type_id is None or not registry.is_valid(type_id):
        raise InvalidWhitelistIdError(
            f"Lab item {raw_type_id}: measurement type is not whitelisted",
            type_id=raw_type_id
        )

    raw_value = canonical.get("value")
    value = to_finite_float(raw_value)
    if value is None:
        raise InvalidValueError(
            f"Lab item {type_id}: Invalid numeric value '{raw_value}'",
            type_id=type_id
        )
    if value <= 0:
        raise InvalidValueError(
            f"Lab item {type_id}: Value must be positive (got {value})",
            type_id=type_id
        )

    notes = canonical.get("notes")
    return NormalizedMeasurement(
        type_id=type_id,
        value=value,
        notes=None if is_blank(notes) else str(notes),
    )


def _collapse_duplicates(items: list[NormalizedMeasurement]) -> list[NormalizedMeasurement]:
    """Keep the last submission per type id, preserving first-seen order."""
    by_type: dict[int, NormalizedMeasurement] = {}
    for item in items:
        if item.type_id in by_type:
            logger.warning(
                f"Lab item {item.type_id} submitted more than once; the last value wins"
            )
        by_type[item.type_id] = item
    return list(by_type.values())


def validate_measurements(
    items: Optional[Iterable[Mapping[str, Any]]],
    registry: WhitelistRegistryPort
) -> list[NormalizedMeasurement]:
    """Validate a whole measurement batch, failing fast.

    A single invalid item aborts the batch (create path: zero side effects).

    Parameters:
        items: Raw measurement submissions
        registry: Whitelist registry

    Returns:
        list[NormalizedMeasurement]: Validated items, one per type id

    Raises:
        InvalidWhitelistIdError: On the first non-whitelisted item
        InvalidValueError: On the first item with a bad value
    """
    normalized = [validate_measurement(item, registry) for item in (items or [])]
    return _collapse_duplicates(normalized)


def partition_measurements(
    items: Optional[Iterable[Mapping[str, Any]]],
    registry: WhitelistRegistryPort
) -> tuple[list[NormalizedMeasurement], list[ItemFailure]]:
    """Validate a measurement batch, isolating invalid items.

    Returns:
        tuple: (valid items one per type id, failures for invalid items)
    """
    valid: list[NormalizedMeasurement] = []
    failures: list[ItemFailure] = []

    for item in (items or []):
        try:
            valid.append(validate_measurement(item, registry))
        except BatchValidationError as e:
            failures.append(ItemFailure(
                type_id=coerce_type_id(e.type_id),
                operation=ItemOperation.VALIDATE,
                error=str(e),
                error_type=type(e).__name__,
            ))

    return _collapse_duplicates(valid), failures
