"""Measurement-Type Whitelist Registry.

The whitelist is the closed set of lab measurement types the clinic
records, with display metadata and reference ranges. It is modeled as an
immutable, injectable registry rather than module-level state so tests
can substitute fixtures.

The default table mirrors the lab_items rows of the production database.
Identifiers are not contiguous (4 and 14-30 do not exist).
"""

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional

from mcu_batch.domain.models import WhitelistEntry
from mcu_batch.domain.ports import WhitelistRegistryPort

logger = logging.getLogger(__name__)


DEFAULT_LAB_ITEMS: tuple[WhitelistEntry, ...] = (
    WhitelistEntry(type_id=1, name="SGOT", unit="IU/L", min_value=5, max_value=40),
    WhitelistEntry(type_id=2, name="SGPT", unit="IU/L", min_value=4, max_value=44),
    WhitelistEntry(type_id=3, name="Hemoglobin", unit="g/dL", min_value=11, max_value=16),
    WhitelistEntry(type_id=5, name="Leukosit", unit="10^3/μL", min_value=4, max_value=11),
    WhitelistEntry(type_id=6, name="Trombosit", unit="10^3/μL", min_value=150, max_value=400),
    WhitelistEntry(type_id=7, name="Gula Darah Puasa", unit="mg/dL", min_value=70, max_value=100),
    WhitelistEntry(type_id=8, name="Kolesterol Total", unit="mg/dL", min_value=1, max_value=200),
    WhitelistEntry(type_id=9, name="Trigliserida", unit="mg/dL", min_value=1, max_value=150),
    WhitelistEntry(type_id=10, name="HDL Kolestrol", unit="mg/dL", min_value=30, max_value=999),
    WhitelistEntry(type_id=11, name="LDL Kolestrol", unit="mg/dL", min_value=66, max_value=999),
    WhitelistEntry(type_id=12, name="Ureum", unit="mg/dL", min_value=4, max_value=50),
    WhitelistEntry(type_id=13, name="Kreatinin", unit="mg/dL", min_value=0.6, max_value=1.2),
    WhitelistEntry(type_id=31, name="Gula Darah 2 JPP", unit="mg/dL", min_value=1, max_value=999),
    WhitelistEntry(type_id=32, name="Asam Urat", unit="mg/dl", min_value=2, max_value=999),
)


def coerce_type_id(value: Any) -> Optional[int]:
    """Normalize a raw type identifier to an int.

    Accepts ints, integral floats and digit strings ("5", " 5 ", "5.0").
    Returns None for anything else, including booleans.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if number.is_integer() else None
    return None


class WhitelistRegistry(WhitelistRegistryPort):
    """Immutable registry of permitted measurement types.

    Parameters:
        entries: Whitelist entries (duplicate type ids are rejected)
        expected_count: Size of a complete panel; defaults to the number of entries

    Example Usage:
        ```python
        registry = WhitelistRegistry.default()
        registry.is_valid(1)      # True  (SGOT)
        registry.is_valid(999)    # False
        registry.classify(1, 35)  # MeasurementStatus.NORMAL
        ```
    """

    def __init__(self, entries: Iterable[WhitelistEntry], expected_count: Optional[int] = None):
        table: dict[int, WhitelistEntry] = {}
        for entry in entries:
            if entry.type_id in table:
                raise ValueError(f"Duplicate whitelist type id: {entry.type_id}")
            table[entry.type_id] = entry
        self._entries: Mapping[int, WhitelistEntry] = MappingProxyType(
            dict(sorted(table.items()))
        )
        self._expected_count = expected_count if expected_count is not None else len(table)

    @classmethod
    def default(cls) -> 'WhitelistRegistry':
        """Registry built from the production lab item table."""
        return cls(DEFAULT_LAB_ITEMS)

    @classmethod
    def from_file(cls, path: str, expected_count: Optional[int] = None) -> 'WhitelistRegistry':
        """Load a registry from a JSON file.

        The file holds either a list of entry objects or a mapping of
        type id to {name, unit, min, max} (the lab items mapping format).

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file is not valid JSON or an entry is malformed
        """
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Whitelist file not found: {path}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in whitelist file: {str(e)}")

        if isinstance(raw, dict):
            items = [
                {
                    "type_id": type_id,
                    "name": info.get("name"),
                    "unit": info.get("unit"),
                    "min_value": info.get("min", info.get("min_value")),
                    "max_value": info.get("max", info.get("max_value")),
                }
                for type_id, info in raw.items()
            ]
        elif isinstance(raw, list):
            items = raw
        else:
            raise ValueError("Whitelist file must contain a JSON object or array")

        entries = [WhitelistEntry(**item) for item in items]
        logger.info(f"Loaded {len(entries)} whitelist entries from {path}")
        return cls(entries, expected_count=expected_count)

    def is_valid(self, type_id: Any) -> bool:
        normalized = coerce_type_id(type_id)
        return normalized is not None and normalized in self._entries

    def get(self, type_id: int) -> Optional[WhitelistEntry]:
        normalized = coerce_type_id(type_id)
        if normalized is None:
            return None
        return self._entries.get(normalized)

    def expected_count(self) -> int:
        return self._expected_count

    def type_ids(self) -> tuple[int, ...]:
        return tuple(self._entries.keys())

    def __iter__(self) -> Iterator[WhitelistEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, type_id: Any) -> bool:
        return self.is_valid(type_id)
