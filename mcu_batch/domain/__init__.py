"""Domain layer for the MCU batch engine.

Pure models, validation, reconciliation and compensation logic. Nothing
here talks to a database driver; storage is reached through the ports.
"""

from .models import (
    EncounterRecord,
    MeasurementRecord,
    NormalizedEncounterFields,
    NormalizedMeasurement,
    WhitelistEntry,
)
from .results import BatchResult, ItemFailure

__all__ = [
    "EncounterRecord",
    "MeasurementRecord",
    "NormalizedEncounterFields",
    "NormalizedMeasurement",
    "WhitelistEntry",
    "BatchResult",
    "ItemFailure",
]
