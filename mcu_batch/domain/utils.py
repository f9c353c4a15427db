"""Domain Utilities.

Small pure helpers shared by the validator and the stores.
"""

import math
import uuid
from datetime import date, datetime
from typing import Any, Optional

# Accepted textual date layouts, tried in order after ISO parsing
_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")


def generate_encounter_id(encounter_date: Optional[date] = None) -> str:
    """Generate an encounter identifier of the form MCU-YYYYMMDD-XXXXXXXX."""
    stamp = (encounter_date or date.today()).strftime("%Y%m%d")
    return f"MCU-{stamp}-{uuid.uuid4().hex[:8].upper()}"


def generate_measurement_id() -> str:
    return str(uuid.uuid4())


def parse_date(value: Any) -> Optional[date]:
    """Parse a date from a date, datetime or string value.

    Parameters:
        value: Candidate date value

    Returns:
        The parsed date, or None if the value cannot be interpreted
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    try:
        # Accepts "2024-03-01" and "2024-03-01T08:30:00(+07:00)"
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def to_finite_float(value: Any) -> Optional[float]:
    """Convert a value to a finite float, or None if that is impossible.

    Booleans are rejected even though Python treats them as integers.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def is_blank(value: Any) -> bool:
    """True for None and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False
