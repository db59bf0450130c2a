import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from keyword_importer.api.schemas.shared import Scalar


def to_scalar(value: Any) -> Optional[Scalar]:
    """
    Coerce a value into the closed scalar variant used by extra-data bags.

    Returns None for values that carry no data (None, NaN); callers drop those
    keys rather than store them.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return value
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise fall back to float
        if value == value.to_integral():
            return int(value)
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, str):
        return value
    # Fallback to string representation for unsupported types
    return str(value)
