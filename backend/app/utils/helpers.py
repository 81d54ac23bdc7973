import math
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Parse a string into an ObjectId, returning None when it is malformed."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def format_document(document: dict) -> dict:
    """Format MongoDB document for API response."""
    if document and "_id" in document:
        document["id"] = str(document["_id"])
        del document["_id"]
    return document


def to_naive_utc(value: datetime) -> datetime:
    """MongoDB hands back naive UTC datetimes; normalise aware input to match."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def round_money(value: float) -> float:
    """Round half-up to 2 decimal places."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def to_finite_number(value: Any) -> Optional[float]:
    """Coerce to a finite float, or None for NaN/inf/garbage."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def build_pagination(page: int, limit: int, total: int) -> dict:
    """Pagination block shared by list endpoints."""
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total": total,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
