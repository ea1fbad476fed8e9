import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException

_BASE36 = string.digits + string.ascii_uppercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz aware
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_order_number() -> str:
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=4))
    return f"ORD-{timestamp}-{suffix}"


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id format")


def serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    doc.pop("password_hash", None)
    doc.pop("refresh_token", None)
    return serialize_value(doc)


def ok(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def round_money(amount: float) -> float:
    return round(float(amount), 2)


class DetailedHTTPException(HTTPException):
    """HTTPException that also carries a `data` payload for the error envelope."""

    def __init__(self, status_code: int, detail: str, data: Any = None):
        super().__init__(status_code=status_code, detail=detail)
        self.data = data


class TTLCache:
    """Process-local key/value cache with per-entry expiry."""

    def __init__(self, clock=time.monotonic):
        self._entries: Dict[str, Any] = {}
        self._clock = clock

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, value = entry
        if self._clock() >= expires:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, value)

    def clear(self, prefix: str = "") -> None:
        for key in [k for k in self._entries if k.startswith(prefix)]:
            self._entries.pop(key, None)


# dashboard and analytics results; dropped whenever an order changes
analytics_cache = TTLCache()
