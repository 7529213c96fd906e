# app/db/schemas/common_schemas.py
from datetime import datetime, timezone
from typing import Annotated, Any

from bson import ObjectId
from pydantic import BeforeValidator


def _object_id_to_str(v: Any) -> str:
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, str) and ObjectId.is_valid(v):
        return v
    raise ValueError("Invalid ObjectId")


# --- ObjectId stored in Mongo, exposed as its hex string ---
PyObjectId = Annotated[str, BeforeValidator(_object_id_to_str)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Mongo returns naive datetimes (UTC) unless tz_aware is set on the client."""
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def to_object_id(value: str) -> ObjectId | None:
    return ObjectId(value) if ObjectId.is_valid(value) else None
