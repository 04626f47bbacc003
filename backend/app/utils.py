from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Sequence, TypeVar

from bson import ObjectId

T = TypeVar("T")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Mongo drivers may hand back naive datetimes; treat those as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_doc(doc: Any) -> Any:
    """Recursively convert MongoDB docs into JSON-serializable structures."""
    if doc is None:
        return None

    if isinstance(doc, ObjectId):
        return str(doc)

    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()

    if isinstance(doc, Enum):
        return doc.value

    if isinstance(doc, list):
        return [serialize_doc(x) for x in doc]

    if isinstance(doc, dict):
        out: dict[str, Any] = {}
        for k, v in doc.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out

    return doc


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def chunk(ids: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of at most `size` items.

    The supplier caps hotel-id lists per request, so callers fan a long id
    list out into batches.
    """
    if size <= 0:
        raise ValueError("size must be > 0")
    for start in range(0, len(ids), size):
        yield list(ids[start : start + size])
