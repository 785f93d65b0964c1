from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from hashlib import sha256
from typing import Any


class CanonicalError(ValueError):
    pass


def iso_utc(value: datetime) -> str:
    """ISO-8601 in UTC with a trailing Z; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _scalar(value: Any) -> Any:
    if isinstance(value, Enum):
        return _scalar(value.value)
    if isinstance(value, datetime):
        return iso_utc(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, bool) or value is None or isinstance(value, (str, int)):
        return value
    if isinstance(value, float):
        # Money crosses this boundary as int cents.
        raise CanonicalError("float values are not allowed in canonical JSON; use int cents")
    raise CanonicalError(f"unsupported canonical type: {type(value)!r}")


def to_canonical_obj(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    elif hasattr(value, "model_dump"):
        value = value.model_dump()

    if isinstance(value, dict):
        return {str(key): to_canonical_obj(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_canonical_obj(item) for item in value]
    return _scalar(value)


def canonical_json(value: Any) -> bytes:
    return json.dumps(to_canonical_obj(value), sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode(
        "utf-8"
    )


def payload_hash(value: Any) -> str:
    """sha256 of the canonical form; identical distributor payloads hash identically across retries."""
    return sha256(canonical_json(value)).hexdigest()
