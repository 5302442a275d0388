from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

# Wall-clock and derived fields that must never influence a content hash.
PLAN_EXCLUDED_FIELDS = frozenset({"created_at", "timestamp", "hash"})
PLACEMENT_EXCLUDED_FIELDS = PLAN_EXCLUDED_FIELDS | {"estimated_time"}


def strip_fields(value: Any, fields: Iterable[str]) -> Any:
    excluded = frozenset(fields)
    if isinstance(value, dict):
        return {key: strip_fields(item, excluded) for key, item in value.items() if key not in excluded}
    if isinstance(value, (list, tuple)):
        return [strip_fields(item, excluded) for item in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def content_hash(value: Any, exclude: Iterable[str] = PLAN_EXCLUDED_FIELDS) -> str:
    payload = canonical_json(strip_fields(value, exclude))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
