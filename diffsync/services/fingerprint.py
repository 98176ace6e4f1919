"""Content fingerprints for change detection.

A fingerprint is a short digest over a record's canonicalized field values.
It is compared per record against the hash stored in the destination at the
last sync, so writes that only bump the last-modified marker are not reported
as modifications.
"""
from __future__ import annotations

import hashlib
import json
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional
from uuid import UUID

SYSTEM_FIELDS = frozenset({"id", "created_at", "updated_at", "deleted_at"})
SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256")

# Floats are rounded before hashing so representation noise between engines
# (0.30000000000000004 vs 0.3) does not produce phantom modifications.
FLOAT_HASH_PRECISION = 10
_NAN = "\x1fNaN\x1f"
_INF = "\x1fINF\x1f"
_NEG_INF = "\x1f-INF\x1f"


def _canonical(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isnan(value):
            return _NAN
        if math.isinf(value):
            return _INF if value > 0 else _NEG_INF
        return round(value, FLOAT_HASH_PRECISION)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value.normalize()) if value.is_finite() else str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_canonical(v) for v in value]
        return sorted(items, key=repr) if isinstance(value, (set, frozenset)) else items
    return str(value)


def canonical_payload(
    row: Mapping[str, Any],
    fields: Optional[Iterable[str]] = None,
    exclude: Iterable[str] = SYSTEM_FIELDS,
) -> str:
    if fields:
        selected = {f: row.get(f) for f in fields}
    else:
        skip = set(exclude)
        selected = {k: v for k, v in row.items() if k not in skip}
    return json.dumps(
        {k: _canonical(v) for k, v in selected.items()},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def fingerprint(
    row: Mapping[str, Any],
    fields: Optional[Iterable[str]] = None,
    exclude: Iterable[str] = SYSTEM_FIELDS,
    algorithm: str = "sha256",
) -> str:
    """Return ``"<algorithm>_<16 hex chars>"`` for the mapped fields of ``row``.

    With ``fields`` given only those columns contribute (missing ones hash as
    null); otherwise every column except ``exclude`` does.
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"hash algorithm must be one of {SUPPORTED_ALGORITHMS}")
    payload = canonical_payload(row, fields, exclude)
    digest = hashlib.new(algorithm, payload.encode("utf-8")).hexdigest()
    return f"{algorithm}_{digest[:16]}"
