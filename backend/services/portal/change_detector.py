"""
Canonical content hash over an extracted record set.

Used for audit only (stored on the sync log). It never decides whether
reconciliation runs.
"""
import hashlib
import json
from typing import Iterable

from .base import record_to_dict


def canonical_payload(records: Iterable) -> bytes:
    """Records sorted by natural key, serialized to deterministic JSON bytes."""
    ordered = sorted(records, key=lambda r: (r.natural_key, _dump(record_to_dict(r))))
    payload = [record_to_dict(r) for r in ordered]
    return _dump(payload).encode('utf-8')


def compute_content_hash(records: Iterable) -> str:
    """SHA-256 hex digest of the canonical payload."""
    return hashlib.sha256(canonical_payload(records)).hexdigest()


def _dump(value) -> str:
    # default=str covers datetimes on reservation records
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(',', ':'), default=str)
