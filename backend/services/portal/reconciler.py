"""
Three-way reconciliation of extracted portal records against local rows.

Pure functions: the store applies the resulting batches. For menus, staff and
coupons every run produces updates, inserts and deactivations. Reservations
are append-only and filtered by a time cursor instead.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class RowUpdate:
    row_id: Any
    record: Any
    updated_at: datetime


@dataclass
class RowInsert:
    record: Any
    created_at: datetime
    updated_at: datetime


@dataclass
class RowDeactivation:
    row_id: Any
    natural_key: str
    updated_at: datetime


@dataclass
class ReconcileResult:
    updates: List[RowUpdate] = field(default_factory=list)
    inserts: List[RowInsert] = field(default_factory=list)
    deactivations: List[RowDeactivation] = field(default_factory=list)
    skipped: int = 0

    @property
    def update_keys(self) -> Set[str]:
        return {u.record.natural_key for u in self.updates}

    @property
    def insert_keys(self) -> Set[str]:
        return {i.record.natural_key for i in self.inserts}

    @property
    def deactivation_keys(self) -> Set[str]:
        return {d.natural_key for d in self.deactivations}

    @property
    def processed(self) -> int:
        return len(self.updates) + len(self.inserts)


def dedupe_by_key(records: Iterable) -> List:
    """Drop records whose natural key was already seen (first one wins)."""
    seen = set()
    unique = []
    for record in records:
        key = record.natural_key
        if key in seen:
            logger.warning(f"Duplicate natural key in portal data, keeping first: {key!r}")
            continue
        seen.add(key)
        unique.append(record)
    return unique


def reconcile(
    existing: Mapping[str, Mapping[str, Any]],
    incoming: Iterable,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """
    Diff incoming records against existing local rows keyed by natural key.

    Args:
        existing: natural key -> local row (must contain 'id')
        incoming: extracted records
        now: timestamp applied to every change (defaults to datetime.now())

    Returns:
        ReconcileResult where update keys and insert keys partition the
        (deduplicated) incoming keys, and deactivations hold every existing
        key that the portal no longer shows.
    """
    now = now or datetime.now()
    result = ReconcileResult()
    incoming = list(incoming)
    unique = dedupe_by_key(incoming)
    result.skipped = len(incoming) - len(unique)

    for record in unique:
        row = existing.get(record.natural_key)
        if row is not None:
            result.updates.append(RowUpdate(row_id=row['id'], record=record, updated_at=now))
        else:
            result.inserts.append(RowInsert(record=record, created_at=now, updated_at=now))

    incoming_keys = {r.natural_key for r in unique}
    for key, row in existing.items():
        if key not in incoming_keys:
            result.deactivations.append(RowDeactivation(row_id=row['id'], natural_key=key, updated_at=now))

    return result


def reconcile_reservations(
    existing_keys: Set[str],
    incoming: Iterable,
    last_sync_time: datetime,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """
    Append-only variant for reservations.

    Keeps records whose computed timestamp is strictly after `last_sync_time`
    and whose reservation id has not been stored yet. No updates and no
    deactivations are produced.
    """
    now = now or datetime.now()
    result = ReconcileResult()
    seen: Set[str] = set(existing_keys)

    for record in incoming:
        if not record.reservation_id:
            logger.warning(f"Skipping reservation without id: {record.date_text} {record.time_text}")
            result.skipped += 1
            continue
        if record.reserved_at is None:
            logger.warning(f"Skipping reservation {record.reservation_id}: no parsable date/time")
            result.skipped += 1
            continue
        if record.reserved_at <= last_sync_time:
            logger.debug(f"Skipping reservation {record.reservation_id} (not after cursor {last_sync_time})")
            result.skipped += 1
            continue
        if record.reservation_id in seen:
            result.skipped += 1
            continue
        seen.add(record.reservation_id)
        result.inserts.append(RowInsert(record=record, created_at=now, updated_at=now))

    return result


def existing_by_key(rows: Iterable[Mapping[str, Any]], key_column: str) -> Dict[str, Mapping[str, Any]]:
    """Index local rows by their natural key column."""
    return {row[key_column]: row for row in rows}
