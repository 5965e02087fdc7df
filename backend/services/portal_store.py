"""
SQL for portal sync state.

One PortalStore wraps one synchronous SQLAlchemy session (jobs and the
outbound push run on the sync engine). Every component receives the store
explicitly so tests can substitute a fake.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from services.crypto import InvalidToken, get_cipher
from services.portal.base import (
    OutboundReservation,
    OutboundResult,
    PortalCredentials,
    SyncSummary,
    SyncType,
    record_to_dict,
)
from services.portal.errors import (
    CredentialsNotFoundError,
    ReconciliationWriteError,
    SyncLogWriteError,
)
from services.portal.reconciler import ReconcileResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordTable:
    """Where one upsert/deactivate record type lives."""
    name: str
    record_type: str
    key_column: str
    columns: Tuple[str, ...]
    deactivate_column: str


RECORD_TABLES: Dict[SyncType, RecordTable] = {
    SyncType.MENUS: RecordTable(
        name='menu_items',
        record_type='menu',
        key_column='name',
        columns=('name', 'category', 'description', 'price', 'duration',
                 'is_reservable', 'is_published', 'search_category'),
        deactivate_column='is_reservable',
    ),
    SyncType.STAFF: RecordTable(
        name='staff',
        record_type='staff',
        key_column='name',
        columns=('name', 'role', 'experience', 'is_published', 'image', 'description', 'sort_order'),
        deactivate_column='is_published',
    ),
    SyncType.COUPONS: RecordTable(
        name='coupons',
        record_type='coupon',
        key_column='coupon_id',
        columns=('coupon_id', 'name', 'category', 'description', 'price', 'duration',
                 'is_reservable', 'image_url'),
        deactivate_column='is_reservable',
    ),
}

RESERVATION_COLUMNS = (
    'reservation_id', 'date_text', 'time_text', 'reserved_at', 'status', 'status_code',
    'customer_name', 'staff_name', 'booking_channel', 'menu', 'points_used',
    'payment_method', 'amount',
)


class PortalStore:
    def __init__(self, db, cipher=None):
        self.db = db
        self._cipher = cipher

    @property
    def cipher(self):
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    # ============================================
    # OWNERS / CREDENTIALS
    # ============================================

    def get_owner(self, owner_id: str) -> Optional[dict]:
        result = self.db.execute(
            text("""
                SELECT id, username, salon_type, auto_sync_enabled
                FROM owners WHERE id = :owner_id
            """),
            {"owner_id": owner_id}
        )
        row = result.fetchone()
        return dict(row._mapping) if row else None

    def list_auto_sync_owners(self) -> List[str]:
        result = self.db.execute(
            text("""
                SELECT o.id FROM owners o
                JOIN portal_credentials c ON c.owner_id = o.id
                WHERE o.auto_sync_enabled = TRUE AND o.is_active = TRUE
                ORDER BY o.id
            """)
        )
        return [str(row.id) for row in result.fetchall()]

    def get_credentials(self, owner_id: str) -> PortalCredentials:
        """
        Decrypted portal login for the owner.

        Raises:
            CredentialsNotFoundError: nothing stored, or the password cannot be decrypted
        """
        result = self.db.execute(
            text("SELECT username, password_encrypted FROM portal_credentials WHERE owner_id = :owner_id"),
            {"owner_id": owner_id}
        )
        row = result.fetchone()
        if not row:
            raise CredentialsNotFoundError(f"No portal credentials stored for owner {owner_id}")
        try:
            password = self.cipher.decrypt(row.password_encrypted)
        except InvalidToken as e:
            raise CredentialsNotFoundError(
                f"Stored portal password for owner {owner_id} cannot be decrypted"
            ) from e
        return PortalCredentials(username=row.username, password=password)

    # ============================================
    # SESSIONS
    # ============================================

    def load_session(self, owner_id: str) -> Optional[str]:
        """Encrypted cookie jar for the owner; expired rows are deleted first."""
        self.db.execute(
            text("DELETE FROM portal_sessions WHERE owner_id = :owner_id AND expires_at <= NOW()"),
            {"owner_id": owner_id}
        )
        self.db.commit()
        result = self.db.execute(
            text("SELECT session_data FROM portal_sessions WHERE owner_id = :owner_id"),
            {"owner_id": owner_id}
        )
        row = result.fetchone()
        return row.session_data if row else None

    def save_session(self, owner_id: str, blob: str, expires_at: datetime):
        self.db.execute(
            text("""
                INSERT INTO portal_sessions (owner_id, session_data, expires_at, updated_at)
                VALUES (:owner_id, :session_data, :expires_at, NOW())
                ON CONFLICT (owner_id) DO UPDATE SET
                    session_data = EXCLUDED.session_data,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = NOW()
            """),
            {"owner_id": owner_id, "session_data": blob, "expires_at": expires_at}
        )
        self.db.commit()

    def delete_session(self, owner_id: str):
        self.db.execute(
            text("DELETE FROM portal_sessions WHERE owner_id = :owner_id"),
            {"owner_id": owner_id}
        )
        self.db.commit()

    def purge_expired_sessions(self) -> int:
        result = self.db.execute(text("DELETE FROM portal_sessions WHERE expires_at <= NOW()"))
        self.db.commit()
        return result.rowcount or 0

    # ============================================
    # MENUS / STAFF / COUPONS
    # ============================================

    def fetch_existing(self, sync_type: SyncType, owner_id: str) -> Dict[str, dict]:
        """Local rows of one record type keyed by natural key."""
        table = RECORD_TABLES[SyncType(sync_type)]
        result = self.db.execute(
            text(f"SELECT id, {table.key_column} AS natural_key FROM {table.name} WHERE owner_id = :owner_id"),
            {"owner_id": owner_id}
        )
        return {row.natural_key: {"id": row.id} for row in result.fetchall()}

    def apply_changes(self, sync_type: SyncType, owner_id: str, changes: ReconcileResult) -> Dict[str, int]:
        """
        Write one reconciliation result as three separately committed batches
        (update, insert, deactivate).

        Raises:
            ReconciliationWriteError: naming the failing category; batches
                already committed are kept
        """
        table = RECORD_TABLES[SyncType(sync_type)]
        assignments = ", ".join(f"{c} = :{c}" for c in table.columns)
        column_list = ", ".join(table.columns)
        value_list = ", ".join(f":{c}" for c in table.columns)
        conflict_updates = ", ".join(
            f"{c} = EXCLUDED.{c}" for c in table.columns if c != table.key_column
        )

        batches = [
            (
                'update',
                f"UPDATE {table.name} SET {assignments}, updated_at = :updated_at WHERE id = :row_id",
                [dict(self._row_values(table, u.record), row_id=u.row_id, updated_at=u.updated_at)
                 for u in changes.updates],
            ),
            (
                'insert',
                f"""
                INSERT INTO {table.name} (owner_id, {column_list}, created_at, updated_at)
                VALUES (:owner_id, {value_list}, :created_at, :updated_at)
                ON CONFLICT (owner_id, {table.key_column}) DO UPDATE SET
                    {conflict_updates}, updated_at = EXCLUDED.updated_at
                """,
                [dict(self._row_values(table, i.record), owner_id=owner_id,
                      created_at=i.created_at, updated_at=i.updated_at)
                 for i in changes.inserts],
            ),
            (
                'deactivate',
                f"UPDATE {table.name} SET {table.deactivate_column} = FALSE, updated_at = :updated_at WHERE id = :row_id",
                [{"row_id": d.row_id, "updated_at": d.updated_at} for d in changes.deactivations],
            ),
        ]

        counts = {}
        for category, sql, params in batches:
            counts[category] = self._execute_batch(category, table.record_type, sql, params)
        logger.info(
            f"{table.name} for owner {owner_id}: {counts['update']} updated, "
            f"{counts['insert']} inserted, {counts['deactivate']} deactivated"
        )
        return counts

    def _row_values(self, table: RecordTable, record) -> Dict[str, Any]:
        values = record_to_dict(record)
        return {c: values[c] for c in table.columns}

    def _execute_batch(self, category: str, record_type: str, sql: str, params: List[dict]) -> int:
        if not params:
            return 0
        try:
            self.db.execute(text(sql), params)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"{category} batch for {record_type} failed: {e}")
            raise ReconciliationWriteError(category, record_type, e) from e
        return len(params)

    # ============================================
    # RESERVATIONS
    # ============================================

    def get_reservation_cursor(self, owner_id: str) -> Optional[datetime]:
        """last_sync_time written by the most recent reservation sync."""
        result = self.db.execute(
            text("""
                SELECT last_sync_time FROM portal_sync_logs
                WHERE owner_id = :owner_id AND sync_type = 'reservations'
                  AND last_sync_time IS NOT NULL
                ORDER BY synced_at DESC LIMIT 1
            """),
            {"owner_id": owner_id}
        )
        row = result.fetchone()
        return row.last_sync_time if row else None

    def fetch_reservation_keys(self, owner_id: str, since: Optional[datetime] = None) -> Set[str]:
        params = {"owner_id": owner_id}
        sql = "SELECT reservation_id FROM portal_reservations WHERE owner_id = :owner_id"
        if since is not None:
            sql += " AND reserved_at > :since"
            params["since"] = since
        result = self.db.execute(text(sql), params)
        return {row.reservation_id for row in result.fetchall()}

    def insert_reservations(self, owner_id: str, changes: ReconcileResult) -> int:
        """Append new reservations; rows already present are left untouched."""
        params = []
        for insert in changes.inserts:
            record = insert.record
            values = record_to_dict(record)
            row = {c: values.get(c) for c in RESERVATION_COLUMNS}
            row.update(
                status_code=record.status_code,
                owner_id=owner_id,
                created_at=insert.created_at,
                updated_at=insert.updated_at,
            )
            params.append(row)

        columns = ", ".join(RESERVATION_COLUMNS)
        values = ", ".join(f":{c}" for c in RESERVATION_COLUMNS)
        sql = f"""
            INSERT INTO portal_reservations (owner_id, {columns}, created_at, updated_at)
            VALUES (:owner_id, {values}, :created_at, :updated_at)
            ON CONFLICT (owner_id, reservation_id) DO NOTHING
        """
        return self._execute_batch('insert', 'reservation', sql, params)

    # ============================================
    # SYNC LOG
    # ============================================

    def record_sync_log(self, summary: SyncSummary) -> int:
        """
        Write the audit row for one completed run.

        Raises:
            SyncLogWriteError: the row was not persisted (data writes stand)
        """
        try:
            result = self.db.execute(
                text("""
                    INSERT INTO portal_sync_logs (
                        owner_id, sync_type, data_hash, items_processed, items_updated,
                        items_added, items_deactivated, items_skipped,
                        last_sync_time, last_reservation_id, synced_at
                    ) VALUES (
                        :owner_id, :sync_type, :data_hash, :items_processed, :items_updated,
                        :items_added, :items_deactivated, :items_skipped,
                        :last_sync_time, :last_reservation_id, NOW()
                    )
                    RETURNING id
                """),
                {
                    "owner_id": summary.owner_id,
                    "sync_type": summary.sync_type.value,
                    "data_hash": summary.data_hash,
                    "items_processed": summary.items_processed,
                    "items_updated": summary.items_updated,
                    "items_added": summary.items_added,
                    "items_deactivated": summary.items_deactivated,
                    "items_skipped": summary.items_skipped,
                    "last_sync_time": summary.last_sync_time,
                    "last_reservation_id": summary.last_reservation_id,
                }
            )
            log_id = result.scalar()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise SyncLogWriteError(f"Failed to write sync log for {summary.sync_type.value}: {e}") from e
        return log_id

    # ============================================
    # JOBS
    # ============================================

    def create_job(self, owner_id: str, sync_type: SyncType, triggered_by: str) -> str:
        job_id = str(uuid.uuid4())
        self.db.execute(
            text("""
                INSERT INTO portal_sync_jobs (id, owner_id, sync_type, status, triggered_by, created_at)
                VALUES (:id, :owner_id, :sync_type, 'queued', :triggered_by, NOW())
            """),
            {"id": job_id, "owner_id": owner_id, "sync_type": SyncType(sync_type).value,
             "triggered_by": triggered_by}
        )
        self.db.commit()
        return job_id

    def has_active_job(self, owner_id: str, sync_type: SyncType) -> bool:
        result = self.db.execute(
            text("""
                SELECT 1 FROM portal_sync_jobs
                WHERE owner_id = :owner_id AND sync_type = :sync_type
                  AND status IN ('queued', 'running')
                LIMIT 1
            """),
            {"owner_id": owner_id, "sync_type": SyncType(sync_type).value}
        )
        return result.fetchone() is not None

    def mark_job_running(self, job_id: str):
        self.db.execute(
            text("UPDATE portal_sync_jobs SET status = 'running', started_at = NOW() WHERE id = :id"),
            {"id": job_id}
        )
        self.db.commit()

    def finish_job(self, job_id: str, status: str, result: Optional[dict] = None,
                   error_message: Optional[str] = None):
        self.db.execute(
            text("""
                UPDATE portal_sync_jobs
                SET status = :status, completed_at = NOW(),
                    result = CAST(:result AS JSONB), error_message = :error
                WHERE id = :id
            """),
            {
                "id": job_id,
                "status": status,
                "result": json.dumps(result, default=str) if result is not None else None,
                "error": error_message[:500] if error_message else None,
            }
        )
        self.db.commit()

    def fail_stale_jobs(self) -> int:
        """Jobs left queued/running by a previous process can never finish."""
        result = self.db.execute(
            text("""
                UPDATE portal_sync_jobs
                SET status = 'failed', completed_at = NOW(),
                    error_message = 'Interrupted by service restart'
                WHERE status IN ('queued', 'running')
            """)
        )
        self.db.commit()
        return result.rowcount or 0

    # ============================================
    # OUTBOUND
    # ============================================

    def get_outbound_reservation(self, owner_id: str, reservation_id: str) -> Optional[OutboundReservation]:
        result = self.db.execute(
            text("""
                SELECT id, staff_name, start_time, end_time, customer_name, customer_kana, phone, memo
                FROM reservations
                WHERE id = :reservation_id AND owner_id = :owner_id
            """),
            {"reservation_id": reservation_id, "owner_id": owner_id}
        )
        row = result.fetchone()
        if not row:
            return None
        return OutboundReservation(
            reservation_id=str(row.id),
            staff_name=row.staff_name or '',
            start_time=row.start_time,
            end_time=row.end_time,
            customer_name=row.customer_name or '',
            customer_kana=row.customer_kana or '',
            phone=row.phone or '',
            memo=row.memo,
        )

    def record_outbound_status(self, result: OutboundResult):
        self.db.execute(
            text("""
                INSERT INTO portal_reservation_sync (
                    reservation_id, sync_status, portal_reservation_id, last_sync_attempt, error_message
                ) VALUES (
                    :reservation_id, :sync_status, :portal_reservation_id, :attempted_at, :error_message
                )
                ON CONFLICT (reservation_id) DO UPDATE SET
                    sync_status = EXCLUDED.sync_status,
                    portal_reservation_id = EXCLUDED.portal_reservation_id,
                    last_sync_attempt = EXCLUDED.last_sync_attempt,
                    error_message = EXCLUDED.error_message
            """),
            {
                "reservation_id": result.reservation_id,
                "sync_status": result.sync_status,
                "portal_reservation_id": result.portal_reservation_id,
                "attempted_at": result.attempted_at,
                "error_message": result.error_message,
            }
        )
        self.db.commit()
        logger.info(f"Recorded outbound status {result.sync_status} for reservation {result.reservation_id}")
