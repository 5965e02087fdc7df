"""
Portal sync job - pulls reservations, menus, staff and coupons from the portal
"""
import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from database import SyncSessionLocal
from services.portal import SessionManager, SyncType, open_portal_browser, default_layout
from services.portal.base import SyncSummary
from services.portal.change_detector import compute_content_hash
from services.portal.errors import PortalSyncError
from services.portal.extractors import (
    ExtractionResult,
    extract_coupons,
    extract_menus,
    extract_reservations,
    extract_staff,
)
from services.portal.navigator import retry_async
from services.portal.reconciler import reconcile, reconcile_reservations
from services.portal.selectors import PortalLayout
from services.portal_store import PortalStore

logger = logging.getLogger(__name__)

# Staff and menus first: reservations and coupons refer to them on the dashboard side
AUTO_SYNC_ORDER = (SyncType.STAFF, SyncType.MENUS, SyncType.COUPONS, SyncType.RESERVATIONS)

_sync_locks: Dict[Tuple[str, SyncType], asyncio.Lock] = {}


def get_sync_lock(owner_id: str, sync_type: SyncType) -> asyncio.Lock:
    """One in-process lock per owner + sync type."""
    key = (str(owner_id), SyncType(sync_type))
    if key not in _sync_locks:
        _sync_locks[key] = asyncio.Lock()
    return _sync_locks[key]


def screen_for(layout: PortalLayout, sync_type: SyncType) -> Tuple[str, str]:
    """Portal URL and marker element the session should land on."""
    screens = {
        SyncType.RESERVATIONS: (layout.paths.reservation_list, layout.reservation_list.screen_marker),
        SyncType.MENUS: (layout.paths.menu_edit, layout.menu.form),
        SyncType.STAFF: (layout.paths.staff_list, layout.staff.rows),
        SyncType.COUPONS: (layout.paths.coupon_list, layout.coupon.rows),
    }
    path, marker = screens[SyncType(sync_type)]
    return layout.url(path), marker


def reservation_window(today: Optional[date] = None, days: Optional[int] = None) -> Tuple[date, date]:
    from config import PORTAL_RESERVATION_WINDOW_DAYS
    today = today or date.today()
    return today, today + timedelta(days=days if days is not None else PORTAL_RESERVATION_WINDOW_DAYS)


async def extract_for(page, layout: PortalLayout, sync_type: SyncType, salon_type: str,
                      window: Tuple[date, date]) -> ExtractionResult:
    """Run one extractor inside the bounded retry wrapper."""
    if sync_type == SyncType.RESERVATIONS:
        start, end = window
        operation = lambda: extract_reservations(page, layout, salon_type, start, end)  # noqa: E731
    elif sync_type == SyncType.MENUS:
        operation = lambda: extract_menus(page, layout)  # noqa: E731
    elif sync_type == SyncType.STAFF:
        operation = lambda: extract_staff(page, layout)  # noqa: E731
    else:
        operation = lambda: extract_coupons(page, layout)  # noqa: E731
    return await retry_async(operation, description=f"{sync_type.value} extraction")


def apply_records(store, owner_id: str, sync_type: SyncType, records: List,
                  now: Optional[datetime] = None) -> SyncSummary:
    """Reconcile menus, staff or coupons and write the three batches."""
    existing = store.fetch_existing(sync_type, owner_id)
    changes = reconcile(existing, records, now=now)
    counts = store.apply_changes(sync_type, owner_id, changes)
    return SyncSummary(
        owner_id=owner_id,
        sync_type=SyncType(sync_type),
        data_hash=compute_content_hash(records),
        items_processed=changes.processed,
        items_updated=counts['update'],
        items_added=counts['insert'],
        items_deactivated=counts['deactivate'],
        items_skipped=changes.skipped,
    )


def apply_reservations(store, owner_id: str, records: List, run_started_at: datetime) -> SyncSummary:
    """
    Append reservations dated after the stored cursor.

    The cursor written for the next run is this run's start time. The newest
    appended reservation id is logged for audit only.
    """
    cursor = store.get_reservation_cursor(owner_id) or datetime.min
    logger.info(f"Reservation cursor for owner {owner_id}: {cursor}")
    existing_keys = store.fetch_reservation_keys(owner_id)
    changes = reconcile_reservations(existing_keys, records, cursor, now=run_started_at)
    added = store.insert_reservations(owner_id, changes)

    newest = max(changes.inserts, key=lambda i: i.record.reserved_at, default=None)
    return SyncSummary(
        owner_id=owner_id,
        sync_type=SyncType.RESERVATIONS,
        data_hash=compute_content_hash(records),
        items_processed=len(records),
        items_added=added,
        items_skipped=changes.skipped,
        last_sync_time=run_started_at,
        last_reservation_id=newest.record.reservation_id if newest else None,
    )


async def sync_owner(
    store,
    owner_id: str,
    sync_type: SyncType,
    layout: Optional[PortalLayout] = None,
    browser_factory: Callable = open_portal_browser,
    cipher=None,
    today: Optional[date] = None,
) -> SyncSummary:
    """
    One full sync run: session -> extraction -> reconcile -> sync log.

    The browser is closed before any local write happens.
    """
    sync_type = SyncType(sync_type)
    layout = layout or default_layout()
    run_started_at = datetime.now()

    owner = store.get_owner(owner_id)
    if not owner:
        raise PortalSyncError(f"Unknown owner {owner_id}")
    credentials = store.get_credentials(owner_id)
    salon_type = owner.get('salon_type') or 'hair'
    target_url, marker = screen_for(layout, sync_type)

    async with browser_factory() as browser:
        manager = SessionManager(store, browser, layout, cipher=cipher)
        async with manager.session(owner_id, credentials, target_url, marker) as auth:
            extraction = await extract_for(
                auth.page, layout, sync_type, salon_type, reservation_window(today)
            )

    logger.info(
        f"Extracted {len(extraction.records)} {sync_type.value} for owner {owner_id} "
        f"({extraction.report.rows_skipped} rows skipped, {len(extraction.report.warnings)} warnings)"
    )

    if sync_type == SyncType.RESERVATIONS:
        summary = apply_reservations(store, owner_id, extraction.records, run_started_at)
    else:
        summary = apply_records(store, owner_id, sync_type, extraction.records)

    store.record_sync_log(summary)
    logger.info(f"Portal sync {sync_type.value} for owner {owner_id} done: {summary.to_dict()}")
    return summary


async def run_portal_sync(
    owner_id: str,
    sync_type: str,
    job_id: Optional[str] = None,
    triggered_by: str = "api",
) -> Optional[SyncSummary]:
    """
    Background entry point for one owner + sync type.

    Outcome is written to the job row; errors are logged, not raised.
    """
    sync_type = SyncType(sync_type)
    lock = get_sync_lock(owner_id, sync_type)
    db = SyncSessionLocal()
    store = PortalStore(db)

    try:
        if lock.locked():
            logger.warning(f"{sync_type.value} sync already running for owner {owner_id}, skipping")
            if job_id:
                store.finish_job(job_id, 'failed', error_message='Another sync of this type is running')
            return None

        async with lock:
            logger.info(f"Starting portal sync {sync_type.value} for owner {owner_id} (triggered_by={triggered_by})")
            if job_id:
                store.mark_job_running(job_id)
            try:
                summary = await sync_owner(store, owner_id, sync_type)
            except Exception as e:
                logger.error(
                    f"Portal sync {sync_type.value} for owner {owner_id} failed: {e}",
                    exc_info=not isinstance(e, PortalSyncError),
                )
                try:
                    db.rollback()
                    if job_id:
                        store.finish_job(job_id, 'failed', error_message=str(e))
                except Exception as log_error:
                    logger.error(f"Failed to update sync job {job_id}: {log_error}")
                return None

            if job_id:
                store.finish_job(job_id, 'success', result=summary.to_dict())
            return summary
    finally:
        db.close()


async def run_scheduled_syncs(triggered_by: str = "scheduler"):
    """Daily automatic sync of every type for owners that enabled it."""
    db = SyncSessionLocal()
    try:
        store = PortalStore(db)
        owners = store.list_auto_sync_owners()
        logger.info(f"Scheduled portal sync for {len(owners)} owners")

        for owner_id in owners:
            for sync_type in AUTO_SYNC_ORDER:
                if get_sync_lock(owner_id, sync_type).locked() or store.has_active_job(owner_id, sync_type):
                    logger.info(f"Skipping scheduled {sync_type.value} sync for owner {owner_id}: already running")
                    continue
                job_id = store.create_job(owner_id, sync_type, triggered_by)
                await run_portal_sync(owner_id, sync_type, job_id=job_id, triggered_by=triggered_by)
    finally:
        db.close()


def purge_expired_sessions():
    db = SyncSessionLocal()
    try:
        removed = PortalStore(db).purge_expired_sessions()
        if removed:
            logger.info(f"Purged {removed} expired portal sessions")
    finally:
        db.close()


def cleanup_stale_jobs():
    """Fail jobs a previous process left queued or running."""
    db = SyncSessionLocal()
    try:
        count = PortalStore(db).fail_stale_jobs()
        if count:
            logger.warning(f"Marked {count} stale portal sync jobs as failed")
    finally:
        db.close()
