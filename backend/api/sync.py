"""
Portal Sync API endpoints
"""
import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, BackgroundTasks, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from database import get_db
from auth import get_current_owner
from services.portal.base import SyncType

logger = logging.getLogger(__name__)
router = APIRouter()


def parse_sync_type(sync_type: str) -> SyncType:
    try:
        return SyncType(sync_type)
    except ValueError:
        allowed = ", ".join(t.value for t in SyncType)
        raise HTTPException(status_code=400, detail=f"Invalid sync type '{sync_type}'. Must be one of: {allowed}")


@router.get("/status")
async def get_sync_status(
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """
    Last sync log and last job per sync type for the current owner.
    """
    logs = await db.execute(
        text("""
            SELECT DISTINCT ON (sync_type)
                sync_type, synced_at, data_hash, items_processed, items_updated,
                items_added, items_deactivated
            FROM portal_sync_logs
            WHERE owner_id = :owner_id
            ORDER BY sync_type, synced_at DESC
        """),
        {"owner_id": current_owner["id"]}
    )
    jobs = await db.execute(
        text("""
            SELECT DISTINCT ON (sync_type)
                sync_type, id, status, created_at, completed_at, error_message
            FROM portal_sync_jobs
            WHERE owner_id = :owner_id
            ORDER BY sync_type, created_at DESC
        """),
        {"owner_id": current_owner["id"]}
    )
    last_logs = {row.sync_type: row for row in logs.fetchall()}
    last_jobs = {row.sync_type: row for row in jobs.fetchall()}

    summary = {}
    for sync_type in SyncType:
        log = last_logs.get(sync_type.value)
        job = last_jobs.get(sync_type.value)
        summary[sync_type.value] = {
            "last_sync": log.synced_at if log else None,
            "data_hash": log.data_hash if log else None,
            "items_processed": log.items_processed if log else None,
            "items_updated": log.items_updated if log else None,
            "items_added": log.items_added if log else None,
            "items_deactivated": log.items_deactivated if log else None,
            "last_job": {
                "job_id": str(job.id),
                "status": job.status,
                "created_at": job.created_at,
                "completed_at": job.completed_at,
                "error_message": job.error_message,
            } if job else None,
        }
    return summary


@router.get("/logs")
async def get_sync_logs(
    sync_type: Optional[str] = Query(None, description="Filter by sync type: reservations, menus, staff, coupons"),
    limit: int = Query(20, ge=1, le=500, description="Number of logs to return"),
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """
    Recent sync audit rows for the current owner.
    """
    query = """
        SELECT
            id, sync_type, synced_at, data_hash,
            items_processed, items_updated, items_added, items_deactivated, items_skipped,
            last_sync_time, last_reservation_id
        FROM portal_sync_logs
        WHERE owner_id = :owner_id
    """
    params = {"owner_id": current_owner["id"], "limit": limit}

    if sync_type:
        query += " AND sync_type = :sync_type"
        params["sync_type"] = parse_sync_type(sync_type).value

    query += " ORDER BY synced_at DESC LIMIT :limit"

    result = await db.execute(text(query), params)
    rows = result.fetchall()

    return [
        {
            "id": row.id,
            "sync_type": row.sync_type,
            "synced_at": row.synced_at,
            "data_hash": row.data_hash,
            "items_processed": row.items_processed,
            "items_updated": row.items_updated,
            "items_added": row.items_added,
            "items_deactivated": row.items_deactivated,
            "items_skipped": row.items_skipped,
            "last_sync_time": row.last_sync_time,
            "last_reservation_id": row.last_reservation_id,
        }
        for row in rows
    ]


@router.get("/jobs/{job_id}")
async def get_sync_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """
    Poll one sync job.
    """
    result = await db.execute(
        text("""
            SELECT id, sync_type, status, triggered_by, created_at, started_at,
                   completed_at, result, error_message
            FROM portal_sync_jobs
            WHERE id = :job_id AND owner_id = :owner_id
        """),
        {"job_id": job_id, "owner_id": current_owner["id"]}
    )
    row = result.fetchone()

    if not row:
        raise HTTPException(status_code=404, detail="Sync job not found")

    return {
        "job_id": str(row.id),
        "sync_type": row.sync_type,
        "status": row.status,
        "triggered_by": row.triggered_by,
        "created_at": row.created_at,
        "started_at": row.started_at,
        "completed_at": row.completed_at,
        "result": row.result,
        "error_message": row.error_message,
    }


@router.post("/{sync_type}", status_code=status.HTTP_202_ACCEPTED)
async def trigger_portal_sync(
    sync_type: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """
    Trigger a portal sync for the current owner.
    Runs in background; poll GET /sync/jobs/{job_id} for the outcome.
    """
    from jobs.portal_sync import run_portal_sync

    parsed = parse_sync_type(sync_type)
    owner_id = current_owner["id"]

    creds = await db.execute(
        text("SELECT 1 FROM portal_credentials WHERE owner_id = :owner_id"),
        {"owner_id": owner_id}
    )
    if not creds.fetchone():
        raise HTTPException(status_code=404, detail="Portal credentials not configured")

    active = await db.execute(
        text("""
            SELECT id FROM portal_sync_jobs
            WHERE owner_id = :owner_id AND sync_type = :sync_type
              AND status IN ('queued', 'running')
            LIMIT 1
        """),
        {"owner_id": owner_id, "sync_type": parsed.value}
    )
    running = active.fetchone()
    if running:
        raise HTTPException(
            status_code=409,
            detail=f"A {parsed.value} sync is already in progress (job {running.id})"
        )

    job_id = str(uuid.uuid4())
    triggered_by = f"user:{current_owner['username']}"
    try:
        await db.execute(
            text("""
                INSERT INTO portal_sync_jobs (id, owner_id, sync_type, status, triggered_by, created_at)
                VALUES (:job_id, :owner_id, :sync_type, 'queued', :triggered_by, NOW())
            """),
            {"job_id": job_id, "owner_id": owner_id, "sync_type": parsed.value, "triggered_by": triggered_by}
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail=f"A {parsed.value} sync is already in progress")

    background_tasks.add_task(
        run_portal_sync,
        owner_id=owner_id,
        sync_type=parsed.value,
        job_id=job_id,
        triggered_by=triggered_by
    )
    logger.info(f"Queued {parsed.value} sync job {job_id} for owner {owner_id}")

    return {
        "status": "queued",
        "job_id": job_id,
        "sync_type": parsed.value,
        "message": f"Sync started in background. Monitor progress at /sync/jobs/{job_id}"
    }
