"""
Outbound reservation endpoints - push local reservations into the portal
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from sqlalchemy.orm import Session

from database import get_db, get_sync_db
from auth import get_current_owner
from services.portal import OutboundWriter, SessionManager, default_layout, open_portal_browser
from services.portal.base import OutboundReservation, OutboundResult, PortalCredentials
from services.portal.errors import CredentialsNotFoundError
from services.portal_store import PortalStore

logger = logging.getLogger(__name__)
router = APIRouter()


def get_portal_store(db: Session = Depends(get_sync_db)) -> PortalStore:
    """Store on the sync engine, closed after the request"""
    return PortalStore(db)


async def push_to_portal(store: PortalStore, owner_id: str, credentials: PortalCredentials,
                         reservation: OutboundReservation) -> OutboundResult:
    layout = default_layout()
    async with open_portal_browser() as browser:
        writer = OutboundWriter(SessionManager(store, browser, layout), store, layout)
        return await writer.push_reservation(owner_id, credentials, reservation)


@router.post("/reservations/{reservation_id}/push")
async def push_reservation(
    reservation_id: str,
    store: PortalStore = Depends(get_portal_store),
    current_owner: dict = Depends(get_current_owner)
):
    """
    Submit one local reservation through the portal booking form.

    Runs synchronously (including the portal settle wait). Returns 200 when
    the portal accepted it and 502 otherwise; either way the outcome is
    stored on the reservation's sync status.
    """
    owner_id = current_owner["id"]
    reservation = store.get_outbound_reservation(owner_id, reservation_id)
    if reservation is None:
        raise HTTPException(status_code=404, detail="Reservation not found")

    try:
        credentials = store.get_credentials(owner_id)
    except CredentialsNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    result = await push_to_portal(store, owner_id, credentials, reservation)
    body = {
        "reservation_id": result.reservation_id,
        "sync_status": result.sync_status,
        "portal_reservation_id": result.portal_reservation_id,
        "error_message": result.error_message,
        "attempted_at": result.attempted_at.isoformat(),
    }
    return JSONResponse(status_code=200 if result.success else 502, content=body)


@router.get("/reservations/{reservation_id}/status")
async def get_outbound_status(
    reservation_id: str,
    db: AsyncSession = Depends(get_db),
    current_owner: dict = Depends(get_current_owner)
):
    """Last outbound push outcome for one reservation."""
    result = await db.execute(
        text("""
            SELECT s.reservation_id, s.sync_status, s.portal_reservation_id,
                   s.last_sync_attempt, s.error_message
            FROM portal_reservation_sync s
            JOIN reservations r ON r.id = s.reservation_id
            WHERE s.reservation_id = :reservation_id AND r.owner_id = :owner_id
        """),
        {"reservation_id": reservation_id, "owner_id": current_owner["id"]}
    )
    row = result.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="No outbound sync recorded for this reservation")

    return {
        "reservation_id": str(row.reservation_id),
        "sync_status": row.sync_status,
        "portal_reservation_id": row.portal_reservation_id,
        "last_sync_attempt": row.last_sync_attempt,
        "error_message": row.error_message,
    }
