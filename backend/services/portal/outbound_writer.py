"""
Outbound path: push one locally created reservation into the portal's own
booking form.
"""
import logging
import re
from datetime import datetime
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

from playwright.async_api import Page

from utils.text import normalize_person_name, split_person_name
from .base import OutboundReservation, OutboundResult, PortalCredentials
from .errors import PortalSyncError, StaffNotFoundError
from .navigator import open_screen
from .selectors import PortalLayout

logger = logging.getLogger(__name__)


def build_reserve_url(layout: PortalLayout, staff_id: str, start: datetime, now: Optional[datetime] = None) -> str:
    """Deep link into the registration form for one staff member and hour."""
    now = now or datetime.now()
    params = {
        'staffId': staff_id,
        'date': start.strftime('%Y%m%d'),
        'rsvHour': start.strftime('%H'),
        'rsvMinute': '00',
        'rlastupdate': now.strftime('%Y%m%d%H%M%S'),
    }
    return f"{layout.url(layout.paths.reserve_register)}?{urlencode(params)}"


def portal_reservation_id_from_url(url: str, param: str) -> Optional[str]:
    values = parse_qs(urlparse(url or '').query).get(param)
    return values[0] if values else None


class OutboundWriter:
    """
    Submits reservations through the portal booking form.

    Args:
        session_manager: SessionManager used to open an authenticated context
        store: persistence with `record_outbound_status(result)`
        layout: selector maps
        settle_seconds: fixed wait after submitting (portal gives no signal)
    """

    def __init__(self, session_manager, store, layout: PortalLayout,
                 settle_seconds: Optional[int] = None, timeout: Optional[int] = None):
        from config import PORTAL_OUTBOUND_SETTLE_SECONDS
        self.session_manager = session_manager
        self.store = store
        self.layout = layout
        self.settle_seconds = settle_seconds if settle_seconds is not None else PORTAL_OUTBOUND_SETTLE_SECONDS
        self.timeout = timeout

    async def resolve_staff_id(self, page: Page, staff_name: str) -> str:
        """
        Find the portal staff id on the schedule screen by normalized name.

        Raises:
            StaffNotFoundError: no staff header matches
        """
        sel = self.layout.schedule
        wanted = normalize_person_name(staff_name)
        heads = await page.query_selector_all(sel.staff_heads)

        for head in heads:
            name_el = await head.query_selector(sel.staff_name)
            if name_el is None:
                continue
            if normalize_person_name(await name_el.inner_text()) != wanted:
                continue
            staff_id = self._staff_id_from_head(await head.get_attribute('id'))
            if staff_id:
                return staff_id
            logger.warning(f"Staff {staff_name!r} matched but has no parsable id")

        raise StaffNotFoundError(staff_name)

    def _staff_id_from_head(self, element_id: Optional[str]) -> Optional[str]:
        match = re.search(self.layout.schedule.staff_id_pattern, element_id or '')
        return match.group(1) if match else None

    async def fill_booking_form(self, page: Page, reservation: OutboundReservation, staff_id: str) -> None:
        sel = self.layout.booking_form
        duration = reservation.duration_minutes
        if duration <= 0:
            raise ValueError(f"Reservation {reservation.reservation_id} ends before it starts")
        hours, minutes = divmod(duration, 60)

        await page.select_option(sel.start_hour, reservation.start_time.strftime('%H'))
        await page.select_option(sel.start_minute, reservation.start_time.strftime('%M'))
        if minutes != 0:
            await page.select_option(sel.term_minute, str(minutes))
        await page.select_option(sel.term_hour, str(hours))
        await page.select_option(sel.staff, staff_id)

        kana_surname, kana_given = split_person_name(reservation.customer_kana)
        surname, given = split_person_name(reservation.customer_name)
        await page.fill(sel.surname_kana, kana_surname)
        await page.fill(sel.given_name_kana, kana_given)
        await page.fill(sel.surname, surname)
        await page.fill(sel.given_name, given)
        await page.fill(sel.phone, reservation.phone or '')
        if reservation.memo:
            await page.fill(sel.memo, reservation.memo)

    async def submit(self, page: Page) -> Optional[str]:
        """Click register, wait for the portal to settle, return its reservation id if shown."""
        sel = self.layout.booking_form
        await page.click(sel.submit_button)
        logger.info(f"Booking form submitted, waiting {self.settle_seconds}s for the portal to settle")
        await page.wait_for_timeout(self.settle_seconds * 1000)
        return portal_reservation_id_from_url(page.url, sel.reserve_id_param)

    async def push_reservation(self, owner_id: str, credentials: PortalCredentials,
                               reservation: OutboundReservation) -> OutboundResult:
        """
        Run the whole outbound flow for one reservation.

        Never raises for portal-side failures: the outcome is recorded on the
        reservation's sync-status row and returned.
        """
        logger.info(f"Pushing reservation {reservation.reservation_id} to portal for owner {owner_id}")
        schedule_url = self.layout.url(self.layout.paths.schedule)
        try:
            async with self.session_manager.session(
                owner_id, credentials, schedule_url, self.layout.schedule.staff_heads
            ) as auth:
                staff_id = await self.resolve_staff_id(auth.page, reservation.staff_name)
                url = build_reserve_url(self.layout, staff_id, reservation.start_time)
                await open_screen(auth.page, url, self.layout.booking_form.start_hour, timeout=self.timeout)
                await self.fill_booking_form(auth.page, reservation, staff_id)
                portal_id = await self.submit(auth.page)
            result = OutboundResult(
                reservation_id=reservation.reservation_id,
                success=True,
                portal_reservation_id=portal_id,
            )
            logger.info(f"Reservation {reservation.reservation_id} pushed (portal id: {portal_id})")
        except Exception as e:
            logger.error(
                f"Failed to push reservation {reservation.reservation_id}: {e}",
                exc_info=not isinstance(e, PortalSyncError),
            )
            result = OutboundResult(
                reservation_id=reservation.reservation_id,
                success=False,
                error_message=str(e)[:500],
            )

        self.store.record_outbound_status(result)
        return result
