# tests/test_outbound_writer.py
# Pushing local reservations through the portal booking form

from dataclasses import replace
from datetime import datetime
from urllib.parse import parse_qs, urlparse

import pytest

from services.portal.errors import StaffNotFoundError
from services.portal.outbound_writer import (
    OutboundWriter,
    build_reserve_url,
    portal_reservation_id_from_url,
)
from fakes import FakeElement, FakePage, FakeSessionManager, FakeStore


def staff_head(layout, staff_id, label):
    return FakeElement(
        attrs={"id": f"STAFF_{staff_id}_HEAD"},
        children={layout.schedule.staff_name: FakeElement(inner=label)},
    )


def schedule_page(layout):
    page = FakePage({
        layout.schedule.staff_heads: [
            staff_head(layout, "W000111", "× 佐藤 花子"),
            staff_head(layout, "W000123", "○ 山田 太郎"),
        ],
        layout.booking_form.start_hour: FakeElement(),
    })
    return page


def writer_for(page, layout, store=None):
    store = store or FakeStore()
    return OutboundWriter(FakeSessionManager(page), store, layout, settle_seconds=0, timeout=10), store


class TestStaffResolution:
    """Normalized staff-name match on the schedule screen"""

    @pytest.mark.asyncio
    async def test_decorated_name_matches(self, layout):
        writer, _ = writer_for(schedule_page(layout), layout)
        assert await writer.resolve_staff_id(writer.session_manager.page, "山田　太郎") == "W000123"

    @pytest.mark.asyncio
    async def test_unknown_staff(self, layout):
        writer, _ = writer_for(schedule_page(layout), layout)
        with pytest.raises(StaffNotFoundError) as excinfo:
            await writer.resolve_staff_id(writer.session_manager.page, "高橋 健")
        assert excinfo.value.staff_name == "高橋 健"


class TestBookingForm:
    @pytest.mark.asyncio
    async def test_fills_form(self, layout, outbound_reservation):
        page = schedule_page(layout)
        writer, _ = writer_for(page, layout)
        form = layout.booking_form

        await writer.fill_booking_form(page, outbound_reservation, "W000123")

        assert page.selected[form.start_hour] == "14"
        assert page.selected[form.start_minute] == "30"
        assert page.selected[form.term_hour] == "1"
        assert page.selected[form.term_minute] == "30"
        assert page.selected[form.staff] == "W000123"
        assert page.filled[form.surname] == "鈴木"
        assert page.filled[form.given_name] == "花子"
        assert page.filled[form.surname_kana] == "スズキ"
        assert page.filled[form.given_name_kana] == "ハナコ"
        assert page.filled[form.phone] == "09012345678"
        assert page.filled[form.memo] == "初回"

    @pytest.mark.asyncio
    async def test_whole_hours_leave_minutes_alone(self, layout, outbound_reservation):
        page = schedule_page(layout)
        writer, _ = writer_for(page, layout)
        two_hours = replace(outbound_reservation, end_time=datetime(2024, 10, 31, 16, 30))

        await writer.fill_booking_form(page, two_hours, "W000123")

        assert page.selected[layout.booking_form.term_hour] == "2"
        assert layout.booking_form.term_minute not in page.selected

    @pytest.mark.asyncio
    async def test_non_positive_duration_rejected(self, layout, outbound_reservation):
        page = schedule_page(layout)
        writer, _ = writer_for(page, layout)
        backwards = replace(outbound_reservation, end_time=outbound_reservation.start_time)
        with pytest.raises(ValueError):
            await writer.fill_booking_form(page, backwards, "W000123")


class TestPushReservation:
    """Whole outbound flow; outcome always recorded"""

    @pytest.mark.asyncio
    async def test_success_records_synced(self, layout, credentials, outbound_reservation):
        page = schedule_page(layout)

        def portal_redirect():
            page.url = "https://salonboard.com/KLP/reserve/ext/extReserveDetail/?reserveId=RS0001"

        page.on_click[layout.booking_form.submit_button] = portal_redirect
        writer, store = writer_for(page, layout)

        result = await writer.push_reservation("owner-1", credentials, outbound_reservation)

        assert result.success
        assert result.sync_status == "synced"
        assert result.portal_reservation_id == "RS0001"
        assert store.outbound == [result]
        query = parse_qs(urlparse(page.visited[0]).query)
        assert query["staffId"] == ["W000123"]
        assert query["date"] == ["20241031"]
        assert query["rsvHour"] == ["14"]
        assert page.timeouts == [0]

    @pytest.mark.asyncio
    async def test_unknown_staff_records_failed(self, layout, credentials, outbound_reservation):
        page = schedule_page(layout)
        writer, store = writer_for(page, layout)
        stranger = replace(outbound_reservation, staff_name="高橋 健")

        result = await writer.push_reservation("owner-1", credentials, stranger)

        assert not result.success
        assert result.sync_status == "failed"
        assert "高橋 健" in result.error_message
        assert store.outbound == [result]
        assert layout.booking_form.submit_button not in page.clicks


class TestUrls:
    def test_reserve_url(self, layout):
        url = build_reserve_url(layout, "W000123", datetime(2024, 10, 31, 9, 45), now=datetime(2024, 10, 1, 8, 0, 5))
        query = parse_qs(urlparse(url).query)
        assert url.startswith(layout.url(layout.paths.reserve_register))
        assert query["rsvHour"] == ["09"]
        assert query["rsvMinute"] == ["00"]
        assert query["rlastupdate"] == ["20241001080005"]

    def test_portal_id_from_url(self):
        assert portal_reservation_id_from_url("https://x/?a=1&reserveId=RS9", "reserveId") == "RS9"
        assert portal_reservation_id_from_url("https://x/", "reserveId") is None
