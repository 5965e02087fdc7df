# tests/test_navigator.py
# Calendar and pagination state machines, waits and the retry wrapper

from datetime import date

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from services.portal.errors import (
    CalendarNavigationError,
    NavigationTimeoutError,
    PortalLayoutError,
)
from services.portal.navigator import (
    CalendarState,
    StopReason,
    open_screen,
    paginate_results,
    require_element,
    retry_async,
    select_date_from_calendar,
    select_date_range,
    wait_for,
)
from fakes import FakeElement, FakePage


def calendar_page(layout, year, month):
    """A page whose calendar header advances one month per next-month click."""
    cal = layout.calendar
    shown = {"year": year, "month": month}

    def next_month():
        if shown["month"] == 12:
            shown["year"] += 1
            shown["month"] = 1
        else:
            shown["month"] += 1

    page = FakePage({
        cal.container: FakeElement(),
        cal.year_header: FakeElement(text=lambda: f"{shown['year']}年"),
        cal.month_header: FakeElement(text=lambda: f"{shown['month']}月"),
    })
    page.on_click[cal.next_month] = next_month
    return page, shown


def add_day(page, layout, day):
    anchor = FakeElement()
    page.elements[layout.calendar.day_anchor.format(yyyymmdd=day.strftime('%Y%m%d'))] = anchor
    return anchor


class TestCalendar:
    """Open picker, step forward month by month, click the day"""

    @pytest.mark.asyncio
    async def test_steps_forward_across_new_year(self, layout):
        page, shown = calendar_page(layout, 2024, 11)
        anchor = add_day(page, layout, date(2025, 1, 15))

        state = await select_date_from_calendar(
            page, layout.calendar, layout.calendar.date_from_input, date(2025, 1, 15), max_steps=36
        )

        assert state == CalendarState.DAY_SELECTED
        assert page.clicks.count(layout.calendar.next_month) == 2
        assert page.clicks[0] == layout.calendar.date_from_input
        assert anchor.clicked == 1
        assert (shown["year"], shown["month"]) == (2025, 1)

    @pytest.mark.asyncio
    async def test_current_month_needs_no_steps(self, layout):
        page, _ = calendar_page(layout, 2024, 10)
        add_day(page, layout, date(2024, 10, 31))

        await select_date_from_calendar(page, layout.calendar, layout.calendar.date_to_input, date(2024, 10, 31))

        assert layout.calendar.next_month not in page.clicks

    @pytest.mark.asyncio
    async def test_step_guard(self, layout):
        page, _ = calendar_page(layout, 2024, 10)
        with pytest.raises(CalendarNavigationError, match="within 3 steps"):
            await select_date_from_calendar(
                page, layout.calendar, layout.calendar.date_from_input, date(2026, 1, 1), max_steps=3
            )
        assert page.clicks.count(layout.calendar.next_month) == 3

    @pytest.mark.asyncio
    async def test_target_in_the_past(self, layout):
        page, _ = calendar_page(layout, 2024, 10)
        with pytest.raises(CalendarNavigationError, match="already past"):
            await select_date_from_calendar(
                page, layout.calendar, layout.calendar.date_from_input, date(2024, 9, 30)
            )

    @pytest.mark.asyncio
    async def test_missing_day_anchor_is_layout_error(self, layout):
        page, _ = calendar_page(layout, 2024, 10)
        with pytest.raises(PortalLayoutError):
            await select_date_from_calendar(
                page, layout.calendar, layout.calendar.date_from_input, date(2024, 10, 5)
            )

    @pytest.mark.asyncio
    async def test_unreadable_header(self, layout):
        page, _ = calendar_page(layout, 2024, 10)
        page.elements[layout.calendar.month_header] = FakeElement(text="--")
        with pytest.raises(PortalLayoutError, match="Unreadable"):
            await select_date_from_calendar(
                page, layout.calendar, layout.calendar.date_from_input, date(2024, 10, 5)
            )

    @pytest.mark.asyncio
    async def test_range_picks_both_inputs(self, layout):
        page, _ = calendar_page(layout, 2024, 10)
        add_day(page, layout, date(2024, 10, 31))
        add_day(page, layout, date(2024, 12, 31))

        await select_date_range(page, layout.calendar, date(2024, 10, 31), date(2024, 12, 31))

        assert page.clicks[0] == layout.calendar.date_from_input
        assert layout.calendar.date_to_input in page.clicks

    @pytest.mark.asyncio
    async def test_range_end_before_start(self, layout):
        page, _ = calendar_page(layout, 2024, 10)
        with pytest.raises(ValueError):
            await select_date_range(page, layout.calendar, date(2024, 10, 31), date(2024, 10, 1))


def paged(pages, next_available=None):
    """Page double serving `pages` in order; the next link exists while next_available(index) holds."""
    position = {"index": 0}
    next_available = next_available or (lambda index: True)

    def advance():
        position["index"] += 1

    link = FakeElement(on_click=advance)
    page = FakePage({"a.next": lambda: link if next_available(position["index"]) else None})

    async def extract_page(current):
        index = position["index"]
        return list(pages[index]) if index < len(pages) else []

    return page, extract_page


class TestPagination:
    """Fetch page -> continue -> stop"""

    @pytest.mark.asyncio
    async def test_stops_on_empty_page(self):
        page, extract = paged([["a", "b"], ["c"], []])
        result = await paginate_results(page, extract, "a.next", max_pages=10)
        assert result.records == ["a", "b", "c"]
        assert result.pages_visited == 3
        assert result.stop_reason == StopReason.EMPTY_PAGE

    @pytest.mark.asyncio
    async def test_stops_without_next_link(self):
        page, extract = paged([["a"], ["b"]], next_available=lambda index: index < 1)
        result = await paginate_results(page, extract, "a.next", max_pages=10)
        assert result.records == ["a", "b"]
        assert result.stop_reason == StopReason.NO_NEXT_PAGE

    @pytest.mark.asyncio
    async def test_sentinel_drops_it_and_the_rest(self):
        page, extract = paged([["a", "b"], ["c", "d"], ["e"]])
        result = await paginate_results(page, extract, "a.next", max_pages=10, stop_at=lambda r: r == "c")
        assert result.records == ["a", "b"]
        assert result.pages_visited == 2
        assert result.stop_reason == StopReason.SENTINEL

    @pytest.mark.asyncio
    async def test_page_guard(self):
        page, extract = paged([["x"]] * 50)
        result = await paginate_results(page, extract, "a.next", max_pages=2)
        assert result.pages_visited == 2
        assert result.records == ["x", "x"]
        assert result.stop_reason == StopReason.MAX_PAGES


class TestWaits:
    @pytest.mark.asyncio
    async def test_timeout_mapped(self):
        with pytest.raises(NavigationTimeoutError) as excinfo:
            await wait_for(FakePage(), "#missing", timeout=10)
        assert excinfo.value.selector == "#missing"
        assert excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_open_screen_waits_for_marker(self):
        page = FakePage({"#marker": FakeElement()})
        await open_screen(page, "https://salonboard.com/x", "#marker", timeout=10)
        assert page.visited == ["https://salonboard.com/x"]

    @pytest.mark.asyncio
    async def test_require_element(self):
        with pytest.raises(PortalLayoutError, match="result table"):
            await require_element(FakePage(), "#resultList", "result table")


class TestRetry:
    """Bounded retry of whole extraction calls"""

    @pytest.mark.asyncio
    async def test_retryable_then_success(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise NavigationTimeoutError("slow page")
            return "ok"

        assert await retry_async(flaky, attempts=3, delay=0) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise PortalLayoutError("selector gone")

        with pytest.raises(PortalLayoutError):
            await retry_async(broken, attempts=3, delay=0)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_playwright_timeout_exhausted(self):
        async def always_slow():
            raise PlaywrightTimeoutError("Timeout 30000ms exceeded")

        with pytest.raises(NavigationTimeoutError):
            await retry_async(always_slow, attempts=2, delay=0, description="staff extraction")
