"""
Browser navigation primitives for the portal.

Two explicit state machines live here:

- calendar date selection (open the picker, click "next month" until the
  header shows the target year/month, click the day anchor)
- result pagination (extract a page, follow the "next page" link, stop on an
  empty page, a missing link, a sentinel record or the page guard)

Both are bounded. Timeouts surface as NavigationTimeoutError (retryable),
structurally missing elements as PortalLayoutError (fatal).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from utils.text import parse_int_digits
from .errors import (
    CalendarNavigationError,
    NavigationTimeoutError,
    PortalLayoutError,
    PortalSyncError,
)
from .selectors import CalendarSelectors

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _default_timeout() -> int:
    from config import PORTAL_NAVIGATION_TIMEOUT_MS
    return PORTAL_NAVIGATION_TIMEOUT_MS


async def wait_for(page: Page, selector: str, timeout: Optional[int] = None, state: str = 'visible'):
    """wait_for_selector with the Playwright timeout mapped to NavigationTimeoutError."""
    timeout = timeout if timeout is not None else _default_timeout()
    try:
        return await page.wait_for_selector(selector, state=state, timeout=timeout)
    except PlaywrightTimeoutError as e:
        raise NavigationTimeoutError(
            f"Timed out after {timeout}ms waiting for {selector} ({state})", selector=selector
        ) from e


async def wait_for_settled(page: Page, timeout: Optional[int] = None) -> None:
    """Wait until network activity stops after a click that reloads the page."""
    timeout = timeout if timeout is not None else _default_timeout()
    try:
        await page.wait_for_load_state('networkidle', timeout=timeout)
    except PlaywrightTimeoutError as e:
        raise NavigationTimeoutError(f"Page did not settle within {timeout}ms") from e


async def open_screen(page: Page, url: str, marker: Optional[str] = None, timeout: Optional[int] = None) -> None:
    """Navigate to a portal screen and optionally wait for its marker element."""
    timeout = timeout if timeout is not None else _default_timeout()
    logger.info(f"Opening {url}")
    try:
        await page.goto(url, wait_until='domcontentloaded', timeout=timeout)
    except PlaywrightTimeoutError as e:
        raise NavigationTimeoutError(f"Timed out loading {url}") from e
    if marker:
        await wait_for(page, marker, timeout=timeout)


async def require_element(root, selector: str, description: Optional[str] = None):
    """query_selector that treats absence as a layout change."""
    element = await root.query_selector(selector)
    if element is None:
        raise PortalLayoutError(
            f"Expected element not found: {description or selector}", selector=selector
        )
    return element


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, PlaywrightTimeoutError):
        return True
    return isinstance(error, PortalSyncError) and error.retryable


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
    description: str = 'operation',
) -> T:
    """
    Run `operation` up to `attempts` times, sleeping `delay` seconds between
    tries. Only retryable errors are retried; anything else propagates at once.
    """
    if attempts is None or delay is None:
        from config import PORTAL_RETRY_ATTEMPTS, PORTAL_RETRY_DELAY_SECONDS
        attempts = attempts if attempts is not None else PORTAL_RETRY_ATTEMPTS
        delay = delay if delay is not None else PORTAL_RETRY_DELAY_SECONDS
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt == attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                if isinstance(e, PlaywrightTimeoutError):
                    raise NavigationTimeoutError(f"{description} timed out: {e}") from e
                raise
            logger.warning(f"{description} attempt {attempt}/{attempts} failed, retrying in {delay}s: {e}")
            await asyncio.sleep(delay)


# ============================================
# CALENDAR
# ============================================

class CalendarState(str, Enum):
    CLOSED = 'closed'
    BROWSING = 'browsing'
    TARGET_REACHED = 'target_reached'
    DAY_SELECTED = 'day_selected'


async def read_displayed_month(page: Page, selectors: CalendarSelectors) -> Tuple[int, int]:
    """Year and month currently shown in the calendar header, e.g. ('2024', '10月')."""
    year_el = await require_element(page, selectors.year_header, 'calendar year header')
    month_el = await require_element(page, selectors.month_header, 'calendar month header')
    year = parse_int_digits(await year_el.text_content())
    month = parse_int_digits(await month_el.text_content())
    if year <= 0 or not 1 <= month <= 12:
        raise PortalLayoutError(
            f"Unreadable calendar header: year={year} month={month}", selector=selectors.year_header
        )
    return year, month


async def select_date_from_calendar(
    page: Page,
    selectors: CalendarSelectors,
    input_selector: str,
    target: date,
    max_steps: Optional[int] = None,
    timeout: Optional[int] = None,
) -> CalendarState:
    """
    Open the date picker behind `input_selector` and pick `target`.

    Raises:
        CalendarNavigationError: the step guard was exhausted, or the calendar
            already shows a month after the target (it only moves forward)
        PortalLayoutError: header or day anchor missing
    """
    if max_steps is None:
        from config import PORTAL_CALENDAR_MAX_STEPS
        max_steps = PORTAL_CALENDAR_MAX_STEPS

    wanted = (target.year, target.month)
    state = CalendarState.CLOSED
    steps = 0

    while state != CalendarState.DAY_SELECTED:
        if state == CalendarState.CLOSED:
            await page.click(input_selector)
            await wait_for(page, selectors.container, timeout=timeout, state='visible')
            state = CalendarState.BROWSING

        elif state == CalendarState.BROWSING:
            shown = await read_displayed_month(page, selectors)
            if shown == wanted:
                state = CalendarState.TARGET_REACHED
                continue
            if shown > wanted:
                raise CalendarNavigationError(
                    f"Calendar shows {shown[0]}/{shown[1]:02d}, already past target {target.isoformat()}",
                    selector=selectors.month_header,
                )
            if steps >= max_steps:
                raise CalendarNavigationError(
                    f"Calendar did not reach {target.isoformat()} within {max_steps} steps "
                    f"(last shown {shown[0]}/{shown[1]:02d})",
                    selector=selectors.next_month,
                )
            await page.click(selectors.next_month)
            steps += 1
            await page.wait_for_timeout(100)

        elif state == CalendarState.TARGET_REACHED:
            anchor = selectors.day_anchor.format(yyyymmdd=target.strftime('%Y%m%d'))
            day_link = await require_element(page, anchor, f"calendar day {target.isoformat()}")
            await day_link.click()
            state = CalendarState.DAY_SELECTED

    logger.debug(f"Selected {target.isoformat()} after {steps} month steps")
    return state


async def select_date_range(
    page: Page,
    selectors: CalendarSelectors,
    start: date,
    end: date,
    max_steps: Optional[int] = None,
    timeout: Optional[int] = None,
) -> None:
    """Pick the start date, wait for the picker to close, then the end date."""
    if end < start:
        raise ValueError(f"Date range end {end} is before start {start}")

    for input_selector, target in ((selectors.date_from_input, start), (selectors.date_to_input, end)):
        await select_date_from_calendar(page, selectors, input_selector, target, max_steps=max_steps, timeout=timeout)
        await wait_for(page, selectors.container, timeout=timeout, state='hidden')

    logger.info(f"Date range set: {start.isoformat()} - {end.isoformat()}")


# ============================================
# PAGINATION
# ============================================

class PageState(str, Enum):
    FETCH_PAGE = 'fetch_page'
    CONTINUE = 'continue'
    STOP = 'stop'


class StopReason(str, Enum):
    EMPTY_PAGE = 'empty_page'
    NO_NEXT_PAGE = 'no_next_page'
    SENTINEL = 'sentinel'
    MAX_PAGES = 'max_pages'


@dataclass
class PaginationResult:
    records: List = field(default_factory=list)
    pages_visited: int = 0
    stop_reason: Optional[StopReason] = None


async def paginate_results(
    page: Page,
    extract_page: Callable[[Page], Awaitable[List]],
    next_selector: str,
    max_pages: Optional[int] = None,
    stop_at: Optional[Callable[[object], bool]] = None,
    timeout: Optional[int] = None,
) -> PaginationResult:
    """
    Walk the result pages.

    Args:
        page: page showing the first result page
        extract_page: coroutine returning the records of the current page
        next_selector: "next page" link; absence ends the walk
        max_pages: page guard (defaults to PORTAL_MAX_RESULT_PAGES)
        stop_at: sentinel predicate; the first matching record and everything
            after it are dropped and the walk stops

    Returns:
        PaginationResult with all collected records and why the walk stopped
    """
    if max_pages is None:
        from config import PORTAL_MAX_RESULT_PAGES
        max_pages = PORTAL_MAX_RESULT_PAGES

    result = PaginationResult()
    state = PageState.FETCH_PAGE

    while state != PageState.STOP:
        if state == PageState.FETCH_PAGE:
            page_records = await extract_page(page)
            result.pages_visited += 1
            logger.info(f"Result page {result.pages_visited}: {len(page_records)} records")

            if not page_records:
                result.stop_reason = StopReason.EMPTY_PAGE
                state = PageState.STOP
                continue

            if stop_at is not None:
                hit = next((i for i, r in enumerate(page_records) if stop_at(r)), None)
                if hit is not None:
                    result.records.extend(page_records[:hit])
                    result.stop_reason = StopReason.SENTINEL
                    state = PageState.STOP
                    continue

            result.records.extend(page_records)
            state = PageState.CONTINUE

        elif state == PageState.CONTINUE:
            if result.pages_visited >= max_pages:
                logger.warning(f"Stopping pagination at page guard ({max_pages} pages)")
                result.stop_reason = StopReason.MAX_PAGES
                state = PageState.STOP
                continue

            next_link = await page.query_selector(next_selector)
            if next_link is None:
                result.stop_reason = StopReason.NO_NEXT_PAGE
                state = PageState.STOP
                continue

            await next_link.click()
            await wait_for_settled(page, timeout=timeout)
            state = PageState.FETCH_PAGE

    logger.info(
        f"Pagination finished: {len(result.records)} records, "
        f"{result.pages_visited} pages, reason={result.stop_reason.value}"
    )
    return result
