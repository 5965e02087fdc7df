"""
Field extractors: one portal screen's DOM -> typed records.

Every field is read independently. A missing element gives the field its
default and records an ExtractionFieldWarning on the ExtractionReport; a row
that raises is skipped. Only a page where every row misses every field is
treated as a layout change.
"""
import logging
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Tuple

from playwright.async_api import Page

from utils.text import clean_text, parse_int_digits
from .base import (
    CouponRecord,
    MenuItemRecord,
    ReservationRecord,
    SalonType,
    StaffRecord,
)
from .errors import ExtractionFieldWarning, NavigationTimeoutError, PortalLayoutError, PortalSyncError
from .navigator import (
    open_screen,
    paginate_results,
    require_element,
    select_date_range,
    wait_for,
    wait_for_settled,
)
from .selectors import PortalLayout, ReservationRowSelectors

logger = logging.getLogger(__name__)

_DATE_PATTERN = re.compile(r'(?:(\d{4})/)?(\d{1,2})/(\d{1,2})')
_TIME_PATTERN = re.compile(r'(\d{1,2}):(\d{2})')
_ID_BRACKETS = re.compile(r'[()（）]')


class ExtractionReport:
    """Per-extraction bookkeeping of rows and missing fields."""

    def __init__(self, record_type: str):
        self.record_type = record_type
        self.rows_seen = 0
        self.rows_extracted = 0
        self.rows_skipped = 0
        self.blank_rows = 0
        self.missing = Counter()
        self.warnings: List[ExtractionFieldWarning] = []

    def field_missing(self, field_name: str, detail: str, row_index: Optional[int] = None):
        warning = ExtractionFieldWarning(self.record_type, field_name, detail, row_index)
        self.missing[field_name] += 1
        self.warnings.append(warning)
        logger.warning(f"Extraction warning: {warning}")

    def row_failed(self, row_index: int, error: Exception):
        self.rows_skipped += 1
        self.field_missing('*', f"row skipped: {error}", row_index)

    def check_layout(self):
        """
        Raises:
            PortalLayoutError: rows were present but none yielded a single field
        """
        if self.rows_seen and self.blank_rows == self.rows_seen:
            raise PortalLayoutError(
                f"No {self.record_type} field could be read from {self.rows_seen} rows; "
                f"portal layout has likely changed (missing: {dict(self.missing)})"
            )

    def summary(self) -> dict:
        return {
            'record_type': self.record_type,
            'rows_seen': self.rows_seen,
            'rows_extracted': self.rows_extracted,
            'rows_skipped': self.rows_skipped,
            'missing_fields': dict(self.missing),
        }


@dataclass
class ExtractionResult:
    records: List = field(default_factory=list)
    report: Optional[ExtractionReport] = None
    pages_visited: int = 1


class FieldReader:
    """Reads individual fields below one root element, defaulting on absence."""

    def __init__(self, root, report: ExtractionReport, row_index: Optional[int] = None):
        self.root = root
        self.report = report
        self.row_index = row_index
        self.found = 0
        self.missed = 0

    @property
    def all_missing(self) -> bool:
        return self.found == 0 and self.missed > 0

    async def element(self, field_name: str, selector: str):
        element = await self.root.query_selector(selector)
        if element is None:
            self.missed += 1
            self.report.field_missing(field_name, f"no element for {selector}", self.row_index)
        else:
            self.found += 1
        return element

    def missing(self, field_name: str, detail: str):
        self.missed += 1
        self.report.field_missing(field_name, detail, self.row_index)

    async def text(self, field_name: str, selector: str) -> str:
        element = await self.element(field_name, selector)
        if element is None:
            return ''
        return clean_text(await element.text_content())

    async def texts(self, field_name: str, selector: str) -> List[str]:
        elements = await self.root.query_selector_all(selector)
        if not elements:
            self.missing(field_name, f"no elements for {selector}")
            return []
        self.found += 1
        values = [clean_text(await el.text_content()) for el in elements]
        return [v for v in values if v]

    async def value(self, field_name: str, selector: str) -> str:
        element = await self.element(field_name, selector)
        if element is None:
            return ''
        return (await element.input_value() or '').strip()

    async def integer(self, field_name: str, selector: str, from_value: bool = False) -> int:
        raw = await (self.value(field_name, selector) if from_value else self.text(field_name, selector))
        return parse_int_digits(raw)

    async def checked(self, field_name: str, selector: str) -> bool:
        element = await self.element(field_name, selector)
        if element is None:
            return False
        return bool(await element.is_checked())

    async def selected_text(self, field_name: str, selector: str) -> str:
        element = await self.element(field_name, selector)
        if element is None:
            return ''
        option = await element.query_selector('option:checked')
        if option is None:
            return ''
        return clean_text(await option.text_content())

    async def attribute(self, field_name: str, selector: str, name: str) -> Optional[str]:
        element = await self.element(field_name, selector)
        if element is None:
            return None
        value = await element.get_attribute(name)
        return value.strip() if value else None


# ============================================
# RESERVATIONS
# ============================================

def infer_reservation_datetime(date_text: str, time_text: str, range_start: date) -> Optional[datetime]:
    """
    Build a timestamp from the list's 'MM/DD' and 'HH:MM' cells.

    The year is taken from the text when present, otherwise from the search
    range start; a month earlier than the start month belongs to the next
    year (the range crossed New Year).
    """
    date_match = _DATE_PATTERN.search(unicodedata.normalize('NFKC', date_text or ''))
    time_match = _TIME_PATTERN.search(unicodedata.normalize('NFKC', time_text or ''))
    if not date_match or not time_match:
        return None

    month, day = int(date_match.group(2)), int(date_match.group(3))
    if date_match.group(1):
        year = int(date_match.group(1))
    else:
        year = range_start.year + 1 if month < range_start.month else range_start.year

    try:
        return datetime(year, month, day, int(time_match.group(1)), int(time_match.group(2)))
    except ValueError:
        return None


def split_date_time_cell(text: str) -> Tuple[str, str]:
    """'10/31\\n10:00' -> ('10/31', '10:00'); either part may be ''."""
    normalized = unicodedata.normalize('NFKC', text or '')
    date_match = _DATE_PATTERN.search(normalized)
    if not date_match:
        time_match = _TIME_PATTERN.search(normalized)
        return '', time_match.group(0) if time_match else ''
    time_match = _TIME_PATTERN.search(normalized, date_match.end())
    return date_match.group(0), time_match.group(0) if time_match else ''


async def read_reservation_row(
    row,
    selectors: ReservationRowSelectors,
    report: ExtractionReport,
    row_index: int,
    range_start: date,
) -> Tuple[ReservationRecord, bool]:
    """Returns the record and whether every field was missing."""
    reader = FieldReader(row, report, row_index)
    record = ReservationRecord()

    date_time = await reader.element('date_time', selectors.date_time)
    if date_time is not None:
        record.date_text, record.time_text = split_date_time_cell(await date_time.inner_text())
        if not record.date_text:
            reader.missing('date', 'date cell has no MM/DD value')

    record.status = await reader.text('status', selectors.status)
    record.customer_name = await reader.text('customer_name', selectors.customer_name)
    record.reservation_id = _ID_BRACKETS.sub('', await reader.text('reservation_id', selectors.reservation_id)).strip()
    record.staff_name = await reader.text('staff_name', selectors.staff)
    record.booking_channel = await reader.text('booking_channel', selectors.booking_channel)
    if selectors.menu_is_list:
        record.menu = ', '.join(await reader.texts('menu', selectors.menu))
    else:
        record.menu = await reader.text('menu', selectors.menu)
    record.points_used = await reader.integer('points_used', selectors.points_used)
    record.payment_method = await reader.text('payment_method', selectors.payment_method)
    record.amount = await reader.integer('amount', selectors.amount)

    record.reserved_at = infer_reservation_datetime(record.date_text, record.time_text, range_start)
    return record, reader.all_missing


async def extract_reservation_page(
    page: Page,
    layout: PortalLayout,
    salon_type,
    range_start: date,
    report: ExtractionReport,
) -> List[ReservationRecord]:
    """All reservation rows of the currently displayed result page."""
    row_selectors = layout.reservation_row_selectors(salon_type)
    rows = await page.query_selector_all(layout.reservation_list.rows)
    page_report = ExtractionReport(report.record_type)
    records = []

    for index, row in enumerate(rows):
        # message rows ("no results") span a single cell
        if len(await row.query_selector_all('td')) < 2:
            continue
        page_report.rows_seen += 1
        try:
            record, blank = await read_reservation_row(row, row_selectors, page_report, index, range_start)
        except PortalSyncError:
            raise
        except Exception as e:
            logger.warning(f"Skipping reservation row {index}: {e}")
            page_report.row_failed(index, e)
            continue
        if blank:
            page_report.blank_rows += 1
            continue
        page_report.rows_extracted += 1
        records.append(record)

    _merge_report(report, page_report)
    page_report.check_layout()
    return records


async def extract_reservations(
    page: Page,
    layout: PortalLayout,
    salon_type,
    start: date,
    end: date,
    stop_at_reservation_id: Optional[str] = None,
    timeout: Optional[int] = None,
    max_pages: Optional[int] = None,
) -> ExtractionResult:
    """
    Search the reservation list for [start, end] and read every result page.

    Args:
        stop_at_reservation_id: optional last-seen id; pagination stops when
            it is found and it plus everything after it is dropped
    """
    salon_type = SalonType(salon_type)
    report = ExtractionReport('reservation')
    list_selectors = layout.reservation_list

    await open_screen(page, layout.url(layout.paths.reservation_list), list_selectors.screen_marker, timeout=timeout)
    await select_date_range(page, layout.calendar, start, end, timeout=timeout)
    await page.wait_for_timeout(1000)
    await page.click(list_selectors.search_button)
    await wait_for_settled(page, timeout=timeout)
    await require_element(page, list_selectors.result_table, 'reservation result table')

    async def extract_page(current: Page) -> List[ReservationRecord]:
        return await extract_reservation_page(current, layout, salon_type, start, report)

    stop_at = None
    if stop_at_reservation_id:
        stop_at = lambda record: record.reservation_id == stop_at_reservation_id  # noqa: E731

    pages = await paginate_results(
        page, extract_page, list_selectors.next_page,
        max_pages=max_pages, stop_at=stop_at, timeout=timeout,
    )
    logger.info(
        f"Extracted {len(pages.records)} reservations ({salon_type.value}) "
        f"from {pages.pages_visited} pages, {report.rows_skipped} rows skipped"
    )
    return ExtractionResult(records=pages.records, report=report, pages_visited=pages.pages_visited)


def _merge_report(target: ExtractionReport, page_report: ExtractionReport):
    target.rows_seen += page_report.rows_seen
    target.rows_extracted += page_report.rows_extracted
    target.rows_skipped += page_report.rows_skipped
    target.blank_rows += page_report.blank_rows
    target.missing.update(page_report.missing)
    target.warnings.extend(page_report.warnings)


# ============================================
# MENUS
# ============================================

async def extract_menus(page: Page, layout: PortalLayout, timeout: Optional[int] = None) -> ExtractionResult:
    """Read every visible menu table of the menu edit form."""
    sel = layout.menu
    report = ExtractionReport('menu')

    await wait_for(page, sel.form, timeout=timeout)
    await wait_for(page, sel.tables, timeout=timeout, state='attached')
    tables = await page.query_selector_all(sel.tables)
    logger.info(f"Found {len(tables)} visible menu tables")

    records: List[MenuItemRecord] = []
    for i, table in enumerate(tables):
        report.rows_seen += 1
        try:
            table_id = await table.get_attribute('id') or ''
            digits = table_id.replace(sel.table_id_prefix, '', 1)
            if not table_id.startswith(sel.table_id_prefix) or not digits.isdigit():
                report.blank_rows += 1
                report.row_failed(i, ValueError(f"unexpected menu table id {table_id!r}"))
                continue
            index = digits.zfill(3)

            reader = FieldReader(table, report, i)
            record = MenuItemRecord(
                name=await reader.text('name', sel.name.format(index=index)),
                category=await reader.value('category', sel.category.format(index=index)),
                description=await reader.text('description', sel.description.format(index=index)),
                price=await reader.integer('price', sel.price.format(index=index), from_value=True),
                duration=await reader.integer('duration', sel.duration.format(index=index), from_value=True),
                is_reservable=await reader.checked('is_reservable', sel.reservable_checkbox.format(index=index)),
                is_published=await reader.checked('is_published', sel.published_checkbox.format(index=index)),
                search_category=await reader.selected_text('search_category', sel.search_category.format(index=index)),
            )
        except PortalSyncError:
            raise
        except Exception as e:
            logger.warning(f"Skipping menu table {i}: {e}")
            report.row_failed(i, e)
            continue

        if reader.all_missing:
            report.blank_rows += 1
            continue
        if not record.name:
            report.rows_skipped += 1
            report.field_missing('name', 'empty menu name, row skipped', i)
            continue
        report.rows_extracted += 1
        records.append(record)

    report.check_layout()
    return ExtractionResult(records=records, report=report)


# ============================================
# STAFF
# ============================================

async def read_staff_row(row, layout: PortalLayout, report: ExtractionReport, row_index: int) -> Tuple[StaffRecord, bool]:
    sel = layout.staff
    reader = FieldReader(row, report, row_index)
    cells = await row.query_selector_all(sel.cells)

    async def cell_text(field_name: str, position: int) -> str:
        if position >= len(cells):
            reader.missing(field_name, f"row has {len(cells)} cells, expected index {position}")
            return ''
        reader.found += 1
        return clean_text(await cells[position].text_content())

    name = await cell_text('name', sel.name_cell_index)
    role = await cell_text('role', sel.role_cell_index)
    experience = await cell_text('experience', sel.experience_cell_index)
    image = await reader.attribute('image', sel.photo, 'src')

    description = None
    description_el = await row.query_selector(sel.description)
    if description_el is not None:
        description = clean_text(await description_el.text_content()) or None

    sort_input = await reader.element('sort_order', sel.sort_order)
    sort_order = parse_int_digits(await sort_input.input_value()) if sort_input is not None else 0

    row_class = await row.get_attribute('class') or ''
    record = StaffRecord(
        name=name,
        role=role,
        experience=None if experience in ('', sel.experience_placeholder) else experience,
        is_published=sel.unpublished_class not in row_class.split(),
        image=image or None,
        description=description,
        sort_order=sort_order,
    )
    return record, reader.all_missing


async def extract_staff(page: Page, layout: PortalLayout, timeout: Optional[int] = None) -> ExtractionResult:
    """Read the staff list; duplicate names keep their first row."""
    report = ExtractionReport('staff')
    await wait_for(page, layout.staff.rows, timeout=timeout, state='attached')
    rows = await page.query_selector_all(layout.staff.rows)
    logger.info(f"Found {len(rows)} staff rows")

    records: List[StaffRecord] = []
    seen = set()
    for i, row in enumerate(rows):
        report.rows_seen += 1
        try:
            record, blank = await read_staff_row(row, layout, report, i)
        except PortalSyncError:
            raise
        except Exception as e:
            logger.warning(f"Skipping staff row {i}: {e}")
            report.row_failed(i, e)
            continue

        if blank:
            report.blank_rows += 1
            continue
        if not record.name:
            report.rows_skipped += 1
            report.field_missing('name', 'empty staff name, row skipped', i)
            continue
        if record.name in seen:
            report.rows_skipped += 1
            logger.info(f"Duplicate staff name collapsed: {record.name}")
            continue
        seen.add(record.name)
        report.rows_extracted += 1
        records.append(record)

    report.check_layout()
    return ExtractionResult(records=records, report=report)


# ============================================
# COUPONS
# ============================================

def parse_coupon_id(onclick: Optional[str], pattern: str) -> str:
    """Coupon id from "doEdit(event, 'screen', '<id>', ...)"."""
    match = re.search(pattern, onclick or '')
    return match.group(1).strip() if match else ''


async def read_coupon_detail(page: Page, layout: PortalLayout, coupon_id: str, report: ExtractionReport,
                             row_index: int, timeout: Optional[int] = None) -> Tuple[CouponRecord, bool]:
    sel = layout.coupon
    await wait_for(page, sel.name, timeout=timeout)
    reader = FieldReader(page, report, row_index)
    record = CouponRecord(
        coupon_id=coupon_id,
        name=await reader.value('name', sel.name),
        category=await reader.selected_text('category', sel.category),
        description=await reader.value('description', sel.description),
        price=await reader.integer('price', sel.price, from_value=True),
        duration=await reader.integer('duration', sel.duration, from_value=True),
        is_reservable=await reader.checked('is_reservable', sel.reservable_checkbox),
        image_url=await reader.attribute('image_url', sel.image, 'src') or '',
    )
    return record, reader.all_missing


async def restore_coupon_list(page: Page, layout: PortalLayout, timeout: Optional[int] = None) -> int:
    """
    Go back from a coupon detail screen and return the current row count.

    Raises:
        PortalLayoutError: the coupon list could not be shown again
    """
    rows_selector = layout.coupon.rows
    try:
        await page.go_back(wait_until='networkidle')
        await wait_for(page, rows_selector, timeout=timeout, state='attached')
    except Exception as e:
        raise PortalLayoutError(f"Could not return to the coupon list: {e}", selector=rows_selector) from e
    return len(await page.query_selector_all(rows_selector))


async def extract_coupons(page: Page, layout: PortalLayout, timeout: Optional[int] = None) -> ExtractionResult:
    """
    Open each coupon's detail screen from the list and read it.

    The list DOM is rebuilt after every back navigation, so rows are
    re-queried by position on each iteration.
    """
    sel = layout.coupon
    report = ExtractionReport('coupon')
    await wait_for(page, sel.rows, timeout=timeout, state='attached')
    row_count = len(await page.query_selector_all(sel.rows))
    logger.info(f"Found {row_count} coupon rows")

    records: List[CouponRecord] = []
    seen = set()
    i = 0
    while i < row_count:
        rows = await page.query_selector_all(sel.rows)
        if i >= len(rows):
            logger.info(f"Coupon row {i} no longer exists, stopping")
            break
        row = rows[i]
        report.rows_seen += 1
        try:
            link = await row.query_selector(sel.edit_link)
            if link is None:
                report.blank_rows += 1
                report.field_missing('coupon_id', f"no element for {sel.edit_link}", i)
                continue
            coupon_id = parse_coupon_id(await link.get_attribute('onclick'), sel.edit_onclick_pattern)
            if not coupon_id:
                report.blank_rows += 1
                report.field_missing('coupon_id', 'edit link onclick has no coupon id', i)
                continue
            if coupon_id in seen:
                report.rows_skipped += 1
                continue

            await link.click()
            try:
                await wait_for_settled(page, timeout=timeout)
                record, blank = await read_coupon_detail(page, layout, coupon_id, report, i, timeout=timeout)
            except (NavigationTimeoutError, PortalLayoutError) as e:
                logger.warning(f"Skipping coupon {coupon_id} (row {i}): {e}")
                report.row_failed(i, e)
                continue
            finally:
                row_count = await restore_coupon_list(page, layout, timeout=timeout)

            seen.add(coupon_id)
            if blank:
                report.blank_rows += 1
                continue
            report.rows_extracted += 1
            records.append(record)
        except PortalSyncError:
            raise
        except Exception as e:
            logger.warning(f"Skipping coupon row {i}: {e}")
            report.row_failed(i, e)
        finally:
            i += 1

    report.check_layout()
    return ExtractionResult(records=records, report=report)
