"""
Typed selector maps for the portal screens.

The portal exposes no API, so every extractor is bound to one known layout.
All selectors live here and `PortalLayout.validate()` is called at startup so
a broken map fails loudly instead of silently producing default values.
"""
import string
from dataclasses import dataclass, field, fields
from typing import Dict, Tuple

from .base import SalonType
from .errors import PortalLayoutError


@dataclass(frozen=True)
class LoginSelectors:
    username_input: str = 'input[name="userId"]'
    password_input: str = 'input[name="password"]'
    submit_button: str = '.common-CNCcommon__primaryBtn.loginBtnSize'
    captcha_frame: str = 'iframe[src*="recaptcha"]'
    dashboard_marker: str = '#todayReserve'
    session_expired_banner: str = '.mod_color_e50000.mod_font01.mod_align_center'


@dataclass(frozen=True)
class PortalPaths:
    login: str = '/login/'
    reservation_list: str = '/KLP/reserve/reserveList/init'
    menu_edit: str = '/CNK/draft/menuEdit/'
    staff_list: str = '/CNK/draft/staffList/'
    coupon_list: str = '/CNK/draft/couponList/'
    schedule: str = '/KLP/schedule/salonSchedule/'
    reserve_register: str = '/KLP/reserve/ext/extReserveRegist/'


@dataclass(frozen=True)
class CalendarSelectors:
    date_from_input: str = '#dispDateFrom'
    date_to_input: str = '#dispDateTo'
    container: str = '#calendarArea'
    year_header: str = '#calendarArea th.w65'
    month_header: str = '#calendarArea th.mod_left p'
    next_month: str = '#nextMonth'
    # Anchor whose href encodes the day, e.g. #20241031
    day_anchor: str = '#calendarArea a[href="#{yyyymmdd}"]'


@dataclass(frozen=True)
class ReservationListSelectors:
    screen_marker: str = '#reserveList'
    search_button: str = '#search'
    result_table: str = '#resultList'
    rows: str = '#resultList tbody tr'
    next_page: str = 'div.paging p.next a'


@dataclass(frozen=True)
class ReservationRowSelectors:
    """Per-row selectors; two skins exist (see RESERVATION_ROW_SKINS)."""
    date_time: str
    status: str
    customer_name: str
    reservation_id: str
    staff: str
    booking_channel: str
    menu: str
    points_used: str
    payment_method: str
    amount: str
    menu_is_list: bool = False


@dataclass(frozen=True)
class MenuSelectors:
    form: str = '#menuEditForm'
    tables: str = 'table.tbl_edit_store.menu_table[style*="display:block"]'
    table_id_prefix: str = 'TagTBL_MENU_TABLE_'
    name: str = '#MENU_SET_NAME_NAME_{index}'
    category: str = '#MENU_SET_MENU_CATEGORY_NAME_{index}'
    description: str = '#MENU_SET_EXPLANATION_NAME_{index}'
    price: str = '#MENU_SET_PRICE_NAME_{index}'
    duration: str = '#MENU_SET_TIME_NAME_{index}'
    reservable_checkbox: str = '#MENU_SET_RESERVE_DISP_FLG_{index}_DISP'
    published_checkbox: str = '#MENU_SET_PRESENT_FLG_NAME_{index}_PRESENT'
    search_category: str = '#MENU_SET_SEARCH_CATEGORY_NAME_{index}'


@dataclass(frozen=True)
class StaffSelectors:
    rows: str = 'tr[name="staff_info"]'
    cells: str = 'td[name^="td["]'
    name_cell_index: int = 3
    role_cell_index: int = 4
    experience_cell_index: int = 5
    photo: str = 'img[name="staffPhoto"]'
    description: str = 'xpath=following-sibling::tr[1]//td[@colspan="4"]'
    sort_order: str = 'input[name$=".sortNo"]'
    unpublished_class: str = 'td_value_store_gray_c'
    experience_placeholder: str = '－'


@dataclass(frozen=True)
class CouponSelectors:
    rows: str = '.table_list_store tbody tr'
    edit_link: str = 'a[onclick^="doEdit"]'
    # doEdit(event, '<screen>', '<coupon id>', ...)
    edit_onclick_pattern: str = r"doEdit\(event,\s*'[^']*',\s*'([^']*)'"
    name: str = '#TagTA_NM_COUPON_NAME_01'
    category: str = '#TagSL_NM_COUPON_TYPE_CD_01'
    description: str = '#TagTA_NM_CONTENT_EXPLANATION_01'
    price: str = '#TagIN_NM_PRICE_01'
    duration: str = '#TagSL_NM_SEJYUTSU_AIM_TIME_01'
    reservable_checkbox: str = 'input[name="frmCouponEditDto.checkedAutoExpiration"]'
    image: str = '#TagImgCouponPoto'


@dataclass(frozen=True)
class ScheduleSelectors:
    staff_heads: str = 'li.scheduleMainHead'
    staff_name: str = '.scheduleLinkInner'
    # id attribute looks like STAFF_<portal id>_...
    staff_id_pattern: str = r'STAFF_(\w+)_'


@dataclass(frozen=True)
class BookingFormSelectors:
    start_hour: str = '#jsiRsvHour'
    start_minute: str = '#jsiRsvMinute'
    term_hour: str = '#jsiRsvTermHour'
    term_minute: str = '#jsiRsvTermMinute'
    staff: str = 'select[name="staffIdList"]'
    surname_kana: str = '#nmSeiKana'
    given_name_kana: str = '#nmMeiKana'
    surname: str = '#nmSei'
    given_name: str = '#nmMei'
    phone: str = '#tel'
    memo: str = '#rsvEtc'
    submit_button: str = '#regist'
    reserve_id_param: str = 'reserveId'


RESERVATION_ROW_SKINS: Dict[SalonType, ReservationRowSelectors] = {
    SalonType.HAIR: ReservationRowSelectors(
        date_time='td:nth-child(1) a',
        status='td:nth-child(2)',
        customer_name='td:nth-child(3) p:first-child',
        reservation_id='td:nth-child(3) p:last-child a',
        staff='td:nth-child(4)',
        booking_channel='td:nth-child(5)',
        menu='td:nth-child(6) ul li',
        points_used='td:nth-child(7)',
        payment_method='td:nth-child(8)',
        amount='td:nth-child(9)',
        menu_is_list=True,
    ),
    SalonType.KIREI: ReservationRowSelectors(
        date_time='td.rsv_date a',
        status='td:nth-child(2)',
        customer_name='td:nth-child(3) p:first-child',
        reservation_id='td:nth-child(3) p:last-child a',
        staff='td:nth-child(4)',
        booking_channel='td:nth-child(5)',
        menu='td:nth-child(6)',
        points_used='td:nth-child(7)',
        payment_method='td:nth-child(8)',
        amount='td:nth-child(9)',
    ),
}

# Template placeholders each templated selector must (and may only) use
_TEMPLATE_FIELDS: Dict[Tuple[str, str], set] = {
    ('menu', 'name'): {'index'},
    ('menu', 'category'): {'index'},
    ('menu', 'description'): {'index'},
    ('menu', 'price'): {'index'},
    ('menu', 'duration'): {'index'},
    ('menu', 'reservable_checkbox'): {'index'},
    ('menu', 'published_checkbox'): {'index'},
    ('menu', 'search_category'): {'index'},
    ('calendar', 'day_anchor'): {'yyyymmdd'},
}


def _placeholders(template: str) -> set:
    return {name for _, name, _, _ in string.Formatter().parse(template) if name}


@dataclass(frozen=True)
class PortalLayout:
    """All selector maps for one portal deployment."""
    base_url: str
    paths: PortalPaths = field(default_factory=PortalPaths)
    login: LoginSelectors = field(default_factory=LoginSelectors)
    calendar: CalendarSelectors = field(default_factory=CalendarSelectors)
    reservation_list: ReservationListSelectors = field(default_factory=ReservationListSelectors)
    menu: MenuSelectors = field(default_factory=MenuSelectors)
    staff: StaffSelectors = field(default_factory=StaffSelectors)
    coupon: CouponSelectors = field(default_factory=CouponSelectors)
    schedule: ScheduleSelectors = field(default_factory=ScheduleSelectors)
    booking_form: BookingFormSelectors = field(default_factory=BookingFormSelectors)
    reservation_rows: Dict[SalonType, ReservationRowSelectors] = field(
        default_factory=lambda: dict(RESERVATION_ROW_SKINS)
    )

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def reservation_row_selectors(self, salon_type) -> ReservationRowSelectors:
        try:
            return self.reservation_rows[SalonType(salon_type)]
        except (KeyError, ValueError):
            raise PortalLayoutError(f"Unknown salon type: {salon_type}")

    def validate(self) -> None:
        """
        Check every selector map for empty values and malformed templates.

        Raises:
            PortalLayoutError: listing every problem found
        """
        problems = []
        if not self.base_url.startswith(('http://', 'https://')):
            problems.append(f"base_url is not an http(s) URL: {self.base_url!r}")

        groups = {
            'paths': self.paths,
            'login': self.login,
            'calendar': self.calendar,
            'reservation_list': self.reservation_list,
            'menu': self.menu,
            'staff': self.staff,
            'coupon': self.coupon,
            'schedule': self.schedule,
            'booking_form': self.booking_form,
        }
        for skin, selectors in self.reservation_rows.items():
            groups[f"reservation_rows.{SalonType(skin).value}"] = selectors

        for group_name, group in groups.items():
            for f in fields(group):
                value = getattr(group, f.name)
                if isinstance(value, str):
                    if not value.strip():
                        problems.append(f"{group_name}.{f.name} is empty")
                        continue
                    try:
                        found = _placeholders(value)
                    except ValueError as e:
                        problems.append(f"{group_name}.{f.name} is not a valid template: {e}")
                        continue
                    expected = _TEMPLATE_FIELDS.get((group_name, f.name), set())
                    if found != expected:
                        problems.append(
                            f"{group_name}.{f.name} placeholders {sorted(found)} != {sorted(expected)}"
                        )
                elif isinstance(value, int) and not isinstance(value, bool) and value < 0:
                    problems.append(f"{group_name}.{f.name} is negative")

        missing_skins = [s.value for s in SalonType if s not in self.reservation_rows]
        if missing_skins:
            problems.append(f"reservation_rows missing skins: {missing_skins}")

        if problems:
            raise PortalLayoutError("Invalid portal layout: " + "; ".join(problems))


def default_layout() -> PortalLayout:
    from config import PORTAL_BASE_URL
    return PortalLayout(base_url=PORTAL_BASE_URL)
