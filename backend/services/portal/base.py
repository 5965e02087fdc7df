"""
Record types shared by the portal extractors, reconciler and store.

Every record exposes `natural_key`, the business identifier used to match
portal records against locally stored rows for one owner.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum


class SyncType(str, Enum):
    """Record types that can be synchronized from the portal."""
    RESERVATIONS = 'reservations'
    MENUS = 'menus'
    STAFF = 'staff'
    COUPONS = 'coupons'


class SalonType(str, Enum):
    """Portal skin discriminator for the reservation list."""
    HAIR = 'hair'
    KIREI = 'kirei'


# Portal status text -> normalized status code
RESERVATION_STATUS_CODES = {
    '受付待ち': 'pending',
    '済み': 'completed',
    'お断り': 'rejected',
    'お客様キャンセル': 'cancelled',
    'サロンキャンセル': 'cancelled_by_salon',
    '無断キャンセル': 'no_show',
    '自動キャンセル': 'auto_cancelled',
}


def map_reservation_status(status: str) -> str:
    return RESERVATION_STATUS_CODES.get((status or '').strip(), 'unknown')


@dataclass
class ReservationRecord:
    """One row of the portal reservation list."""
    reservation_id: str = ''
    date_text: str = ''
    time_text: str = ''
    status: str = ''
    customer_name: str = ''
    staff_name: str = ''
    booking_channel: str = ''
    menu: str = ''
    points_used: int = 0
    payment_method: str = ''
    amount: int = 0
    reserved_at: Optional[datetime] = None   # computed from date/time text

    @property
    def natural_key(self) -> str:
        return self.reservation_id

    @property
    def status_code(self) -> str:
        return map_reservation_status(self.status)


@dataclass
class MenuItemRecord:
    """One menu table from the menu edit screen."""
    name: str = ''
    category: str = ''
    description: str = ''
    price: int = 0
    duration: int = 0                # minutes
    is_reservable: bool = False
    is_published: bool = False
    search_category: str = ''

    @property
    def natural_key(self) -> str:
        return self.name


@dataclass
class StaffRecord:
    """One staff row from the staff list screen."""
    name: str = ''
    role: str = ''
    experience: Optional[str] = None     # portal shows '－' when unset
    is_published: bool = False
    image: Optional[str] = None
    description: Optional[str] = None
    sort_order: int = 0

    @property
    def natural_key(self) -> str:
        return self.name


@dataclass
class CouponRecord:
    """One coupon, read from its detail screen."""
    coupon_id: str = ''
    name: str = ''
    category: str = ''
    description: str = ''
    price: int = 0
    duration: int = 0
    is_reservable: bool = False
    image_url: str = ''

    @property
    def natural_key(self) -> str:
        return self.coupon_id


def record_to_dict(record) -> Dict[str, Any]:
    """Plain dict of a record's stored fields (no derived properties)."""
    return asdict(record)


@dataclass
class PortalCredentials:
    """Decrypted portal login for one owner. Never log the password."""
    username: str
    password: str = field(repr=False)


@dataclass
class OutboundReservation:
    """A locally created reservation to be pushed into the portal."""
    reservation_id: str
    staff_name: str
    start_time: datetime
    end_time: datetime
    customer_name: str
    customer_kana: str
    phone: str = ''
    memo: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


@dataclass
class OutboundResult:
    """Outcome of one outbound push."""
    reservation_id: str
    success: bool
    portal_reservation_id: Optional[str] = None
    error_message: Optional[str] = None
    attempted_at: datetime = field(default_factory=datetime.now)

    @property
    def sync_status(self) -> str:
        return 'synced' if self.success else 'failed'


@dataclass
class SyncSummary:
    """Counts and hash for one completed sync run."""
    owner_id: str
    sync_type: SyncType
    data_hash: str
    items_processed: int = 0
    items_updated: int = 0
    items_added: int = 0
    items_deactivated: int = 0
    items_skipped: int = 0
    last_sync_time: Optional[datetime] = None
    last_reservation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'owner_id': self.owner_id,
            'sync_type': self.sync_type.value,
            'data_hash': self.data_hash,
            'items_processed': self.items_processed,
            'items_updated': self.items_updated,
            'items_added': self.items_added,
            'items_deactivated': self.items_deactivated,
            'items_skipped': self.items_skipped,
            'last_sync_time': self.last_sync_time.isoformat() if self.last_sync_time else None,
            'last_reservation_id': self.last_reservation_id,
        }
