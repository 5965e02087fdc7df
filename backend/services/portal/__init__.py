"""
Portal synchronization engine.

Drives a browser against the salon portal, extracts reservations, menus,
staff and coupons, reconciles them against local rows, and pushes local
reservations back through the portal booking form.
"""

from .base import (
    SyncType,
    SalonType,
    ReservationRecord,
    MenuItemRecord,
    StaffRecord,
    CouponRecord,
    PortalCredentials,
    OutboundReservation,
    OutboundResult,
    SyncSummary,
)
from .errors import (
    PortalSyncError,
    AuthenticationError,
    NavigationTimeoutError,
    CalendarNavigationError,
    PortalLayoutError,
    ExtractionFieldWarning,
    StaffNotFoundError,
    ReconciliationWriteError,
    SyncLogWriteError,
    CredentialsNotFoundError,
    SessionDecryptError,
)
from .selectors import PortalLayout, default_layout
from .browser import PortalBrowser, open_portal_browser
from .session_manager import SessionManager, AuthenticatedContext
from .outbound_writer import OutboundWriter
from .change_detector import compute_content_hash
from .reconciler import reconcile, reconcile_reservations, ReconcileResult

__all__ = [
    'SyncType',
    'SalonType',
    'ReservationRecord',
    'MenuItemRecord',
    'StaffRecord',
    'CouponRecord',
    'PortalCredentials',
    'OutboundReservation',
    'OutboundResult',
    'SyncSummary',
    'PortalSyncError',
    'AuthenticationError',
    'NavigationTimeoutError',
    'CalendarNavigationError',
    'PortalLayoutError',
    'ExtractionFieldWarning',
    'StaffNotFoundError',
    'ReconciliationWriteError',
    'SyncLogWriteError',
    'CredentialsNotFoundError',
    'SessionDecryptError',
    'PortalLayout',
    'default_layout',
    'PortalBrowser',
    'open_portal_browser',
    'SessionManager',
    'AuthenticatedContext',
    'OutboundWriter',
    'compute_content_hash',
    'reconcile',
    'reconcile_reservations',
    'ReconcileResult',
]
