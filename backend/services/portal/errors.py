"""
Error taxonomy for portal synchronization.

Fatal errors abort the current sync run (or outbound push). Retryable errors
may be retried by the bounded retry wrapper in the navigator. Field-level
extraction problems are recorded as warnings and never raised.
"""
from typing import Optional


class PortalSyncError(Exception):
    """Base class for all portal sync failures"""
    retryable = False


class AuthenticationError(PortalSyncError):
    """Login could not be completed or verified"""
    pass


class NavigationTimeoutError(PortalSyncError):
    """A page load or wait-for-element exceeded its timeout"""
    retryable = True

    def __init__(self, message: str, selector: Optional[str] = None):
        super().__init__(message)
        self.selector = selector


class CalendarNavigationError(NavigationTimeoutError):
    """The calendar widget never reached the requested month"""
    pass


class PortalLayoutError(PortalSyncError):
    """An expected element is structurally absent - the portal layout changed"""

    def __init__(self, message: str, selector: Optional[str] = None):
        super().__init__(message)
        self.selector = selector


class ExtractionFieldWarning(UserWarning):
    """A single field or row could not be read and was defaulted or skipped"""

    def __init__(self, record_type: str, field: str, detail: str, row_index: Optional[int] = None):
        self.record_type = record_type
        self.field = field
        self.detail = detail
        self.row_index = row_index
        super().__init__(f"{record_type}[{row_index}].{field}: {detail}")


class StaffNotFoundError(PortalSyncError):
    """No portal staff member matches the requested (normalized) name"""

    def __init__(self, staff_name: str):
        super().__init__(f"Staff not found in portal: {staff_name}")
        self.staff_name = staff_name


class ReconciliationWriteError(PortalSyncError):
    """A batched upsert / insert / deactivate call failed"""

    def __init__(self, category: str, record_type: str, cause: Exception):
        super().__init__(f"Failed to write {category} batch for {record_type}: {cause}")
        self.category = category
        self.record_type = record_type
        self.cause = cause


class SyncLogWriteError(PortalSyncError):
    """The audit row failed to persist; data mutations already applied stand"""
    pass


class CredentialsNotFoundError(PortalSyncError):
    """No portal credentials are stored for the owner"""
    pass


class SessionDecryptError(PortalSyncError):
    """A persisted session blob could not be decrypted or parsed"""
    pass
