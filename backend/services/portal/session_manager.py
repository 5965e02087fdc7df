"""
Portal authentication and cookie-jar lifecycle.

A saved cookie jar is reused while it is unexpired and the portal does not
bounce to the login form. Otherwise the manager logs in interactively
(the browser is headed so an operator can solve a CAPTCHA), then encrypts and
persists the new jar with a fixed TTL.
"""
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, List, Optional

from playwright.async_api import BrowserContext, Page

from services.crypto import InvalidToken, get_cipher
from .base import PortalCredentials
from .errors import AuthenticationError, NavigationTimeoutError, SessionDecryptError
from .navigator import open_screen, wait_for
from .selectors import PortalLayout

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedContext:
    """A logged-in browser context positioned on the requested screen."""
    owner_id: str
    context: BrowserContext
    page: Page
    reused_session: bool = False


class SessionManager:
    """
    Establishes authenticated portal contexts for one owner at a time.

    Args:
        store: persistence for encrypted session blobs (load/save/delete_session)
        browser: PortalBrowser handing out fresh contexts
        layout: selector maps
    """

    def __init__(self, store, browser, layout: PortalLayout, cipher=None,
                 ttl_hours: Optional[int] = None, captcha_wait_seconds: Optional[int] = None,
                 timeout: Optional[int] = None):
        from config import PORTAL_SESSION_TTL_HOURS, PORTAL_CAPTCHA_WAIT_SECONDS
        self.store = store
        self.browser = browser
        self.layout = layout
        self.cipher = cipher or get_cipher()
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else PORTAL_SESSION_TTL_HOURS)
        self.captcha_wait_seconds = (
            captcha_wait_seconds if captcha_wait_seconds is not None else PORTAL_CAPTCHA_WAIT_SECONDS
        )
        self.timeout = timeout

    # ---- persistence ----

    def load_cookies(self, owner_id: str) -> Optional[List[dict]]:
        """Decrypted cookie jar, or None when absent, expired or unreadable."""
        blob = self.store.load_session(owner_id)
        if not blob:
            return None
        try:
            return self._decode(blob)
        except SessionDecryptError as e:
            logger.warning(f"Discarding unreadable session for owner {owner_id}: {e}")
            self.store.delete_session(owner_id)
            return None

    def _decode(self, blob: str) -> List[dict]:
        try:
            cookies = json.loads(self.cipher.decrypt(blob))
        except (InvalidToken, ValueError) as e:
            raise SessionDecryptError(f"Session blob could not be decrypted: {type(e).__name__}") from e
        if not isinstance(cookies, list):
            raise SessionDecryptError("Session blob is not a cookie array")
        return cookies

    async def save_session(self, owner_id: str, context: BrowserContext) -> datetime:
        cookies = await context.cookies()
        expires_at = datetime.now() + self.ttl
        blob = self.cipher.encrypt(json.dumps(cookies, ensure_ascii=False))
        self.store.save_session(owner_id, blob, expires_at)
        logger.info(f"Saved portal session for owner {owner_id} ({len(cookies)} cookies, expires {expires_at:%Y-%m-%d %H:%M})")
        return expires_at

    # ---- login ----

    async def is_login_form(self, page: Page) -> bool:
        return await page.query_selector(self.layout.login.username_input) is not None

    async def login(self, page: Page, credentials: PortalCredentials) -> None:
        """
        Fill and submit the login form, then wait for the dashboard.

        If a CAPTCHA appears, the wait extends to the configured operator
        window; nothing is clicked on the operator's behalf.

        Raises:
            AuthenticationError: the dashboard marker never appeared
        """
        sel = self.layout.login
        logger.info(f"Logging in to portal as {credentials.username}")
        await open_screen(page, self.layout.url(self.layout.paths.login), sel.username_input, timeout=self.timeout)
        await page.fill(sel.username_input, credentials.username)
        await page.fill(sel.password_input, credentials.password)
        await page.click(sel.submit_button)

        if await page.query_selector(sel.captcha_frame) is not None:
            logger.warning(f"CAPTCHA shown, waiting up to {self.captcha_wait_seconds}s for an operator to solve it")

        try:
            await wait_for(page, sel.dashboard_marker, timeout=self.captcha_wait_seconds * 1000)
        except NavigationTimeoutError as e:
            raise AuthenticationError(
                f"Login for {credentials.username} could not be verified: dashboard not shown"
            ) from e
        logger.info("Portal login succeeded")

    async def check_and_relogin(self, owner_id: str, page: Page, context: BrowserContext,
                                credentials: PortalCredentials, target_url: str) -> bool:
        """
        Relogin once if the "session expired" banner is displayed.

        Returns True when a relogin happened.

        Raises:
            AuthenticationError: the banner is still there after relogin
        """
        banner = self.layout.login.session_expired_banner
        if await page.query_selector(banner) is None:
            return False

        logger.warning(f"Portal reports an expired session for owner {owner_id}, logging in again")
        await self.login(page, credentials)
        await self.save_session(owner_id, context)
        await open_screen(page, target_url, timeout=self.timeout)
        if await page.query_selector(banner) is not None:
            raise AuthenticationError("Portal still reports an expired session after relogin")
        return True

    async def ensure_session(self, owner_id: str, credentials: PortalCredentials, target_url: str,
                             target_marker: Optional[str] = None) -> AuthenticatedContext:
        """
        Return a context that is logged in and showing `target_url`.

        The caller owns the returned context and must close it; prefer the
        `session()` context manager.
        """
        cookies = self.load_cookies(owner_id)
        context = await self.browser.new_context(cookies=cookies)
        try:
            page = await context.new_page()
            reused = False
            if cookies:
                await open_screen(page, target_url, timeout=self.timeout)
                if await self.is_login_form(page):
                    logger.info(f"Saved session for owner {owner_id} was rejected by the portal")
                else:
                    reused = True
                    logger.info(f"Reusing saved portal session for owner {owner_id}")

            if not reused:
                await self.login(page, credentials)
                await self.save_session(owner_id, context)
                await open_screen(page, target_url, timeout=self.timeout)

            await self.check_and_relogin(owner_id, page, context, credentials, target_url)
            if target_marker:
                await wait_for(page, target_marker, timeout=self.timeout)

            return AuthenticatedContext(owner_id=owner_id, context=context, page=page, reused_session=reused)
        except BaseException:
            await context.close()
            raise

    @asynccontextmanager
    async def session(self, owner_id: str, credentials: PortalCredentials, target_url: str,
                      target_marker: Optional[str] = None) -> AsyncIterator[AuthenticatedContext]:
        auth = await self.ensure_session(owner_id, credentials, target_url, target_marker)
        try:
            yield auth
        finally:
            await auth.context.close()

    async def verify_login(self, credentials: PortalCredentials) -> bool:
        """Fresh login in a throwaway context; nothing is persisted."""
        context = await self.browser.new_context()
        try:
            page = await context.new_page()
            await self.login(page, credentials)
            return True
        except AuthenticationError as e:
            logger.info(f"Credential check failed: {e}")
            return False
        finally:
            await context.close()
