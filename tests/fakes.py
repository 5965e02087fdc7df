# tests/fakes.py
# Hand-written stand-ins for Playwright pages/elements, the portal store and the async DB session

from contextlib import asynccontextmanager
from types import SimpleNamespace

import bcrypt
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from services.portal.session_manager import AuthenticatedContext


def hash_password(password):
    """bcrypt hash as stored in owners.password_hash (owners are provisioned outside the service)."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=4)).decode('utf-8')


def _resolve(value):
    return value() if callable(value) else value


class FakeElement:
    """
    Element double. `text` may be a callable so tests can change what a
    header shows between reads. `children` maps selector -> element or list.
    """

    def __init__(self, text='', value='', checked=False, attrs=None, children=None,
                 inner=None, on_click=None, fail=None):
        self._text = text
        self._value = value
        self._checked = checked
        self.attrs = attrs or {}
        self.children = children or {}
        self._inner = inner
        self.on_click = on_click
        self.fail = fail
        self.clicked = 0

    def _check(self):
        if self.fail is not None:
            raise self.fail

    async def query_selector(self, selector):
        self._check()
        found = _resolve(self.children.get(selector))
        if isinstance(found, list):
            return found[0] if found else None
        return found

    async def query_selector_all(self, selector):
        self._check()
        found = _resolve(self.children.get(selector))
        if found is None:
            return []
        return list(found) if isinstance(found, list) else [found]

    async def text_content(self):
        return _resolve(self._text)

    async def inner_text(self):
        return _resolve(self._inner) if self._inner is not None else _resolve(self._text)

    async def input_value(self):
        return _resolve(self._value)

    async def is_checked(self):
        return self._checked

    async def get_attribute(self, name):
        return _resolve(self.attrs.get(name))

    async def click(self):
        self.clicked += 1
        if self.on_click:
            self.on_click()


class FakePage:
    """
    Page double. `elements` maps selector -> element, list or callable.
    A selector that is absent makes wait_for_selector time out at once.
    """

    def __init__(self, elements=None, url='about:blank'):
        self.elements = elements or {}
        self.url = url
        self.visited = []
        self.clicks = []
        self.filled = {}
        self.selected = {}
        self.on_click = {}
        self.on_goto = None
        self.timeouts = []
        self.went_back = 0

    def _lookup(self, selector):
        return _resolve(self.elements.get(selector))

    async def query_selector(self, selector):
        found = self._lookup(selector)
        if isinstance(found, list):
            return found[0] if found else None
        return found

    async def query_selector_all(self, selector):
        found = self._lookup(selector)
        if found is None:
            return []
        return list(found) if isinstance(found, list) else [found]

    async def wait_for_selector(self, selector, state='visible', timeout=None):
        found = await self.query_selector(selector)
        if state == 'hidden':
            return None
        if found is None:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return found

    async def wait_for_load_state(self, state='load', timeout=None):
        return None

    async def wait_for_timeout(self, timeout):
        self.timeouts.append(timeout)

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        self.url = url
        if self.on_goto:
            self.on_goto(url)

    async def go_back(self, wait_until=None):
        self.went_back += 1

    async def click(self, selector):
        self.clicks.append(selector)
        handler = self.on_click.get(selector)
        if handler:
            handler()

    async def fill(self, selector, value):
        self.filled[selector] = value

    async def select_option(self, selector, value):
        self.selected[selector] = value


class FakeContext:
    def __init__(self, page, cookies=None):
        self.page = page
        self._cookies = list(cookies or [])
        self.closed = False

    async def new_page(self):
        return self.page

    async def add_cookies(self, cookies):
        self._cookies.extend(cookies)

    async def cookies(self):
        return list(self._cookies)

    async def close(self):
        self.closed = True


class FakeBrowser:
    """Hands out contexts around one shared page; remembers what it handed out."""

    def __init__(self, page, cookies_after_login=None):
        self.page = page
        self.cookies_after_login = cookies_after_login or [{"name": "sid", "value": "abc", "domain": "salonboard.com", "path": "/"}]
        self.contexts = []
        self.closed = False

    async def new_context(self, cookies=None):
        context = FakeContext(self.page, cookies or self.cookies_after_login)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


def browser_factory_for(browser):
    @asynccontextmanager
    async def factory():
        try:
            yield browser
        finally:
            await browser.close()
    return factory


class FakeSessionManager:
    """Yields an already authenticated context around a given page."""

    def __init__(self, page):
        self.page = page
        self.opened = []

    @asynccontextmanager
    async def session(self, owner_id, credentials, target_url, target_marker=None):
        self.opened.append(target_url)
        context = FakeContext(self.page)
        try:
            yield AuthenticatedContext(owner_id=owner_id, context=context, page=self.page)
        finally:
            await context.close()


class FakeStore:
    """In-memory PortalStore with the same method surface the engine uses."""

    def __init__(self, owner=None, credentials=None):
        self.owner = owner
        self.credentials = credentials
        self.sessions = {}
        self.deleted_sessions = []
        self.existing = {}
        self.applied = []
        self.cursor = None
        self.reservation_keys = set()
        self.inserted_reservations = []
        self.logs = []
        self.jobs = {}
        self.outbound = []
        self.reservations = {}

    # owners / credentials
    def get_owner(self, owner_id):
        return self.owner

    def get_credentials(self, owner_id):
        from services.portal.errors import CredentialsNotFoundError
        if self.credentials is None:
            raise CredentialsNotFoundError(f"No portal credentials stored for owner {owner_id}")
        return self.credentials

    # sessions
    def load_session(self, owner_id):
        return self.sessions.get(owner_id)

    def save_session(self, owner_id, blob, expires_at):
        self.sessions[owner_id] = blob

    def delete_session(self, owner_id):
        self.deleted_sessions.append(owner_id)
        self.sessions.pop(owner_id, None)

    # records
    def fetch_existing(self, sync_type, owner_id):
        return dict(self.existing)

    def apply_changes(self, sync_type, owner_id, changes):
        self.applied.append(changes)
        return {
            'update': len(changes.updates),
            'insert': len(changes.inserts),
            'deactivate': len(changes.deactivations),
        }

    # reservations
    def get_reservation_cursor(self, owner_id):
        return self.cursor

    def fetch_reservation_keys(self, owner_id, since=None):
        return set(self.reservation_keys)

    def insert_reservations(self, owner_id, changes):
        self.inserted_reservations.extend(i.record for i in changes.inserts)
        return len(changes.inserts)

    # audit / jobs
    def record_sync_log(self, summary):
        self.logs.append(summary)
        return len(self.logs)

    def mark_job_running(self, job_id):
        self.jobs[job_id] = {'status': 'running'}

    def finish_job(self, job_id, status, result=None, error_message=None):
        self.jobs[job_id] = {'status': status, 'result': result, 'error_message': error_message}

    # outbound
    def get_outbound_reservation(self, owner_id, reservation_id):
        return self.reservations.get(reservation_id)

    def record_outbound_status(self, result):
        self.outbound.append(result)


class FakeResult:
    def __init__(self, rows=None, rowcount=None):
        self.rows = [r if not isinstance(r, dict) else SimpleNamespace(**r) for r in (rows or [])]
        self.rowcount = len(self.rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def scalar(self):
        if not self.rows:
            return None
        row = self.rows[0]
        return next(iter(vars(row).values())) if isinstance(row, SimpleNamespace) else row


class FakeAsyncSession:
    """Returns scripted results in call order and records every statement."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.statements = []
        self.committed = 0
        self.rolled_back = 0

    async def execute(self, statement, params=None):
        self.statements.append((str(statement), params))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return FakeResult()

    async def commit(self):
        self.committed += 1

    async def rollback(self):
        self.rolled_back += 1

    async def close(self):
        pass


class FakeSyncDB:
    def __init__(self):
        self.closed = False
        self.rolled_back = 0

    def rollback(self):
        self.rolled_back += 1

    def close(self):
        self.closed = True


def make_reservation(reservation_id, reserved_at, status="受付待ち"):
    from services.portal.base import ReservationRecord
    return ReservationRecord(
        reservation_id=reservation_id,
        date_text=reserved_at.strftime('%m/%d'),
        time_text=reserved_at.strftime('%H:%M'),
        status=status,
        customer_name="鈴木 一郎",
        staff_name="山田 太郎",
        menu="カット",
        amount=5500,
        reserved_at=reserved_at,
    )


class RecordingDB:
    """
    Synchronous session double. Records execute/commit/rollback in order and
    raises `error` from the first statement containing `fail_on`.
    """

    def __init__(self, results=None, fail_on=None, error=None):
        self.results = list(results or [])
        self.fail_on = fail_on
        self.error = error
        self.events = []

    def execute(self, statement, params=None):
        sql = " ".join(str(statement).split())
        self.events.append(('execute', sql, params))
        if self.fail_on and self.fail_on in sql:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return FakeResult()

    def commit(self):
        self.events.append(('commit',))

    def rollback(self):
        self.events.append(('rollback',))

    @property
    def statements(self):
        return [e[1] for e in self.events if e[0] == 'execute']

    @property
    def kinds(self):
        """Event names with statements shortened to their leading verb."""
        return [e[1].split()[0] if e[0] == 'execute' else e[0] for e in self.events]
