from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable

import pytest

from tracking_monitor.errors import DuplicateError, PersistenceError
from tracking_monitor.models import TrackingRequest, normalize_token, token_key
from tracking_monitor.page_checker import CheckResult, Match


T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

READY_PAGE = """
<!doctype html><html><head><title>Svedeniya</title></head><body>
<h1>Ready documents</h1>
<table>
  <tr><th>Number</th><th>Date</th></tr>
  <tr><td> 123456 </td><td>01.03.2024</td></tr>
  <tr><td>77-01/2024</td><td>02.03.2024</td></tr>
</table>
<p>654321</p>
</body></html>
"""


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeChecker:
    """Scripted PageChecker. Unscripted calls return NOT_FOUND."""

    def __init__(self, events: list | None = None):
        self.scripts: dict[str, list] = {}
        self.calls: list[str] = []
        self.events = events if events is not None else []
        self.on_check: Callable[[str, int], None] | None = None
        self.block: asyncio.Event | None = None

    def script(self, token: str, *results) -> None:
        self.scripts.setdefault(token, []).extend(results)

    def calls_for(self, token: str) -> int:
        return sum(1 for t in self.calls if t == token)

    async def check(self, token: str) -> CheckResult:
        index = self.calls_for(token)
        self.calls.append(token)
        self.events.append(("check", token))
        if self.on_check is not None:
            self.on_check(token, index)
        if self.block is not None:
            await self.block.wait()
        queue = self.scripts.get(token) or []
        item = queue.pop(0) if queue else Match.NOT_FOUND
        if isinstance(item, Exception):
            raise item
        if isinstance(item, CheckResult):
            return item
        if item is Match.UNKNOWN:
            return CheckResult(Match.UNKNOWN, error="ConnectError: boom")
        return CheckResult(item)


class FakeStore:
    """In-memory store with the TrackingStore interface and call recording."""

    def __init__(self, events: list | None = None, clock: Callable[[], datetime] | None = None):
        self.rows: dict[tuple[int, str], TrackingRequest] = {}
        self.create_calls: list[tuple[int, str]] = []
        self.delete_calls: list[tuple[str, int | None]] = []
        self.events = events if events is not None else []
        self.fail_create = False
        self.fail_deletes = 0
        self.clock = clock or FakeClock()

    def add(self, owner: int, token: str, created_at: datetime = T0) -> TrackingRequest:
        req = TrackingRequest(owner=owner, token=token, created_at=created_at)
        self.rows[(owner, token_key(token))] = req
        return req

    def create(self, owner: int, token: str, *, created_at: datetime | None = None) -> TrackingRequest:
        self.create_calls.append((owner, token))
        if self.fail_create:
            raise PersistenceError("database is locked")
        key = (owner, token_key(token))
        if key in self.rows:
            raise DuplicateError(owner, token)
        req = TrackingRequest(owner=owner, token=normalize_token(token), created_at=created_at or self.clock())
        self.rows[key] = req
        return req

    def delete(self, token: str, owner: int | None = None) -> int:
        self.delete_calls.append((token, owner))
        self.events.append(("delete", token))
        if self.fail_deletes > 0:
            self.fail_deletes -= 1
            raise PersistenceError("disk I/O error")
        keys = [k for k in self.rows if k[1] == token_key(token) and (owner is None or k[0] == owner)]
        for k in keys:
            del self.rows[k]
        return len(keys)

    def load_all(self) -> list[TrackingRequest]:
        return sorted(self.rows.values(), key=lambda r: (r.created_at, r.owner))


class FakeNotifier:
    def __init__(self, events: list | None = None):
        self.deliveries: list[tuple[int, str]] = []
        self.events = events if events is not None else []

    async def deliver(self, owner: int, text: str) -> bool:
        self.deliveries.append((owner, text))
        self.events.append(("deliver", owner))
        return True


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def checker(events) -> FakeChecker:
    return FakeChecker(events)


@pytest.fixture
def store(events, clock) -> FakeStore:
    return FakeStore(events, clock)


@pytest.fixture
def notifier(events) -> FakeNotifier:
    return FakeNotifier(events)


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait


class _PageHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        routes: dict[str, tuple[int, str]] = {
            "/ready": (200, READY_PAGE),
            "/empty": (200, "<!doctype html><html><body><p>No table today</p></body></html>"),
            "/broken": (500, "Internal Server Error"),
        }
        status, body = routes.get(self.path, (404, "Not Found"))
        body_bytes = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)


@pytest.fixture(scope="session")
def page_server_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _PageHandler)
    host, port = httpd.server_address
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        httpd.server_close()


class FlakyNotifier(FakeNotifier):
    """Reports the first ``failures`` deliveries as failed, optionally after a delay."""

    def __init__(self, events: list | None = None, *, failures: int = 0, delay: float = 0.0):
        super().__init__(events)
        self.failures = failures
        self.delay = delay
        self.attempts = 0

    async def deliver(self, owner: int, text: str) -> bool:
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            return False
        return await super().deliver(owner, text)
