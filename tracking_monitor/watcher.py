"""Per-request polling loop."""

from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from tracking_monitor import messages
from tracking_monitor.errors import DuplicateError, PersistenceError
from tracking_monitor.models import RequestStatus, TrackingRequest, WatchKey, utc_now
from tracking_monitor.page_checker import CheckResult, Match


logger = structlog.get_logger(__name__)


class WatcherState(str, Enum):
    POLLING = "polling"
    MATCHED = "matched"
    CANCELLED = "cancelled"
    DONE = "done"


class Watcher:
    """Polls the page for one tracking request until it is found or cancelled.

    States move ``POLLING -> MATCHED -> DONE`` or ``POLLING -> CANCELLED -> DONE``.
    A watcher whose store delete keeps failing after a match, or whose owner
    cannot be told about the match, ends its task in ``MATCHED``: it stops
    polling, and the persisted row is left (or put back) for the next restart.
    A finished watcher is never restarted.
    """

    def __init__(
        self,
        request: TrackingRequest,
        *,
        checker: Any,
        store: Any,
        notifier: Any,
        interval_seconds: float,
        delete_retry_attempts: int = 3,
        delete_retry_delay_seconds: float = 1.0,
        notify_retry_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
        on_finished: Optional[Callable[["Watcher"], None]] = None,
    ):
        self.request = request
        self.state = WatcherState.POLLING
        self.checks = 0
        self.last_result: CheckResult | None = None
        self.last_checked_at: datetime | None = None
        self.error: str | None = None

        self._checker = checker
        self._store = store
        self._notifier = notifier
        self._interval = float(interval_seconds)
        self._delete_attempts = max(1, int(delete_retry_attempts))
        self._delete_delay = max(0.0, float(delete_retry_delay_seconds))
        self._notify_attempts = max(1, int(notify_retry_attempts))
        self._clock = clock
        self._on_finished = on_finished
        self._cancel_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def key(self) -> WatchKey:
        return self.request.key

    @property
    def owner(self) -> int:
        return self.request.owner

    @property
    def token(self) -> str:
        return self.request.token

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    @property
    def finished(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError(f"Watcher for {self.token!r} was already started")
        self._task = asyncio.create_task(self.run(), name=f"watcher-{self.owner}-{self.token}")
        return self._task

    def cancel(self) -> bool:
        """Asks the loop to stop before its next check. Returns False once past POLLING."""
        if self.state is not WatcherState.POLLING:
            return False
        self._cancel_event.set()
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.request.to_dict(),
            "state": self.state.value,
            "checks": self.checks,
            "last_match": self.last_result.match.value if self.last_result else None,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "error": self.error,
        }

    async def run(self) -> None:
        log = logger.bind(owner=self.owner, token=self.token)
        try:
            await self._poll(log)
        except asyncio.CancelledError:
            if self.state is WatcherState.POLLING:
                self._finish(RequestStatus.CANCELLED)
            log.warning("Watcher task cancelled", state=self.state.value)
            raise
        except Exception as e:
            self.error = f"{type(e).__name__}: {e}"
            self.state = WatcherState.DONE
            log.exception("Watcher failed", error=self.error)
            await self._notify(messages.WATCH_FAILED_TEXT.format(token=self.token), log)
        finally:
            if self._on_finished is not None:
                self._on_finished(self)

    async def _poll(self, log) -> None:
        log.info("Started checking tracking number", created_at=self.request.created_at.isoformat())
        while not self._cancel_event.is_set():
            result = await self._checker.check(self.token)
            self.checks += 1
            self.last_result = result
            self.last_checked_at = self._clock()

            # An in-flight check is allowed to finish, but its outcome is ignored once cancelled.
            if self._cancel_event.is_set():
                break

            if result.match is Match.FOUND:
                await self._fulfill(log)
                return
            if result.match is Match.UNKNOWN:
                log.warning("Check result unknown, retrying next tick", error=result.error)
            else:
                log.info("Tracking number not found")

            if await self._wait_for_cancel(self._interval):
                break

        self.state = WatcherState.CANCELLED
        log.info("Stopped checking tracking number", checks=self.checks)
        self._finish(RequestStatus.CANCELLED)

    def _finish(self, status: RequestStatus) -> None:
        self.request = self.request.with_status(status)
        self.state = WatcherState.DONE

    async def _wait_for_cancel(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _fulfill(self, log) -> None:
        self.state = WatcherState.MATCHED
        elapsed = self._clock() - self.request.created_at
        formatted = messages.format_elapsed(elapsed)
        log.info("Found tracking number", elapsed=formatted, checks=self.checks)

        if not await self._delete_with_retry(log):
            self.error = "delete failed after match"
            log.error(
                "Tracking number found but could not be removed from the store; it stays pending",
                attempts=self._delete_attempts,
            )
            await self._notify(messages.DELETE_FAILED_TEXT.format(token=self.token), log)
            return

        if not await self._deliver_with_retry(messages.found_message(elapsed), log):
            self.error = "notification failed after match"
            await self._restore(log)
            return
        self._finish(RequestStatus.FULFILLED)

    async def _delete_with_retry(self, log) -> bool:
        for attempt in range(1, self._delete_attempts + 1):
            try:
                await asyncio.to_thread(self._store.delete, self.token, self.owner)
                return True
            except PersistenceError as e:
                log.warning("Store delete failed", attempt=attempt, attempts=self._delete_attempts, error=str(e))
                if attempt < self._delete_attempts:
                    await asyncio.sleep(self._delete_delay)
        return False

    async def _deliver_with_retry(self, text: str, log) -> bool:
        for attempt in range(1, self._notify_attempts + 1):
            if await self._notify(text, log):
                return True
            log.warning("Delivery attempt failed", attempt=attempt, attempts=self._notify_attempts)
            if attempt < self._notify_attempts:
                await asyncio.sleep(self._delete_delay)
        return False

    async def _restore(self, log) -> None:
        """Puts the row back so the next start finds the token again and retries the notification."""
        try:
            await asyncio.to_thread(
                self._store.create, self.owner, self.token, created_at=self.request.created_at
            )
        except DuplicateError:
            pass
        except PersistenceError as e:
            log.error("Owner was not notified and the tracking number could not be restored", error=str(e))
            return
        log.error("Owner was not notified; tracking number restored for the next start", attempts=self._notify_attempts)

    async def _notify(self, text: str, log) -> bool:
        try:
            delivered = await self._notifier.deliver(self.owner, text)
        except Exception as e:
            log.error("Notification failed", error=f"{type(e).__name__}: {e}")
            return False
        if not delivered:
            log.error("Notification was not delivered")
        return bool(delivered)
