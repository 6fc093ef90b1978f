from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable

import structlog

from tracking_monitor.errors import DuplicateError, NotFoundError, WatchFinishingError
from tracking_monitor.models import (
    DEFAULT_MAX_TOKEN_LENGTH,
    TrackingRequest,
    WatchKey,
    token_key,
    utc_now,
    validate_token,
)
from tracking_monitor.watcher import Watcher, WatcherState


logger = structlog.get_logger(__name__)


class RequestSupervisor:
    """
    Owns the live watchers, one per (owner, token).

    ``_live`` is the only shared mutable state. Operations that await between a
    lookup and the matching insert/remove hold ``_lock``; the synchronous
    retire callback runs on the event loop thread and cannot interleave with
    them.
    """

    def __init__(
        self,
        *,
        store: Any,
        checker: Any,
        notifier: Any,
        poll_interval_seconds: float = 60.0,
        shutdown_timeout_seconds: float = 10.0,
        delete_retry_attempts: int = 3,
        delete_retry_delay_seconds: float = 1.0,
        notify_retry_attempts: int = 3,
        max_token_length: int = DEFAULT_MAX_TOKEN_LENGTH,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.checker = checker
        self.notifier = notifier
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.shutdown_timeout_seconds = float(shutdown_timeout_seconds)
        self.delete_retry_attempts = int(delete_retry_attempts)
        self.delete_retry_delay_seconds = float(delete_retry_delay_seconds)
        self.notify_retry_attempts = int(notify_retry_attempts)
        self.max_token_length = int(max_token_length)
        self._clock = clock
        self._live: dict[WatchKey, Watcher] = {}
        self._stopping: set[Watcher] = set()
        self._lock = asyncio.Lock()
        self._closed = False

    def __len__(self) -> int:
        return len(self._live)

    def get(self, owner: int, token: str) -> Watcher | None:
        return self._live.get(WatchKey(int(owner), token_key(token)))

    def watchers(self, owner: int | None = None) -> list[Watcher]:
        items = list(self._live.values())
        if owner is not None:
            items = [w for w in items if w.owner == int(owner)]
        return sorted(items, key=lambda w: (w.request.created_at, w.owner, w.token))

    def pending(self, owner: int | None = None) -> list[TrackingRequest]:
        return [w.request for w in self.watchers(owner) if w.state is WatcherState.POLLING]

    def snapshot(self) -> list[dict[str, Any]]:
        return [w.to_dict() for w in self.watchers()]

    def _spawn(self, request: TrackingRequest) -> Watcher:
        watcher = Watcher(
            request,
            checker=self.checker,
            store=self.store,
            notifier=self.notifier,
            interval_seconds=self.poll_interval_seconds,
            delete_retry_attempts=self.delete_retry_attempts,
            delete_retry_delay_seconds=self.delete_retry_delay_seconds,
            notify_retry_attempts=self.notify_retry_attempts,
            clock=self._clock,
            on_finished=self._retire,
        )
        self._live[watcher.key] = watcher
        watcher.start()
        return watcher

    def _retire(self, watcher: Watcher) -> None:
        self._stopping.discard(watcher)
        # A match whose delete failed stays registered so the token is neither re-polled nor re-registered.
        if watcher.state is WatcherState.MATCHED:
            logger.error("Watcher stalled after match", owner=watcher.owner, token=watcher.token)
            return
        if self._live.get(watcher.key) is watcher:
            del self._live[watcher.key]
        logger.debug("Watcher retired", owner=watcher.owner, token=watcher.token, status=watcher.request.status.value)

    def _stop(self, watcher: Watcher) -> None:
        if watcher.cancel() or not watcher.finished:
            self._stopping.add(watcher)

    async def register(self, owner: int, raw_token: str) -> TrackingRequest:
        """Validates, persists and starts watching a token.

        Raises InvalidTokenError, DuplicateError, or PersistenceError. Nothing is
        spawned unless the store accepted the request.
        """
        token = validate_token(raw_token, max_length=self.max_token_length)
        key = WatchKey(int(owner), token_key(token))
        async with self._lock:
            if self._closed:
                raise RuntimeError("Supervisor is shut down")
            if key in self._live:
                raise DuplicateError(int(owner), token)
            request = await asyncio.to_thread(self.store.create, int(owner), token)
            self._spawn(request)
        logger.info("Registered tracking number", owner=request.owner, token=request.token)
        return request

    async def recover(self) -> int:
        """Starts one watcher per persisted request and returns how many were started.

        Loading failures propagate; a problem with a single row is logged and skipped.
        """
        requests = await asyncio.to_thread(self.store.load_all)
        started = 0
        async with self._lock:
            for request in requests:
                try:
                    if request.key in self._live:
                        logger.warning("Skipping recovered duplicate", owner=request.owner, token=request.token)
                        continue
                    validate_token(request.token, max_length=self.max_token_length)
                    self._spawn(request)
                    started += 1
                except Exception as e:
                    logger.error(
                        "Failed to recover tracking number",
                        owner=request.owner,
                        token=request.token,
                        error=f"{type(e).__name__}: {e}",
                    )
        logger.info("Recovered tracking numbers", loaded=len(requests), started=started)
        return started

    async def cancel(self, owner: int, token: str, *, forget: bool = False) -> TrackingRequest:
        """Stops the watcher for (owner, token). With ``forget`` the persisted row is removed as well.

        A watcher that already matched is left alone and WatchFinishingError is raised.
        """
        key = WatchKey(int(owner), token_key(token))
        async with self._lock:
            watcher = self._live.get(key)
            if watcher is None:
                raise NotFoundError(int(owner), token)
            if watcher.state is WatcherState.MATCHED:
                raise WatchFinishingError(watcher.owner, watcher.token)
            del self._live[key]
            self._stop(watcher)
            if forget:
                await asyncio.to_thread(self.store.delete, watcher.token, watcher.owner)
        logger.info("Cancelled tracking number", owner=watcher.owner, token=watcher.token, forget=forget)
        return watcher.request

    async def cancel_owner(self, owner: int, *, forget: bool = False) -> list[str]:
        """Stops every polling watcher of one owner and returns their tokens."""
        owner = int(owner)
        async with self._lock:
            owned = [w for key, w in self._live.items() if key.owner == owner]
            if not owned:
                raise NotFoundError(owner)
            watchers = [w for w in owned if w.state is not WatcherState.MATCHED]
            if not watchers:
                raise WatchFinishingError(owner)
            for watcher in watchers:
                self._live.pop(watcher.key, None)
                self._stop(watcher)
            if forget:
                for watcher in watchers:
                    await asyncio.to_thread(self.store.delete, watcher.token, watcher.owner)
        tokens = [w.token for w in watchers]
        logger.info("Cancelled tracking numbers", owner=owner, tokens=tokens, forget=forget)
        return tokens

    async def shutdown(self, timeout: float | None = None) -> list[WatchKey]:
        """Stops every watcher and waits for them; returns the keys abandoned after the timeout.

        Persisted rows are kept so the next start recovers them. Watchers that
        already matched are never abandoned: their row may be gone, so they are
        awaited until the owner has been told.
        """
        timeout = self.shutdown_timeout_seconds if timeout is None else float(timeout)
        async with self._lock:
            self._closed = True
            watchers = list(self._live.values()) + list(self._stopping)
            for watcher in watchers:
                watcher.cancel()

        tasks = {w.task: w for w in watchers if w.task is not None and not w.task.done()}
        if not tasks:
            logger.info("Supervisor stopped", watchers=len(watchers))
            return []

        _done, pending = await asyncio.wait(tasks.keys(), timeout=timeout)
        reporting = {task for task in pending if tasks[task].state is WatcherState.MATCHED}
        if reporting:
            logger.info("Waiting for matched watchers to notify their owners", count=len(reporting))
            await asyncio.wait(reporting)
            pending -= reporting

        abandoned: list[WatchKey] = []
        for task in pending:
            watcher = tasks[task]
            abandoned.append(watcher.key)
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Abandoned watchers after shutdown timeout",
                timeout_seconds=timeout,
                abandoned=[f"{k.owner}:{k.token_key}" for k in abandoned],
            )
        logger.info("Supervisor stopped", watchers=len(watchers), abandoned=len(abandoned))
        return abandoned
