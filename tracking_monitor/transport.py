"""Telegram long-polling transport: turns chat messages into supervisor calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx
import structlog

from tracking_monitor import messages
from tracking_monitor.errors import (
    DuplicateError,
    InvalidTokenError,
    NotFoundError,
    PersistenceError,
    TransportError,
    WatchFinishingError,
)
from tracking_monitor.supervisor import RequestSupervisor

logger = structlog.get_logger(__name__)


ERROR_BACKOFF_SECONDS = 5.0


@dataclass(frozen=True)
class RegisterRequest:
    owner: int
    raw_text: str


@dataclass(frozen=True)
class CancelRequest:
    owner: int
    token: Optional[str] = None


@dataclass(frozen=True)
class CommandRequest:
    owner: int
    command: str
    args: str = ""


ChatRequest = Union[RegisterRequest, CancelRequest, CommandRequest]


def classify_message(owner: int, text: str) -> Optional[ChatRequest]:
    """Classify a chat message; anything that is not a command is a registration attempt."""
    s = (text or "").strip()
    if not s:
        return None
    if not s.startswith("/"):
        return RegisterRequest(owner=owner, raw_text=s)

    head, _, args = s[1:].partition(" ")
    command = head.split("@", 1)[0].strip().lower()
    args = args.strip()
    if command == "stop":
        return CancelRequest(owner=owner, token=args or None)
    return CommandRequest(owner=owner, command=command, args=args)


def _redact(text: str, secret: str) -> str:
    return text.replace(secret, "<redacted>") if secret else text


class TelegramTransport:
    """Long-polls getUpdates and answers every text message through the notifier."""

    def __init__(
        self,
        bot_token: str,
        supervisor: RequestSupervisor,
        notifier: Any,
        *,
        page_url: str,
        poll_interval_seconds: float,
        updates_timeout_seconds: int = 30,
        client: httpx.AsyncClient | None = None,
    ):
        self.bot_token = bot_token
        self.base_url = f"https://api.telegram.org/bot{bot_token}"
        self.supervisor = supervisor
        self.notifier = notifier
        self.page_url = page_url
        self.poll_interval_seconds = poll_interval_seconds
        self.updates_timeout_seconds = int(updates_timeout_seconds)
        self.last_update_id: int | None = None
        self.message_count = 0
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_updates(self, offset: int | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"timeout": self.updates_timeout_seconds, "allowed_updates": ["message"]}
        if offset is not None:
            params["offset"] = offset
        try:
            resp = await self._get_client().post(
                f"{self.base_url}/getUpdates",
                json=params,
                timeout=self.updates_timeout_seconds + 10,
            )
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(_redact(f"getUpdates failed: {type(e).__name__}: {e}", self.bot_token)) from e
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise TransportError(f"getUpdates rejected: {description or 'unknown error'}")
        return list(data.get("result") or [])

    async def handle_text(self, owner: int, text: str) -> str | None:
        """Apply one chat message and return the reply text (None for nothing to say)."""
        request = classify_message(owner, text)
        if request is None:
            return None
        if isinstance(request, RegisterRequest):
            return await self._register(request)
        if isinstance(request, CancelRequest):
            return await self._cancel(request)
        return self._command(request)

    async def _register(self, request: RegisterRequest) -> str:
        try:
            registered = await self.supervisor.register(request.owner, request.raw_text)
        except InvalidTokenError as e:
            logger.info("Rejected tracking number", owner=request.owner, reason=e.reason)
            return messages.INVALID_TOKEN_TEXT
        except DuplicateError as e:
            return messages.DUPLICATE_TEXT.format(token=e.token)
        except PersistenceError as e:
            logger.error("Error inserting tracking number", owner=request.owner, error=str(e))
            return messages.SAVE_FAILED_TEXT
        logger.info("Started checking", owner=registered.owner, token=registered.token)
        return messages.REGISTERED_TEXT

    async def _cancel(self, request: CancelRequest) -> str:
        try:
            if request.token is None:
                await self.supervisor.cancel_owner(request.owner, forget=True)
                return messages.STOPPED_TEXT
            cancelled = await self.supervisor.cancel(request.owner, request.token, forget=True)
            return messages.STOPPED_ONE_TEXT.format(token=cancelled.token)
        except NotFoundError:
            if request.token is None:
                return messages.NOTHING_TO_STOP_TEXT
            return messages.NOT_WATCHED_TEXT.format(token=request.token)
        except WatchFinishingError as e:
            if e.token is None:
                return messages.FINISHING_ALL_TEXT
            return messages.FINISHING_TEXT.format(token=e.token)
        except PersistenceError as e:
            # The watch is stopped; only the stored row survives until the next restart picks it up again.
            logger.error("Failed to forget cancelled tracking number", owner=request.owner, error=str(e))
            return messages.STOPPED_TEXT

    def _command(self, request: CommandRequest) -> str:
        if request.command == "start":
            return messages.START_TEXT
        if request.command == "help":
            return messages.help_message(self.page_url, self.poll_interval_seconds)
        if request.command == "list":
            return messages.pending_message(self.supervisor.pending(request.owner))
        return messages.UNKNOWN_COMMAND_TEXT

    async def handle_update(self, update: dict[str, Any]) -> None:
        message = update.get("message")
        if not isinstance(message, dict):
            return
        text = message.get("text")
        chat = message.get("chat") or {}
        if not isinstance(text, str) or "id" not in chat:
            return

        owner = int(chat["id"])
        self.message_count += 1
        logger.info("Incoming message", owner=owner, text=text[:200])
        reply = await self.handle_text(owner, text)
        if reply:
            await self.notifier.deliver(owner, reply)

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("Listening for Telegram messages")
        while not stop_event.is_set():
            try:
                updates = await self.get_updates(offset=self.last_update_id)
            except TransportError as e:
                logger.error("Error getting updates", error=str(e))
                await self._sleep_unless_stopped(stop_event, ERROR_BACKOFF_SECONDS)
                continue

            for update in updates:
                update_id = int(update.get("update_id", 0))
                if self.last_update_id is None or update_id >= self.last_update_id:
                    self.last_update_id = update_id + 1
                try:
                    await self.handle_update(update)
                except Exception:
                    logger.exception("Error handling update", update_id=update_id)
        logger.info("Telegram transport stopped", messages=self.message_count)

    @staticmethod
    async def _sleep_unless_stopped(stop_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), seconds)
        except asyncio.TimeoutError:
            pass
