from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum

import httpx
import structlog
from bs4 import BeautifulSoup

from tracking_monitor.errors import TransientFetchError
from tracking_monitor.models import token_key


logger = structlog.get_logger(__name__)


class Match(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CheckResult:
    match: Match
    error: str | None = None
    elapsed_ms: float | None = None

    @property
    def found(self) -> bool:
        return self.match is Match.FOUND

    @classmethod
    def unknown(cls, exc: Exception, **kwargs) -> CheckResult:
        return cls(Match.UNKNOWN, error=f"{type(exc).__name__}: {exc}", **kwargs)


def table_cell_texts(html: str | bytes) -> list[str]:
    soup = BeautifulSoup(html, "html.parser")
    return [cell.get_text().strip() for cell in soup.select("table tr td")]


def scan_html(html: str | bytes, token: str) -> bool:
    """True iff some table cell's trimmed text equals token, ignoring case."""
    wanted = token_key(token)
    if not wanted:
        return False
    return any(text.casefold() == wanted for text in table_cell_texts(html))


class PageChecker:
    """
    One fetch and scan of the watched page per call.

    Never retries and never turns a failed fetch into a negative answer: any
    transport error, non-2xx status or parse failure comes back as
    Match.UNKNOWN.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
        user_agent: str = "tracking-monitor/0.1",
    ):
        self.url = url
        self.timeout_seconds = float(timeout_seconds)
        self.user_agent = user_agent
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> PageChecker:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"User-Agent": self.user_agent})
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self) -> bytes:
        """Returns the raw body; the parser picks the encoding from the page itself."""
        try:
            resp = await self._get_client().get(self.url, follow_redirects=True, timeout=self.timeout_seconds)
        except httpx.HTTPError as e:
            raise TransientFetchError(f"http_error: {type(e).__name__}: {e}") from e
        if not (200 <= resp.status_code < 300):
            raise TransientFetchError(f"unexpected status {resp.status_code} from {self.url}")
        return resp.content or b""

    async def check(self, token: str) -> CheckResult:
        started = time.perf_counter()
        try:
            html = await self.fetch()
            found = await asyncio.to_thread(scan_html, html, token)
        except TransientFetchError as e:
            elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
            logger.warning("Page fetch failed", url=self.url, token=token, error=str(e), elapsed_ms=elapsed_ms)
            return CheckResult(Match.UNKNOWN, error=str(e), elapsed_ms=elapsed_ms)
        except Exception as e:
            # html.parser is lenient, but a broken document must still not read as "absent".
            elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
            logger.warning("Page parse failed", url=self.url, token=token, error=str(e))
            return CheckResult.unknown(e, elapsed_ms=elapsed_ms)

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        logger.debug("Checked page", token=token, found=found, elapsed_ms=elapsed_ms)
        return CheckResult(Match.FOUND if found else Match.NOT_FOUND, elapsed_ms=elapsed_ms)
