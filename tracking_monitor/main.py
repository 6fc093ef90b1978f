"""Command line entry point: run the bot, or check the page once."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import TextIO

import structlog
import uvicorn

from tracking_monitor.api import create_app
from tracking_monitor.config import MonitorConfig, load_config
from tracking_monitor.notifier import TelegramNotifier
from tracking_monitor.page_checker import Match, PageChecker
from tracking_monitor.store import TrackingStore
from tracking_monitor.supervisor import RequestSupervisor
from tracking_monitor.transport import TelegramTransport


logger = structlog.get_logger(__name__)

EXIT_FOUND = 0
EXIT_NOT_FOUND = 1
EXIT_UNKNOWN = 2


def _level_number(level: str) -> int:
    value = logging.getLevelName(str(level or "INFO").upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: str, log_file: str | None = None) -> TextIO | None:
    """Configure structlog (and stdlib logging for third-party libraries); returns the opened log file."""
    stream: TextIO | None = None
    if log_file:
        stream = open(log_file, "a", encoding="utf-8")

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(colors=stream is None),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        logger_factory=structlog.PrintLoggerFactory(file=stream) if stream else structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(
        level=_level_number(level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=stream or sys.stderr,
    )
    # The bot token is part of every Telegram API URL.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return stream


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the monitor's event loop."""

    def install_signal_handlers(self) -> None:
        return

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_supervisor(config: MonitorConfig, *, store, checker, notifier) -> RequestSupervisor:
    return RequestSupervisor(
        store=store,
        checker=checker,
        notifier=notifier,
        poll_interval_seconds=config.poll_interval_seconds,
        shutdown_timeout_seconds=config.shutdown_timeout_seconds,
        delete_retry_attempts=config.delete_retry_attempts,
        delete_retry_delay_seconds=config.delete_retry_delay_seconds,
        notify_retry_attempts=config.notify_retry_attempts,
        max_token_length=config.max_token_length,
    )


async def run_service(config: MonitorConfig) -> int:
    if not config.telegram_bot_token:
        logger.error("TELEGRAM_BOT_TOKEN not set")
        return 2

    store = TrackingStore(config.db_path)
    await asyncio.to_thread(store.ensure_schema)
    notifier = TelegramNotifier(bot_token=config.telegram_bot_token)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass

    async with PageChecker(
        config.page_url,
        timeout_seconds=config.fetch_timeout_seconds,
        user_agent=config.user_agent,
    ) as checker:
        supervisor = build_supervisor(config, store=store, checker=checker, notifier=notifier)
        transport = TelegramTransport(
            config.telegram_bot_token,
            supervisor,
            notifier,
            page_url=config.page_url,
            poll_interval_seconds=config.poll_interval_seconds,
            updates_timeout_seconds=config.updates_timeout_seconds,
        )

        recovered = await supervisor.recover()
        logger.info(
            "Tracking monitor started",
            page_url=config.page_url,
            poll_interval_seconds=config.poll_interval_seconds,
            recovered=recovered,
        )

        tasks = [asyncio.create_task(transport.run(stop_event), name="telegram-transport")]
        server: _EmbeddedServer | None = None
        if config.status_api.enabled:
            server = _EmbeddedServer(
                uvicorn.Config(
                    create_app(supervisor),
                    host=config.status_api.host,
                    port=config.status_api.port,
                    log_level="warning",
                )
            )
            tasks.append(asyncio.create_task(server.serve(), name="status-api"))
            logger.info("Status API listening", host=config.status_api.host, port=config.status_api.port)

        try:
            await stop_event.wait()
        finally:
            logger.info("Shutting down")
            abandoned = await supervisor.shutdown()
            if server is not None:
                server.should_exit = True
            tasks[0].cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await transport.aclose()
            if abandoned:
                logger.warning("Some watchers did not stop in time", abandoned=len(abandoned))
    return 0


async def run_check(config: MonitorConfig, token: str) -> int:
    async with PageChecker(
        config.page_url,
        timeout_seconds=config.fetch_timeout_seconds,
        user_agent=config.user_agent,
    ) as checker:
        result = await checker.check(token)
    print(json.dumps({"token": token, "match": result.match.value, "error": result.error, "elapsed_ms": result.elapsed_ms}))
    if result.match is Match.FOUND:
        return EXIT_FOUND
    if result.match is Match.NOT_FOUND:
        return EXIT_NOT_FOUND
    return EXIT_UNKNOWN


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Watch a page for tracking numbers and notify over Telegram")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $TRACKING_MONITOR_CONFIG)")
    parser.add_argument("--interval", type=float, default=None, help="Override poll interval in seconds")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the bot and all watchers (default)")
    check = sub.add_parser("check", help="Fetch the page once and look for a tracking number")
    check.add_argument("token", help="Tracking number to look for")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    overrides = {}
    if args.interval is not None:
        overrides["poll_interval_seconds"] = args.interval
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        config = MonitorConfig(**{**config.model_dump(), **overrides})

    stream = configure_logging(config.log_level, config.log_file)
    try:
        if args.command == "check":
            return asyncio.run(run_check(config, args.token))
        return asyncio.run(run_service(config))
    finally:
        if stream is not None:
            stream.close()


if __name__ == "__main__":
    raise SystemExit(main())
