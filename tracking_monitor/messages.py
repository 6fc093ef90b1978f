"""User-facing texts and formatting helpers."""

from __future__ import annotations

from datetime import timedelta

from tracking_monitor.models import TrackingRequest


START_TEXT = "Send me tracking number"
REGISTERED_TEXT = "Started checking the webpage, wait for notification"
INVALID_TOKEN_TEXT = "Doesn't look like a valid tracking number, try again"
SAVE_FAILED_TEXT = "Failed to save your tracking number, try again later"
DUPLICATE_TEXT = "Tracking number {token} is already being checked"
STOPPED_TEXT = "Polling stopped"
STOPPED_ONE_TEXT = "Polling stopped for {token}"
NOTHING_TO_STOP_TEXT = "Nothing is being checked for you right now"
NOT_WATCHED_TEXT = "Tracking number {token} is not being checked"
FINISHING_TEXT = "Tracking number {token} was just found, the result is on its way"
FINISHING_ALL_TEXT = "Your tracking numbers were just found, the results are on their way"
UNKNOWN_COMMAND_TEXT = "I don't know that command"
NOTHING_PENDING_TEXT = "You have no tracking numbers being checked"
FOUND_TEXT = "Your documents are ready! Elapsed Time: {elapsed}"
DELETE_FAILED_TEXT = (
    "Tracking number {token} appeared on the page, but the result could not be saved. "
    "It will be confirmed again after the next restart."
)
WATCH_FAILED_TEXT = "Checking of tracking number {token} stopped because of an internal error, send it again"


def format_elapsed(elapsed: timedelta | float) -> str:
    """
    Formats a duration as "D days H hours M minutes S seconds".

    Every unit is truncated, never rounded; negative durations clamp to zero.
    """
    seconds = elapsed.total_seconds() if isinstance(elapsed, timedelta) else float(elapsed)
    total = max(0, int(seconds))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{days} days {hours} hours {minutes} minutes {secs} seconds"


def found_message(elapsed: timedelta | float) -> str:
    return FOUND_TEXT.format(elapsed=format_elapsed(elapsed))


def help_message(page_url: str, poll_interval_seconds: float) -> str:
    seconds = int(poll_interval_seconds)
    if seconds % 60 == 0:
        every = "every minute" if seconds == 60 else f"every {seconds // 60} minutes"
    else:
        every = f"every {seconds} seconds"
    return (
        f"This bot fetches the content of {page_url} {every}\n\n"
        "Send a tracking number to start checking it\n"
        "/list - show your tracking numbers\n"
        "/stop - stop checking all of them\n"
        "/stop <number> - stop checking one number"
    )


def pending_message(requests: list[TrackingRequest]) -> str:
    if not requests:
        return NOTHING_PENDING_TEXT
    lines = ["Tracking numbers being checked:"]
    for req in requests:
        lines.append(f"- {req.token} (since {req.created_at.strftime('%Y-%m-%d %H:%M UTC')})")
    return "\n".join(lines)
