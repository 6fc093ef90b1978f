"""Watch a public page for tracking numbers and notify their owners over Telegram."""

__version__ = "0.1.0"
