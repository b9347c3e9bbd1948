"""Long-polling Telegram bot client with a slash-command router."""

__version__ = "0.1.0"
