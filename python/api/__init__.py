from .telegram_client import TelegramClient

__all__ = ["TelegramClient"]
