#!/usr/bin/env python3

from api import TelegramClient
from colored_logger import setup_colored_logging, get_colored_logger
from core import RateLimiter
from settings import Settings
from sticker_bot import StickerBot
from stickersearch import QueryEngine, StickerIndexer, StickerStore, TaggerRegistry

logger = get_colored_logger(__name__)


def main() -> None:
    """
    Orchestrates the bot process:
    1. Load settings and secrets
    2. Open the sticker store
    3. Wire the index, query engine and tagger registry to the Bot API client
    4. Long-poll until interrupted, then close the store
    """
    settings = _load_settings()
    store = open_store(settings)

    try:
        bot = build_bot(settings, store)
        bot.run(poll_timeout=settings.poll_timeout_seconds)
    except KeyboardInterrupt:
        logger.info("Interrupted. Shutting down...")
    finally:
        store.close()

    logger.success("Sticker bot exited cleanly.")


def _load_settings() -> Settings:
    settings = Settings()
    setup_colored_logging(level=settings.log_level)
    return settings


def open_store(settings: Settings) -> StickerStore:
    logger.info("Opening sticker store at %s", settings.database_path)
    return StickerStore(
        settings.database_path,
        pool_size=settings.pool_size,
        busy_timeout=settings.busy_timeout_seconds,
    )


def build_bot(settings: Settings, store: StickerStore) -> StickerBot:
    """
    Builds a StickerBot sharing one store and scoring policy between the
    indexer and the query engine. Exits if no bot token is configured.
    """
    token = settings.require_bot_token()
    policy = settings.scoring_policy()

    client = TelegramClient(
        token,
        rate_limiter=RateLimiter(
            max_requests=settings.rate_limit_requests_per_minute, window_seconds=60
        ),
    )
    return StickerBot(
        client,
        QueryEngine(store, policy),
        StickerIndexer(store, policy),
        TaggerRegistry(store, settings.admin_secret),
        bot_username=settings.bot_username,
        result_limit=settings.result_limit,
        query_timeout=settings.query_timeout_seconds,
        inline_cache_seconds=settings.inline_cache_seconds,
    )


if __name__ == "__main__":
    main()
