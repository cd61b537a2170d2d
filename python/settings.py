import json
import logging
import os
import sys
from typing import Any, Dict

from stickersearch.scoring import ScoringPolicy

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_SETTINGS_FILE = "settings.json"


def load_env_file(env_path: str) -> bool:
    """
    Load KEY=value lines from a .env file into os.environ.

    Values in the file win over variables already set. Blank lines and
    ``#`` comments are skipped; matching single or double quotes around a
    value are removed.

    :param env_path: Path to the .env file.
    :return: True if the file existed and was read.
    """
    if not os.path.isfile(env_path):
        return False

    try:
        with open(env_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue

                key, value = line.split("=", 1)
                key = key.strip()
                if key.startswith("export "):
                    key = key[len("export ") :].strip()
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                    value = value[1:-1]

                if key:
                    os.environ[key] = value
    except OSError as e:
        logger.warning("Failed to load .env file '%s': %s", env_path, e)
        return False

    logger.info(".env file loaded from '%s'", env_path)
    return True


class Settings:
    """
    Loads the bot and index configuration from a JSON file (by default
    `settings.json`). Secrets are never read from the file: the bot token and
    the admin secret come from the environment (optionally via `.env`).
    """

    def __init__(self, settings_file: str = DEFAULT_SETTINGS_FILE, env_file: str = ".env") -> None:
        """
        Loads settings from the specified file, then populates instance variables.
        Exits the program if the file is missing or invalid.

        :param settings_file: The path to `settings.json`.
        :param env_file: Optional `.env` file loaded before reading secrets.
        """
        if env_file:
            load_env_file(env_file)

        if not os.path.isfile(settings_file):
            logger.critical("settings.json not found at '%s'. Exiting...", settings_file)
            sys.exit(1)

        self.raw = self._load_json(settings_file)
        if not isinstance(self.raw, dict):
            logger.critical("settings.json appears to be empty or invalid. Exiting...")
            sys.exit(1)

        self.version: str = self.raw.get("version", "0.0.0")
        self.log_level: str = self.raw.get("log_level", "INFO")

        # Database
        database = self.raw.get("database", {})
        self.database_path: str = os.environ.get(
            "STICKERS_DB_PATH", database.get("path", "stickers.db")
        )
        self.pool_size: int = database.get("pool_size", 5)
        self.busy_timeout_seconds: float = database.get("busy_timeout_seconds", 5.0)

        # Search
        search = self.raw.get("search", {})
        self.result_limit: int = search.get("result_limit", 50)
        self.query_timeout_seconds: float = search.get("query_timeout_seconds", 2.0)

        # Scoring weights are validated up front so a typo fails at startup
        self.scoring: Dict[str, Any] = self.raw.get("scoring", {})
        try:
            self._scoring_policy = ScoringPolicy.from_mapping(self.scoring)
        except (TypeError, ValueError) as e:
            logger.critical("Invalid scoring settings: %s. Exiting...", e)
            sys.exit(1)

        # Ingestion
        ingestion = self.raw.get("ingestion", {})
        self.ingest_workers: int = ingestion.get("max_workers", 4)
        self.ingest_max_retries: int = ingestion.get("max_retries", 3)
        self.ingest_retry_backoff_seconds: float = ingestion.get("retry_backoff_seconds", 0.1)
        self.max_memory_percent: float = ingestion.get("max_memory_percent", 85.0)

        # Bot transport
        bot = self.raw.get("bot", {})
        self.bot_username: str = bot.get("username", "sticker_doko_bot")
        self.poll_timeout_seconds: int = bot.get("poll_timeout_seconds", 30)
        self.rate_limit_requests_per_minute: int = bot.get(
            "rate_limit_requests_per_minute", 60
        )
        self.inline_cache_seconds: int = bot.get("inline_cache_seconds", 0)

        # Secrets
        self.bot_token: str = os.environ.get("TELEGRAM_BOT_TOKEN", "")
        self.admin_secret: str = os.environ.get("STICKERS_SECRET", "")

        if not self.admin_secret:
            logger.warning("STICKERS_SECRET is not set; /allow will reject every request.")

        logger.info("Settings loaded from '%s'.", settings_file)

    def _load_json(self, path: str) -> Any:
        """
        Loads JSON from the given file path.

        :param path: The path to the JSON file.
        :return: The parsed JSON if valid, otherwise None.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error("Error loading JSON file '%s': %s", path, e)
            return None

    def scoring_policy(self) -> ScoringPolicy:
        return self._scoring_policy

    def require_bot_token(self) -> str:
        """Exit if the bot is started without a token."""
        if not self.bot_token:
            logger.critical("TELEGRAM_BOT_TOKEN is not set. Exiting...")
            sys.exit(1)
        return self.bot_token
