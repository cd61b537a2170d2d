from typing import Any, Callable, Dict, List, Optional, Tuple

import messages
from api.telegram_client import TelegramClient
from colored_logger import get_colored_logger
from stickersearch import (
    AuthorizationError,
    QueryEngine,
    StickerIndexer,
    StickerRecord,
    StickerSearchError,
    TaggerRegistry,
)

logger = get_colored_logger(__name__)


def _username(user: Optional[Dict[str, Any]], fallback: str = "<unknown>") -> str:
    if not user:
        return fallback
    return user.get("username") or fallback


def _parse_offset(raw: Any) -> int:
    try:
        offset = int(raw)
    except (TypeError, ValueError):
        return 0
    return max(offset, 0)


class StickerBot:
    """
    Dispatches Bot API updates to the sticker index.

    Inline queries are answered from the query engine, chosen results bump
    popularity, and chat commands manage keyword tags and tagger approval.
    Index errors are logged and the user gets no partial answer.
    """

    def __init__(
        self,
        client: TelegramClient,
        engine: QueryEngine,
        indexer: StickerIndexer,
        registry: TaggerRegistry,
        bot_username: str = "sticker_doko_bot",
        result_limit: int = TelegramClient.MAX_INLINE_RESULTS,
        query_timeout: Optional[float] = 2.0,
        inline_cache_seconds: int = 0,
    ):
        self.client = client
        self.engine = engine
        self.indexer = indexer
        self.registry = registry
        self.bot_username = bot_username.lstrip("@")
        self.result_limit = min(result_limit, TelegramClient.MAX_INLINE_RESULTS)
        self.query_timeout = query_timeout
        self.inline_cache_seconds = inline_cache_seconds
        self._running = False

        self._commands: Dict[str, Callable[[Dict[str, Any], List[str]], None]] = {
            "tag": self._handle_tag,
            "untag": self._handle_untag,
            "listtags": self._handle_list_tags,
            "register": self._handle_register,
            "allow": self._handle_allow,
            "help": self._handle_help,
            "start": self._handle_help,
        }

    def run(self, poll_timeout: int = 30, max_polls: Optional[int] = None) -> None:
        """
        Long-poll for updates until ``stop()`` is called.

        Args:
            poll_timeout: Seconds each getUpdates call may wait server-side
            max_polls: Stop after this many polls (None = forever)
        """
        self._running = True
        offset = None
        polls = 0
        logger.notice("Sticker bot @%s started", self.bot_username)

        while self._running and (max_polls is None or polls < max_polls):
            polls += 1
            for update in self.client.get_updates(offset, poll_timeout):
                offset = update.get("update_id", 0) + 1
                self.handle_update(update)

        logger.notice("Sticker bot stopped")

    def stop(self) -> None:
        self._running = False

    def handle_update(self, update: Dict[str, Any]) -> None:
        try:
            if "inline_query" in update:
                self.handle_inline_query(update["inline_query"])
            elif "chosen_inline_result" in update:
                self.handle_chosen_result(update["chosen_inline_result"])
            elif "message" in update:
                self.handle_message(update["message"])
        except StickerSearchError as e:
            logger.error("Failed to handle update %s: %s", update.get("update_id"), e)
        except Exception as e:
            logger.error("Unexpected error handling update %s: %s", update.get("update_id"), e)

    def handle_inline_query(self, inline_query: Dict[str, Any]) -> None:
        query_id = inline_query.get("id")
        query_text = inline_query.get("query", "")
        offset = _parse_offset(inline_query.get("offset"))
        username = _username(inline_query.get("from"))

        if not query_text.strip():
            self.client.answer_inline_query(query_id, [], "", self.inline_cache_seconds)
            return

        logger.info("User %s query: %s", username, query_text)
        try:
            results = self.engine.search(
                query_text, self.result_limit, offset, timeout=self.query_timeout
            )
        except StickerSearchError as e:
            logger.error("Query %r from %s failed: %s", query_text, username, e)
            return

        # Sticker ids double as result ids so chosen results can be counted
        payload = [
            TelegramClient.cached_sticker_result(result.sticker_id, result.file_id)
            for result in results
            if result.file_id
        ]
        next_offset = str(offset + len(results)) if len(results) == self.result_limit else ""

        logger.info("Returning %d results to %s", len(payload), username)
        self.client.answer_inline_query(
            query_id, payload, next_offset, self.inline_cache_seconds
        )

    def handle_chosen_result(self, chosen: Dict[str, Any]) -> None:
        sticker_id = chosen.get("result_id")
        if not sticker_id:
            logger.warning("Chosen inline result without a result id")
            return
        self.indexer.record_selection(sticker_id)

    def handle_message(self, message: Dict[str, Any]) -> None:
        parsed = self._parse_command(message.get("text") or "")
        if parsed is None:
            return

        command, args = parsed
        handler = self._commands.get(command)
        if handler is None:
            return

        try:
            handler(message, args)
        except StickerSearchError as e:
            logger.error("/%s by %s failed: %s", command, _username(message.get("from")), e)
            self._reply(message, messages.TRY_AGAIN)

    def _parse_command(self, text: str) -> Optional[Tuple[str, List[str]]]:
        if not text.startswith("/"):
            return None

        head, *args = text.split()
        command, _, target = head[1:].partition("@")
        if target and target.lower() != self.bot_username.lower():
            return None
        return command.lower(), args

    def _reply(self, message: Dict[str, Any], text: str) -> None:
        self.client.send_message(
            message["chat"]["id"], text, reply_to_message_id=message.get("message_id")
        )

    def _replied_sticker(self, message: Dict[str, Any], command: str) -> Optional[Dict[str, Any]]:
        sticker = (message.get("reply_to_message") or {}).get("sticker")
        if sticker is None:
            logger.info(
                "/%s by %s does not reply to a sticker",
                command,
                _username(message.get("from")),
            )
            self._reply(message, messages.NO_REPLY_STICKER)
        return sticker

    def _authorized_tagger(self, message: Dict[str, Any], command: str) -> bool:
        sender = message.get("from")
        if not sender:
            logger.info("Unknown user attempted to use /%s", command)
            self._reply(message, messages.SENDER_UNKNOWN)
            return False

        if not self.registry.is_allowed(sender["id"]):
            logger.info("Non-allowed user %s attempted to use /%s", _username(sender), command)
            self._reply(message, messages.TAG_NOT_AUTHORIZED)
            return False
        return True

    def _handle_tag(self, message: Dict[str, Any], args: List[str]) -> None:
        sticker = self._replied_sticker(message, "tag")
        if sticker is None or not self._authorized_tagger(message, "tag"):
            return

        set_name = sticker.get("set_name")
        if not set_name:
            self._reply(message, messages.NO_STICKER_SET)
            return
        if not args:
            self._reply(message, messages.NO_TAGS)
            return

        record = StickerRecord(
            sticker_id=sticker["file_unique_id"],
            pack_id=set_name,
            emoji=(sticker["emoji"],) if sticker.get("emoji") else (),
            file_id=sticker.get("file_id"),
        )
        self.indexer.add_keywords(record, args)

        logger.info(
            "%s tagged sticker %s in set %s with tags: %s",
            _username(message.get("from")),
            record.sticker_id,
            set_name,
            args,
        )
        self._reply(message, messages.TAGGED_STICKER + "\n- " + "\n- ".join(args))

    def _handle_untag(self, message: Dict[str, Any], args: List[str]) -> None:
        sticker = self._replied_sticker(message, "untag")
        if sticker is None or not self._authorized_tagger(message, "untag"):
            return

        removed = self.indexer.remove_keywords(sticker["file_unique_id"], args)
        if removed is None:
            self._reply(message, messages.STICKER_UNTAGGED)
            return
        self._reply(message, messages.UNTAG_SUCCESS)

    def _handle_list_tags(self, message: Dict[str, Any], args: List[str]) -> None:
        sticker = self._replied_sticker(message, "listtags")
        if sticker is None:
            return

        keywords = self.indexer.keywords_for(sticker["file_unique_id"])
        if not keywords:
            self._reply(message, messages.STICKER_UNTAGGED)
            return
        self._reply(message, messages.TAGS_ON_STICKER.format(tags=" ".join(keywords)))

    def _handle_register(self, message: Dict[str, Any], args: List[str]) -> None:
        sender = message.get("from")
        if not sender:
            self._reply(message, messages.SENDER_UNKNOWN)
            return
        if not sender.get("username"):
            logger.info("User %s without username attempted to register", sender.get("id"))
            self._reply(message, messages.USERNAME_MISSING)
            return

        self.registry.register(sender["id"], sender["username"])
        self._reply(message, messages.NEED_APPROVAL)

    def _handle_allow(self, message: Dict[str, Any], args: List[str]) -> None:
        if len(args) != 2:
            self._reply(message, messages.WRONG_ARGNUM)
            return

        secret, username = args
        try:
            tagger = self.registry.allow(secret, username)
        except AuthorizationError:
            self._reply(message, messages.NO_PERM)
            return

        if tagger is None:
            self._reply(message, messages.NOT_REGISTERED)
            return
        self._reply(message, messages.ALLOWED_USER.format(username=tagger.username))

    def _handle_help(self, message: Dict[str, Any], args: List[str]) -> None:
        self._reply(message, messages.HELP_TEXT)
