import gc
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

import psutil

from colored_logger import get_colored_logger

from .errors import ConflictError, InvalidRecordError, StoreUnavailableError
from .indexer import StickerIndexer
from .models import StickerRecord

logger = get_colored_logger(__name__)

# Upstream spellings accepted for each StickerRecord field
_FIELD_ALIASES = {
    "sticker_id": ("sticker_id", "file_unique_id", "unique_id", "id"),
    "pack_id": ("pack_id", "set_name", "pack", "pack_name"),
    "emoji": ("emoji", "emojis", "emoji_tags", "tags"),
    "caption": ("caption", "description", "text"),
    "pack_title": ("pack_title", "set_title", "title"),
    "keywords": ("keywords",),
    "file_id": ("file_id",),
    "source_timestamp": ("source_timestamp", "timestamp", "ts", "created_at", "date"),
}


def _pick(raw: Mapping[str, Any], field_name: str) -> Any:
    for alias in _FIELD_ALIASES[field_name]:
        if alias in raw and raw[alias] is not None:
            return raw[alias]
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_tags(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        # "😀 😺" or a bare "😀"
        return tuple(part for part in value.split() if part)
    if isinstance(value, Iterable):
        return tuple(t for t in (_as_text(v) for v in value) if t)
    return ()


def _as_timestamp(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    try:
        return datetime.fromisoformat(str(value)).timestamp()
    except ValueError:
        logger.debug("Ignoring unparseable timestamp %r", value)
        return 0.0


def coerce_record(raw: Any, clock: Callable[[], float] = time.time) -> StickerRecord:
    """
    Normalize upstream sticker metadata into a StickerRecord.

    Accepts a ``(sticker_id, pack_id, emoji, caption, source_timestamp)``
    tuple (trailing items optional) or a mapping using any of the known
    upstream field names. Unknown fields are dropped.

    Raises:
        InvalidRecordError: no sticker id or pack id
    """
    if isinstance(raw, StickerRecord):
        return raw

    if isinstance(raw, Mapping):
        fields = {name: _pick(raw, name) for name in _FIELD_ALIASES}
    elif isinstance(raw, (tuple, list)):
        names = ("sticker_id", "pack_id", "emoji", "caption", "source_timestamp")
        fields = dict.fromkeys(_FIELD_ALIASES)
        fields.update(zip(names, raw))
    else:
        raise InvalidRecordError(f"Unsupported sticker metadata type {type(raw).__name__}")

    sticker_id = _as_text(fields["sticker_id"])
    if sticker_id is None:
        raise InvalidRecordError("Sticker metadata is missing its id")

    pack_id = _as_text(fields["pack_id"])
    if pack_id is None:
        raise InvalidRecordError(f"Sticker {sticker_id} is missing its pack id")

    timestamp = _as_timestamp(fields["source_timestamp"]) or clock()
    keywords = fields["keywords"]

    return StickerRecord(
        sticker_id=sticker_id,
        pack_id=pack_id,
        emoji=_as_tags(fields["emoji"]),
        caption=_as_text(fields["caption"]),
        pack_title=_as_text(fields["pack_title"]),
        keywords=_as_tags(keywords) if keywords is not None else None,
        file_id=_as_text(fields["file_id"]),
        created_at=timestamp,
        last_seen=timestamp,
    )


def load_jsonl(path: str) -> Iterator[Any]:
    """Yield one decoded object per non-blank line of a JSON-lines feed."""
    with open(path, "r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("Skipping malformed line %d in %s: %s", line_num, path, e)


class ResourceMonitor:
    """Watches system memory so large ingestion runs can back off."""

    def __init__(self, max_memory_percent: float = 85.0):
        self.max_memory_percent = max_memory_percent
        self.start_memory = psutil.virtual_memory().percent

    def should_throttle(self) -> bool:
        return psutil.virtual_memory().percent > self.max_memory_percent

    def get_resource_stats(self) -> Dict[str, float]:
        memory = psutil.virtual_memory()
        return {
            "memory_percent": memory.percent,
            "memory_available_gb": memory.available / (1024**3),
            "memory_increase": memory.percent - self.start_memory,
        }


class IngestionPipeline:
    """
    Feeds batches of upstream sticker metadata into the indexer.

    Malformed items are rejected before they reach the indexer. Store
    conflicts are retried immediately, unavailable-store errors with
    exponential backoff; an item that still fails is counted and logged,
    and never leaves a partial write behind.
    """

    def __init__(
        self,
        indexer: StickerIndexer,
        max_workers: int = 4,
        max_retries: int = 3,
        retry_backoff: float = 0.1,
        monitor: Optional[ResourceMonitor] = None,
        throttle_delay: float = 0.5,
    ):
        self.indexer = indexer
        self.max_workers = max(1, max_workers)
        self.max_retries = max(0, max_retries)
        self.retry_backoff = retry_backoff
        self.monitor = monitor
        self.throttle_delay = throttle_delay

        self._stats_lock = threading.Lock()
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, float]:
        return {
            "received": 0,
            "ingested": 0,
            "rejected": 0,
            "failed": 0,
            "retries": 0,
            "start_time": 0,
            "end_time": 0,
        }

    def ingest_batch(self, items: Iterable[Any]) -> Dict[str, float]:
        """
        Ingest a batch of tuples or mappings.

        Returns:
            Statistics for this batch
        """
        self.stats = self._empty_stats()
        self.stats["start_time"] = time.time()

        records: List[StickerRecord] = []
        for raw in items:
            self._bump("received")
            try:
                records.append(coerce_record(raw, self.indexer.clock))
            except InvalidRecordError as e:
                logger.warning("Rejected sticker metadata: %s", e)
                self._bump("rejected")

        if len(records) <= 1 or self.max_workers == 1:
            for record in records:
                self._throttle_if_needed()
                self._ingest_one(record)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {}
                for record in records:
                    self._throttle_if_needed()
                    futures[executor.submit(self._ingest_one, record)] = record.sticker_id

                for future in as_completed(futures):
                    # _ingest_one handles index errors; anything else is a bug
                    future.result()

        return self._finalize_stats()

    def ingest_one(self, raw: Any) -> bool:
        """Coerce and ingest a single item outside of a batch."""
        try:
            record = coerce_record(raw, self.indexer.clock)
        except InvalidRecordError as e:
            logger.warning("Rejected sticker metadata: %s", e)
            self._bump("rejected")
            return False
        return self._ingest_one(record)

    def _ingest_one(self, record: StickerRecord) -> bool:
        attempt = 0
        while True:
            try:
                self.indexer.ingest(record)
                self._bump("ingested")
                return True
            except InvalidRecordError as e:
                logger.warning("Rejected sticker %s: %s", record.sticker_id, e)
                self._bump("rejected")
                return False
            except (ConflictError, StoreUnavailableError) as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Giving up on sticker %s after %d attempts: %s",
                        record.sticker_id,
                        attempt + 1,
                        e,
                    )
                    self._bump("failed")
                    return False

                self._bump("retries")
                if isinstance(e, StoreUnavailableError):
                    time.sleep(self.retry_backoff * (2**attempt))
                attempt += 1

    def _throttle_if_needed(self) -> None:
        if self.monitor is not None and self.monitor.should_throttle():
            logger.warning(
                "High memory usage (%.1f%%), pausing ingestion",
                self.monitor.get_resource_stats()["memory_percent"],
            )
            gc.collect()
            time.sleep(self.throttle_delay)

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[key] += amount

    def _finalize_stats(self) -> Dict[str, float]:
        self.stats["end_time"] = time.time()
        self.stats["elapsed_time"] = self.stats["end_time"] - self.stats["start_time"]

        logger.info(
            "Ingestion complete. Received: %d, Ingested: %d, Rejected: %d, Failed: %d, Retries: %d",
            self.stats["received"],
            self.stats["ingested"],
            self.stats["rejected"],
            self.stats["failed"],
            self.stats["retries"],
        )

        if self.stats["elapsed_time"] > 0 and self.stats["ingested"]:
            rate = self.stats["ingested"] / self.stats["elapsed_time"]
            logger.progress("Ingestion rate: %.1f stickers/second", rate)

        return self.stats.copy()
