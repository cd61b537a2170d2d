import threading
import time
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from colored_logger import get_colored_logger

from .errors import InvalidRecordError
from .models import FIELD_CAPTION, FIELD_TAG, FIELD_TITLE, Posting, StickerRecord
from .scoring import SCORE_PRECISION, ScoringPolicy
from .store import StickerStore, StoreTransaction
from .tokenizer import normalize

logger = get_colored_logger(__name__)


def _clean_keywords(keywords: Union[str, Iterable[str]]) -> List[str]:
    """Split, strip and de-duplicate keyword tags, keeping the caller's order."""
    if isinstance(keywords, str):
        keywords = keywords.split()

    seen = set()
    cleaned = []
    for keyword in keywords:
        for part in str(keyword).split():
            folded = part.casefold()
            if folded not in seen:
                seen.add(folded)
                cleaned.append(part)
    return cleaned


class StickerIndexer:
    """
    Keeps the inverted index in step with the sticker records.

    Every public write runs in one store transaction: the record row and all
    posting lists it touches commit together or not at all, so a reader never
    sees a record whose postings are half updated.

    Updates diff the stored term map against the freshly derived one and only
    rewrite the posting lists whose entry for this record changed.
    """

    def __init__(
        self,
        store: StickerStore,
        policy: ScoringPolicy = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the indexer.

        Args:
            store: Open StickerStore
            policy: Field weights baked into postings. Changing them later
                requires ``rebuild()``.
            clock: Source of unix timestamps (injectable for tests)
        """
        self.store = store
        self.policy = policy or ScoringPolicy()
        self.clock = clock

        self._stats_lock = threading.Lock()
        self.stats = {
            "records_indexed": 0,
            "records_updated": 0,
            "records_removed": 0,
            "selections_recorded": 0,
        }

    def index_terms(self, record: StickerRecord) -> Dict[str, float]:
        """
        Derive the weighted term map for a record.

        Each occurrence of a term adds the weight of the field it appears in,
        so a term found in both the caption and an emoji tag outranks one
        found in the caption alone.
        """
        weights: Dict[str, float] = defaultdict(float)

        def add(text, field_name):
            field_weight = self.policy.field_weight(field_name)
            for term in normalize(text):
                weights[term] += field_weight

        add(record.caption, FIELD_CAPTION)
        for emoji in record.emoji:
            add(emoji, FIELD_TAG)
        for keyword in record.keywords or ():
            add(keyword, FIELD_TAG)
        add(record.pack_title or record.pack_id, FIELD_TITLE)

        return {term: round(weight, SCORE_PRECISION) for term, weight in weights.items()}

    def ingest(self, record: StickerRecord) -> StickerRecord:
        """
        Insert or update a sticker and its postings.

        Args:
            record: Incoming record. ``keywords=None`` keeps stored keywords.

        Returns:
            The record as stored (created_at and popularity merged with any
            existing row)

        Raises:
            InvalidRecordError: missing sticker id or pack id
            ConflictError, StoreUnavailableError: transaction rolled back
        """
        self._validate(record)
        now = self.clock()

        with self.store.transaction() as txn:
            existing = txn.get_record(record.sticker_id)
            merged = self._merge(existing, record, now)
            removed, added = self._write(txn, merged)

        self._bump("records_updated" if existing else "records_indexed")
        logger.debug(
            "%s sticker %s (pack %s): +%d/-%d postings",
            "Updated" if existing else "Indexed",
            merged.sticker_id,
            merged.pack_id,
            added,
            removed,
        )
        return merged

    def remove(self, sticker_id: str) -> bool:
        """
        Delete a sticker and every posting that references it.

        Returns:
            False if the sticker was not indexed
        """
        with self.store.transaction() as txn:
            removed = self._remove_in(txn, sticker_id)

        if removed:
            self._bump("records_removed")
            logger.info("Removed sticker %s from the index", sticker_id)
        return removed

    def remove_pack(self, pack_id: str) -> int:
        """Retract a whole pack in one transaction. Returns stickers removed."""
        with self.store.transaction() as txn:
            sticker_ids = txn.record_ids_for_pack(pack_id)
            for sticker_id in sticker_ids:
                self._remove_in(txn, sticker_id)

        if sticker_ids:
            self._bump("records_removed", len(sticker_ids))
        logger.info("Removed pack %s (%d stickers)", pack_id, len(sticker_ids))
        return len(sticker_ids)

    def record_selection(self, sticker_id: str) -> Optional[int]:
        """Count a user picking this sticker from the results."""
        with self.store.transaction() as txn:
            popularity = txn.increment_popularity(sticker_id)

        if popularity is None:
            logger.warning("Chosen sticker %s not found in the index", sticker_id)
        else:
            self._bump("selections_recorded")
        return popularity

    def add_keywords(
        self,
        record: Union[StickerRecord, str],
        keywords: Union[str, Iterable[str]],
    ) -> Optional[StickerRecord]:
        """
        Attach keyword tags to a sticker.

        Passing a StickerRecord indexes the sticker first if it is unknown;
        passing a bare id only tags stickers that already exist.

        Returns:
            The updated record, or None for an unknown bare id
        """
        template = record if isinstance(record, StickerRecord) else None
        sticker_id = template.sticker_id if template else record
        cleaned = _clean_keywords(keywords)
        if template is not None:
            self._validate(template)

        with self.store.transaction() as txn:
            existing = txn.get_record(sticker_id)
            if existing is None and template is None:
                return None

            base = existing or self._merge(None, template.with_changes(keywords=()), self.clock())
            current = list(base.keywords or ())
            known = {keyword.casefold() for keyword in current}
            current.extend(k for k in cleaned if k.casefold() not in known)

            updated = base.with_changes(keywords=tuple(current))
            self._write(txn, updated)

        self._bump("records_updated" if existing else "records_indexed")
        logger.info("Tagged sticker %s with %s", sticker_id, cleaned)
        return updated

    def remove_keywords(
        self, sticker_id: str, keywords: Union[str, Iterable[str]]
    ) -> Optional[int]:
        """
        Detach keyword tags (case-insensitive).

        Returns:
            Number of keywords removed, or None if the sticker is unknown
        """
        targets = {keyword.casefold() for keyword in _clean_keywords(keywords)}

        with self.store.transaction() as txn:
            existing = txn.get_record(sticker_id)
            if existing is None:
                return None

            current = existing.keywords or ()
            kept = tuple(k for k in current if k.casefold() not in targets)
            removed = len(current) - len(kept)
            if removed:
                self._write(txn, existing.with_changes(keywords=kept))

        if removed:
            self._bump("records_updated")
        logger.info("Removed %d keywords from sticker %s", removed, sticker_id)
        return removed

    def keywords_for(self, sticker_id: str) -> Optional[Tuple[str, ...]]:
        record = self.store.get_record(sticker_id)
        return record.keywords if record else None

    def rebuild(self) -> Dict[str, float]:
        """
        Recompute every posting list from the stored records.

        Needed after changing field weights; also repairs an index whose
        postings drifted from the records.
        """
        start_time = time.time()
        lists: Dict[str, List[Posting]] = defaultdict(list)

        with self.store.transaction() as txn:
            records = [record for record, _ in txn.iter_records()]
            txn.clear_postings()

            for record in records:
                terms = self.index_terms(record)
                txn.put_record(record, terms)
                for term, weight in terms.items():
                    lists[term].append(Posting(record.sticker_id, weight))

            for term, postings in lists.items():
                txn.put_posting_list(term, postings)

        elapsed = time.time() - start_time
        logger.info(
            "Rebuilt index: %d records, %d terms in %.2f seconds",
            len(records),
            len(lists),
            elapsed,
        )
        return {"records": len(records), "terms": len(lists), "elapsed_time": elapsed}

    def stale_records(self) -> List[str]:
        """Ids of stickers whose stored term weights differ from this policy's."""
        with self.store.snapshot() as snap:
            return [
                record.sticker_id
                for record, terms in snap.iter_records()
                if terms != self.index_terms(record)
            ]

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return self.stats.copy()

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[key] += amount

    @staticmethod
    def _validate(record: StickerRecord) -> None:
        if not isinstance(record, StickerRecord):
            raise InvalidRecordError(f"Expected StickerRecord, got {type(record).__name__}")
        if not isinstance(record.sticker_id, str) or not record.sticker_id.strip():
            raise InvalidRecordError("Sticker record is missing its id")
        if not isinstance(record.pack_id, str) or not record.pack_id.strip():
            raise InvalidRecordError(f"Sticker {record.sticker_id} is missing its pack id")

    @staticmethod
    def _merge(
        existing: Optional[StickerRecord], incoming: StickerRecord, now: float
    ) -> StickerRecord:
        if existing is None:
            return incoming.with_changes(
                keywords=incoming.keywords or (),
                created_at=incoming.created_at or now,
                last_seen=incoming.last_seen or now,
                popularity=max(incoming.popularity, 0),
            )

        created = [t for t in (existing.created_at, incoming.created_at) if t]
        return incoming.with_changes(
            keywords=(
                incoming.keywords if incoming.keywords is not None else existing.keywords
            ),
            pack_title=incoming.pack_title or existing.pack_title,
            file_id=incoming.file_id or existing.file_id,
            created_at=min(created) if created else now,
            last_seen=incoming.last_seen or now,
            popularity=max(existing.popularity, incoming.popularity),
        )

    def _write(self, txn: StoreTransaction, record: StickerRecord) -> Tuple[int, int]:
        new_terms = self.index_terms(record)
        old_terms = txn.get_record_terms(record.sticker_id)
        counts = self._apply_term_diff(txn, record.sticker_id, old_terms, new_terms)
        txn.put_record(record, new_terms)
        return counts

    def _remove_in(self, txn: StoreTransaction, sticker_id: str) -> bool:
        old_terms = txn.get_record_terms(sticker_id)
        if not txn.delete_record(sticker_id):
            return False
        self._apply_term_diff(txn, sticker_id, old_terms, {})
        return True

    @staticmethod
    def _apply_term_diff(
        txn: StoreTransaction,
        sticker_id: str,
        old_terms: Dict[str, float],
        new_terms: Dict[str, float],
    ) -> Tuple[int, int]:
        """Rewrite the posting lists whose entry for ``sticker_id`` changed."""
        removed = 0
        added = 0

        for term in sorted(old_terms.keys() - new_terms.keys()):
            postings = [p for p in txn.get_posting_list(term) if p.sticker_id != sticker_id]
            txn.put_posting_list(term, postings)
            removed += 1

        for term in sorted(new_terms):
            weight = new_terms[term]
            if old_terms.get(term) == weight:
                continue
            postings = [p for p in txn.get_posting_list(term) if p.sticker_id != sticker_id]
            postings.append(Posting(sticker_id, weight))
            txn.put_posting_list(term, postings)
            added += 1

        logger.trace("Sticker %s: %d terms dropped, %d posted", sticker_id, removed, added)
        return removed, added
