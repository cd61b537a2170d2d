import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set

from colored_logger import get_colored_logger

from .errors import QueryTimeoutError
from .models import ScoredResult
from .scoring import SCORE_PRECISION, ScoringPolicy
from .store import StickerStore
from .tokenizer import unique_terms

logger = get_colored_logger(__name__)


class QueryEngine:
    """
    Ranked keyword search over the sticker index.

    Features:
    - OR semantics: a sticker matching any query term is a candidate
    - Additive scoring: summed field weights of matched terms, plus a
      log-scaled popularity boost and a recency boost that halves every
      ``recency_half_life_days``
    - Deterministic order: score descending, then sticker id ascending
    - Pagination applied after ranking every candidate
    - Optional per-query deadline
    """

    def __init__(
        self,
        store: StickerStore,
        policy: ScoringPolicy = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.policy = policy or ScoringPolicy()
        self.clock = clock

    def search(
        self,
        query_text: str,
        limit: int = 50,
        offset: int = 0,
        timeout: Optional[float] = None,
    ) -> List[ScoredResult]:
        """
        Search for stickers matching any term of ``query_text``.

        Args:
            query_text: Raw user input; empty or whitespace-only yields []
            limit: Maximum results to return
            offset: Number of ranked results to skip
            timeout: Seconds before the query is abandoned

        Returns:
            Ranked ScoredResult list

        Raises:
            ValueError: negative limit or offset
            QueryTimeoutError: the deadline passed
            StoreUnavailableError: the store could not be read
        """
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be >= 0")

        terms = unique_terms(query_text)
        if not terms or limit == 0:
            return []

        started = time.monotonic()
        deadline = started + timeout if timeout is not None else None

        ranked = self._rank(terms, deadline)
        page = ranked[offset : offset + limit]

        logger.debug(
            "Query %r: %d terms, %d candidates, returning %d (offset %d) in %.1f ms",
            query_text,
            len(terms),
            len(ranked),
            len(page),
            offset,
            (time.monotonic() - started) * 1000,
        )
        return page

    def candidates(self, query_text: str) -> Set[str]:
        """Unranked set of sticker ids matching any query term."""
        terms = unique_terms(query_text)
        if not terms:
            return set()

        with self.store.snapshot() as snap:
            matched = set()
            for term in terms:
                matched.update(p.sticker_id for p in snap.get_posting_list(term))
        return matched

    def _rank(self, terms: List[str], deadline: Optional[float]) -> List[ScoredResult]:
        scores: Dict[str, float] = defaultdict(float)
        matched: Dict[str, List[str]] = defaultdict(list)

        # One snapshot so every posting list and record comes from the same
        # committed state
        with self.store.snapshot(deadline=deadline) as snap:
            for term in sorted(terms):
                self._check_deadline(deadline)
                for posting in snap.get_posting_list(term):
                    scores[posting.sticker_id] += posting.weight
                    matched[posting.sticker_id].append(term)

            self._check_deadline(deadline)
            records = snap.get_records(scores.keys())

        now = self.clock()
        results = []
        for sticker_id, term_score in scores.items():
            record = records.get(sticker_id)
            if record is None:
                # Can't happen while postings and records commit together
                logger.warning("Posting for missing sticker %s ignored", sticker_id)
                continue

            score = (
                term_score
                + self.policy.popularity_boost(record.popularity)
                + self.policy.recency_boost(record.created_at, now)
            )
            results.append(
                ScoredResult(
                    sticker_id=sticker_id,
                    score=round(score, SCORE_PRECISION),
                    matched_terms=tuple(matched[sticker_id]),
                    file_id=record.file_id,
                )
            )

        self._check_deadline(deadline)
        results.sort(key=lambda r: (-r.score, r.sticker_id))
        return results

    @staticmethod
    def _check_deadline(deadline: Optional[float]) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise QueryTimeoutError("Query exceeded its deadline")
