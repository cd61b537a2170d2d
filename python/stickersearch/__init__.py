"""
Sticker search core.

Key Components:
- normalize: Tokenizer turning captions, titles and emoji into index terms
- StickerStore: SQLite storage for records and the inverted index
- StickerIndexer: Transactional ingest/update/remove of stickers
- QueryEngine: Ranked OR search with pagination and deadlines
- IngestionPipeline: Batch feed of upstream sticker metadata
- TaggerRegistry: Users allowed to attach keyword tags
"""

from .errors import (
    AuthorizationError,
    ConflictError,
    InvalidRecordError,
    QueryError,
    QueryTimeoutError,
    StickerIndexError,
    StickerSearchError,
    StoreUnavailableError,
)
from .indexer import StickerIndexer
from .ingestion import IngestionPipeline, ResourceMonitor, coerce_record, load_jsonl
from .models import Posting, ScoredResult, StickerRecord, Tagger
from .query_engine import QueryEngine
from .scoring import ScoringPolicy
from .store import StickerStore, StoreTransaction
from .tagging import TaggerRegistry
from .tokenizer import normalize, unique_terms

__all__ = [
    "AuthorizationError",
    "ConflictError",
    "InvalidRecordError",
    "QueryError",
    "QueryTimeoutError",
    "StickerIndexError",
    "StickerSearchError",
    "StoreUnavailableError",
    "StickerIndexer",
    "IngestionPipeline",
    "ResourceMonitor",
    "coerce_record",
    "load_jsonl",
    "Posting",
    "ScoredResult",
    "StickerRecord",
    "Tagger",
    "QueryEngine",
    "ScoringPolicy",
    "StickerStore",
    "StoreTransaction",
    "TaggerRegistry",
    "normalize",
    "unique_terms",
]
