import json
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from colored_logger import get_colored_logger

from .errors import (
    ConflictError,
    InvalidRecordError,
    QueryTimeoutError,
    StickerSearchError,
    StoreUnavailableError,
)
from .models import Posting, StickerRecord, Tagger
from .scoring import SCORE_PRECISION
from .tokenizer import TERM_SEPARATOR, is_valid_term

logger = get_colored_logger(__name__)

SCHEMA_VERSION = 1

# Stay well under SQLITE_MAX_VARIABLE_NUMBER on old builds
_MAX_IN_CLAUSE = 500

_SCHEMA = """
    -- One row per sticker; terms holds the indexed term -> weight map
    CREATE TABLE IF NOT EXISTS records (
        sticker_id TEXT PRIMARY KEY,
        pack_id TEXT NOT NULL,
        pack_title TEXT,
        file_id TEXT,
        emoji TEXT NOT NULL DEFAULT '',
        keywords TEXT NOT NULL DEFAULT '',
        caption TEXT,
        created_at REAL NOT NULL,
        last_seen REAL NOT NULL,
        popularity INTEGER NOT NULL DEFAULT 0,
        terms TEXT NOT NULL DEFAULT '{}'
    );

    -- One row per term; entries is a JSON list of [sticker_id, weight]
    -- ordered by sticker_id
    CREATE TABLE IF NOT EXISTS postings (
        term TEXT PRIMARY KEY,
        entries TEXT NOT NULL
    ) WITHOUT ROWID;

    CREATE TABLE IF NOT EXISTS taggers (
        user_id INTEGER PRIMARY KEY,
        username TEXT UNIQUE NOT NULL,
        allowed INTEGER NOT NULL DEFAULT 0,
        registered_at REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS store_meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_records_pack ON records(pack_id);
    CREATE INDEX IF NOT EXISTS idx_records_popularity ON records(popularity DESC);
"""

_RECORD_COLUMNS = (
    "sticker_id, pack_id, pack_title, file_id, emoji, keywords, caption, "
    "created_at, last_seen, popularity"
)


def _translate_error(error: sqlite3.Error, action: str) -> StickerSearchError:
    """Map a sqlite3 error onto the index error taxonomy."""
    message = str(error).lower()

    if isinstance(error, sqlite3.OperationalError):
        if "interrupted" in message:
            logger.debug("%s interrupted by deadline", action)
            return QueryTimeoutError(f"{action} exceeded its deadline")
        if "locked" in message or "busy" in message:
            logger.warning("%s hit write contention: %s", action, error)
            return ConflictError(f"{action} conflicted with a concurrent write")

    logger.error("%s failed: %s", action, error)
    return StoreUnavailableError(f"{action} failed: {error}")


def _join_list(values: Iterable[str], what: str) -> str:
    values = list(values)
    for value in values:
        if TERM_SEPARATOR in value:
            raise InvalidRecordError(f"{what} entry contains a control separator")
    return TERM_SEPARATOR.join(values)


def _split_list(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(value.split(TERM_SEPARATOR))


def _row_to_record(row: sqlite3.Row) -> StickerRecord:
    return StickerRecord(
        sticker_id=row["sticker_id"],
        pack_id=row["pack_id"],
        pack_title=row["pack_title"],
        file_id=row["file_id"],
        emoji=_split_list(row["emoji"]),
        keywords=_split_list(row["keywords"]),
        caption=row["caption"],
        created_at=row["created_at"],
        last_seen=row["last_seen"],
        popularity=row["popularity"],
    )


def _encode_postings(postings: Iterable[Posting]) -> str:
    return json.dumps(
        [[p.sticker_id, p.weight] for p in postings],
        ensure_ascii=False,
        separators=(",", ":"),
    )


def _decode_postings(raw: str) -> List[Posting]:
    return [Posting(sticker_id, float(weight)) for sticker_id, weight in json.loads(raw)]


class ConnectionPool:
    """Thread-safe pool of SQLite connections in autocommit mode."""

    def __init__(self, db_path: str, pool_size: int = 5, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.pool_size = pool_size
        self.busy_timeout = busy_timeout
        self._idle: List[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._closed = False

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: BEGIN/COMMIT are issued explicitly
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=MEMORY")
        conn.execute("PRAGMA cache_size=-16000")
        return conn

    def acquire(self) -> sqlite3.Connection:
        with self._lock:
            if self._closed:
                raise StoreUnavailableError("Sticker store is closed")
            if self._idle:
                return self._idle.pop()

        try:
            return self._connect()
        except sqlite3.Error as e:
            raise _translate_error(e, "open connection") from e

    def release(self, conn: sqlite3.Connection) -> None:
        try:
            if conn.in_transaction:
                conn.rollback()
            conn.set_progress_handler(None, 0)
        except sqlite3.Error as e:
            logger.warning("Discarding connection after failed rollback: %s", e)
            conn.close()
            return

        with self._lock:
            if not self._closed and len(self._idle) < self.pool_size:
                self._idle.append(conn)
                return

        conn.close()

    @contextmanager
    def connection(self):
        """Borrow a connection for the duration of the block."""
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def close_all(self) -> None:
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []

        for conn in idle:
            conn.close()


class StoreTransaction:
    """
    A single store transaction bound to one pooled connection.

    Use as a context manager: a write transaction commits when the block
    exits normally, anything else rolls back, and the connection goes back
    to the pool on every path. ``commit``/``rollback`` may also be called
    directly.
    """

    def __init__(self, conn: sqlite3.Connection, pool: ConnectionPool, write: bool):
        self._conn = conn
        self._pool = pool
        self.write = write

    @property
    def active(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "StoreTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self.active:
            return False

        if exc_type is None and self.write:
            self.commit()
        else:
            if exc_type is not None:
                logger.debug("Rolling back transaction after %s", exc_type.__name__)
            self.rollback()
        return False

    def commit(self) -> None:
        conn = self._require_active()
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._release()
            raise _translate_error(e, "commit") from e
        self._release()

    def rollback(self) -> None:
        if self.active:
            self._release()

    def _release(self) -> None:
        conn, self._conn = self._conn, None
        # The pool rolls back whatever is still open
        self._pool.release(conn)

    def _require_active(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Transaction already finished")
        return self._conn

    def _require_write(self) -> None:
        if not self.write:
            raise RuntimeError("Write attempted inside a read-only snapshot")

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        conn = self._require_active()
        try:
            return conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise _translate_error(e, "store query") from e

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        cursor = self._execute(sql, params)
        try:
            return cursor.fetchone()
        except sqlite3.Error as e:
            raise _translate_error(e, "store query") from e

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        cursor = self._execute(sql, params)
        try:
            return cursor.fetchall()
        except sqlite3.Error as e:
            raise _translate_error(e, "store query") from e

    def _iterate(self, sql: str, params: Iterable[Any] = ()) -> Iterator[sqlite3.Row]:
        """Stream rows; errors raised mid-scan (e.g. a deadline) are translated too."""
        cursor = self._execute(sql, params)
        while True:
            try:
                rows = cursor.fetchmany(256)
            except sqlite3.Error as e:
                raise _translate_error(e, "store scan") from e
            if not rows:
                return
            yield from rows

    # Records

    def get_record(self, sticker_id: str) -> Optional[StickerRecord]:
        row = self._fetchone(
            f"SELECT {_RECORD_COLUMNS} FROM records WHERE sticker_id = ?",
            (sticker_id,),
        )
        return _row_to_record(row) if row else None

    def get_records(self, sticker_ids: Iterable[str]) -> Dict[str, StickerRecord]:
        ids = list(dict.fromkeys(sticker_ids))
        records: Dict[str, StickerRecord] = {}

        for start in range(0, len(ids), _MAX_IN_CLAUSE):
            chunk = ids[start : start + _MAX_IN_CLAUSE]
            placeholders = ",".join("?" for _ in chunk)
            rows = self._fetchall(
                f"SELECT {_RECORD_COLUMNS} FROM records "
                f"WHERE sticker_id IN ({placeholders})",
                chunk,
            )
            for row in rows:
                records[row["sticker_id"]] = _row_to_record(row)

        return records

    def get_record_terms(self, sticker_id: str) -> Dict[str, float]:
        """Term -> weight map the record is currently posted under."""
        row = self._fetchone("SELECT terms FROM records WHERE sticker_id = ?", (sticker_id,))
        if not row:
            return {}
        return {term: float(weight) for term, weight in json.loads(row["terms"]).items()}

    def put_record(self, record: StickerRecord, terms: Mapping[str, float]) -> None:
        self._require_write()
        for term in terms:
            if not is_valid_term(term):
                raise InvalidRecordError(f"Refusing to store invalid term {term!r}")

        self._execute(
            f"""
            INSERT OR REPLACE INTO records ({_RECORD_COLUMNS}, terms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.sticker_id,
                record.pack_id,
                record.pack_title,
                record.file_id,
                _join_list(record.emoji, "emoji"),
                _join_list(record.keywords or (), "keyword"),
                record.caption,
                record.created_at,
                record.last_seen,
                record.popularity,
                json.dumps(dict(sorted(terms.items())), ensure_ascii=False),
            ),
        )

    def delete_record(self, sticker_id: str) -> bool:
        self._require_write()
        cursor = self._execute("DELETE FROM records WHERE sticker_id = ?", (sticker_id,))
        return cursor.rowcount > 0

    def record_ids_for_pack(self, pack_id: str) -> List[str]:
        rows = self._fetchall(
            "SELECT sticker_id FROM records WHERE pack_id = ? ORDER BY sticker_id",
            (pack_id,),
        )
        return [row["sticker_id"] for row in rows]

    def increment_popularity(self, sticker_id: str, amount: int = 1) -> Optional[int]:
        """Bump the popularity counter; returns the new value or None if unknown."""
        self._require_write()
        if amount < 0:
            raise ValueError("Popularity never decreases")

        cursor = self._execute(
            "UPDATE records SET popularity = popularity + ? WHERE sticker_id = ?",
            (amount, sticker_id),
        )
        if cursor.rowcount == 0:
            return None

        row = self._fetchone(
            "SELECT popularity FROM records WHERE sticker_id = ?", (sticker_id,)
        )
        return row["popularity"]

    def iter_records(self) -> Iterator[Tuple[StickerRecord, Dict[str, float]]]:
        """Yield every record with its indexed term map, ordered by id."""
        for row in self._iterate(
            f"SELECT {_RECORD_COLUMNS}, terms FROM records ORDER BY sticker_id"
        ):
            terms = {t: float(w) for t, w in json.loads(row["terms"]).items()}
            yield _row_to_record(row), terms

    # Postings

    def get_posting_list(self, term: str) -> List[Posting]:
        row = self._fetchone("SELECT entries FROM postings WHERE term = ?", (term,))
        return _decode_postings(row["entries"]) if row else []

    def put_posting_list(self, term: str, postings: Iterable[Posting]) -> None:
        """Replace the posting list of ``term``; an empty list deletes it."""
        self._require_write()
        if not is_valid_term(term):
            raise InvalidRecordError(f"Refusing to store invalid term {term!r}")

        ordered = sorted(postings, key=lambda p: p.sticker_id)
        if not ordered:
            self.delete_posting_list(term)
            return

        self._execute(
            "INSERT OR REPLACE INTO postings (term, entries) VALUES (?, ?)",
            (term, _encode_postings(ordered)),
        )

    def delete_posting_list(self, term: str) -> bool:
        self._require_write()
        cursor = self._execute("DELETE FROM postings WHERE term = ?", (term,))
        return cursor.rowcount > 0

    def iter_posting_lists(self) -> Iterator[Tuple[str, List[Posting]]]:
        for row in self._iterate("SELECT term, entries FROM postings ORDER BY term"):
            yield row["term"], _decode_postings(row["entries"])

    def clear_postings(self) -> None:
        self._require_write()
        self._execute("DELETE FROM postings")

    # Taggers

    def get_tagger(self, user_id: int) -> Optional[Tagger]:
        row = self._fetchone("SELECT * FROM taggers WHERE user_id = ?", (user_id,))
        return self._row_to_tagger(row) if row else None

    def find_tagger(self, username: str) -> Optional[Tagger]:
        row = self._fetchone("SELECT * FROM taggers WHERE username = ?", (username,))
        return self._row_to_tagger(row) if row else None

    def put_tagger(self, tagger: Tagger) -> None:
        self._require_write()
        self._execute(
            """
            INSERT INTO taggers (user_id, username, allowed, registered_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                username = excluded.username,
                allowed = excluded.allowed
            """,
            (tagger.user_id, tagger.username, int(tagger.allowed), tagger.registered_at),
        )

    @staticmethod
    def _row_to_tagger(row: sqlite3.Row) -> Tagger:
        return Tagger(
            user_id=row["user_id"],
            username=row["username"],
            allowed=bool(row["allowed"]),
            registered_at=row["registered_at"],
        )


class StickerStore:
    """
    Durable SQLite storage for sticker records and the inverted index.

    The database runs in WAL mode: a snapshot sees one consistent committed
    state while a writer works, and ``BEGIN IMMEDIATE`` makes writers queue
    behind each other so two updates of the same posting list can't race.
    """

    def __init__(
        self, db_path: str = None, pool_size: int = 5, busy_timeout: float = 5.0
    ):
        """
        Open (and create if needed) the sticker store.

        Args:
            db_path: Path to the SQLite file. Defaults to ./stickers.db
            pool_size: Connections kept open for reuse
            busy_timeout: Seconds to wait on a locked database before
                reporting a ConflictError
        """
        if db_path is None:
            db_path = os.path.join(os.getcwd(), "stickers.db")

        self.db_path = str(db_path)
        self._pool = ConnectionPool(self.db_path, pool_size, busy_timeout)
        self._init_database()

    def _init_database(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            with self._pool.connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(_SCHEMA)
                conn.execute(
                    "INSERT OR IGNORE INTO store_meta (key, value) VALUES (?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )
                row = conn.execute(
                    "SELECT value FROM store_meta WHERE key = 'schema_version'"
                ).fetchone()
        except sqlite3.Error as e:
            self._pool.close_all()
            raise _translate_error(e, "initialize sticker store") from e

        if int(row["value"]) != SCHEMA_VERSION:
            self._pool.close_all()
            raise StoreUnavailableError(
                f"Unsupported schema version {row['value']} in {self.db_path}"
            )

        logger.debug("Sticker store initialized at %s", self.db_path)

    def begin(self, write: bool = True, deadline: float = None) -> StoreTransaction:
        """
        Start a transaction.

        Args:
            write: Take the write lock up front (BEGIN IMMEDIATE)
            deadline: time.monotonic() value after which running statements
                are interrupted with QueryTimeoutError

        Returns:
            An open StoreTransaction owning one pooled connection
        """
        conn = self._pool.acquire()
        try:
            if deadline is not None:
                conn.set_progress_handler(
                    lambda: 1 if time.monotonic() > deadline else 0, 1000
                )
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        except sqlite3.Error as e:
            self._pool.release(conn)
            raise _translate_error(e, "begin transaction") from e

        return StoreTransaction(conn, self._pool, write)

    def transaction(self) -> StoreTransaction:
        return self.begin(write=True)

    def snapshot(self, deadline: float = None) -> StoreTransaction:
        """Read-only transaction; every read inside sees the same snapshot."""
        return self.begin(write=False, deadline=deadline)

    def get_record(self, sticker_id: str) -> Optional[StickerRecord]:
        with self.snapshot() as snap:
            return snap.get_record(sticker_id)

    def get_posting_list(self, term: str) -> List[Posting]:
        with self.snapshot() as snap:
            return snap.get_posting_list(term)

    def stats(self) -> Dict[str, Any]:
        with self.snapshot() as snap:
            row = snap._fetchone(
                """
                SELECT
                    (SELECT COUNT(*) FROM records) AS total_records,
                    (SELECT COUNT(DISTINCT pack_id) FROM records) AS total_packs,
                    (SELECT COUNT(*) FROM postings) AS total_terms,
                    (SELECT COALESCE(SUM(popularity), 0) FROM records) AS total_selections,
                    (SELECT COUNT(*) FROM taggers) AS total_taggers,
                    (SELECT COUNT(*) FROM taggers WHERE allowed = 1) AS allowed_taggers
                """
            )
            stats = dict(row)

        try:
            stats["database_bytes"] = os.path.getsize(self.db_path)
        except OSError:
            stats["database_bytes"] = 0

        return stats

    def integrity_check(self) -> Dict[str, Any]:
        """
        Verify SQLite integrity and the coupling between records and postings.

        Reports dangling postings (ids with no record), missing postings
        (record terms without a posting entry) and stray postings (entries for
        terms the record no longer has), plus postings whose weight
        disagrees with the record's stored term weight.
        """
        results: Dict[str, Any] = {
            "database_integrity": True,
            "dangling_postings": 0,
            "missing_postings": 0,
            "stray_postings": 0,
            "weight_mismatches": 0,
            "issues_found": [],
        }

        with self.snapshot() as snap:
            verdict = snap._fetchone("PRAGMA integrity_check")[0]
            if verdict != "ok":
                results["database_integrity"] = False
                results["issues_found"].append(f"Database integrity: {verdict}")

            record_terms = {record.sticker_id: terms for record, terms in snap.iter_records()}
            posted: Dict[str, Dict[str, float]] = {}

            for term, postings in snap.iter_posting_lists():
                for posting in postings:
                    terms = record_terms.get(posting.sticker_id)
                    if terms is None:
                        results["dangling_postings"] += 1
                    elif term not in terms:
                        results["stray_postings"] += 1
                    elif abs(terms[term] - posting.weight) > 10**-SCORE_PRECISION:
                        results["weight_mismatches"] += 1
                    posted.setdefault(posting.sticker_id, {})[term] = posting.weight

            for sticker_id, terms in record_terms.items():
                have = posted.get(sticker_id, {})
                results["missing_postings"] += sum(1 for t in terms if t not in have)

        for key in (
            "dangling_postings",
            "missing_postings",
            "stray_postings",
            "weight_mismatches",
        ):
            if results[key]:
                results["issues_found"].append(f"{key.replace('_', ' ')}: {results[key]}")

        logger.info(
            "Integrity check completed: %d issues found", len(results["issues_found"])
        )
        return results

    def vacuum(self) -> None:
        try:
            with self._pool.connection() as conn:
                conn.execute("VACUUM")
        except sqlite3.Error as e:
            raise _translate_error(e, "vacuum") from e

    def close(self) -> None:
        self._pool.close_all()
        logger.debug("Sticker store at %s closed", self.db_path)

    def __enter__(self) -> "StickerStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False
