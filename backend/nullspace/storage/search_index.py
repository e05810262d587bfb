"""Per-vault full-text index over decrypted note fields.

Backed by a single SQLite database (``index.sqlite3``) in the index directory:

- ``documents``: one row per note id with the stored title and timestamps
- ``documents_fts``: FTS5 table over title and content, sharing the rowid
- ``document_tags``: whole-keyword tags, compared case-insensitively

The database runs in WAL mode so searches see the last committed state while
a writer has uncommitted changes. Only one writer may be open per index; that
is enforced with an exclusive ``flock`` on ``writer.lock`` next to the
database, which also records who holds it.

The engine never sees ciphertext or passwords. Whatever is indexed here is
plaintext on disk; use ``SearchEngine.ephemeral()`` for an index that is
deleted on close.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import shutil
import sqlite3
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

from nullspace import config
from nullspace.errors import IndexCorruptError, NotFoundError, QueryParseError, SearchError, WriterLockedError
from nullspace.models.notes import TAG_SEPARATOR, as_utc, utc_now
from nullspace.storage.search_query import BooleanQuery, Occur, PhraseQuery, Query, TermQuery, parse

logger = logging.getLogger(__name__)

INDEX_DB = "index.sqlite3"
LOCK_FILE = "writer.lock"
TITLE_WEIGHT = 2.0
CONTENT_WEIGHT = 1.0
TAG_SCORE = 1.0

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    doc_id INTEGER PRIMARY KEY,
    note_id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
    title, content, tokenize = 'unicode61 remove_diacritics 2'
);
CREATE TABLE IF NOT EXISTS document_tags (
    doc_id INTEGER NOT NULL,
    tag TEXT NOT NULL COLLATE NOCASE,
    PRIMARY KEY (doc_id, tag)
);
CREATE INDEX IF NOT EXISTS idx_document_tags_tag ON document_tags(tag);
CREATE INDEX IF NOT EXISTS idx_documents_updated ON documents(updated_at);
"""

_WORD = re.compile(r"\w")

Timestamp = Union[datetime, int]


def _epoch(value: Timestamp) -> int:
    if isinstance(value, datetime):
        return int(as_utc(value).timestamp())
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("timestamps must be datetime or epoch seconds")
    return value


def _fts_string(text: str) -> str:
    return '"' + text.replace('"', '""') + '"'


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _check_limit(limit: Optional[int]) -> int:
    if limit is None:
        limit = config.default_search_limit()
    if limit <= 0:
        raise ValueError("limit must be positive")
    return limit


@contextmanager
def _db_errors(what: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as exc:
        raise SearchError(f"{what} failed: {exc}") from exc
    except (sqlite3.IntegrityError, sqlite3.InterfaceError, sqlite3.ProgrammingError) as exc:
        raise SearchError(f"{what} rejected: {exc}") from exc
    except sqlite3.DatabaseError as exc:
        raise IndexCorruptError(f"{what} failed, index is unreadable: {exc}") from exc


@dataclass(frozen=True)
class WriterLock:
    lock_id: uuid.UUID
    pid: int
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"lock_id": str(self.lock_id), "pid": self.pid, "created_at": self.created_at}


class IndexWriter:
    """Exclusive write handle. Changes become visible to searches on ``commit()``."""

    def __init__(self, engine: SearchEngine):
        self.engine = engine
        self._lock_fd = engine._acquire_lock()
        self.lock = WriterLock(lock_id=uuid.uuid4(), pid=os.getpid(), created_at=utc_now().isoformat())
        try:
            os.ftruncate(self._lock_fd, 0)
            os.write(self._lock_fd, json.dumps(self.lock.to_dict()).encode("utf-8"))
            self._conn = engine._connect()
        except BaseException:
            self._release_lock()
            raise
        self._in_tx = False
        self.closed = False

    def _release_lock(self) -> None:
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)

    def _begin(self) -> sqlite3.Connection:
        if self.closed:
            raise SearchError("Index writer is closed")
        if not self._in_tx:
            with _db_errors("begin"):
                self._conn.execute("BEGIN IMMEDIATE")
            self._in_tx = True
        return self._conn

    @contextmanager
    def _operation(self, what: str) -> Iterator[sqlite3.Connection]:
        """Run one write inside the open transaction; a failure undoes only that write."""
        conn = self._begin()
        with _db_errors(what):
            conn.execute("SAVEPOINT operation")
        try:
            with _db_errors(what):
                yield conn
        except BaseException:
            with _db_errors(what):
                conn.execute("ROLLBACK TO operation")
                conn.execute("RELEASE operation")
            raise
        with _db_errors(what):
            conn.execute("RELEASE operation")

    def _doc_id(self, note_id: str) -> Optional[int]:
        row = self._conn.execute("SELECT doc_id FROM documents WHERE note_id = ?", (note_id,)).fetchone()
        return row[0] if row else None

    def _remove(self, doc_id: int) -> None:
        self._conn.execute("DELETE FROM documents_fts WHERE rowid = ?", (doc_id,))
        self._conn.execute("DELETE FROM document_tags WHERE doc_id = ?", (doc_id,))
        self._conn.execute("DELETE FROM documents WHERE doc_id = ?", (doc_id,))

    def index_note(
        self,
        note_id: Union[str, uuid.UUID],
        title: str,
        content: str,
        tags: Iterable[str],
        created_at: Timestamp,
        updated_at: Timestamp,
    ) -> None:
        note_id = str(note_id)
        created, updated = _epoch(created_at), _epoch(updated_at)
        tags = list(tags)
        if not all(isinstance(tag, str) for tag in tags):
            raise TypeError("tags must be strings")
        with self._operation("index_note") as conn:
            existing = self._doc_id(note_id)
            if existing is not None:
                self._remove(existing)
            cur = conn.execute(
                "INSERT INTO documents (note_id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (note_id, title, created, updated),
            )
            doc_id = cur.lastrowid
            conn.execute(
                "INSERT INTO documents_fts (rowid, title, content) VALUES (?, ?, ?)",
                (doc_id, title, content),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO document_tags (doc_id, tag) VALUES (?, ?)",
                [(doc_id, tag) for tag in tags],
            )

    def delete_note(self, note_id: Union[str, uuid.UUID]) -> bool:
        with self._operation("delete_note"):
            existing = self._doc_id(str(note_id))
            if existing is None:
                return False
            self._remove(existing)
        return True

    def clear(self) -> None:
        with self._operation("clear") as conn:
            conn.execute("DELETE FROM documents_fts")
            conn.execute("DELETE FROM document_tags")
            conn.execute("DELETE FROM documents")

    def commit(self) -> None:
        if self.closed:
            raise SearchError("Index writer is closed")
        if self._in_tx:
            with _db_errors("commit"):
                self._conn.execute("COMMIT")
            self._in_tx = False

    def rollback(self) -> None:
        if self._in_tx:
            with _db_errors("rollback"):
                self._conn.execute("ROLLBACK")
            self._in_tx = False

    def close(self) -> None:
        if self.closed:
            return
        try:
            self.rollback()
        finally:
            self.closed = True
            self._conn.close()
            self._release_lock()

    def __enter__(self) -> IndexWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class SearchEngine:
    def __init__(self, index_dir: Union[Path, str], *, create: bool = True, _ephemeral: bool = False):
        """Open the index in ``index_dir``; with ``create=False`` a missing index raises ``NotFoundError``."""
        self.index_dir = Path(index_dir)
        self.db_path = self.index_dir / INDEX_DB
        self.lock_path = self.index_dir / LOCK_FILE
        self._ephemeral = _ephemeral
        if not create and not self.db_path.is_file():
            raise NotFoundError(str(self.index_dir))
        try:
            self.index_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SearchError(f"Cannot create index directory: {exc}") from exc
        self._ensure_schema()

    @classmethod
    def ephemeral(cls) -> SearchEngine:
        """Index in a fresh temporary directory, removed by ``close()``."""
        return cls(tempfile.mkdtemp(prefix="nullspace-index-"), _ephemeral=True)

    def _connect(self) -> sqlite3.Connection:
        with _db_errors("open index"):
            return sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None)

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            with _db_errors("open index"):
                have = conn.execute(
                    "SELECT count(*) FROM sqlite_master WHERE name IN ('documents', 'documents_fts', 'document_tags')"
                ).fetchone()[0]
                # an existing index is not touched, so opening never waits on an active writer
                if have < 3:
                    conn.execute("PRAGMA journal_mode=WAL")
                    conn.executescript(_SCHEMA)
                    logger.info("Created search index at %s", self.index_dir)
        finally:
            conn.close()

    def _acquire_lock(self) -> int:
        try:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as exc:
            raise SearchError(f"Cannot open writer lock: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = self._read_lock_record(fd)
            os.close(fd)
            raise WriterLockedError("Another writer holds the index", **holder) from None
        except BaseException:
            os.close(fd)
            raise
        return fd

    @staticmethod
    def _read_lock_record(fd: int) -> dict[str, Any]:
        try:
            raw = os.pread(fd, 4096, 0)
            data = json.loads(raw.decode("utf-8")) if raw else {}
        except (OSError, ValueError):
            return {}
        return {k: data[k] for k in ("lock_id", "pid") if k in data}

    def writer(self) -> IndexWriter:
        """Open the single writer for this index; raises ``WriterLockedError`` if taken."""
        return IndexWriter(self)

    def _own(self, writer: IndexWriter) -> IndexWriter:
        if writer.engine is not self:
            raise ValueError("writer belongs to a different index")
        return writer

    def index_note(
        self,
        writer: IndexWriter,
        note_id: Union[str, uuid.UUID],
        title: str,
        content: str,
        tags: Iterable[str],
        created_at: Timestamp,
        updated_at: Timestamp,
    ) -> None:
        self._own(writer).index_note(note_id, title, content, tags, created_at, updated_at)

    def delete_note(self, writer: IndexWriter, note_id: Union[str, uuid.UUID]) -> bool:
        return self._own(writer).delete_note(note_id)

    def clear(self, writer: IndexWriter) -> None:
        self._own(writer).clear()

    def commit(self, writer: IndexWriter) -> None:
        self._own(writer).commit()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    # --- queries ---

    def search(self, query: str, limit: Optional[int] = None) -> list[tuple[float, str]]:
        """Return ``(score, note_id)`` pairs, best first, at most ``limit`` long."""
        limit = _check_limit(limit)
        tree = parse(query)
        if tree is None:
            return []
        with self._reader() as conn, _db_errors("search"):
            scores = self._evaluate(conn, tree)
            if not scores:
                return []
            ids = self._note_ids(conn, scores.keys())
        hits = sorted(((score, ids[doc_id]) for doc_id, score in scores.items()), key=lambda h: (-h[0], h[1]))
        return hits[:limit]

    def _note_ids(self, conn: sqlite3.Connection, doc_ids: Iterable[int]) -> dict[int, str]:
        out: dict[int, str] = {}
        doc_ids = list(doc_ids)
        for i in range(0, len(doc_ids), 500):
            chunk = doc_ids[i : i + 500]
            marks = ",".join("?" * len(chunk))
            for doc_id, note_id in conn.execute(
                f"SELECT doc_id, note_id FROM documents WHERE doc_id IN ({marks})", chunk
            ):
                out[doc_id] = note_id
        return out

    def _evaluate(self, conn: sqlite3.Connection, node: Query) -> dict[int, float]:
        if isinstance(node, BooleanQuery):
            return self._evaluate_boolean(conn, node)
        prefix = isinstance(node, TermQuery) and node.prefix
        scores: dict[int, float] = {}
        if node.field in (None, "title", "content"):
            scores.update(self._match_text(conn, node, prefix))
        if node.field in (None, "tags"):
            for doc_id in self._match_tag(conn, node.text, prefix):
                scores[doc_id] = scores.get(doc_id, 0.0) + TAG_SCORE
        return scores

    def _evaluate_boolean(self, conn: sqlite3.Connection, node: BooleanQuery) -> dict[int, float]:
        must = [self._evaluate(conn, c.query) for c in node.clauses if c.occur is Occur.MUST]
        should = [self._evaluate(conn, c.query) for c in node.clauses if c.occur is Occur.SHOULD]
        must_not = [self._evaluate(conn, c.query) for c in node.clauses if c.occur is Occur.MUST_NOT]
        if must:
            keys = set(must[0]).intersection(*must[1:])
        elif should:
            keys = set().union(*should)
        else:
            return {}
        for excluded in must_not:
            keys.difference_update(excluded)
        return {k: sum(m[k] for m in must) + sum(s.get(k, 0.0) for s in should) for k in keys}

    def _match_text(
        self, conn: sqlite3.Connection, node: Union[TermQuery, PhraseQuery], prefix: bool
    ) -> dict[int, float]:
        text, field = node.text, node.field
        if not _WORD.search(text):
            return {}
        expr = _fts_string(text) + ("*" if prefix else "")
        if field is not None:
            expr = f"{field} : {expr}"
        try:
            rows = conn.execute(
                f"SELECT rowid, -bm25(documents_fts, {TITLE_WEIGHT}, {CONTENT_WEIGHT}) "
                "FROM documents_fts WHERE documents_fts MATCH ?",
                (expr,),
            ).fetchall()
        except sqlite3.OperationalError as exc:
            if "fts5" in str(exc):
                raise QueryParseError("Term not accepted by the index", node.pos, text) from exc
            raise
        return {doc_id: float(score) for doc_id, score in rows}

    def _match_tag(self, conn: sqlite3.Connection, text: str, prefix: bool) -> list[int]:
        if prefix:
            sql = "SELECT DISTINCT doc_id FROM document_tags WHERE tag LIKE ? ESCAPE '\\'"
            arg = _like_escape(text) + "%"
        else:
            sql = "SELECT DISTINCT doc_id FROM document_tags WHERE tag = ?"
            arg = text
        return [row[0] for row in conn.execute(sql, (arg,))]

    def search_by_tag(self, tag: str, limit: Optional[int] = None, include_descendants: bool = True) -> list[str]:
        """Note ids carrying ``tag`` (and, by default, any tag below it), newest first."""
        limit = _check_limit(limit)
        sql = "SELECT DISTINCT d.note_id, d.updated_at FROM documents d JOIN document_tags t ON t.doc_id = d.doc_id WHERE t.tag = ?"
        args: list[Any] = [tag]
        if include_descendants:
            sql += " OR t.tag LIKE ? ESCAPE '\\'"
            args.append(_like_escape(tag + TAG_SEPARATOR) + "%")
        sql += " ORDER BY d.updated_at DESC, d.note_id LIMIT ?"
        args.append(limit)
        with self._reader() as conn, _db_errors("search_by_tag"):
            return [row[0] for row in conn.execute(sql, args)]

    def all_tags(self) -> list[str]:
        with self._reader() as conn, _db_errors("all_tags"):
            return [row[0] for row in conn.execute("SELECT DISTINCT tag FROM document_tags ORDER BY tag")]

    def doc_count(self) -> int:
        with self._reader() as conn, _db_errors("doc_count"):
            return conn.execute("SELECT count(*) FROM documents").fetchone()[0]

    def recent(self, limit: Optional[int] = None) -> list[str]:
        limit = _check_limit(limit)
        with self._reader() as conn, _db_errors("recent"):
            rows = conn.execute(
                "SELECT note_id FROM documents ORDER BY updated_at DESC, note_id LIMIT ?", (limit,)
            )
            return [row[0] for row in rows]

    def close(self) -> None:
        if self._ephemeral:
            shutil.rmtree(self.index_dir, ignore_errors=True)
            self._ephemeral = False

    def __enter__(self) -> SearchEngine:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
