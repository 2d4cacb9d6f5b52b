"""Encrypted, transactional metadata index.

The index is an SQLite database held in memory. It is persisted as a single
sealed artifact so that entry existence, dates and chunk counts are not
observable without the passphrase::

    magic "INKWIDX1" | header length (4 bytes) | JSON header | sealed image

The JSON header carries the KDF parameters (needed before a key exists) and
is bound to the sealed image as associated data.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import secrets
import sqlite3
import struct
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from inkwell.constants import DIR_PERMISSIONS, FILE_PERMISSIONS
from inkwell.crypto import KdfParams, seal, unseal
from inkwell.errors import StorageIntegrityError
from inkwell.models import EntryRecord

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

LOGGER = logging.getLogger(__name__)

MAGIC = b"INKWIDX1"
FORMAT_VERSION = 1
_LENGTH = struct.Struct(">I")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY,
    date TEXT NOT NULL UNIQUE,
    path TEXT NOT NULL,
    checksum TEXT NOT NULL,
    word_count INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    embedded_at TEXT,
    embedded_checksum TEXT
);
CREATE TABLE IF NOT EXISTS chunks (
    entry_id INTEGER NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    embedding BLOB NOT NULL,
    dim INTEGER NOT NULL,
    checksum TEXT NOT NULL,
    source_checksum TEXT NOT NULL,
    PRIMARY KEY (entry_id, chunk_index)
);
CREATE TABLE IF NOT EXISTS summaries (
    period TEXT NOT NULL,
    level TEXT NOT NULL,
    summary BLOB NOT NULL,
    word_count INTEGER NOT NULL,
    source_checksum TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (period, level)
);
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_ENTRY_COLUMNS = "date, path, checksum, word_count, updated_at, embedded_at, embedded_checksum"


@dataclass(frozen=True)
class ChunkRecord:
    """One embedded chunk. The chunk text itself is never stored."""

    date: dt.date
    chunk_index: int
    embedding: np.ndarray
    checksum: str
    source_checksum: str


@dataclass(frozen=True)
class SummaryRecord:
    """A stored summary; ``sealed`` is the summary text encrypted under the session key."""

    period: dt.date
    level: str
    sealed: bytes
    word_count: int
    source_checksum: str
    created_at: dt.datetime


def _row_to_entry(row: sqlite3.Row) -> EntryRecord:
    return EntryRecord(
        date=dt.date.fromisoformat(row["date"]),
        path=row["path"],
        checksum=row["checksum"],
        word_count=row["word_count"],
        updated_at=dt.datetime.fromisoformat(row["updated_at"]),
        embedded_at=dt.datetime.fromisoformat(row["embedded_at"]) if row["embedded_at"] else None,
        embedded_checksum=row["embedded_checksum"],
    )


def _row_to_summary(row: sqlite3.Row) -> SummaryRecord:
    return SummaryRecord(
        period=dt.date.fromisoformat(row["period"]),
        level=row["level"],
        sealed=row["summary"],
        word_count=row["word_count"],
        source_checksum=row["source_checksum"],
        created_at=dt.datetime.fromisoformat(row["created_at"]),
    )


def _connect() -> sqlite3.Connection:
    # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
    conn = sqlite3.connect(":memory:", isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _stat_signature(path: Path) -> tuple[int, int, int] | None:
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    return st.st_ino, st.st_size, st.st_mtime_ns


class MetadataIndex:
    """Entry and chunk metadata, sealed at rest under the session key."""

    def __init__(self, path: Path) -> None:
        """Bind to an artifact path; nothing is read until :meth:`load`."""
        self.path = path
        self._conn: sqlite3.Connection | None = None
        self._signature: tuple[int, int, int] | None = None
        self._header: bytes | None = None

    # --- Artifact lifecycle ---

    def exists(self) -> bool:
        """Whether the artifact is present on disk."""
        return self.path.exists()

    def read_header(self) -> KdfParams:
        """Read the unauthenticated KDF parameters from the artifact."""
        header, _ = self._read_artifact()
        try:
            data = json.loads(header)
            return KdfParams.from_dict(data["kdf"])
        except (ValueError, KeyError, TypeError) as exc:
            msg = f"Corrupt index header in {self.path}"
            raise StorageIntegrityError(msg) from exc

    def create(self, key: bytes | bytearray, params: KdfParams) -> None:
        """Initialise an empty index sealed under ``key``."""
        if self.exists():
            msg = f"Index already exists at {self.path}"
            raise FileExistsError(msg)
        self.path.parent.mkdir(mode=DIR_PERMISSIONS, parents=True, exist_ok=True)
        self._header = json.dumps(
            {"version": FORMAT_VERSION, "kdf": params.to_dict()},
            sort_keys=True,
        ).encode("utf-8")
        conn = _connect()
        conn.executescript(_SCHEMA)
        self._conn = conn
        self._persist(key)
        LOGGER.info("Created new encrypted index at %s", self.path)

    def load(self, key: bytes | bytearray) -> None:
        """Decrypt the artifact into memory.

        Raises:
            AuthenticationError: The key does not open the artifact.
            StorageIntegrityError: The decrypted image is not a valid index.

        """
        signature = _stat_signature(self.path)
        header, sealed = self._read_artifact()
        image = unseal(key, sealed, aad=self._aad(header))
        conn = _connect()
        try:
            conn.deserialize(image)
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(_SCHEMA)
        except sqlite3.DatabaseError as exc:
            conn.close()
            msg = "Decrypted index is not a valid database"
            raise StorageIntegrityError(msg) from exc
        if self._conn is not None:
            self._conn.close()
        self._conn = conn
        self._header = header
        self._signature = signature
        LOGGER.debug("Loaded index (%d bytes)", len(image))

    def sync(self, key: bytes | bytearray) -> None:
        """Reload the artifact if another process replaced it."""
        if self._conn is None or _stat_signature(self.path) != self._signature:
            if self._conn is not None:
                LOGGER.info("Index changed on disk; reloading")
            self.load(key)

    def close(self) -> None:
        """Drop the in-memory copy."""
        if self._conn is not None:
            self._conn.close()
        self._conn = None
        self._signature = None

    @contextmanager
    def transaction(self, key: bytes | bytearray) -> Iterator[MetadataIndex]:
        """Run a block of mutations atomically and persist them.

        Any exception rolls the in-memory database back and leaves the
        artifact on disk untouched.
        """
        self.sync(key)
        conn = self._connection
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        try:
            self._persist(key)
        except BaseException:
            # Memory is ahead of disk; force a reload on next use.
            self.close()
            raise

    # --- Queries ---

    def get_entry(self, date: dt.date) -> EntryRecord | None:
        """Look up one entry by date."""
        row = self._connection.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE date = ?",  # noqa: S608
            (date.isoformat(),),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def list_entries(
        self,
        date_range: tuple[dt.date, dt.date] | None = None,
    ) -> list[EntryRecord]:
        """All entries ordered by date, optionally within an inclusive range."""
        sql = f"SELECT {_ENTRY_COLUMNS} FROM entries"  # noqa: S608
        params: tuple[str, ...] = ()
        if date_range is not None:
            sql += " WHERE date BETWEEN ? AND ?"
            params = (date_range[0].isoformat(), date_range[1].isoformat())
        rows = self._connection.execute(sql + " ORDER BY date", params).fetchall()
        return [_row_to_entry(row) for row in rows]

    def entries_needing_embedding(self) -> list[EntryRecord]:
        """Entries whose chunk set is missing or stale."""
        rows = self._connection.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM entries "  # noqa: S608
            "WHERE embedded_at IS NULL OR embedded_checksum IS NOT checksum ORDER BY date",
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def upsert_entry(self, record: EntryRecord) -> None:
        """Insert or update an entry row.

        A checksum change drops the entry's chunks and clears its embedding
        marker in the same statement batch.
        """
        conn = self._connection
        previous = self.get_entry(record.date)
        if previous is not None and previous.checksum != record.checksum:
            self.replace_chunks(record.date, [])
            record = record.model_copy(update={"embedded_at": None, "embedded_checksum": None})
        conn.execute(
            f"INSERT INTO entries ({_ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?) "  # noqa: S608
            "ON CONFLICT(date) DO UPDATE SET path = excluded.path, "
            "checksum = excluded.checksum, word_count = excluded.word_count, "
            "updated_at = excluded.updated_at, embedded_at = excluded.embedded_at, "
            "embedded_checksum = excluded.embedded_checksum",
            (
                record.date.isoformat(),
                record.path,
                record.checksum,
                record.word_count,
                record.updated_at.isoformat(),
                record.embedded_at.isoformat() if record.embedded_at else None,
                record.embedded_checksum,
            ),
        )

    def delete_entry(self, date: dt.date) -> bool:
        """Remove an entry and its chunks. Returns whether it existed."""
        cursor = self._connection.execute(
            "DELETE FROM entries WHERE date = ?",
            (date.isoformat(),),
        )
        return cursor.rowcount > 0

    def replace_chunks(self, date: dt.date, chunks: list[ChunkRecord]) -> None:
        """Swap the entry's whole chunk set for ``chunks``."""
        conn = self._connection
        row = conn.execute("SELECT id FROM entries WHERE date = ?", (date.isoformat(),)).fetchone()
        if row is None:
            msg = f"No index entry for {date}"
            raise KeyError(msg)
        conn.execute("DELETE FROM chunks WHERE entry_id = ?", (row["id"],))
        conn.executemany(
            "INSERT INTO chunks (entry_id, chunk_index, embedding, dim, checksum, source_checksum) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (
                    row["id"],
                    chunk.chunk_index,
                    np.asarray(chunk.embedding, dtype=np.float32).tobytes(),
                    int(np.asarray(chunk.embedding).size),
                    chunk.checksum,
                    chunk.source_checksum,
                )
                for chunk in chunks
            ],
        )

    def mark_embedded(self, date: dt.date, checksum: str, when: dt.datetime) -> None:
        """Record that the chunk set now matches ``checksum``."""
        self._connection.execute(
            "UPDATE entries SET embedded_at = ?, embedded_checksum = ? WHERE date = ?",
            (when.isoformat(), checksum, date.isoformat()),
        )

    def iter_chunks(
        self,
        date_range: tuple[dt.date, dt.date] | None = None,
    ) -> Iterator[ChunkRecord]:
        """Yield chunk records, optionally limited to an inclusive date range."""
        sql = (
            "SELECT e.date, c.chunk_index, c.embedding, c.checksum, c.source_checksum "
            "FROM chunks c JOIN entries e ON e.id = c.entry_id"
        )
        params: tuple[str, ...] = ()
        if date_range is not None:
            sql += " WHERE e.date BETWEEN ? AND ?"
            params = (date_range[0].isoformat(), date_range[1].isoformat())
        for row in self._connection.execute(sql + " ORDER BY e.date, c.chunk_index", params):
            yield ChunkRecord(
                date=dt.date.fromisoformat(row["date"]),
                chunk_index=row["chunk_index"],
                embedding=np.frombuffer(row["embedding"], dtype=np.float32),
                checksum=row["checksum"],
                source_checksum=row["source_checksum"],
            )

    def count_chunks(self, date: dt.date | None = None) -> int:
        """Number of chunks overall or for one entry."""
        if date is None:
            row = self._connection.execute("SELECT COUNT(*) FROM chunks").fetchone()
        else:
            row = self._connection.execute(
                "SELECT COUNT(*) FROM chunks c JOIN entries e ON e.id = c.entry_id "
                "WHERE e.date = ?",
                (date.isoformat(),),
            ).fetchone()
        return int(row[0])

    def upsert_summary(self, record: SummaryRecord) -> None:
        """Insert or replace the summary for ``(period, level)``."""
        self._connection.execute(
            "INSERT OR REPLACE INTO summaries "
            "(period, level, summary, word_count, source_checksum, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                record.period.isoformat(),
                record.level,
                record.sealed,
                record.word_count,
                record.source_checksum,
                record.created_at.isoformat(),
            ),
        )

    def get_summary(self, level: str, period: dt.date) -> SummaryRecord | None:
        """Look up one summary."""
        row = self._connection.execute(
            "SELECT * FROM summaries WHERE level = ? AND period = ?",
            (level, period.isoformat()),
        ).fetchone()
        return _row_to_summary(row) if row else None

    def list_summaries(
        self,
        level: str | None = None,
        date_range: tuple[dt.date, dt.date] | None = None,
    ) -> list[SummaryRecord]:
        """Summaries ordered by period, optionally filtered."""
        clauses = []
        params: list[str] = []
        if level is not None:
            clauses.append("level = ?")
            params.append(level)
        if date_range is not None:
            clauses.append("period BETWEEN ? AND ?")
            params.extend(d.isoformat() for d in date_range)
        sql = "SELECT * FROM summaries"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        rows = self._connection.execute(sql + " ORDER BY period, level", params).fetchall()
        return [_row_to_summary(row) for row in rows]

    def get_meta(self, key: str) -> str | None:
        """Read an index-wide setting."""
        row = self._connection.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Write an index-wide setting."""
        self._connection.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
            (key, value),
        )

    # --- Internals ---

    @property
    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            msg = "Index is not loaded; unlock the vault first"
            raise RuntimeError(msg)
        return self._conn

    @staticmethod
    def _aad(header: bytes) -> bytes:
        return MAGIC + _LENGTH.pack(len(header)) + header

    def _read_artifact(self) -> tuple[bytes, bytes]:
        data = self.path.read_bytes()
        prefix = len(MAGIC) + _LENGTH.size
        if len(data) < prefix or not data.startswith(MAGIC):
            msg = f"{self.path} is not an inkwell index"
            raise StorageIntegrityError(msg)
        (length,) = _LENGTH.unpack_from(data, len(MAGIC))
        if len(data) < prefix + length:
            msg = f"Truncated index header in {self.path}"
            raise StorageIntegrityError(msg)
        return data[prefix : prefix + length], data[prefix + length :]

    def _persist(self, key: bytes | bytearray) -> None:
        assert self._header is not None  # noqa: S101
        image = self._connection.serialize()
        payload = self._aad(self._header) + seal(key, image, aad=self._aad(self._header))
        atomic_write(self.path, payload)
        self._signature = _stat_signature(self.path)


def atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via an fsynced temp file and ``os.replace``."""
    tmp = path.with_name(f".{path.name}.{secrets.token_hex(6)}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_PERMISSIONS)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        LOGGER.debug("Directory fsync not supported for %s", directory)
    finally:
        os.close(fd)
