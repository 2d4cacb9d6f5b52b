"""Encrypted entry store: one sealed blob per date plus the metadata index."""

from __future__ import annotations

import datetime as dt
import logging
import os
import time
from typing import TYPE_CHECKING

from inkwell.constants import (
    DEFAULT_SESSION_TIMEOUT_MINUTES,
    DIR_PERMISSIONS,
    ENTRY_SUFFIX,
    INDEX_FILENAME,
    MAX_UNLOCK_ATTEMPTS,
    STAGED_SUFFIX,
)
from inkwell.crypto import decrypt_bytes, encrypt_bytes, seal, sha256_hex, unseal
from inkwell.errors import AuthenticationError, StorageIntegrityError
from inkwell.index import MetadataIndex, SummaryRecord, atomic_write
from inkwell.models import EntryRecord, PlaintextEntry, Summary, SummaryLevel, WriteResult
from inkwell.session import Session, SessionManager

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from inkwell.crypto import KdfParams

LOGGER = logging.getLogger(__name__)


def entry_path(date: dt.date) -> str:
    """Relative storage path of an entry: ``YYYY/MM/DD.md.enc``."""
    return f"{date:%Y}/{date:%m}/{date:%d}{ENTRY_SUFFIX}"


def _date_from_path(rel: str) -> dt.date | None:
    parts = rel.split("/")
    if len(parts) != 3 or not parts[2].endswith(ENTRY_SUFFIX):  # noqa: PLR2004
        return None
    try:
        return dt.date(int(parts[0]), int(parts[1]), int(parts[2].removesuffix(ENTRY_SUFFIX)))
    except ValueError:
        return None


def _summary_aad(level: SummaryLevel, period: dt.date) -> bytes:
    return f"summary/{level}/{period.isoformat()}".encode()


def count_words(text: str) -> int:
    """Whitespace-delimited word count."""
    return len(text.split())


class Vault:
    """A journal directory: sealed entry blobs and their metadata index."""

    def __init__(
        self,
        root: Path,
        *,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT_MINUTES * 60,
        max_attempts: int = MAX_UNLOCK_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
        kdf_params: KdfParams | None = None,
    ) -> None:
        """Bind to ``root``; the directory is created on first unlock."""
        self.root = root
        self.index = MetadataIndex(root / INDEX_FILENAME)
        self.sessions = SessionManager(
            root,
            timeout=session_timeout,
            max_attempts=max_attempts,
            clock=clock,
            kdf_params=kdf_params,
            index=self.index,
        )

    # --- Session ---

    def unlock(self, passphrase: str | Callable[[], str]) -> Session:
        """Unlock the vault and finish any write interrupted by a crash."""
        self.root.mkdir(mode=DIR_PERMISSIONS, parents=True, exist_ok=True)
        session = self.sessions.unlock(passphrase)
        self.recover_staged(session)
        return session

    def lock(self, session: Session) -> None:
        """Wipe the key and the decrypted index."""
        self.sessions.lock(session)

    # --- Entries ---

    def read_entry(self, session: Session, date: dt.date) -> PlaintextEntry | None:
        """Decrypt and verify the entry for ``date``.

        Raises:
            AuthenticationError: The blob does not authenticate under the key.
            StorageIntegrityError: The plaintext does not match its checksum.

        """
        key = session.require_key()
        self.index.sync(key)
        record = self.index.get_entry(date)
        if record is None:
            return None
        try:
            blob = (self.root / record.path).read_bytes()
        except FileNotFoundError as exc:
            msg = f"Entry {date} is indexed but its blob is missing"
            raise StorageIntegrityError(msg) from exc
        plaintext = decrypt_bytes(key, blob, aad=record.path.encode("utf-8"))
        if sha256_hex(plaintext) != record.checksum:
            msg = f"Entry {date} does not match its recorded checksum"
            raise StorageIntegrityError(msg)
        return PlaintextEntry(
            date=date,
            content=plaintext.decode("utf-8"),
            checksum=record.checksum,
            word_count=record.word_count,
            updated_at=record.updated_at,
        )

    def write_entry(
        self,
        session: Session,
        date: dt.date,
        text: str,
        *,
        expected_checksum: str | None = None,
    ) -> WriteResult:
        """Encrypt and store ``text`` as the entry for ``date``.

        The blob is staged next to its final path, the index transaction is
        committed, then the staged blob is swapped in. If ``expected_checksum``
        is given and the stored entry has changed since, the write still
        proceeds and the result is flagged as a conflict.
        """
        key = session.require_key()
        self.index.sync(key)
        data = text.encode("utf-8")
        checksum = sha256_hex(data)
        rel = entry_path(date)
        blob_path = self.root / rel

        previous = self.index.get_entry(date)
        previous_checksum = previous.checksum if previous else None
        conflict = expected_checksum is not None and previous_checksum != expected_checksum
        if conflict:
            LOGGER.warning(
                "Entry %s changed since it was opened (%s -> %s); keeping the latest write",
                date,
                (expected_checksum or "")[:8],
                (previous_checksum or "none")[:8],
            )

        result = WriteResult(
            date=date,
            checksum=checksum,
            word_count=count_words(text),
            changed=previous_checksum != checksum,
            conflict=conflict,
            previous_checksum=previous_checksum,
        )
        if not result.changed and blob_path.exists():
            LOGGER.debug("Entry %s unchanged; nothing to write", date)
            return result

        blob_path.parent.mkdir(mode=DIR_PERMISSIONS, parents=True, exist_ok=True)
        staged = blob_path.with_name(blob_path.name + STAGED_SUFFIX)
        atomic_write(staged, encrypt_bytes(key, data, aad=rel.encode("utf-8")))
        keep_marker = previous is not None and not result.changed
        try:
            with self.index.transaction(key) as index:
                index.upsert_entry(
                    EntryRecord(
                        date=date,
                        path=rel,
                        checksum=checksum,
                        word_count=result.word_count,
                        updated_at=dt.datetime.now(dt.UTC),
                        embedded_at=previous.embedded_at if keep_marker else None,
                        embedded_checksum=previous.embedded_checksum if keep_marker else None,
                    ),
                )
        except BaseException:
            staged.unlink(missing_ok=True)
            raise
        os.replace(staged, blob_path)
        LOGGER.info("Saved entry %s (%d words)", date, result.word_count)
        return result

    def delete_entry(self, session: Session, date: dt.date) -> bool:
        """Remove an entry, its chunks and its blob. Returns whether it existed."""
        key = session.require_key()
        self.index.sync(key)
        record = self.index.get_entry(date)
        if record is None:
            return False
        with self.index.transaction(key) as index:
            index.delete_entry(date)
        (self.root / record.path).unlink(missing_ok=True)
        LOGGER.info("Deleted entry %s", date)
        return True

    def list_entries(
        self,
        session: Session,
        date_range: tuple[dt.date, dt.date] | None = None,
    ) -> list[EntryRecord]:
        """Index records ordered by date."""
        key = session.require_key()
        self.index.sync(key)
        return self.index.list_entries(date_range)

    def recover_staged(self, session: Session) -> int:
        """Complete or discard staged blobs left behind by an interrupted write.

        A staged blob is swapped in only when it decrypts to exactly the
        content the index committed; otherwise it is removed.
        """
        key = session.require_key()
        self.index.sync(key)
        recovered = 0
        for staged in sorted(self.root.rglob(f"*{ENTRY_SUFFIX}{STAGED_SUFFIX}")):
            final = staged.with_name(staged.name.removesuffix(STAGED_SUFFIX))
            rel = final.relative_to(self.root).as_posix()
            date = _date_from_path(rel)
            record = self.index.get_entry(date) if date else None
            matches = False
            if record is not None:
                try:
                    plaintext = decrypt_bytes(key, staged.read_bytes(), aad=rel.encode("utf-8"))
                except AuthenticationError:
                    LOGGER.warning("Staged blob for %s does not authenticate", rel)
                else:
                    matches = sha256_hex(plaintext) == record.checksum
            if matches:
                os.replace(staged, final)
                recovered += 1
                LOGGER.info("Recovered interrupted write for %s", date)
            else:
                staged.unlink()
                LOGGER.warning("Discarded stale staged blob %s", rel)
        return recovered

    # --- Summaries ---

    def save_summary(self, session: Session, summary: Summary) -> None:
        """Seal ``summary`` under the session key and store it in the index."""
        key = session.require_key()
        aad = _summary_aad(summary.level, summary.period)
        with self.index.transaction(key) as index:
            index.upsert_summary(
                SummaryRecord(
                    period=summary.period,
                    level=summary.level.value,
                    sealed=seal(key, summary.content.encode("utf-8"), aad=aad),
                    word_count=summary.word_count,
                    source_checksum=summary.source_checksum,
                    created_at=summary.created_at,
                ),
            )
        LOGGER.info("Stored %s summary for %s", summary.level, summary.period)

    def get_summary(
        self,
        session: Session,
        level: SummaryLevel,
        period: dt.date,
    ) -> Summary | None:
        """Decrypt the stored summary for ``period``, if any."""
        key = session.require_key()
        self.index.sync(key)
        record = self.index.get_summary(level.value, period)
        return self._open_summary(key, record) if record else None

    def list_summaries(
        self,
        session: Session,
        level: SummaryLevel | None = None,
        date_range: tuple[dt.date, dt.date] | None = None,
    ) -> list[Summary]:
        """Decrypted summaries ordered by period."""
        key = session.require_key()
        self.index.sync(key)
        records = self.index.list_summaries(level.value if level else None, date_range)
        return [self._open_summary(key, record) for record in records]

    @staticmethod
    def _open_summary(key: bytearray, record: SummaryRecord) -> Summary:
        level = SummaryLevel(record.level)
        content = unseal(key, record.sealed, aad=_summary_aad(level, record.period))
        return Summary(
            level=level,
            period=record.period,
            content=content.decode("utf-8"),
            word_count=record.word_count,
            source_checksum=record.source_checksum,
            created_at=record.created_at,
        )
