"""Tests for the encrypted entry store."""

from __future__ import annotations

import datetime as dt
import shutil
import stat
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from inkwell.crypto import sha256_hex
from inkwell.errors import AuthenticationError, SessionExpiredError, StorageIntegrityError
from inkwell.store import Vault, entry_path

if TYPE_CHECKING:
    from inkwell.session import Session

    from .conftest import FakeClock

DAY = dt.date(2024, 6, 15)


def test_entry_path_layout() -> None:
    """Entries live under year and month directories."""
    assert entry_path(DAY) == "2024/06/15.md.enc"


def test_write_then_read_round_trip(vault: Vault, session: Session) -> None:
    """Written text reads back with its metadata."""
    result = vault.write_entry(session, DAY, "Went running by the river.")
    assert result.changed
    assert result.word_count == 5
    assert result.previous_checksum is None

    entry = vault.read_entry(session, DAY)
    assert entry.content == "Went running by the river."
    assert entry.checksum == sha256_hex("Went running by the river.")


def test_blob_is_encrypted_and_private(vault: Vault, session: Session) -> None:
    """Plaintext never lands in the blob and the file is owner-only."""
    vault.write_entry(session, DAY, "my secret diary line")
    blob = vault.root / entry_path(DAY)
    assert b"secret" not in blob.read_bytes()
    assert stat.S_IMODE(blob.stat().st_mode) == 0o600
    assert not list(vault.root.rglob("*.staged"))


def test_read_missing_entry_returns_none(vault: Vault, session: Session) -> None:
    """Absent dates are not an error."""
    assert vault.read_entry(session, DAY) is None


def test_identical_write_is_a_no_op(vault: Vault, session: Session) -> None:
    """Saving the same content again changes nothing."""
    vault.write_entry(session, DAY, "same")
    blob = vault.root / entry_path(DAY)
    before = blob.read_bytes()
    result = vault.write_entry(session, DAY, "same")
    assert not result.changed
    assert blob.read_bytes() == before


def test_tampered_blob_raises_authentication_error(vault: Vault, session: Session) -> None:
    """A modified blob is never returned as valid content."""
    vault.write_entry(session, DAY, "original")
    blob = vault.root / entry_path(DAY)
    data = bytearray(blob.read_bytes())
    data[-1] ^= 0xFF
    blob.write_bytes(bytes(data))
    with pytest.raises(AuthenticationError):
        vault.read_entry(session, DAY)


def test_blob_swapped_between_dates_is_rejected(vault: Vault, session: Session) -> None:
    """Copying one date's blob over another's fails authentication."""
    other = dt.date(2024, 6, 16)
    vault.write_entry(session, DAY, "first")
    vault.write_entry(session, other, "second")
    shutil.copyfile(vault.root / entry_path(DAY), vault.root / entry_path(other))
    with pytest.raises(AuthenticationError):
        vault.read_entry(session, other)


def test_checksum_mismatch_raises_integrity_error(vault: Vault, session: Session) -> None:
    """Content that decrypts but does not match the index is rejected."""
    vault.write_entry(session, DAY, "original")
    key = session.require_key()
    record = vault.index.get_entry(DAY)
    with vault.index.transaction(key) as tx:
        tx.upsert_entry(record.model_copy(update={"checksum": "0" * 64}))
    with pytest.raises(StorageIntegrityError):
        vault.read_entry(session, DAY)


def test_missing_blob_raises_integrity_error(vault: Vault, session: Session) -> None:
    """An indexed entry without a blob is an integrity failure."""
    vault.write_entry(session, DAY, "original")
    (vault.root / entry_path(DAY)).unlink()
    with pytest.raises(StorageIntegrityError):
        vault.read_entry(session, DAY)


def test_conflicting_write_is_flagged_and_wins(
    vault: Vault,
    session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A write based on a stale checksum still lands, flagged as a conflict."""
    opened = vault.write_entry(session, DAY, "v1")
    vault.write_entry(session, DAY, "v2 from another editor")
    result = vault.write_entry(session, DAY, "v3 mine", expected_checksum=opened.checksum)
    assert result.conflict
    assert vault.read_entry(session, DAY).content == "v3 mine"
    assert "changed since it was opened" in caplog.text


def test_non_conflicting_write(vault: Vault, session: Session) -> None:
    """A write based on the current checksum is not a conflict."""
    opened = vault.write_entry(session, DAY, "v1")
    result = vault.write_entry(session, DAY, "v2", expected_checksum=opened.checksum)
    assert not result.conflict
    assert result.previous_checksum == opened.checksum


def test_delete_entry(vault: Vault, session: Session) -> None:
    """Deleting removes both the index row and the blob."""
    vault.write_entry(session, DAY, "bye")
    assert vault.delete_entry(session, DAY)
    assert vault.read_entry(session, DAY) is None
    assert not (vault.root / entry_path(DAY)).exists()
    assert not vault.delete_entry(session, DAY)


def test_list_entries(vault: Vault, session: Session) -> None:
    """Entries are listed in date order."""
    vault.write_entry(session, dt.date(2024, 6, 2), "b")
    vault.write_entry(session, dt.date(2024, 6, 1), "a")
    assert [r.date for r in vault.list_entries(session)] == [
        dt.date(2024, 6, 1),
        dt.date(2024, 6, 2),
    ]


def test_interrupted_swap_is_recovered_on_unlock(
    vault: Vault,
    session: Session,
    passphrase: str,
) -> None:
    """A blob staged before a crash is completed at the next unlock."""
    vault.write_entry(session, DAY, "v1")
    with patch("inkwell.store.os") as mock_os:
        mock_os.replace.side_effect = OSError("power loss")
        with pytest.raises(OSError, match="power loss"):
            vault.write_entry(session, DAY, "v2")
    assert list(vault.root.rglob("*.staged"))
    vault.lock(session)

    fresh = vault.unlock(passphrase)
    assert vault.read_entry(fresh, DAY).content == "v2"
    assert not list(vault.root.rglob("*.staged"))


def test_stale_staged_blob_is_discarded(vault: Vault, session: Session, passphrase: str) -> None:
    """A staged blob that does not match the index is removed."""
    vault.write_entry(session, DAY, "v1")
    stray = vault.root / (entry_path(DAY) + ".staged")
    stray.write_bytes(b"garbage")
    vault.lock(session)

    fresh = vault.unlock(passphrase)
    assert not stray.exists()
    assert vault.read_entry(fresh, DAY).content == "v1"


def test_expired_session_blocks_reads(vault: Vault, session: Session, clock: FakeClock) -> None:
    """Every store operation checks the session first."""
    vault.write_entry(session, DAY, "x")
    clock.advance(1801)
    with pytest.raises(SessionExpiredError):
        vault.read_entry(session, DAY)
