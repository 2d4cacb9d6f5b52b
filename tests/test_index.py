"""Tests for the encrypted metadata index."""

from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING

import numpy as np
import pytest

from inkwell.crypto import derive_key
from inkwell.errors import AuthenticationError, StorageIntegrityError
from inkwell.index import ChunkRecord, MetadataIndex, SummaryRecord
from inkwell.models import EntryRecord

if TYPE_CHECKING:
    from pathlib import Path

    from inkwell.crypto import KdfParams

DAY = dt.date(2024, 6, 15)
NOW = dt.datetime(2024, 6, 15, 20, 0, tzinfo=dt.UTC)


def _record(date: dt.date = DAY, checksum: str = "a" * 64) -> EntryRecord:
    return EntryRecord(
        date=date,
        path=f"{date:%Y/%m/%d}.md.enc",
        checksum=checksum,
        word_count=3,
        updated_at=NOW,
    )


def _chunk(date: dt.date, i: int, source: str = "a" * 64) -> ChunkRecord:
    return ChunkRecord(
        date=date,
        chunk_index=i,
        embedding=np.ones(4, dtype=np.float32) * (i + 1),
        checksum=f"c{i}",
        source_checksum=source,
    )


@pytest.fixture
def key(fast_kdf: KdfParams) -> bytearray:
    """Key for the index under test."""
    return derive_key("pw", fast_kdf)


@pytest.fixture
def index(tmp_path: Path, key: bytearray, fast_kdf: KdfParams) -> MetadataIndex:
    """A freshly created index."""
    idx = MetadataIndex(tmp_path / "index.db.enc")
    idx.create(key, fast_kdf)
    return idx


def test_persisted_and_reloaded(index: MetadataIndex, key: bytearray) -> None:
    """Committed rows survive a reload from disk."""
    with index.transaction(key) as tx:
        tx.upsert_entry(_record())
    fresh = MetadataIndex(index.path)
    fresh.load(key)
    assert fresh.get_entry(DAY) == _record()


def test_artifact_hides_metadata(index: MetadataIndex, key: bytearray) -> None:
    """Dates and checksums are not visible in the artifact."""
    with index.transaction(key) as tx:
        tx.upsert_entry(_record())
    raw = index.path.read_bytes()
    assert b"2024-06-15" not in raw
    assert b"a" * 64 not in raw


def test_header_readable_without_key(index: MetadataIndex, fast_kdf: KdfParams) -> None:
    """KDF parameters are available before unlocking."""
    assert MetadataIndex(index.path).read_header() == fast_kdf


def test_wrong_key_rejected(index: MetadataIndex, fast_kdf: KdfParams) -> None:
    """Another passphrase cannot open the index."""
    with pytest.raises(AuthenticationError):
        MetadataIndex(index.path).load(derive_key("other", fast_kdf))


def test_garbage_artifact_rejected(tmp_path: Path) -> None:
    """A file that is not an index is reported as an integrity failure."""
    path = tmp_path / "index.db.enc"
    path.write_bytes(b"not an index at all")
    with pytest.raises(StorageIntegrityError):
        MetadataIndex(path).read_header()


def test_failed_transaction_rolls_back(index: MetadataIndex, key: bytearray) -> None:
    """An exception inside a transaction changes neither memory nor disk."""
    before = index.path.read_bytes()
    with pytest.raises(RuntimeError), index.transaction(key) as tx:
        tx.upsert_entry(_record())
        raise RuntimeError
    assert index.get_entry(DAY) is None
    assert index.path.read_bytes() == before


def test_reload_when_replaced_by_another_process(
    index: MetadataIndex,
    key: bytearray,
) -> None:
    """A second handle sees commits made through the first after sync."""
    other = MetadataIndex(index.path)
    other.load(key)
    with index.transaction(key) as tx:
        tx.upsert_entry(_record())
    assert other.get_entry(DAY) is None
    other.sync(key)
    assert other.get_entry(DAY) is not None


def test_checksum_change_drops_chunks_and_marker(index: MetadataIndex, key: bytearray) -> None:
    """Changing an entry's checksum deletes its chunks in the same transaction."""
    with index.transaction(key) as tx:
        tx.upsert_entry(_record())
        tx.replace_chunks(DAY, [_chunk(DAY, 0), _chunk(DAY, 1)])
        tx.mark_embedded(DAY, "a" * 64, NOW)
    assert not index.get_entry(DAY).needs_embedding

    with index.transaction(key) as tx:
        tx.upsert_entry(_record(checksum="b" * 64))
    assert index.count_chunks(DAY) == 0
    record = index.get_entry(DAY)
    assert record.embedded_at is None
    assert record.needs_embedding
    assert [r.date for r in index.entries_needing_embedding()] == [DAY]


def test_delete_cascades_to_chunks(index: MetadataIndex, key: bytearray) -> None:
    """Deleting an entry removes its chunks."""
    with index.transaction(key) as tx:
        tx.upsert_entry(_record())
        tx.replace_chunks(DAY, [_chunk(DAY, 0)])
    with index.transaction(key) as tx:
        assert tx.delete_entry(DAY)
        assert not tx.delete_entry(DAY)
    assert index.count_chunks() == 0


def test_iter_chunks_filters_by_inclusive_range(index: MetadataIndex, key: bytearray) -> None:
    """Only chunks of entries inside the range are yielded."""
    days = [dt.date(2024, 5, 15), dt.date(2024, 5, 16), dt.date(2024, 6, 15)]
    with index.transaction(key) as tx:
        for day in days:
            tx.upsert_entry(_record(day))
            tx.replace_chunks(day, [_chunk(day, 0)])
    got = {c.date for c in index.iter_chunks((dt.date(2024, 5, 16), dt.date(2024, 6, 15)))}
    assert got == {dt.date(2024, 5, 16), dt.date(2024, 6, 15)}
    chunk = next(index.iter_chunks())
    assert chunk.embedding.dtype == np.float32
    np.testing.assert_array_equal(chunk.embedding, np.ones(4, dtype=np.float32))


def test_list_entries_ordered_and_ranged(index: MetadataIndex, key: bytearray) -> None:
    """Entries come back in date order, optionally ranged."""
    with index.transaction(key) as tx:
        tx.upsert_entry(_record(dt.date(2024, 6, 2)))
        tx.upsert_entry(_record(dt.date(2024, 6, 1)))
    assert [r.date for r in index.list_entries()] == [dt.date(2024, 6, 1), dt.date(2024, 6, 2)]
    ranged = index.list_entries((dt.date(2024, 6, 2), dt.date(2024, 6, 30)))
    assert [r.date for r in ranged] == [dt.date(2024, 6, 2)]


def test_queries_require_loaded_index(tmp_path: Path) -> None:
    """Using an index before unlock is a programming error."""
    with pytest.raises(RuntimeError, match="not loaded"):
        MetadataIndex(tmp_path / "index.db.enc").get_entry(DAY)


def test_summaries_keyed_by_period_and_level(index: MetadataIndex, key: bytearray) -> None:
    """A summary is replaced per (period, level) and listed in period order."""

    def summary(period: dt.date, level: str, sealed: bytes) -> SummaryRecord:
        return SummaryRecord(period, level, sealed, 2, "s" * 64, NOW)

    with index.transaction(key) as tx:
        tx.upsert_summary(summary(dt.date(2024, 6, 15), "daily", b"first"))
        tx.upsert_summary(summary(dt.date(2024, 6, 15), "daily", b"second"))
        tx.upsert_summary(summary(dt.date(2024, 6, 1), "monthly", b"june"))
    fresh = MetadataIndex(index.path)
    fresh.load(key)
    assert fresh.get_summary("daily", dt.date(2024, 6, 15)).sealed == b"second"
    assert fresh.get_summary("weekly", dt.date(2024, 6, 15)) is None
    assert [r.level for r in fresh.list_summaries()] == ["monthly", "daily"]
    assert [r.sealed for r in fresh.list_summaries("daily")] == [b"second"]


def test_meta_values(index: MetadataIndex, key: bytearray) -> None:
    """Index-wide settings are stored and overwritten."""
    assert index.get_meta("embed_model") is None
    with index.transaction(key) as tx:
        tx.set_meta("embed_model", "a")
        tx.set_meta("embed_model", "b")
    assert index.get_meta("embed_model") == "b"
