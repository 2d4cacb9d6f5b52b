"""Checksum-gated embedding index over journal entries."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from typing import TYPE_CHECKING

import numpy as np

from inkwell.chunking import chunk_text
from inkwell.constants import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE, DEFAULT_EMBED_CONCURRENCY
from inkwell.crypto import sha256_hex
from inkwell.errors import InferenceServiceError
from inkwell.index import ChunkRecord
from inkwell.models import RefreshResult, RefreshStatus, ReindexReport

if TYPE_CHECKING:
    from inkwell.models import WriteResult
    from inkwell.services.base import EmbeddingBackend
    from inkwell.session import Session
    from inkwell.store import Vault

LOGGER = logging.getLogger(__name__)

EMBED_MODEL_KEY = "embed_model"


class EmbeddingIndex:
    """Keeps each entry's chunk embeddings in step with its content."""

    def __init__(
        self,
        vault: Vault,
        embedder: EmbeddingBackend,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        max_concurrency: int = DEFAULT_EMBED_CONCURRENCY,
    ) -> None:
        """Bind a vault to an embedding backend."""
        self.vault = vault
        self.embedder = embedder
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_concurrency = max_concurrency

    async def refresh_embeddings(self, session: Session, date: dt.date) -> RefreshResult:
        """Re-embed the entry for ``date`` if its content changed.

        Makes no backend call when the stored chunk set already matches the
        entry checksum. Otherwise every chunk is embedded before anything is
        committed, so a backend failure leaves the entry marked for retry.

        Raises:
            InferenceServiceError: The backend failed; nothing was committed.

        """
        index = self.vault.index
        key = session.require_key()
        index.sync(key)
        record = index.get_entry(date)
        if record is None:
            return RefreshResult(date=date, status=RefreshStatus.MISSING)
        if not record.needs_embedding:
            LOGGER.debug("Embeddings for %s are current", date)
            return RefreshResult(
                date=date,
                status=RefreshStatus.UNCHANGED,
                chunks=index.count_chunks(date),
            )

        entry = self.vault.read_entry(session, date)
        if entry is None:
            return RefreshResult(date=date, status=RefreshStatus.MISSING)
        chunks = chunk_text(entry.content, self.chunk_size, self.chunk_overlap)
        vectors = await self._embed_all(chunks)

        records = [
            ChunkRecord(
                date=date,
                chunk_index=i,
                embedding=np.asarray(vector, dtype=np.float32),
                checksum=sha256_hex(chunk),
                source_checksum=entry.checksum,
            )
            for i, (chunk, vector) in enumerate(zip(chunks, vectors, strict=True))
        ]

        key = session.require_key()
        with index.transaction(key) as tx:
            current = tx.get_entry(date)
            if current is None or current.checksum != entry.checksum:
                LOGGER.info("Entry %s changed while embedding; leaving it for the next refresh", date)
                return RefreshResult(date=date, status=RefreshStatus.UNCHANGED)
            tx.replace_chunks(date, records)
            tx.mark_embedded(date, entry.checksum, dt.datetime.now(dt.UTC))
            if tx.get_meta(EMBED_MODEL_KEY) is None:
                tx.set_meta(EMBED_MODEL_KEY, self.embedder.model)
        LOGGER.info("Embedded %s (%d chunks)", date, len(records))
        return RefreshResult(date=date, status=RefreshStatus.EMBEDDED, chunks=len(records))

    async def reindex(self, session: Session, *, force: bool = False) -> ReindexReport:
        """Refresh every entry that needs embedding.

        Inference failures are recorded per entry and the run continues;
        storage and authentication failures abort it. If the stored chunks
        were made with a different embedding model, every entry is re-embedded.
        """
        start = time.perf_counter()
        index = self.vault.index
        key = session.require_key()
        index.sync(key)
        previous_model = index.get_meta(EMBED_MODEL_KEY)
        if previous_model is not None and previous_model != self.embedder.model:
            LOGGER.warning(
                "Embedding model changed (%s -> %s); re-embedding every entry",
                previous_model,
                self.embedder.model,
            )
            force = True
        if force:
            with index.transaction(key) as tx:
                for record in tx.list_entries():
                    tx.replace_chunks(record.date, [])
                    tx.upsert_entry(record.model_copy(update={"embedded_at": None}))
                tx.set_meta(EMBED_MODEL_KEY, self.embedder.model)
        pending = index.entries_needing_embedding()

        report = ReindexReport(total=len(pending))
        for record in pending:
            try:
                result = await self.refresh_embeddings(session, record.date)
            except InferenceServiceError as exc:
                LOGGER.warning("Failed to embed %s: %s", record.date, exc)
                report.failed += 1
                report.errors[record.date] = str(exc)
                continue
            if result.status is RefreshStatus.EMBEDDED:
                report.embedded += 1
        report.duration = time.perf_counter() - start
        LOGGER.info(
            "Reindex finished: %d/%d embedded, %d failed in %.1fs",
            report.embedded,
            report.total,
            report.failed,
            report.duration,
        )
        return report

    async def save_entry(
        self,
        session: Session,
        date: dt.date,
        text: str,
        *,
        expected_checksum: str | None = None,
    ) -> WriteResult:
        """Write an entry, then bring its embeddings up to date.

        An inference failure is logged and the entry stays marked for a later
        reindex; the write itself is kept.
        """
        result = self.vault.write_entry(session, date, text, expected_checksum=expected_checksum)
        try:
            await self.refresh_embeddings(session, date)
        except InferenceServiceError as exc:
            LOGGER.warning("Saved %s but could not embed it yet: %s", date, exc)
        return result

    async def embed_query(self, text: str) -> np.ndarray:
        """Embed a search query."""
        return np.asarray(await self.embedder.embed(text), dtype=np.float32)

    async def _embed_all(self, chunks: list[str]) -> list[list[float]]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def embed_chunk(chunk: str) -> list[float]:
            async with semaphore:
                return await self.embedder.embed(chunk)

        return list(await asyncio.gather(*(embed_chunk(c) for c in chunks)))
