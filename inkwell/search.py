"""Vector similarity search over the chunk embeddings."""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from inkwell.errors import EmbeddingMismatchError
from inkwell.models import SearchHit

if TYPE_CHECKING:
    from collections.abc import Iterable

    from inkwell.index import ChunkRecord, MetadataIndex
    from inkwell.models import AbsoluteConstraint, NoConstraint, RelativeConstraint
    from inkwell.session import Session

LOGGER = logging.getLogger(__name__)


class VectorIndex(Protocol):
    """Ranks candidate chunks against a query vector."""

    def rank(
        self,
        query: np.ndarray,
        candidates: Iterable[ChunkRecord],
        top_k: int,
    ) -> list[SearchHit]:
        """Return at most ``top_k`` hits, best first."""
        ...


def cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row; zero-norm vectors score 0."""
    query_norm = float(np.linalg.norm(query))
    row_norms = np.linalg.norm(matrix, axis=1)
    if query_norm == 0.0:
        return np.zeros(matrix.shape[0], dtype=np.float32)
    denom = row_norms * query_norm
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, dots / denom, 0.0)
    return scores.astype(np.float32)


class LinearScanIndex:
    """Exact search by scoring every candidate."""

    def rank(
        self,
        query: np.ndarray,
        candidates: Iterable[ChunkRecord],
        top_k: int,
    ) -> list[SearchHit]:
        """Score all candidates and keep the best ``top_k``."""
        records = list(candidates)
        if not records or top_k <= 0:
            return []
        query = np.asarray(query, dtype=np.float32).ravel()
        for record in records:
            if record.embedding.shape[0] != query.shape[0]:
                msg = (
                    f"Embedding dimension mismatch: query has {query.shape[0]}, "
                    f"chunk {record.date}#{record.chunk_index} has {record.embedding.shape[0]}"
                )
                raise EmbeddingMismatchError(msg)
        matrix = np.vstack([record.embedding for record in records]).astype(np.float32)
        scores = cosine_similarities(query, matrix)
        # Stable sort keeps date order among ties.
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            SearchHit(
                date=records[i].date,
                chunk_index=records[i].chunk_index,
                similarity=float(scores[i]),
            )
            for i in order
        ]


def search(
    session: Session,
    index: MetadataIndex,
    query_vector: np.ndarray | list[float],
    top_k: int,
    temporal_constraint: NoConstraint | RelativeConstraint | AbsoluteConstraint | None = None,
    today: dt.date | None = None,
    *,
    vector_index: VectorIndex | None = None,
) -> list[SearchHit]:
    """Find the chunks most similar to ``query_vector``.

    Candidates are limited to the constraint's date range before ranking, so
    entries outside the range can never appear regardless of similarity.

    Raises:
        EmbeddingMismatchError: The query and stored chunks differ in dimension.

    """
    key = session.require_key()
    index.sync(key)
    date_range = None
    if temporal_constraint is not None:
        date_range = temporal_constraint.to_date_range(today or dt.date.today())
    candidates = list(index.iter_chunks(date_range))
    LOGGER.debug("Searching %d candidate chunks (range=%s)", len(candidates), date_range)
    ranker = vector_index or LinearScanIndex()
    return ranker.rank(np.asarray(query_vector, dtype=np.float32), candidates, top_k)
