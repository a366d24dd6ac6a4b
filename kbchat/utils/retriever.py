"""
Top-K retrieval over an in-memory knowledge base.

Exact cosine ranking of every entry; no index, no approximation. Equal scores
keep the entries' order in the base, which matters for short or templated
entries whose embeddings collide.
"""
import logging
from typing import List, NamedTuple, Sequence, Union

import numpy as np

from kbchat.errors import DimensionMismatch
from kbchat.utils.knowledge_base import KnowledgeBase, KnowledgeEntry
from kbchat.utils.logger import get_logger
from kbchat.utils.similarity import as_vector, similarity

logger = get_logger(__name__)

DEFAULT_TOP_K = 5

Vector = Union[np.ndarray, Sequence[float]]


class ScoredEntry(NamedTuple):
    rank: int
    score: float
    entry: KnowledgeEntry


def _check_k(k: int) -> None:
    # bool is an int subclass; True/False as a result count is always a bug
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
        raise TypeError(f"k must be an integer, got {type(k).__name__}")


def rank(query: Vector, base: Union[KnowledgeBase, Sequence[KnowledgeEntry]], k: int = DEFAULT_TOP_K) -> List[ScoredEntry]:
    """
    Score every entry against ``query`` and return the best ``k`` with scores.

    Raises ``DimensionMismatch`` before scoring anything if any stored
    embedding differs in length from the query.
    """
    _check_k(k)
    if k <= 0 or len(base) == 0:
        return []

    qv = as_vector(query)
    for entry in base:
        if entry.dimension != qv.shape[0]:
            raise DimensionMismatch(expected=qv.shape[0], actual=entry.dimension, title=entry.title)

    scores = [similarity(qv, entry.vector) for entry in base]
    # sorted() is stable: ties stay in base order
    order = sorted(range(len(scores)), key=lambda i: -scores[i])[: min(int(k), len(scores))]

    hits = [ScoredEntry(n, scores[i], base[i]) for n, i in enumerate(order, 1)]
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "Retrieved %s",
            ", ".join(f"{h.entry.title!r}={h.score:.3f}" for h in hits),
        )
    return hits


def retrieve(query: Vector, base: Union[KnowledgeBase, Sequence[KnowledgeEntry]], k: int = DEFAULT_TOP_K) -> List[KnowledgeEntry]:
    """Top-``k`` entries by descending similarity; empty for ``k <= 0``."""
    return [hit.entry for hit in rank(query, base, k)]
