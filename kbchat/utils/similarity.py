from typing import Sequence, Union

import numpy as np

from kbchat.errors import DimensionMismatch

VectorLike = Union[np.ndarray, Sequence[float]]


def as_vector(x: VectorLike) -> np.ndarray:
    """Coerce to a 1-D float64 array (no copy when already one)."""
    arr = np.asarray(x, dtype=np.float64)
    if arr.ndim != 1:
        raise ValueError(f"Expected a 1-D vector, got shape {arr.shape}")
    return arr


def similarity(a: VectorLike, b: VectorLike) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Unequal lengths raise ``DimensionMismatch``; nothing is truncated or padded.
    A zero-magnitude vector on either side scores 0.0 instead of NaN.
    """
    va = as_vector(a)
    vb = as_vector(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(expected=va.shape[0], actual=vb.shape[0])

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    score = float(np.dot(va, vb)) / (norm_a * norm_b)
    # rounding can push |a|==|b| parallel vectors a hair past 1
    return max(-1.0, min(1.0, score))
