from __future__ import annotations

import math
from typing import Sequence

EPSILON = 1e-8


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity with an epsilon-guarded denominator.

    A zero vector scores 0.0 against anything. Vectors of different length are
    rejected rather than truncated.
    """
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b) + EPSILON)


def comparable(a: Sequence[float] | None, b: Sequence[float] | None) -> bool:
    return bool(a) and bool(b) and len(a) == len(b)
