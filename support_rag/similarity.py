"""Cosine similarity between embedding vectors.

Mismatched lengths, empty vectors and zero magnitudes all score 0 so that
un-vectorized or heterogeneous items never break retrieval.
"""

from typing import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return cosine similarity in [-1, 1], or 0.0 when the vectors are not comparable."""
    if a is None or b is None or len(a) != len(b) or len(a) == 0:
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    sim = float(np.dot(va, vb) / (norm_a * norm_b))
    # Clamp float drift so v.v lands exactly on 1.0
    return max(-1.0, min(1.0, sim))
