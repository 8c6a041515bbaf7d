"""
Top-K Sampling.

Draws the next speech token from decoder logits:

    1. clamp k to the logit count
    2. stable log-softmax (max subtracted before exp)
    3. pick the k best log-probabilities by partial selection sort
       (first-found wins ties)
    4. renormalize those k values into probabilities
    5. draw r ~ U[0, 1) and return the first candidate whose running
       sum reaches r (the last candidate if rounding leaves a gap)

k=1 is arg-max. Randomness comes only from the injected Generator.
"""
from __future__ import annotations

from typing import Optional, Sequence, Union

import numpy as np

from voxflow.core.errors import InvalidArgumentError

ArrayLike = Union[np.ndarray, Sequence[float]]


def log_softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    return shifted - np.log(np.sum(np.exp(shifted)))


def top_k_indices(values: np.ndarray, k: int) -> np.ndarray:
    """
    Indices of the k largest values, best first.

    Partial selection sort: pass i swaps the first maximum of the
    remaining positions into slot i. The swap order decides ties, so
    equal values are not necessarily returned in index order.
    """
    order = np.arange(values.size)
    for i in range(k):
        j = i + int(np.argmax(values[order[i:]]))
        order[i], order[j] = order[j], order[i]
    return order[:k]


def top_k_sample(
    logits: Optional[ArrayLike],
    k: int = 25,
    rng: Optional[np.random.Generator] = None,
) -> int:
    """
    Sample one index from the top-k of ``logits``.

    Args:
        logits: 1-D scores (any trailing [1, V] shape is flattened).
        k: Candidate count; clamped to len(logits).
        rng: Random source. A fresh unseeded Generator when omitted.

    Returns:
        Index into ``logits``.

    Raises:
        InvalidArgumentError: On missing/empty logits or k < 1.
    """
    if logits is None:
        raise InvalidArgumentError("logits must not be None")
    values = np.asarray(logits, dtype=np.float64).reshape(-1)
    if values.size == 0:
        raise InvalidArgumentError("logits must not be empty")
    if k < 1:
        raise InvalidArgumentError(f"k must be >= 1, got {k}")

    k = min(k, values.size)
    logp = log_softmax(values)
    candidates = top_k_indices(logp, k)

    top = logp[candidates]
    probs = np.exp(top - top[0])
    probs /= probs.sum()

    if rng is None:
        rng = np.random.default_rng()
    r = rng.random()

    cumulative = np.cumsum(probs)
    pos = int(np.searchsorted(cumulative, r, side="left"))
    if pos >= k:
        pos = k - 1
    return int(candidates[pos])
