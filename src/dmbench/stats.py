from __future__ import annotations

from typing import Sequence

import numpy as np


def benjamini_hochberg(p_values: Sequence[float]) -> list[float]:
    """Benjamini-Hochberg q-values, returned in input order.

    NaN p-values stay NaN and do not count towards the number of tests.
    """
    p = np.asarray(p_values, dtype=float)
    result = np.full(p.shape, np.nan, dtype=float)
    finite = np.flatnonzero(~np.isnan(p))
    n = int(finite.size)
    if n == 0:
        return result.tolist()

    order = finite[np.argsort(p[finite], kind="mergesort")]
    ranked = p[order]
    adjusted = np.empty(n, dtype=float)
    prev = 1.0
    for i in range(n - 1, -1, -1):
        rank = i + 1
        candidate = min(prev, ranked[i] * n / rank)
        adjusted[i] = candidate
        prev = candidate

    result[order] = adjusted
    return result.tolist()
