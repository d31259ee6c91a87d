from __future__ import annotations

from collections import Counter
from itertools import combinations
from typing import Iterable, Mapping, Sequence

from .sites import SiteKey


def ordered_subsets(ordered_names: Sequence[str]) -> list[tuple[str, ...]]:
    """Every non-empty subset, by size, then in ``combinations`` order."""
    names = list(ordered_names)
    out: list[tuple[str, ...]] = []
    for size in range(1, len(names) + 1):
        out.extend(combinations(names, size))
    return out


def intersection_sizes(
    call_sets: Mapping[str, Iterable[SiteKey]],
    ordered_names: Sequence[str],
) -> dict[tuple[str, ...], int]:
    """Exact-membership counts for every non-empty subset of the named call sets.

    A key is counted once, under the subset of call sets that contain it and
    no others, so the counts sum to the size of the union.
    """
    names = list(ordered_names)
    if len(set(names)) != len(names):
        raise ValueError("ordered_names must not contain duplicates.")
    missing = [n for n in names if n not in call_sets]
    if missing:
        raise ValueError(f"No call set for: {', '.join(missing)}")

    members = {name: frozenset(call_sets[name]) for name in names}
    union: set[SiteKey] = set()
    for keys in members.values():
        union |= keys

    tally: Counter[tuple[str, ...]] = Counter()
    for key in union:
        tally[tuple(n for n in names if key in members[n])] += 1

    return {subset: int(tally.get(subset, 0)) for subset in ordered_subsets(names)}


def combination_label(subset: Sequence[str]) -> str:
    return "&".join(subset)
