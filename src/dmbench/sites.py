from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from functools import cached_property
from typing import Iterable, NamedTuple

import numpy as np
import pandas as pd


class InvalidUniverseError(ValueError):
    """Ground truth does not describe a valid partition of the site table."""


class SiteKey(NamedTuple):
    chrom: str
    position: int
    strand: str = "*"

    def label(self) -> str:
        return f"{self.chrom}:{self.position}:{self.strand}"


def site_keys_from_table(table: pd.DataFrame) -> tuple[SiteKey, ...]:
    """Build ordered site keys from a methylKit-style table (chr, start[, strand])."""
    missing = [c for c in ("chr", "start") if c not in table.columns]
    if missing:
        raise ValueError(f"site table missing required columns: {', '.join(missing)}")
    chroms = table["chr"].astype(str).tolist()
    raw_starts = pd.to_numeric(table["start"], errors="raise").to_numpy(dtype=float)
    fractional = ~np.isfinite(raw_starts) | (raw_starts != np.floor(raw_starts))
    if fractional.any():
        bad = table["start"][fractional].tolist()[:5]
        raise ValueError(f"start coordinates must be integers, got {bad}")
    starts = raw_starts.astype(np.int64).tolist()
    if "strand" in table.columns:
        strands = table["strand"].fillna("*").astype(str).tolist()
    else:
        strands = ["*"] * len(chroms)
    return tuple(SiteKey(c, int(p), s) for c, p, s in zip(chroms, starts, strands))


@dataclass(frozen=True)
class SiteUniverse:
    keys: tuple[SiteKey, ...]
    is_differential: tuple[bool, ...]

    def __post_init__(self) -> None:
        if not self.keys:
            raise InvalidUniverseError("Site universe is empty.")
        if len(self.keys) != len(self.is_differential):
            raise InvalidUniverseError("Site keys and ground-truth labels are misaligned.")
        if len(set(self.keys)) != len(self.keys):
            dups = [k.label() for k, n in Counter(self.keys).items() if n > 1]
            raise InvalidUniverseError(f"Duplicate site keys in universe: {dups[:10]}")

    @property
    def n_sites(self) -> int:
        return len(self.keys)

    @cached_property
    def key_set(self) -> frozenset[SiteKey]:
        return frozenset(self.keys)

    @cached_property
    def differential_keys(self) -> frozenset[SiteKey]:
        return frozenset(k for k, d in zip(self.keys, self.is_differential) if d)

    @cached_property
    def non_differential_keys(self) -> frozenset[SiteKey]:
        return frozenset(k for k, d in zip(self.keys, self.is_differential) if not d)

    @cached_property
    def _by_position(self) -> dict[tuple[str, int], list[SiteKey]]:
        index: dict[tuple[str, int], list[SiteKey]] = {}
        for key in self.keys:
            index.setdefault((key.chrom, key.position), []).append(key)
        return index

    @property
    def n_differential(self) -> int:
        return len(self.differential_keys)

    def keys_at(self, chrom: str, position: int) -> list[SiteKey]:
        """All universe keys at (chrom, position), whatever their strand."""
        return list(self._by_position.get((str(chrom), int(position)), ()))

    def __contains__(self, key: object) -> bool:
        return key in self.key_set


def _coerce_indices(indices: Iterable[object], n_sites: int) -> list[int]:
    out: list[int] = []
    for raw in indices:
        if isinstance(raw, bool):
            raise InvalidUniverseError(f"Differential index must be an integer, got {raw!r}.")
        if isinstance(raw, (float, np.floating)):
            if not float(raw).is_integer():
                raise InvalidUniverseError(f"Differential index must be an integer, got {raw!r}.")
            raw = int(raw)
        try:
            idx = int(raw)  # type: ignore[call-overload]
        except (TypeError, ValueError) as exc:
            raise InvalidUniverseError(f"Differential index must be an integer, got {raw!r}.") from exc
        if idx < 0 or idx >= n_sites:
            raise InvalidUniverseError(
                f"Differential index {idx} outside universe of {n_sites} sites."
            )
        out.append(idx)
    return out


def build_site_universe(
    site_table: pd.DataFrame,
    differential_indices: Iterable[object],
) -> SiteUniverse:
    """Label every site of ``site_table`` with its ground truth.

    ``differential_indices`` are 0-based row positions of the truly differential
    sites. They must be unique and inside the table.
    """
    if site_table.empty:
        raise InvalidUniverseError("Site table has no rows.")
    try:
        keys = site_keys_from_table(site_table)
    except ValueError as exc:
        raise InvalidUniverseError(str(exc)) from exc

    indices = _coerce_indices(differential_indices, len(keys))
    if len(set(indices)) != len(indices):
        dups = sorted(i for i, n in Counter(indices).items() if n > 1)
        raise InvalidUniverseError(f"Duplicate differential indices: {dups[:10]}")

    flags = np.zeros(len(keys), dtype=bool)
    flags[indices] = True
    return SiteUniverse(keys=keys, is_differential=tuple(bool(x) for x in flags))
