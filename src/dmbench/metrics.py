from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable

from .sites import SiteKey, SiteUniverse

CallSet = tuple[SiteKey, ...]

COUNT_FIELDS = ("TP", "FN", "FP", "TN")
RATE_FIELDS = (
    "accuracy",
    "specificity",
    "sensitivity",
    "precision",
    "recall",
    "f_score",
    "npv",
)


class MalformedCallSetError(ValueError):
    """A caller returned keys that violate the call-set contract."""


@dataclass(frozen=True)
class ConfusionMetrics:
    configuration: str
    tp: int
    fp: int
    fn: int
    tn: int
    accuracy: float
    specificity: float
    sensitivity: float
    precision: float
    recall: float
    f_score: float
    npv: float

    @property
    def total(self) -> int:
        return self.tp + self.fp + self.fn + self.tn

    def to_dict(self) -> dict[str, Any]:
        return {
            "configuration": self.configuration,
            "TP": self.tp,
            "FN": self.fn,
            "FP": self.fp,
            "TN": self.tn,
            "accuracy": self.accuracy,
            "specificity": self.specificity,
            "sensitivity": self.sensitivity,
            "precision": self.precision,
            "recall": self.recall,
            "f_score": self.f_score,
            "npv": self.npv,
        }


def _ratio(num: int, den: int) -> float:
    if den == 0:
        return float("nan")
    return num / den


def _harmonic(precision: float, recall: float) -> float:
    if math.isnan(precision) or math.isnan(recall):
        return float("nan")
    den = precision + recall
    if den == 0:
        return float("nan")
    return 2.0 * precision * recall / den


def validate_call_set(universe: SiteUniverse, keys: Iterable[Any]) -> CallSet:
    """Coerce caller output to a CallSet, rejecting duplicates and unknown sites."""
    out: list[SiteKey] = []
    for raw in keys:
        if isinstance(raw, SiteKey):
            key = raw
        else:
            try:
                chrom, position, strand = raw
                key = SiteKey(str(chrom), int(position), str(strand))
            except (TypeError, ValueError) as exc:
                raise MalformedCallSetError(f"not a site key: {raw!r}") from exc
        if key.strand == "*" and key not in universe:
            # strandless caller output is matched on (chrom, position)
            candidates = universe.keys_at(key.chrom, key.position)
            if len(candidates) > 1:
                raise MalformedCallSetError(
                    f"strandless key {key.label()} matches {len(candidates)} stranded sites"
                )
            if candidates:
                key = candidates[0]
        out.append(key)

    counts = Counter(out)
    dups = [k.label() for k, n in counts.items() if n > 1]
    if dups:
        raise MalformedCallSetError(f"duplicate keys {dups[:5]}")
    outside = [k.label() for k in out if k not in universe]
    if outside:
        raise MalformedCallSetError(f"{len(outside)} keys outside universe, e.g. {outside[:5]}")
    return tuple(out)


def compute_rates(
    universe: SiteUniverse,
    call_set: Iterable[SiteKey],
    configuration: str = "",
) -> ConfusionMetrics:
    """Confusion counts and derived rates of one call set against ground truth.

    Rates whose denominator is zero are NaN.
    """
    true_dm = universe.differential_keys
    true_ndm = universe.non_differential_keys
    pred_dm = frozenset(call_set)
    pred_ndm = universe.key_set - pred_dm

    tp = len(true_dm & pred_dm)
    fn = len(true_dm & pred_ndm)
    fp = len(true_ndm & pred_dm)
    tn = len(true_ndm & pred_ndm)

    sensitivity = _ratio(tp, tp + fn)
    precision = _ratio(tp, tp + fp)
    return ConfusionMetrics(
        configuration=str(configuration),
        tp=tp,
        fp=fp,
        fn=fn,
        tn=tn,
        accuracy=_ratio(tp + tn, universe.n_sites),
        specificity=_ratio(tn, tn + fp),
        sensitivity=sensitivity,
        precision=precision,
        recall=sensitivity,
        f_score=_harmonic(precision, sensitivity),
        npv=_ratio(tn, tn + fn),
    )
