from __future__ import annotations

import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Any, Iterator, Sequence

from .benchmark.checkpoint import ShardStore
from .callers import CallerAdapter, CallParameters
from .manifest import sha256_json
from .metrics import CallSet, ConfusionMetrics, MalformedCallSetError, compute_rates, validate_call_set
from .simulation import SiteData
from .sites import SiteUniverse

CHECKPOINT_FAILED = "checkpoint_failed"


def _adapter_definition(adapter: CallerAdapter) -> dict[str, Any]:
    """Stable description of an adapter: its type and its settings."""
    out: dict[str, Any] = {"type": type(adapter).__name__}
    if is_dataclass(adapter):
        for f in fields(adapter):
            value = getattr(adapter, f.name)
            if callable(value):
                module = getattr(value, "__module__", "")
                value = f"{module}.{getattr(value, '__qualname__', type(value).__name__)}"
            out[f.name] = value
    return out


@dataclass(frozen=True)
class ConfigurationSpec:
    name: str
    adapter: CallerAdapter
    params: CallParameters = field(default_factory=CallParameters)
    tool: str = ""

    def fingerprint(self) -> str:
        return sha256_json(
            {
                "name": self.name,
                "tool": self.tool,
                "params": self.params.to_dict(),
                "adapter": _adapter_definition(self.adapter),
            }
        )


@dataclass(frozen=True)
class ConfigurationOutcome:
    name: str
    status: str
    reason: str
    call_set: CallSet | None = None
    metrics: ConfusionMetrics | None = None
    runtime_sec: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "OK"


@dataclass
class ConfigurationResult:
    """Outcomes of every configuration evaluated on one scenario, in declaration order."""

    scenario_id: str | None = None
    entries: dict[str, ConfigurationOutcome] = field(default_factory=dict)

    def record(self, outcome: ConfigurationOutcome) -> None:
        self.entries[outcome.name] = outcome

    def __getitem__(self, name: str) -> ConfigurationOutcome:
        return self.entries[name]

    def __contains__(self, name: object) -> bool:
        return name in self.entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def ok_names(self) -> list[str]:
        return [name for name, o in self.entries.items() if o.ok]

    def failed(self) -> list[ConfigurationOutcome]:
        return [o for o in self.entries.values() if not o.ok]

    def checkpoint_failures(self) -> list[ConfigurationOutcome]:
        return [o for o in self.entries.values() if f";{CHECKPOINT_FAILED}:" in o.reason]

    def call_sets(self) -> dict[str, CallSet]:
        return {name: o.call_set for name, o in self.entries.items() if o.ok and o.call_set is not None}

    def metrics(self) -> dict[str, ConfusionMetrics]:
        return {name: o.metrics for name, o in self.entries.items() if o.ok and o.metrics is not None}


def _reason_token(exc: BaseException) -> str:
    text = " ".join(str(exc).split())
    if isinstance(exc, MalformedCallSetError):
        return f"malformed_result:{text}"
    return f"adapter_exception:{type(exc).__name__}:{text}"


def universe_digest(universe: SiteUniverse) -> str:
    """Hash of the site keys and ground-truth labels of one scenario."""
    return sha256_json(
        {
            "keys": [list(k) for k in universe.keys],
            "differential": [int(d) for d in universe.is_differential],
        }
    )


def _shard_fingerprint(spec: ConfigurationSpec, digest: str) -> str:
    return sha256_json({"configuration": spec.fingerprint(), "universe": digest})


def _shard_payload(
    scenario_id: str, fingerprint: str, spec: ConfigurationSpec, outcome: ConfigurationOutcome
) -> dict[str, Any]:
    return {
        "scenario": scenario_id,
        "configuration": spec.name,
        "fingerprint": fingerprint,
        "status": outcome.status,
        "reason": outcome.reason,
        "runtime_sec": outcome.runtime_sec,
        "call_set": [list(k) for k in (outcome.call_set or ())],
    }


def _from_shard(
    universe: SiteUniverse, spec: ConfigurationSpec, payload: dict[str, Any]
) -> ConfigurationOutcome | None:
    if payload.get("status") != "OK":
        return None
    try:
        call_set = validate_call_set(universe, payload.get("call_set") or [])
    except MalformedCallSetError:
        return None
    return ConfigurationOutcome(
        name=spec.name,
        status="OK",
        reason="resumed",
        call_set=call_set,
        metrics=compute_rates(universe, call_set, spec.name),
        runtime_sec=float(payload.get("runtime_sec") or 0.0),
    )


def evaluate_configuration(
    universe: SiteUniverse,
    data: SiteData,
    spec: ConfigurationSpec,
    *,
    scenario_id: str | None = None,
    checkpoint: ShardStore | None = None,
    digest: str | None = None,
) -> ConfigurationOutcome:
    """Run one adapter call and score it. Adapter failures become FAIL outcomes.

    A shard is reused only when it was written for the same configuration
    and the same universe (``digest``). A shard that cannot be written leaves
    the outcome in place and appends a ``checkpoint_failed`` reason.
    """
    sid = "" if scenario_id is None else str(scenario_id)
    fingerprint = ""
    if checkpoint is not None:
        fingerprint = _shard_fingerprint(spec, digest or universe_digest(universe))
        payload = checkpoint.load(sid, spec.name, fingerprint)
        if payload is not None:
            resumed = _from_shard(universe, spec, payload)
            if resumed is not None:
                return resumed

    started = time.perf_counter()
    try:
        keys = spec.adapter.call(data.copy(), spec.params.for_scenario(scenario_id))
        call_set = validate_call_set(universe, keys)
    except Exception as exc:
        outcome = ConfigurationOutcome(
            name=spec.name,
            status="FAIL",
            reason=_reason_token(exc),
            runtime_sec=time.perf_counter() - started,
        )
    else:
        outcome = ConfigurationOutcome(
            name=spec.name,
            status="OK",
            reason="ok",
            call_set=call_set,
            metrics=compute_rates(universe, call_set, spec.name),
            runtime_sec=time.perf_counter() - started,
        )

    if checkpoint is not None:
        try:
            checkpoint.save(_shard_payload(sid, fingerprint, spec, outcome))
        except Exception as exc:
            text = " ".join(str(exc).split())
            outcome = replace(
                outcome, reason=f"{outcome.reason};{CHECKPOINT_FAILED}:{type(exc).__name__}:{text}"
            )
    return outcome


def run_configurations(
    universe: SiteUniverse,
    data: SiteData,
    configurations: Sequence[ConfigurationSpec],
    *,
    jobs: int = 1,
    scenario_id: str | None = None,
    checkpoint: ShardStore | None = None,
) -> ConfigurationResult:
    names = [c.name for c in configurations]
    dups = sorted({n for n in names if names.count(n) > 1})
    if dups:
        raise ValueError(f"Configuration names must be unique; duplicated: {', '.join(dups)}")
    if data.n_sites != universe.n_sites:
        raise ValueError(
            f"Site data has {data.n_sites} rows but the universe has {universe.n_sites} sites."
        )

    n_jobs = int(jobs)
    if n_jobs <= 0:
        n_jobs = max(1, min(16, (os.cpu_count() or 1)))

    digest = universe_digest(universe) if checkpoint is not None else None

    def _one(spec: ConfigurationSpec) -> ConfigurationOutcome:
        return evaluate_configuration(
            universe, data, spec, scenario_id=scenario_id, checkpoint=checkpoint, digest=digest
        )

    if n_jobs == 1 or len(configurations) <= 1:
        outcomes = [_one(spec) for spec in configurations]
    else:
        with ThreadPoolExecutor(max_workers=n_jobs) as ex:
            outcomes = list(ex.map(_one, configurations))

    result = ConfigurationResult(scenario_id=scenario_id)
    for outcome in outcomes:
        result.record(outcome)
    return result
