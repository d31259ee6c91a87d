from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd

from ..intersections import combination_label, intersection_sizes
from ..metrics import COUNT_FIELDS, RATE_FIELDS
from ..runner import ConfigurationResult, ConfigurationSpec, run_configurations
from ..simulation import ScenarioSpec, Simulator, simulate_scenario
from ..sites import InvalidUniverseError, build_site_universe
from .checkpoint import ShardStore

METRIC_COLUMNS = ["scenario", "configuration", *COUNT_FIELDS, *RATE_FIELDS]
SKIPPED_COLUMNS = ["scenario", "configuration", "level", "reason"]


@dataclass
class ScenarioResult:
    scenario_order: list[str]
    configuration_order: list[str]
    results: dict[str, ConfigurationResult] = field(default_factory=dict)
    failed_scenarios: dict[str, str] = field(default_factory=dict)

    def __getitem__(self, scenario_id: str) -> ConfigurationResult:
        return self.results[scenario_id]

    def __contains__(self, scenario_id: object) -> bool:
        return scenario_id in self.results

    def failed_scenario_ids(self) -> list[str]:
        return [sid for sid in self.scenario_order if sid in self.failed_scenarios]

    def completed_scenario_ids(self) -> list[str]:
        return [sid for sid in self.scenario_order if sid in self.results]


def _reason(prefix: str, exc: BaseException) -> str:
    return f"{prefix}:{type(exc).__name__}:{' '.join(str(exc).split())}"


def run_scenarios(
    scenarios: Sequence[ScenarioSpec],
    simulator: Simulator,
    configurations: Sequence[ConfigurationSpec],
    *,
    jobs: int = 1,
    scenario_jobs: int = 1,
    checkpoint: ShardStore | None = None,
) -> ScenarioResult:
    """Simulate every scenario once and evaluate all configurations on it.

    A scenario whose simulation fails, or whose ground truth is invalid, is
    recorded in ``failed_scenarios``; the remaining scenarios still run.
    """
    scenario_ids = [s.scenario_id for s in scenarios]
    dup_s = sorted({s for s in scenario_ids if scenario_ids.count(s) > 1})
    if dup_s:
        raise ValueError(f"Scenario ids must be unique; duplicated: {', '.join(dup_s)}")
    names = [c.name for c in configurations]
    dup_c = sorted({n for n in names if names.count(n) > 1})
    if dup_c:
        raise ValueError(f"Configuration names must be unique; duplicated: {', '.join(dup_c)}")

    def _one(spec: ScenarioSpec) -> tuple[str, ConfigurationResult | None, str | None]:
        try:
            simulated = simulate_scenario(simulator, spec)
        except Exception as exc:
            return spec.scenario_id, None, _reason("simulator_failed", exc)
        try:
            universe = build_site_universe(simulated.data.table, simulated.differential_indices)
        except InvalidUniverseError as exc:
            return spec.scenario_id, None, _reason("invalid_universe", exc)
        try:
            cres = run_configurations(
                universe,
                simulated.data,
                configurations,
                jobs=jobs,
                scenario_id=spec.scenario_id,
                checkpoint=checkpoint,
            )
        except Exception as exc:
            return spec.scenario_id, None, _reason("runner_failed", exc)
        return spec.scenario_id, cres, None

    n_workers = max(1, int(scenario_jobs))
    if n_workers == 1 or len(scenarios) <= 1:
        outcomes = [_one(spec) for spec in scenarios]
    else:
        with ThreadPoolExecutor(max_workers=n_workers) as ex:
            outcomes = list(ex.map(_one, scenarios))

    result = ScenarioResult(scenario_order=scenario_ids, configuration_order=names)
    for sid, cres, reason in outcomes:
        if cres is None:
            result.failed_scenarios[sid] = str(reason)
        else:
            result.results[sid] = cres
    return result


def metrics_table(result: ScenarioResult) -> pd.DataFrame:
    """One row per (scenario, successful configuration), in declared order."""
    rows: list[dict[str, object]] = []
    for sid in result.completed_scenario_ids():
        cres = result.results[sid]
        for name in result.configuration_order:
            if name not in cres:
                continue
            outcome = cres[name]
            if not outcome.ok or outcome.metrics is None:
                continue
            row = outcome.metrics.to_dict()
            row["scenario"] = sid
            rows.append(row)
    return pd.DataFrame(rows, columns=METRIC_COLUMNS)


def skipped_table(result: ScenarioResult) -> pd.DataFrame:
    rows: list[dict[str, object]] = []
    for sid in result.scenario_order:
        if sid in result.failed_scenarios:
            rows.append(
                {
                    "scenario": sid,
                    "configuration": "",
                    "level": "scenario",
                    "reason": result.failed_scenarios[sid],
                }
            )
            continue
        cres = result.results.get(sid)
        if cres is None:
            continue
        for outcome in cres.failed():
            rows.append(
                {
                    "scenario": sid,
                    "configuration": outcome.name,
                    "level": "configuration",
                    "reason": outcome.reason,
                }
            )
        for outcome in cres.checkpoint_failures():
            if not outcome.ok:
                continue
            rows.append(
                {
                    "scenario": sid,
                    "configuration": outcome.name,
                    "level": "checkpoint",
                    "reason": outcome.reason,
                }
            )
    return pd.DataFrame(rows, columns=SKIPPED_COLUMNS)


def intersection_table(
    result: ScenarioResult,
    ordered_names: Sequence[str] | None = None,
) -> pd.DataFrame:
    """Exact-membership intersection counts per scenario, in UpSet-ready long form."""
    names = list(ordered_names) if ordered_names is not None else list(result.configuration_order)
    unknown = [n for n in names if n not in result.configuration_order]
    if unknown:
        raise ValueError(f"Unknown configurations for intersection: {', '.join(unknown)}")
    columns = ["scenario", "combination", "degree", "count", *names]
    rows: list[dict[str, object]] = []
    for sid in result.completed_scenario_ids():
        call_sets = result.results[sid].call_sets()
        present = [n for n in names if n in call_sets]
        if not present:
            continue
        for subset, count in intersection_sizes(call_sets, present).items():
            row: dict[str, object] = {
                "scenario": sid,
                "combination": combination_label(subset),
                "degree": len(subset),
                "count": count,
            }
            for n in names:
                row[n] = n in subset
            rows.append(row)
    return pd.DataFrame(rows, columns=columns)


def summarize_metrics(table: pd.DataFrame) -> pd.DataFrame:
    """Mean rate per configuration across scenarios.

    Undefined (NaN) rates are left out of the mean and counted in
    ``n_undefined_<rate>``.
    """
    columns = ["configuration", "n_scenarios"]
    for rate in RATE_FIELDS:
        columns.extend([f"mean_{rate}", f"n_undefined_{rate}"])
    if table.empty:
        return pd.DataFrame(columns=columns)

    rows: list[dict[str, object]] = []
    for name, sub in table.groupby("configuration", sort=False):
        row: dict[str, object] = {"configuration": name, "n_scenarios": int(len(sub))}
        for rate in RATE_FIELDS:
            values = pd.to_numeric(sub[rate], errors="coerce").to_numpy(dtype=float)
            defined = values[~np.isnan(values)]
            row[f"mean_{rate}"] = float(np.mean(defined)) if defined.size else float("nan")
            row[f"n_undefined_{rate}"] = int(values.size - defined.size)
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)
