from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .callers import KNOWN_TOOLS, CallParameters, build_adapter
from .runner import ConfigurationSpec
from .simulation import CommandSimulator, FileSimulator, ScenarioSpec, Simulator

SIMULATOR_KINDS = ("command", "files")


def _ensure_type(payload: Any, expected: type, label: str) -> None:
    if not isinstance(payload, expected):
        raise ValueError(f"{label} must be {expected.__name__}.")


def _require_keys(payload: dict[str, Any], keys: list[str], label: str) -> None:
    missing = [k for k in keys if k not in payload]
    if missing:
        raise ValueError(f"{label} missing required keys: {', '.join(missing)}")


def _validate_threshold(value: Any, label: str, *, upper: float | None = None) -> None:
    try:
        v = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be a number.") from exc
    if v < 0 or (upper is not None and v > upper):
        bound = f"[0, {upper}]" if upper is not None else ">= 0"
        raise ValueError(f"{label} must be in {bound}.")


def validate_benchmark_payload(payload: dict[str, Any]) -> None:
    _ensure_type(payload, dict, "benchmark config")
    _require_keys(payload, ["schema_version", "simulator", "scenarios", "configurations"], "benchmark config")
    if int(payload["schema_version"]) != 1:
        raise ValueError("benchmark config schema_version must be 1.")

    sim = payload["simulator"]
    _ensure_type(sim, dict, "simulator")
    kind = str(sim.get("kind", "")).strip().lower()
    if kind not in SIMULATOR_KINDS:
        raise ValueError(f"simulator kind must be one of: {', '.join(SIMULATOR_KINDS)}")
    if kind == "command":
        if not isinstance(sim.get("command"), list) or not sim["command"]:
            raise ValueError("command simulator needs a non-empty 'command' list.")
    else:
        _require_keys(sim, ["sites", "truth"], "files simulator")

    defaults = payload.get("scenario_defaults", {})
    _ensure_type(defaults, dict, "scenario_defaults")
    scenarios = payload["scenarios"]
    if not isinstance(scenarios, list) or not scenarios:
        raise ValueError("scenarios must be a non-empty list.")
    seen_ids: set[str] = set()
    for idx, scenario in enumerate(scenarios, start=1):
        if not isinstance(scenario, dict):
            raise ValueError(f"scenario #{idx} must be an object.")
        _require_keys(scenario, ["effect_magnitude"], f"scenario #{idx}")
        merged = {**defaults, **scenario}
        spec = ScenarioSpec.from_dict(merged)
        if spec.scenario_id in seen_ids:
            raise ValueError(f"duplicate scenario id: {spec.scenario_id}")
        seen_ids.add(spec.scenario_id)

    configurations = payload["configurations"]
    if not isinstance(configurations, list) or not configurations:
        raise ValueError("configurations must be a non-empty list.")
    seen_names: set[str] = set()
    for idx, conf in enumerate(configurations, start=1):
        if not isinstance(conf, dict):
            raise ValueError(f"configuration #{idx} must be an object.")
        _require_keys(conf, ["name", "tool"], f"configuration #{idx}")
        name = str(conf["name"])
        if not name.strip():
            raise ValueError(f"configuration #{idx} has an empty name.")
        if name in seen_names:
            raise ValueError(f"duplicate configuration name: {name}")
        seen_names.add(name)
        if str(conf["tool"]).strip().lower() not in KNOWN_TOOLS:
            raise ValueError(
                f"configuration {name!r}: tool must be one of: {', '.join(KNOWN_TOOLS)}"
            )
        if "significance_threshold" in conf:
            _validate_threshold(conf["significance_threshold"], f"{name}.significance_threshold", upper=1.0)
        if "min_abs_difference" in conf:
            _validate_threshold(conf["min_abs_difference"], f"{name}.min_abs_difference", upper=100.0)
        if "options" in conf:
            _ensure_type(conf["options"], dict, f"{name}.options")


@dataclass
class BenchmarkConfig:
    scenarios: list[ScenarioSpec]
    configurations: list[ConfigurationSpec]
    simulator: Simulator
    seed: int | None = None
    jobs: int = 1
    scenario_jobs: int = 1
    source_path: Path | None = None
    payload: dict[str, Any] = field(default_factory=dict)


def _resolve(path: str, base_dir: Path) -> str:
    p = Path(path)
    return str(p if p.is_absolute() else (base_dir / p).resolve())


def build_simulator(payload: dict[str, Any], base_dir: Path) -> Simulator:
    kind = str(payload.get("kind", "")).strip().lower()
    index_base = int(payload.get("index_base", 1))
    if kind == "command":
        timeout = payload.get("timeout_sec")
        return CommandSimulator(
            command=[str(x) for x in payload["command"]],
            index_base=index_base,
            timeout_sec=None if timeout is None else int(timeout),
        )
    if kind == "files":
        return FileSimulator(
            sites_template=_resolve(str(payload["sites"]), base_dir),
            truth_template=_resolve(str(payload["truth"]), base_dir),
            index_base=index_base,
        )
    raise ValueError(f"Unsupported simulator kind: {kind!r}")


def build_configuration(payload: dict[str, Any], base_dir: Path) -> ConfigurationSpec:
    workers = payload.get("workers")
    params = CallParameters(
        significance_threshold=float(payload.get("significance_threshold", 0.01)),
        min_abs_difference=float(payload.get("min_abs_difference", 25.0)),
        options=dict(payload.get("options") or {}),
        workers=None if workers is None else int(workers),
    )
    return ConfigurationSpec(
        name=str(payload["name"]),
        adapter=build_adapter(payload, base_dir=base_dir),
        params=params,
        tool=str(payload["tool"]).strip().lower(),
    )


def build_benchmark_config(payload: dict[str, Any], base_dir: str | Path) -> BenchmarkConfig:
    validate_benchmark_payload(payload)
    base = Path(base_dir).resolve()
    seed = payload.get("seed")
    defaults = dict(payload.get("scenario_defaults") or {})
    if seed is not None:
        defaults.setdefault("seed", int(seed))

    scenarios = [ScenarioSpec.from_dict({**defaults, **s}) for s in payload["scenarios"]]
    configurations = [build_configuration(c, base) for c in payload["configurations"]]
    return BenchmarkConfig(
        scenarios=scenarios,
        configurations=configurations,
        simulator=build_simulator(payload["simulator"], base),
        seed=None if seed is None else int(seed),
        jobs=int(payload.get("jobs", 1)),
        scenario_jobs=int(payload.get("scenario_jobs", 1)),
        payload=payload,
    )


def load_benchmark_config(path: str | Path) -> BenchmarkConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Benchmark config not found: {p}")
    with p.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"benchmark config must be a JSON object: {p}")
    config = build_benchmark_config(payload, p.parent)
    config.source_path = p.resolve()
    return config
