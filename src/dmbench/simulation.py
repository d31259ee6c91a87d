from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Sequence

import pandas as pd

from .commands import render_command, run_command, stderr_tail
from .io import read_site_table, read_truth_indices


class SimulatorError(RuntimeError):
    """The simulator could not produce a scenario."""


def format_effect(effect_magnitude: float) -> str:
    value = float(effect_magnitude)
    if value.is_integer():
        return str(int(value))
    return f"{value:g}"


@dataclass(frozen=True)
class SiteData:
    """Per-site count table handed to callers, plus the sample group labels."""

    table: pd.DataFrame
    group_labels: tuple[int, ...]

    @property
    def n_sites(self) -> int:
        return int(len(self.table))

    def copy(self) -> "SiteData":
        return SiteData(table=self.table.copy(deep=True), group_labels=tuple(self.group_labels))


@dataclass(frozen=True)
class SimulatedScenario:
    data: SiteData
    differential_indices: tuple[int, ...]


@dataclass(frozen=True)
class ScenarioSpec:
    scenario_id: str
    effect_magnitude: float
    replicates: int = 4
    site_count: int = 5000
    group_labels: tuple[int, ...] = (1, 1, 0, 0)
    differential_fraction: float = 0.1
    seed: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def simulation_kwargs(self) -> dict[str, Any]:
        return {
            "replicates": int(self.replicates),
            "site_count": int(self.site_count),
            "group_labels": tuple(int(x) for x in self.group_labels),
            "differential_fraction": float(self.differential_fraction),
            "effect_magnitude": float(self.effect_magnitude),
            "seed": self.seed,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = {"scenario_id": self.scenario_id, **self.simulation_kwargs()}
        payload["group_labels"] = list(payload["group_labels"])
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ScenarioSpec":
        effect = float(payload["effect_magnitude"])
        seed = payload.get("seed")
        return cls(
            scenario_id=str(payload.get("scenario_id") or format_effect(effect)),
            effect_magnitude=effect,
            replicates=int(payload.get("replicates", 4)),
            site_count=int(payload.get("site_count", 5000)),
            group_labels=tuple(int(x) for x in payload.get("group_labels", (1, 1, 0, 0))),
            differential_fraction=float(payload.get("differential_fraction", 0.1)),
            seed=None if seed is None else int(seed),
            extra=dict(payload.get("extra") or {}),
        )


class Simulator(Protocol):
    def simulate(
        self,
        *,
        replicates: int,
        site_count: int,
        group_labels: tuple[int, ...],
        differential_fraction: float,
        effect_magnitude: float,
        seed: int | None,
    ) -> SimulatedScenario: ...


def simulate_scenario(simulator: Simulator, spec: ScenarioSpec) -> SimulatedScenario:
    out = simulator.simulate(**spec.simulation_kwargs())
    if isinstance(out, SimulatedScenario):
        return out
    if isinstance(out, tuple) and len(out) == 2:
        data, indices = out
        if isinstance(data, pd.DataFrame):
            data = SiteData(table=data, group_labels=tuple(spec.group_labels))
        if not isinstance(data, SiteData):
            raise SimulatorError(f"simulator returned unsupported data type {type(data).__name__}")
        return SimulatedScenario(data=data, differential_indices=tuple(indices))
    raise SimulatorError(f"simulator returned unsupported result {type(out).__name__}")


def _template_values(kwargs: dict[str, Any]) -> dict[str, Any]:
    labels = kwargs["group_labels"]
    return {
        "replicates": kwargs["replicates"],
        "site_count": kwargs["site_count"],
        "group_labels": ",".join(str(int(x)) for x in labels),
        "differential_fraction": kwargs["differential_fraction"],
        "effect_magnitude": kwargs["effect_magnitude"],
        "effect": format_effect(kwargs["effect_magnitude"]),
        "seed": "" if kwargs["seed"] is None else int(kwargs["seed"]),
    }


@dataclass
class FileSimulator:
    """Serve scenarios generated ahead of time.

    Path templates may use ``{effect}``, ``{effect_magnitude}``, ``{seed}``,
    ``{replicates}``, ``{site_count}`` and ``{differential_fraction}``.
    """

    sites_template: str
    truth_template: str
    index_base: int = 1

    def simulate(self, **kwargs: Any) -> SimulatedScenario:
        values = _template_values(kwargs)
        try:
            sites_path = Path(self.sites_template.format(**values))
            truth_path = Path(self.truth_template.format(**values))
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder {exc.args[0]!r} in simulator path template.") from exc
        if not sites_path.exists():
            raise SimulatorError(f"no simulated site table for this scenario: {sites_path}")
        table = read_site_table(sites_path)
        indices = read_truth_indices(truth_path, index_base=self.index_base)
        return SimulatedScenario(
            data=SiteData(table=table, group_labels=tuple(kwargs["group_labels"])),
            differential_indices=tuple(indices),
        )


@dataclass
class CommandSimulator:
    """Run an external simulator (e.g. an Rscript wrapping methylKit's dataSim).

    The command must write the site table to ``{sites_out}`` and the
    differential site indices to ``{truth_out}``.
    """

    command: Sequence[str]
    index_base: int = 1
    timeout_sec: int | None = None
    workdir: Path | None = None

    def simulate(self, **kwargs: Any) -> SimulatedScenario:
        base = None if self.workdir is None else Path(self.workdir)
        if base is not None:
            base.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="dmbench_sim_", dir=base) as tmp:
            tmp_path = Path(tmp)
            sites_out = tmp_path / "sites.tsv"
            truth_out = tmp_path / "truth.txt"
            values = _template_values(kwargs)
            values.update({"sites_out": str(sites_out), "truth_out": str(truth_out)})
            cmd = render_command(self.command, values)
            outcome = run_command(cmd, cwd=tmp_path, timeout_sec=self.timeout_sec)
            if not outcome.ok:
                raise SimulatorError(
                    f"simulator exited with {outcome.returncode}: {stderr_tail(outcome.stderr, 5)}"
                )
            if not sites_out.exists() or not truth_out.exists():
                raise SimulatorError("simulator did not write both sites and truth outputs")
            table = read_site_table(sites_out)
            indices = read_truth_indices(truth_out, index_base=self.index_base)
        return SimulatedScenario(
            data=SiteData(table=table, group_labels=tuple(kwargs["group_labels"])),
            differential_indices=tuple(indices),
        )
