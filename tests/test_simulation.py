from __future__ import annotations

import sys
from pathlib import Path

import pandas as pd
import pytest

from dmbench.io import write_truth_indices
from dmbench.simulation import (
    CommandSimulator,
    FileSimulator,
    ScenarioSpec,
    SimulatedScenario,
    SimulatorError,
    format_effect,
    simulate_scenario,
)


def _sites(n: int) -> pd.DataFrame:
    return pd.DataFrame({"chr": ["chr1"] * n, "start": list(range(1, n + 1)), "strand": ["+"] * n})


def test_format_effect() -> None:
    assert format_effect(5) == "5"
    assert format_effect(10.0) == "10"
    assert format_effect(2.5) == "2.5"


def test_scenario_spec_round_trip_defaults() -> None:
    spec = ScenarioSpec.from_dict({"effect_magnitude": 15, "seed": 3})
    assert spec.scenario_id == "15"
    assert spec.group_labels == (1, 1, 0, 0)
    again = ScenarioSpec.from_dict(spec.to_dict())
    assert again == spec


def test_file_simulator_reads_pre_generated_scenario(tmp_path: Path) -> None:
    scen = tmp_path / "sims" / "10"
    scen.mkdir(parents=True)
    _sites(8).to_csv(scen / "sites.tsv", sep="\t", index=False)
    write_truth_indices(scen / "truth.txt", [0, 2, 5], index_base=1)

    sim = FileSimulator(
        sites_template=str(tmp_path / "sims" / "{effect}" / "sites.tsv"),
        truth_template=str(tmp_path / "sims" / "{effect}" / "truth.txt"),
    )
    spec = ScenarioSpec(scenario_id="10", effect_magnitude=10.0, seed=1)
    out = simulate_scenario(sim, spec)
    assert out.data.n_sites == 8
    assert out.differential_indices == (0, 2, 5)
    assert out.data.group_labels == (1, 1, 0, 0)


def test_file_simulator_missing_scenario_raises(tmp_path: Path) -> None:
    sim = FileSimulator(
        sites_template=str(tmp_path / "{effect}.tsv"),
        truth_template=str(tmp_path / "{effect}.txt"),
    )
    with pytest.raises(SimulatorError, match="no simulated site table"):
        simulate_scenario(sim, ScenarioSpec(scenario_id="5", effect_magnitude=5))


def _write_sim_script(path: Path) -> Path:
    path.write_text(
        "\n".join(
            [
                "import sys",
                "",
                "sites_out, truth_out, n, effect, seed = sys.argv[1:6]",
                "with open(sites_out, 'w') as handle:",
                "    handle.write('chr\\tstart\\tstrand\\n')",
                "    for i in range(int(n)):",
                "        handle.write('chr1\\t' + str(i + 1) + '\\t+\\n')",
                "with open(truth_out, 'w') as handle:",
                "    handle.write('1\\n2\\n')",
                "if float(effect) < 0:",
                "    sys.exit(4)",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    return path


def test_command_simulator_runs_external_generator(tmp_path: Path) -> None:
    script = _write_sim_script(tmp_path / "sim.py")
    sim = CommandSimulator(
        command=[sys.executable, str(script), "{sites_out}", "{truth_out}", "{site_count}", "{effect_magnitude}", "{seed}"],
        workdir=tmp_path / "work",
    )
    out = simulate_scenario(sim, ScenarioSpec(scenario_id="5", effect_magnitude=5, site_count=12, seed=9))
    assert out.data.n_sites == 12
    assert out.differential_indices == (0, 1)


def test_command_simulator_failure_raises(tmp_path: Path) -> None:
    script = _write_sim_script(tmp_path / "sim.py")
    sim = CommandSimulator(
        command=[sys.executable, str(script), "{sites_out}", "{truth_out}", "{site_count}", "{effect_magnitude}", "{seed}"],
    )
    with pytest.raises(SimulatorError, match="exited with 4"):
        simulate_scenario(sim, ScenarioSpec(scenario_id="neg", effect_magnitude=-1, site_count=3, seed=1))


def test_simulate_scenario_accepts_tuple_results() -> None:
    class TupleSimulator:
        def simulate(self, **kwargs):
            return _sites(4), [1, 3]

    out = simulate_scenario(TupleSimulator(), ScenarioSpec(scenario_id="5", effect_magnitude=5))
    assert isinstance(out, SimulatedScenario)
    assert out.differential_indices == (1, 3)


def test_simulate_scenario_rejects_unknown_results() -> None:
    class BadSimulator:
        def simulate(self, **kwargs):
            return "nope"

    with pytest.raises(SimulatorError, match="unsupported result"):
        simulate_scenario(BadSimulator(), ScenarioSpec(scenario_id="5", effect_magnitude=5))
