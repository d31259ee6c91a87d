from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from dmbench.cli import main
from dmbench.io import write_truth_indices

N_SITES = 40
N_DIFF = 10


def _site_table() -> pd.DataFrame:
    cols: dict[str, object] = {
        "chr": ["chr1"] * N_SITES,
        "start": np.arange(1, N_SITES + 1) * 100,
        "end": np.arange(1, N_SITES + 1) * 100,
        "strand": ["+"] * N_SITES,
    }
    for i, group in enumerate((1, 1, 0, 0), start=1):
        meth = np.full(N_SITES, 25)
        meth[:N_DIFF] = 45 if group == 1 else 5
        cols[f"coverage{i}"] = np.full(N_SITES, 50)
        cols[f"numCs{i}"] = meth
        cols[f"numTs{i}"] = 50 - meth
    return pd.DataFrame(cols)


def _write_inputs(root: Path) -> Path:
    sites = _site_table()
    for effect in ("5", "10"):
        scen = root / "sims" / effect
        scen.mkdir(parents=True)
        sites.to_csv(scen / "sites.tsv", sep="\t", index=False)
        write_truth_indices(scen / "truth.txt", range(N_DIFF), index_base=1)

        calls = root / "calls" / effect
        calls.mkdir(parents=True)
        pd.DataFrame(
            {
                "chr": ["chr1"] * 4,
                "start": [100, 200, 300, 3900],
                "strand": ["+"] * 4,
                "qvalue": [0.001, 0.001, 0.5, 0.001],
                "meth.diff": [30.0, -40.0, 30.0, 35.0],
            }
        ).to_csv(calls / "tool.tsv", sep="\t", index=False)

    config = {
        "schema_version": 1,
        "seed": 1,
        "simulator": {"kind": "files", "sites": "sims/{effect}/sites.tsv", "truth": "sims/{effect}/truth.txt"},
        "scenario_defaults": {"site_count": N_SITES},
        "scenarios": [{"effect_magnitude": 5}, {"effect_magnitude": 10}],
        "configurations": [
            {"name": "fisher", "tool": "fisher"},
            {"name": "precomputed", "tool": "table", "path": "calls/{scenario_id}/tool.tsv"},
            {"name": "broken", "tool": "command", "command": ["/definitely/missing/Rscript", "{input}"]},
        ],
    }
    path = root / "bench.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


def test_run_writes_results_pack(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = _write_inputs(tmp_path)
    outdir = tmp_path / "out"
    rc = main(["run", "--config", str(config), "--outdir", str(outdir)])
    assert rc == 0
    printed = capsys.readouterr().out
    assert "Benchmark results pack created." in printed
    assert "[FAIL] configuration 5/broken" in printed

    for rel in (
        "tables/metrics_long.tsv",
        "tables/metrics_summary.tsv",
        "tables/intersections.tsv",
        "tables/skipped.tsv",
        "manifests/benchmark_manifest.json",
        "checksums.txt",
        "raw/progress.tsv",
    ):
        assert (outdir / rel).exists(), rel

    metrics = pd.read_csv(outdir / "tables" / "metrics_long.tsv", sep="\t", dtype={"scenario": str})
    assert list(zip(metrics["scenario"], metrics["configuration"])) == [
        ("5", "fisher"),
        ("5", "precomputed"),
        ("10", "fisher"),
        ("10", "precomputed"),
    ]
    fisher = metrics[metrics["configuration"] == "fisher"].iloc[0]
    assert (fisher["TP"], fisher["FP"], fisher["FN"], fisher["TN"]) == (10, 0, 0, 30)
    pre = metrics[metrics["configuration"] == "precomputed"].iloc[0]
    assert (pre["TP"], pre["FP"], pre["FN"], pre["TN"]) == (2, 1, 8, 29)

    skipped = pd.read_csv(outdir / "tables" / "skipped.tsv", sep="\t", dtype=str)
    assert list(skipped["configuration"]) == ["broken", "broken"]
    assert all("FileNotFoundError" in r for r in skipped["reason"])

    manifest = json.loads((outdir / "manifests" / "benchmark_manifest.json").read_text(encoding="utf-8"))
    assert manifest["summary"]["status"] == "complete"
    assert manifest["summary"]["n_metric_rows"] == 4
    assert manifest["summary"]["n_configurations_failed"] == 2
    assert manifest["seed"] == 1
    assert [c["name"] for c in manifest["configurations"]] == ["fisher", "precomputed", "broken"]

    checksums = (outdir / "checksums.txt").read_text(encoding="utf-8")
    assert "tables/metrics_long.tsv" in checksums


def test_resume_reuses_finished_shards(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = _write_inputs(tmp_path)
    outdir = tmp_path / "out"
    assert main(["run", "--config", str(config), "--outdir", str(outdir)]) == 0
    first = (outdir / "tables" / "metrics_long.tsv").read_text(encoding="utf-8")
    capsys.readouterr()

    assert main(["resume", "--outdir", str(outdir), "--json"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["n_metric_rows"] == 4
    assert (outdir / "tables" / "metrics_long.tsv").read_text(encoding="utf-8") == first

    progress = pd.read_csv(outdir / "raw" / "progress.tsv", sep="\t", dtype=str, keep_default_na=False)
    # finished shards are reused; only the failed configuration is retried
    assert len(progress) == 8
    assert (progress["configuration"] == "broken").sum() == 4
    assert (progress["configuration"] == "fisher").sum() == 2


def test_resume_rejects_changed_config(tmp_path: Path) -> None:
    config = _write_inputs(tmp_path)
    outdir = tmp_path / "out"
    assert main(["run", "--config", str(config), "--outdir", str(outdir), "--json"]) == 0
    payload = json.loads(config.read_text(encoding="utf-8"))
    payload["seed"] = 2
    config.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        main(["resume", "--outdir", str(outdir)])
    assert exc.value.code == 2


def test_metrics_command_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sites = tmp_path / "sites.tsv"
    _site_table().to_csv(sites, sep="\t", index=False)
    truth = tmp_path / "truth.txt"
    write_truth_indices(truth, range(N_DIFF))
    calls = tmp_path / "calls.tsv"
    pd.DataFrame({"chr": ["chr1"] * 3, "start": [100, 200, 4000], "strand": ["+"] * 3}).to_csv(
        calls, sep="\t", index=False
    )

    rc = main(["metrics", "--sites", str(sites), "--truth", str(truth), "--calls", str(calls), "--json"])
    assert rc == 0
    payload = json.loads(capsys.readouterr().out)
    assert (payload["TP"], payload["FP"], payload["FN"], payload["TN"]) == (2, 1, 8, 29)
    assert payload["precision"] == pytest.approx(2 / 3)


def test_metrics_command_reports_undefined_rates(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sites = tmp_path / "sites.tsv"
    _site_table().to_csv(sites, sep="\t", index=False)
    truth = tmp_path / "truth.txt"
    write_truth_indices(truth, range(N_DIFF))
    calls = tmp_path / "calls.tsv"
    pd.DataFrame(columns=["chr", "start", "strand"]).to_csv(calls, sep="\t", index=False)

    assert main(["metrics", "--sites", str(sites), "--truth", str(truth), "--calls", str(calls), "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["TP"] == 0
    assert payload["precision"] is None

    assert main(["metrics", "--sites", str(sites), "--truth", str(truth), "--calls", str(calls)]) == 0
    assert "precision: NA" in capsys.readouterr().out


def test_intersect_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    a = tmp_path / "a.tsv"
    b = tmp_path / "b.tsv"
    pd.DataFrame({"chr": ["chr1"] * 3, "start": [1, 2, 3], "strand": ["+"] * 3}).to_csv(a, sep="\t", index=False)
    pd.DataFrame({"chr": ["chr1"] * 2, "start": [3, 4], "strand": ["+"] * 2}).to_csv(b, sep="\t", index=False)
    out = tmp_path / "upset.tsv"

    assert main(["intersect", "--calls", str(a), str(b), "--names", "dss", "methylkit", "--out", str(out)]) == 0
    table = pd.read_csv(out, sep="\t")
    assert list(table["combination"]) == ["dss", "methylkit", "dss&methylkit"]
    assert list(table["count"]) == [2, 1, 1]

    capsys.readouterr()
    assert main(["intersect", "--calls", str(a), str(b)]) == 0
    assert "a&b\t2\t1" in capsys.readouterr().out


def test_errors_exit_with_code_2(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["run", "--config", str(tmp_path / "missing.json"), "--outdir", str(tmp_path / "out")])
    assert exc.value.code == 2

    a = tmp_path / "a.tsv"
    pd.DataFrame({"chr": ["chr1"], "start": [1], "strand": ["+"]}).to_csv(a, sep="\t", index=False)
    with pytest.raises(SystemExit) as exc:
        main(["intersect", "--calls", str(a), "--names", "x", "y"])
    assert exc.value.code == 2


def test_run_resume_rejects_changed_config(tmp_path: Path) -> None:
    config = _write_inputs(tmp_path)
    outdir = tmp_path / "out"
    assert main(["run", "--config", str(config), "--outdir", str(outdir), "--json"]) == 0
    payload = json.loads(config.read_text(encoding="utf-8"))
    payload["seed"] = 2
    config.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        main(["run", "--config", str(config), "--outdir", str(outdir), "--resume"])
    assert exc.value.code == 2
    assert main(["run", "--config", str(config), "--outdir", str(outdir), "--json"]) == 0
