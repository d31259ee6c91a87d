from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

import pandas as pd

from .. import __version__
from ..config import BenchmarkConfig, load_benchmark_config
from ..io import write_tsv
from ..manifest import get_system_metadata, sha256_json, write_checksums, write_json
from .aggregate import (
    ScenarioResult,
    intersection_table,
    metrics_table,
    run_scenarios,
    skipped_table,
    summarize_metrics,
)
from .checkpoint import ShardStore

MANIFEST_RELPATH = Path("manifests") / "benchmark_manifest.json"


def _ensure_dirs(outdir: Path) -> dict[str, Path]:
    dirs = {
        "root": outdir,
        "raw": outdir / "raw",
        "tables": outdir / "tables",
        "manifests": outdir / "manifests",
    }
    for p in dirs.values():
        p.mkdir(parents=True, exist_ok=True)
    return dirs


def write_tables(result: ScenarioResult, tables_dir: Path) -> dict[str, pd.DataFrame]:
    metrics = metrics_table(result)
    tables = {
        "metrics_long": metrics,
        "metrics_summary": summarize_metrics(metrics),
        "intersections": intersection_table(result),
        "skipped": skipped_table(result),
    }
    for name, df in tables.items():
        write_tsv(tables_dir / f"{name}.tsv", df)
    return tables


def _write_manifest(
    outdir: Path,
    config: BenchmarkConfig,
    *,
    resume: bool,
    jobs: int,
    scenario_jobs: int,
    summary: dict[str, Any],
) -> None:
    payload = {
        "schema_version": 1,
        "tool_version": __version__,
        "config_path": None if config.source_path is None else str(config.source_path),
        "config_hash": sha256_json(config.payload),
        "seed": config.seed,
        "seed_policy": "one fixed seed shared by every scenario unless a scenario overrides it",
        "scenarios": [s.to_dict() for s in config.scenarios],
        "configurations": [
            {"name": c.name, "tool": c.tool, "params": c.params.to_dict()} for c in config.configurations
        ],
        "jobs": jobs,
        "scenario_jobs": scenario_jobs,
        "resume": bool(resume),
        "system": get_system_metadata(Path.cwd()),
        "summary": summary,
    }
    write_json(outdir / MANIFEST_RELPATH, payload)


def _check_resumable(root: Path, config: BenchmarkConfig) -> None:
    manifest = root / MANIFEST_RELPATH
    if not manifest.exists():
        return
    previous = json.loads(manifest.read_text(encoding="utf-8")).get("config_hash")
    if previous and previous != sha256_json(config.payload):
        raise ValueError("Cannot resume: benchmark config changed since the original run.")


def run_benchmark(
    config: BenchmarkConfig,
    outdir: str | Path,
    *,
    resume: bool = False,
    jobs: int | None = None,
    scenario_jobs: int | None = None,
) -> dict[str, Any]:
    """Run every scenario/configuration and write the results pack under ``outdir``."""
    root = Path(outdir).resolve()
    if resume:
        _check_resumable(root, config)
    dirs = _ensure_dirs(root)
    n_jobs = config.jobs if jobs is None else int(jobs)
    n_scenario_jobs = config.scenario_jobs if scenario_jobs is None else int(scenario_jobs)
    start = time.perf_counter()
    _write_manifest(
        root,
        config,
        resume=resume,
        jobs=n_jobs,
        scenario_jobs=n_scenario_jobs,
        summary={"status": "running"},
    )

    store = ShardStore(root, resume=resume)
    result = run_scenarios(
        config.scenarios,
        config.simulator,
        config.configurations,
        jobs=n_jobs,
        scenario_jobs=n_scenario_jobs,
        checkpoint=store,
    )
    tables = write_tables(result, dirs["tables"])
    skipped = tables["skipped"]

    summary: dict[str, Any] = {
        "status": "complete",
        "n_scenarios": len(config.scenarios),
        "n_scenarios_failed": len(result.failed_scenarios),
        "n_configurations": len(config.configurations),
        "n_metric_rows": int(len(tables["metrics_long"])),
        "n_configurations_failed": int((skipped["level"] == "configuration").sum()) if not skipped.empty else 0,
        "failed_scenarios": result.failed_scenario_ids(),
        "runtime_total_sec": float(time.perf_counter() - start),
    }
    _write_manifest(
        root,
        config,
        resume=resume,
        jobs=n_jobs,
        scenario_jobs=n_scenario_jobs,
        summary=summary,
    )
    write_checksums(root)
    return summary


def resume_benchmark(outdir: str | Path) -> dict[str, Any]:
    root = Path(outdir).resolve()
    manifest = root / MANIFEST_RELPATH
    if not manifest.exists():
        raise FileNotFoundError(f"Cannot resume: benchmark manifest missing: {manifest}")
    payload = json.loads(manifest.read_text(encoding="utf-8"))
    config_path = payload.get("config_path")
    if not config_path:
        raise ValueError(f"Cannot resume: manifest has no config_path: {manifest}")
    config = load_benchmark_config(config_path)
    return run_benchmark(
        config,
        root,
        resume=True,
        jobs=int(payload.get("jobs", config.jobs)),
        scenario_jobs=int(payload.get("scenario_jobs", config.scenario_jobs)),
    )
