from __future__ import annotations

import argparse
import json
import math
import sys
from pathlib import Path
from typing import Any

from . import __version__


def _emit_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _json_safe(value: Any) -> Any:
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def _print_skipped(outdir: Path) -> None:
    import pandas as pd

    skipped_path = outdir / "tables" / "skipped.tsv"
    if not skipped_path.exists():
        return
    skipped = pd.read_csv(skipped_path, sep="\t", keep_default_na=False)
    for _, row in skipped.iterrows():
        target = row["scenario"] if row["level"] == "scenario" else f"{row['scenario']}/{row['configuration']}"
        print(f"[FAIL] {row['level']} {target}: {row['reason']}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dmbench",
        description="Benchmark differential methylation callers against simulated ground truth.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run all scenarios and configurations from a config JSON.")
    run.add_argument("--config", required=True, metavar="JSON")
    run.add_argument("--outdir", required=True, metavar="DIR")
    run.add_argument("--jobs", type=int, default=None, help="Parallel configurations per scenario.")
    run.add_argument("--scenario-jobs", type=int, default=None, help="Parallel scenarios.")
    run.add_argument("--resume", action="store_true", help="Reuse finished checkpoints in --outdir.")
    run.add_argument("--json", action="store_true")

    resume = subparsers.add_parser("resume", help="Resume an interrupted run from its manifest.")
    resume.add_argument("--outdir", required=True, metavar="DIR")
    resume.add_argument("--json", action="store_true")

    metrics = subparsers.add_parser("metrics", help="Score one call set against ground truth.")
    metrics.add_argument("--sites", required=True, metavar="TSV")
    metrics.add_argument("--truth", required=True, metavar="FILE")
    metrics.add_argument("--calls", required=True, metavar="TSV")
    metrics.add_argument("--name", default="calls")
    metrics.add_argument("--index-base", type=int, default=1)
    metrics.add_argument("--json", action="store_true")

    intersect = subparsers.add_parser("intersect", help="Exact-membership intersection sizes of call sets.")
    intersect.add_argument("--calls", nargs="+", required=True, metavar="TSV")
    intersect.add_argument("--names", nargs="+", default=None)
    intersect.add_argument("--out", default=None, metavar="TSV")
    return parser


def _print_summary(summary: dict[str, Any], outdir: Path) -> None:
    print("Benchmark results pack created.")
    print(f"Path: {outdir}")
    for key, value in summary.items():
        print(f"{key}: {value}")
    _print_skipped(outdir)


def _cmd_run(args: argparse.Namespace) -> int:
    from .benchmark.orchestrator import run_benchmark
    from .config import load_benchmark_config

    config = load_benchmark_config(args.config)
    outdir = Path(args.outdir).resolve()
    summary = run_benchmark(
        config,
        outdir,
        resume=bool(args.resume),
        jobs=args.jobs,
        scenario_jobs=args.scenario_jobs,
    )
    if args.json:
        _emit_json(summary)
    else:
        _print_summary(summary, outdir)
    return 0


def _cmd_resume(args: argparse.Namespace) -> int:
    from .benchmark.orchestrator import resume_benchmark

    outdir = Path(args.outdir).resolve()
    summary = resume_benchmark(outdir)
    if args.json:
        _emit_json(summary)
    else:
        _print_summary(summary, outdir)
    return 0


def _cmd_metrics(args: argparse.Namespace) -> int:
    from .io import read_called_sites, read_site_table, read_truth_indices
    from .metrics import compute_rates, validate_call_set
    from .sites import build_site_universe

    universe = build_site_universe(
        read_site_table(args.sites),
        read_truth_indices(args.truth, index_base=int(args.index_base)),
    )
    call_set = validate_call_set(universe, read_called_sites(args.calls))
    metrics = compute_rates(universe, call_set, str(args.name))
    payload = {k: _json_safe(v) for k, v in metrics.to_dict().items()}
    if args.json:
        _emit_json(payload)
        return 0
    for key, value in metrics.to_dict().items():
        if isinstance(value, float):
            value = "NA" if math.isnan(value) else f"{value:.6g}"
        print(f"{key}: {value}")
    return 0


def _cmd_intersect(args: argparse.Namespace) -> int:
    import pandas as pd

    from .intersections import combination_label, intersection_sizes
    from .io import read_called_sites, write_tsv

    paths = [Path(p) for p in args.calls]
    names = list(args.names) if args.names else [p.stem for p in paths]
    if len(names) != len(paths):
        raise ValueError("--names must list one name per --calls file.")
    call_sets = {name: read_called_sites(path) for name, path in zip(names, paths)}
    sizes = intersection_sizes(call_sets, names)
    rows = [
        {"combination": combination_label(subset), "degree": len(subset), "count": count}
        for subset, count in sizes.items()
    ]
    df = pd.DataFrame(rows, columns=["combination", "degree", "count"])
    if args.out:
        write_tsv(args.out, df)
        print(f"Intersection table: {Path(args.out).resolve()}")
    else:
        print(df.to_csv(sep="\t", index=False), end="")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])
    try:
        if args.command == "run":
            return _cmd_run(args)
        if args.command == "resume":
            return _cmd_resume(args)
        if args.command == "metrics":
            return _cmd_metrics(args)
        if args.command == "intersect":
            return _cmd_intersect(args)
    except Exception as exc:  # pragma: no cover
        parser.exit(status=2, message=f"error: {exc}\n")
    parser.exit(status=2, message="error: unknown command\n")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
