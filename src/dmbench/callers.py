from __future__ import annotations

import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from .commands import render_command, run_command, stderr_tail
from .io import read_caller_table, write_tsv
from .simulation import SiteData
from .sites import SiteKey, site_keys_from_table
from .stats import benjamini_hochberg

KNOWN_TOOLS = ("fisher", "command", "table")


class AdapterError(RuntimeError):
    """A caller adapter could not produce a call set."""


@dataclass(frozen=True)
class CallParameters:
    significance_threshold: float = 0.01
    min_abs_difference: float = 25.0
    options: dict[str, Any] = field(default_factory=dict)
    workers: int | None = None
    scenario_id: str | None = None

    def for_scenario(self, scenario_id: str | None) -> "CallParameters":
        return replace(self, scenario_id=scenario_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "significance_threshold": self.significance_threshold,
            "min_abs_difference": self.min_abs_difference,
            "options": dict(self.options),
            "workers": self.workers,
        }


class CallerAdapter(Protocol):
    def call(self, data: SiteData, params: CallParameters) -> Sequence[SiteKey]: ...


def filter_calls(
    table: pd.DataFrame,
    *,
    significance_threshold: float,
    min_abs_difference: float,
) -> tuple[SiteKey, ...]:
    """Select sites with q-value (or p-value) below threshold and |meth_diff| >= cutoff."""
    if "meth_diff" not in table.columns:
        raise AdapterError("caller table has no meth_diff column")
    if "qvalue" in table.columns:
        sig_col = "qvalue"
    elif "pvalue" in table.columns:
        sig_col = "pvalue"
    else:
        raise AdapterError("caller table has neither qvalue nor pvalue column")
    if table.empty:
        return ()

    sig = pd.to_numeric(table[sig_col], errors="coerce").to_numpy(dtype=float)
    diff = pd.to_numeric(table["meth_diff"], errors="coerce").to_numpy(dtype=float)
    with np.errstate(invalid="ignore"):
        mask = (sig < float(significance_threshold)) & (np.abs(diff) >= float(min_abs_difference))
    mask &= ~np.isnan(sig) & ~np.isnan(diff)
    if not bool(mask.any()):
        return ()
    return site_keys_from_table(table.loc[mask])


@dataclass
class FunctionCaller:
    func: Callable[[SiteData, CallParameters], Sequence[SiteKey]]

    def call(self, data: SiteData, params: CallParameters) -> Sequence[SiteKey]:
        return self.func(data, params)


@dataclass
class TableCaller:
    """Use precomputed tool output, one table per scenario.

    ``path_template`` may contain ``{scenario_id}``.
    """

    path_template: str

    def call(self, data: SiteData, params: CallParameters) -> Sequence[SiteKey]:
        path = Path(self.path_template.format(scenario_id=params.scenario_id or ""))
        table = read_caller_table(path)
        return filter_calls(
            table,
            significance_threshold=params.significance_threshold,
            min_abs_difference=params.min_abs_difference,
        )


@dataclass
class CommandCaller:
    """Run an external differential caller on the site table.

    The command reads ``{input}`` and must write a table with chr, start,
    strand, meth_diff and qvalue (or pvalue) columns to ``{output}``. Tool
    options are available as placeholders under their own names.
    """

    command: Sequence[str]
    timeout_sec: int | None = None
    workdir: Path | None = None

    def call(self, data: SiteData, params: CallParameters) -> Sequence[SiteKey]:
        base = None if self.workdir is None else Path(self.workdir)
        if base is not None:
            base.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="dmbench_call_", dir=base) as tmp:
            tmp_path = Path(tmp)
            input_path = tmp_path / "sites.tsv"
            output_path = tmp_path / "calls.tsv"
            write_tsv(input_path, data.table)
            values: dict[str, Any] = {str(k): v for k, v in params.options.items()}
            values.update(
                {
                    "input": str(input_path),
                    "output": str(output_path),
                    "group_labels": ",".join(str(int(x)) for x in data.group_labels),
                    "significance_threshold": params.significance_threshold,
                    "min_abs_difference": params.min_abs_difference,
                    "workers": 1 if params.workers is None else int(params.workers),
                    "scenario_id": params.scenario_id or "",
                }
            )
            cmd = render_command(self.command, values)
            outcome = run_command(cmd, cwd=tmp_path, timeout_sec=self.timeout_sec)
            if not outcome.ok:
                raise AdapterError(
                    f"exit code {outcome.returncode}: {stderr_tail(outcome.stderr, 5)}"
                )
            if not output_path.exists():
                raise AdapterError(f"caller wrote no output table: {outcome.command}")
            table = read_caller_table(output_path)
        return filter_calls(
            table,
            significance_threshold=params.significance_threshold,
            min_abs_difference=params.min_abs_difference,
        )


def _group_columns(table: pd.DataFrame, labels: tuple[int, ...], group: int, prefix: str) -> list[str]:
    cols = [f"{prefix}{i}" for i, g in enumerate(labels, start=1) if int(g) == group]
    missing = [c for c in cols if c not in table.columns]
    if missing:
        raise AdapterError(f"site table missing count columns: {', '.join(missing)}")
    return cols


def fisher_table(data: SiteData) -> pd.DataFrame:
    """Pooled per-group Fisher's exact test for every site."""
    labels = tuple(int(x) for x in data.group_labels)
    if 1 not in labels or 0 not in labels:
        raise AdapterError("group labels must contain both treatment (1) and control (0)")
    table = data.table
    c1 = table[_group_columns(table, labels, 1, "numCs")].sum(axis=1).to_numpy(dtype=float)
    t1 = table[_group_columns(table, labels, 1, "numTs")].sum(axis=1).to_numpy(dtype=float)
    c0 = table[_group_columns(table, labels, 0, "numCs")].sum(axis=1).to_numpy(dtype=float)
    t0 = table[_group_columns(table, labels, 0, "numTs")].sum(axis=1).to_numpy(dtype=float)

    n = len(table)
    p_values = np.full(n, np.nan, dtype=float)
    meth_diff = np.full(n, np.nan, dtype=float)
    for i in range(n):
        cov1 = c1[i] + t1[i]
        cov0 = c0[i] + t0[i]
        if cov1 <= 0 or cov0 <= 0:
            continue
        _, p = stats.fisher_exact([[int(c1[i]), int(t1[i])], [int(c0[i]), int(t0[i])]])
        p_values[i] = float(p)
        meth_diff[i] = 100.0 * (c1[i] / cov1 - c0[i] / cov0)

    out = table[["chr", "start"] + (["strand"] if "strand" in table.columns else [])].copy()
    out["pvalue"] = p_values
    out["qvalue"] = benjamini_hochberg(p_values.tolist())
    out["meth_diff"] = meth_diff
    return out


@dataclass
class FisherCaller:
    """Reference caller: Fisher's exact test on counts pooled per group."""

    def call(self, data: SiteData, params: CallParameters) -> Sequence[SiteKey]:
        return filter_calls(
            fisher_table(data),
            significance_threshold=params.significance_threshold,
            min_abs_difference=params.min_abs_difference,
        )


def _resolve(path: str, base_dir: Path | None) -> str:
    p = Path(path)
    if base_dir is not None and not p.is_absolute():
        return str((base_dir / p).resolve())
    return str(p)


def build_adapter(payload: dict[str, Any], *, base_dir: Path | None = None) -> CallerAdapter:
    """Construct the adapter described by one configuration entry."""
    tool = str(payload.get("tool", "")).strip().lower()
    if tool == "fisher":
        return FisherCaller()
    if tool == "table":
        path = payload.get("path")
        if not path:
            raise ValueError(f"configuration {payload.get('name')!r}: table tool needs 'path'.")
        return TableCaller(path_template=_resolve(str(path), base_dir))
    if tool == "command":
        command = payload.get("command")
        if not isinstance(command, list) or not command:
            raise ValueError(
                f"configuration {payload.get('name')!r}: command tool needs a non-empty 'command' list."
            )
        timeout = payload.get("timeout_sec")
        return CommandCaller(
            command=[str(x) for x in command],
            timeout_sec=None if timeout is None else int(timeout),
        )
    raise ValueError(f"Unsupported caller tool: {tool!r}. Known: {', '.join(KNOWN_TOOLS)}")
