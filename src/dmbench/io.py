from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pandas as pd

from .sites import SiteKey, site_keys_from_table

_COLUMN_ALIASES = {
    "chrom": "chr",
    "chromosome": "chr",
    "seqnames": "chr",
    "pos": "start",
    "position": "start",
    "meth.diff": "meth_diff",
    "methdiff": "meth_diff",
    "diff": "meth_diff",
    "p.value": "pvalue",
    "p_value": "pvalue",
    "pval": "pvalue",
    "q.value": "qvalue",
    "q_value": "qvalue",
    "qval": "qvalue",
    "fdr": "qvalue",
}


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    renames = {}
    for col in df.columns:
        key = str(col).strip()
        alias = _COLUMN_ALIASES.get(key.lower())
        if alias is not None and alias not in df.columns:
            renames[col] = alias
    return df.rename(columns=renames) if renames else df


def _read_table(path: str | Path, label: str) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{label} not found: {path}")
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    return normalize_columns(pd.read_csv(path, sep=sep))


def read_site_table(path: str | Path) -> pd.DataFrame:
    """Read a methylKit-style site table (chr, start, strand, coverageN, numCsN, numTsN)."""
    df = _read_table(path, "Site table")
    missing = [c for c in ("chr", "start") if c not in df.columns]
    if missing:
        raise ValueError(f"Site table {path} missing columns: {', '.join(missing)}")
    return df


def read_caller_table(path: str | Path) -> pd.DataFrame:
    df = _read_table(path, "Caller result table")
    missing = [c for c in ("chr", "start") if c not in df.columns]
    if missing:
        raise ValueError(f"Caller result table {path} missing columns: {', '.join(missing)}")
    return df


def read_called_sites(path: str | Path) -> tuple[SiteKey, ...]:
    """Read an already-filtered call set (one site per row)."""
    df = _read_table(path, "Call set")
    if df.empty:
        return ()
    return site_keys_from_table(df)


def read_truth_indices(path: str | Path, *, index_base: int = 1) -> list[int]:
    """Read differential site indices, one per line (or whitespace separated)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Truth index file not found: {path}")
    out: list[int] = []
    for line_no, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        for token in line.replace(",", " ").split():
            try:
                value = int(float(token))
            except ValueError as exc:
                raise ValueError(f"Bad truth index {token!r} at line {line_no} in {path}") from exc
            out.append(value - int(index_base))
    return out


def write_truth_indices(path: str | Path, indices: Iterable[int], *, index_base: int = 1) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [str(int(i) + int(index_base)) for i in indices]
    path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")


def write_tsv(path: str | Path, df: pd.DataFrame) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False)

