from __future__ import annotations

import hashlib
import json
import os
import platform
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def sha256_file(path: str | Path) -> str:
    path = Path(path)
    h = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def canonical_json_bytes(payload: Any) -> bytes:
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str
    ).encode("utf-8")


def sha256_json(payload: Any) -> str:
    return hashlib.sha256(canonical_json_bytes(payload)).hexdigest()


def now_utc_iso() -> str:
    fixed = os.environ.get("DMBENCH_FIXED_TIMESTAMP_UTC")
    if fixed:
        return fixed
    return datetime.now(tz=timezone.utc).isoformat()


def get_git_commit(cwd: str | Path) -> str | None:
    try:
        out = subprocess.check_output(
            ["git", "-C", str(cwd), "rev-parse", "HEAD"],
            stderr=subprocess.DEVNULL,
            text=True,
        ).strip()
        return out or None
    except (OSError, subprocess.CalledProcessError):
        return None


def get_system_metadata(cwd: str | Path) -> dict[str, object]:
    return {
        "timestamp_utc": now_utc_iso(),
        "platform": platform.platform(),
        "python_version": platform.python_version(),
        "cpu_count": os.cpu_count(),
        "git_commit": get_git_commit(cwd),
    }


def write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n", encoding="utf-8")


def write_checksums(outdir: Path, subdir: str = "tables") -> Path:
    """Write sha256 sums of every file under ``outdir/subdir`` to checksums.txt."""
    rows: list[str] = []
    base = outdir / subdir
    if base.exists():
        for path in sorted(base.rglob("*")):
            if not path.is_file():
                continue
            rows.append(f"{sha256_file(path)}  {path.relative_to(outdir)}")
    out = outdir / "checksums.txt"
    out.write_text("\n".join(rows) + ("\n" if rows else ""), encoding="utf-8")
    return out
