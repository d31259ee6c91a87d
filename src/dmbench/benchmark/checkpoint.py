from __future__ import annotations

import json
import math
import os
import re
import shutil
import threading
from pathlib import Path
from typing import Any

from ..manifest import now_utc_iso

PROGRESS_HEADER = [
    "scenario",
    "configuration",
    "status",
    "reason",
    "n_called",
    "runtime_sec",
    "timestamp",
]


def _safe_tsv(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return ""
    text = str(value)
    return text.replace("\t", " ").replace("\n", " ")


def _safe_name(text: str) -> str:
    token = re.sub(r"[^A-Za-z0-9._-]+", "_", str(text)).strip("_")
    return token or "_"


def write_json_fsync(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, sort_keys=True)
        handle.write("\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp, path)


def append_progress_row(path: Path, row: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    needs_header = (not path.exists()) or (path.stat().st_size == 0)
    with path.open("a", encoding="utf-8", buffering=1) as handle:
        if needs_header:
            handle.write("\t".join(PROGRESS_HEADER) + "\n")
        handle.write("\t".join(_safe_tsv(row.get(col, "")) for col in PROGRESS_HEADER) + "\n")
        handle.flush()
        os.fsync(handle.fileno())


class ShardStore:
    """One JSON shard per (scenario id, configuration name) under ``root/raw/shards``.

    ``resume=False`` clears earlier shards and progress so every configuration
    is recomputed.
    """

    def __init__(self, root: str | Path, *, resume: bool = False) -> None:
        self.root = Path(root)
        self.shards_dir = self.root / "raw" / "shards"
        self.progress_path = self.root / "raw" / "progress.tsv"
        self.resume = bool(resume)
        self._lock = threading.Lock()
        if not self.resume:
            if self.shards_dir.exists():
                shutil.rmtree(self.shards_dir)
            if self.progress_path.exists():
                self.progress_path.unlink()
        self.shards_dir.mkdir(parents=True, exist_ok=True)

    def shard_path(self, scenario_id: str, configuration: str) -> Path:
        return self.shards_dir / _safe_name(scenario_id) / f"{_safe_name(configuration)}.json"

    def load(self, scenario_id: str, configuration: str, fingerprint: str) -> dict[str, Any] | None:
        if not self.resume:
            return None
        path = self.shard_path(scenario_id, configuration)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("scenario") != scenario_id or payload.get("configuration") != configuration:
            return None
        if payload.get("fingerprint") != fingerprint:
            return None
        return payload

    def save(self, payload: dict[str, Any]) -> None:
        scenario_id = str(payload["scenario"])
        configuration = str(payload["configuration"])
        call_set = payload.get("call_set") or []
        with self._lock:
            write_json_fsync(self.shard_path(scenario_id, configuration), payload)
            append_progress_row(
                self.progress_path,
                {
                    "scenario": scenario_id,
                    "configuration": configuration,
                    "status": payload.get("status", ""),
                    "reason": payload.get("reason", ""),
                    "n_called": len(call_set) if payload.get("status") == "OK" else "",
                    "runtime_sec": payload.get("runtime_sec"),
                    "timestamp": now_utc_iso(),
                },
            )
