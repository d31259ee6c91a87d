from __future__ import annotations

import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence


@dataclass
class CommandOutcome:
    returncode: int
    stdout: str
    stderr: str
    runtime_sec: float
    command: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def stderr_tail(stderr: str, n: int = 40) -> str:
    lines = stderr.strip().splitlines()
    if not lines:
        return ""
    return "\n".join(lines[-n:])


def render_command(template: Sequence[str], values: Mapping[str, Any]) -> list[str]:
    """Fill ``{placeholder}`` fields of an argv template.

    Unknown placeholders raise ``ValueError`` so typos in a config file fail
    before anything is executed.
    """
    if not template:
        raise ValueError("Command template is empty.")
    out: list[str] = []
    for token in template:
        try:
            out.append(str(token).format(**values))
        except KeyError as exc:
            raise ValueError(
                f"Unknown placeholder {exc.args[0]!r} in command token {token!r}. "
                f"Available: {', '.join(sorted(values))}"
            ) from exc
    return out


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout_sec: int | None = None,
) -> CommandOutcome:
    if shutil.which(cmd[0]) is None and not Path(cmd[0]).exists():
        raise FileNotFoundError(f"Executable not found: {cmd[0]}")
    started = time.perf_counter()
    proc = subprocess.run(
        cmd,
        cwd=str(cwd),
        capture_output=True,
        text=True,
        timeout=timeout_sec,
    )
    runtime = time.perf_counter() - started
    return CommandOutcome(
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
        runtime_sec=float(runtime),
        command=" ".join(cmd),
    )
