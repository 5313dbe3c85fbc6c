from __future__ import annotations

"""Subprocess execution.

CONTRACT
- Inputs: Argument list (or command string), cwd, optional stdin text, timeout
- Outputs (required):
  - CmdResult(returncode, stdout_path, stderr_path, ...)
- Invariants:
  - Writes stdout/stderr to the given files (temp files if not provided)
  - Respects timeout_s (returncode 124 if exceeded)
- Failure:
  - Returns CmdResult with exit code (does NOT raise on non-zero exit)
  - A command that cannot be launched at all yields returncode 127
"""

import os
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

TIMEOUT_RC = 124
NOT_FOUND_RC = 127


def which(cmd: str) -> str | None:
    for p in os.environ.get("PATH", "").split(os.pathsep):
        candidate = Path(p) / cmd
        if candidate.exists() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


@dataclass(frozen=True)
class CmdResult:
    cmd: str
    returncode: int
    stdout_path: Path
    stderr_path: Path
    elapsed_s: float
    stdout_bytes: int
    stderr_bytes: int

    @property
    def stdout(self) -> str:
        if not self.stdout_path.exists():
            return ""
        return self.stdout_path.read_text(encoding="utf-8", errors="replace")

    @property
    def stderr(self) -> str:
        if not self.stderr_path.exists():
            return ""
        return self.stderr_path.read_text(encoding="utf-8", errors="replace")


class Executor(Protocol):
    """Anything that runs an argument list the way `run_cmd` does."""

    def __call__(
        self,
        cmd: list[str],
        cwd: Path,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
        env: dict[str, str] | None = None,
        timeout_s: float | None = None,
        input_text: str | None = None,
    ) -> CmdResult: ...


def _temp_log(prefix: str) -> Path:
    tf = tempfile.NamedTemporaryFile(delete=False, prefix=prefix)
    tf.close()
    return Path(tf.name)


def run_cmd(
    cmd: str | list[str],
    cwd: Path,
    stdout_path: Path | None = None,
    stderr_path: Path | None = None,
    env: dict[str, str] | None = None,
    timeout_s: float | None = None,
    input_text: str | None = None,
) -> CmdResult:
    """Run a command and store stdout/stderr to files.

    CONTRACT:
    - Accepts cmd as str (run with shell=True) or list[str] (run with shell=False).
    - `input_text` is fed to the process on stdin (e.g. `kubectl apply -f -`).
    - Never raises for non-zero exit; caller inspects return code.
    - Records duration and output size.
    """
    if stdout_path is None:
        stdout_path = _temp_log("wiprov_stdout_")
    if stderr_path is None:
        stderr_path = _temp_log("wiprov_stderr_")

    stdout_path.parent.mkdir(parents=True, exist_ok=True)
    stderr_path.parent.mkdir(parents=True, exist_ok=True)

    use_shell = isinstance(cmd, str)

    start_t = time.time()
    with (
        stdout_path.open("w", encoding="utf-8") as out_f,
        stderr_path.open("w", encoding="utf-8") as err_f,
    ):
        try:
            p = subprocess.run(
                cmd,
                cwd=str(cwd),
                shell=use_shell,
                env=(os.environ | env) if env else None,
                input=input_text,
                stdout=out_f,
                stderr=err_f,
                timeout=timeout_s,
                text=True,
            )
            rc = p.returncode
        except subprocess.TimeoutExpired:
            rc = TIMEOUT_RC
            err_f.write(f"\nTimeout expired after {timeout_s}s.\n")
        except FileNotFoundError as e:
            rc = NOT_FOUND_RC
            err_f.write(f"\nCommand not found: {e}\n")
        except OSError as e:
            rc = 1
            err_f.write(f"\nException: {e}\n")

    end_t = time.time()

    out_b = stdout_path.stat().st_size if stdout_path.exists() else 0
    err_b = stderr_path.stat().st_size if stderr_path.exists() else 0

    return CmdResult(
        cmd=cmd if isinstance(cmd, str) else " ".join(cmd),
        returncode=rc,
        stdout_path=stdout_path,
        stderr_path=stderr_path,
        elapsed_s=end_t - start_t,
        stdout_bytes=out_b,
        stderr_bytes=err_b,
    )


def tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


if __name__ == "__main__":
    import argparse
    import shlex
    import sys

    parser = argparse.ArgumentParser(description="Run a command and capture its output")
    parser.add_argument("--cmd", required=True, help="Command to run")
    parser.add_argument("--cwd", default=".", help="Working directory")
    parser.add_argument("--timeout", type=int, default=10, help="Timeout in seconds")
    args = parser.parse_args()

    res = run_cmd(shlex.split(args.cmd), cwd=Path(args.cwd), timeout_s=args.timeout)
    print(f"Exit code: {res.returncode}")
    print(f"Stdout: {res.stdout}")
    print(f"Stderr: {res.stderr}")
    sys.exit(res.returncode)
