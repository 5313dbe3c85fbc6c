from pathlib import Path

import pytest
from loguru import logger

from wiprov.artifacts.store import ArtifactStore
from wiprov.util.shell import CmdResult


class FakeCli:
    """Stands in for `run_cmd`: answers by token match, records every call."""

    def __init__(self):
        self.rules: list[tuple[tuple[str, ...], tuple[int, str, str]]] = []
        self.calls: list[dict] = []

    def on(self, *tokens: str, rc: int = 0, stdout: str = "", stderr: str = "") -> "FakeCli":
        self.rules.append((tokens, (rc, stdout, stderr)))
        return self

    def __call__(
        self,
        cmd,
        cwd,
        stdout_path=None,
        stderr_path=None,
        env=None,
        timeout_s=None,
        input_text=None,
    ) -> CmdResult:
        argv = list(cmd)
        self.calls.append({"argv": argv, "input": input_text, "timeout_s": timeout_s})
        rc, out, err = 0, "", ""
        for tokens, resp in self.rules:
            if all(t in argv for t in tokens):
                rc, out, err = resp
                break
        stdout_path.parent.mkdir(parents=True, exist_ok=True)
        stdout_path.write_text(out, encoding="utf-8")
        stderr_path.write_text(err, encoding="utf-8")
        return CmdResult(
            cmd=" ".join(argv),
            returncode=rc,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            elapsed_s=0.0,
            stdout_bytes=len(out),
            stderr_bytes=len(err),
        )

    @property
    def argvs(self) -> list[list[str]]:
        return [c["argv"] for c in self.calls]

    def called_with(self, *tokens: str) -> bool:
        return any(all(t in argv for t in tokens) for argv in self.argvs)


@pytest.fixture
def fake_cli() -> FakeCli:
    return FakeCli()


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    s = ArtifactStore(tmp_path / "runs" / "run-1")
    s.ensure()
    return s


@pytest.fixture(autouse=True)
def _quiet_loguru():
    yield
    logger.remove()
