from __future__ import annotations

"""Provisioning step runner.

CONTRACT
- Inputs: ordered list of Steps, initial RunContext, optional CleanupAction
- Outputs (required):
  - RunResult (status, outputs, executed steps, failure record)
  - RUN_STATUS.json updated on every transition, SUMMARY.json at the end
  - logs/<NN>_<step>.stdout.log / .stderr.log per executed command step
- Invariants:
  - Steps execute strictly in order; after step i fails, steps i+1..n never run
  - A step never runs before every key it requires is in the context
  - Context keys are never overwritten (ContextCollisionError)
  - Stdout of a sensitive step is replaced by [REDACTED] in its log once captured
  - Cleanup runs at most once, only on failure, only after a container-creating
    step succeeded; its own failure never changes the reported outcome
- Failure:
  - Step failures are returned as RunResult(status="FAILED"), not raised
  - Plan mistakes (PlanError, ContextCollisionError) are raised
"""

import string
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from loguru import logger

from .artifacts.schemas import RunState, RunStatus, RunSummary, StepFailureRecord
from .artifacts.store import ArtifactStore
from .util.events import EventLog
from .util.ids import validate_step_name
from .util.redaction import REDACTED, Redactor
from .util.shell import Executor, run_cmd, tail

SECRET_FLAGS = frozenset({"--value", "--password", "--client-secret"})

CommandBuilder = Callable[["RunContext"], list[str]]
StepAction = Callable[["RunContext"], Mapping[str, str]]


class PlanError(Exception):
    """A step list that can never run correctly (missing inputs, duplicate outputs)."""


class ContextCollisionError(PlanError):
    def __init__(self, key: str):
        super().__init__(f"Context key already set: {key}")
        self.key = key


class RunContext(Mapping[str, str]):
    """Key/value outputs threaded through the steps of one run. Grows, never shrinks."""

    def __init__(self, initial: Mapping[str, str] | None = None):
        self._values: dict[str, str] = {}
        if initial:
            self.merge(initial)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"RunContext({self._values!r})"

    def set(self, key: str, value: str) -> None:
        if key in self._values:
            raise ContextCollisionError(key)
        self._values[key] = str(value)

    def merge(self, values: Mapping[str, str]) -> None:
        # Check everything first so a collision leaves the context untouched.
        for key in values:
            if key in self._values:
                raise ContextCollisionError(key)
        for key, value in values.items():
            self._values[key] = str(value)

    def missing(self, keys: Iterable[str]) -> list[str]:
        return [k for k in keys if k not in self._values]

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)


def mask_secret_args(argv: Sequence[str]) -> list[str]:
    """Copy of `argv` with the value after each secret-bearing flag replaced."""
    out = list(argv)
    for i, arg in enumerate(out[:-1]):
        if arg in SECRET_FLAGS:
            out[i + 1] = REDACTED
    return out


def template_fields(templates: Iterable[str]) -> tuple[str, ...]:
    """Context keys referenced as `{key}` in argv templates, in first-seen order."""
    seen: dict[str, None] = {}
    for tmpl in templates:
        for _, name, _, _ in string.Formatter().parse(tmpl):
            if name:
                seen.setdefault(name, None)
    return tuple(seen)


@dataclass(frozen=True)
class Step:
    """One provisioning action.

    Exactly one of `command` (an external process) or `action` (in-process
    callable) is set. A command step succeeds on exit code 0 and, when it
    captures output, non-empty stripped stdout. An action step succeeds when
    it returns a non-empty value for each key in `provides`.
    """

    name: str
    command: CommandBuilder | None = None
    action: StepAction | None = None
    requires: tuple[str, ...] = ()
    capture: str | None = None
    provides: tuple[str, ...] = ()
    stdin: Callable[[RunContext], str] | None = None
    timeout_s: float = 600
    creates_container: bool = False
    sensitive: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        validate_step_name(self.name)
        if (self.command is None) == (self.action is None):
            raise PlanError(f"Step {self.name}: set exactly one of command/action")
        if self.action is not None and (self.capture or self.stdin):
            raise PlanError(f"Step {self.name}: capture/stdin only apply to command steps")
        if self.command is not None and self.provides:
            raise PlanError(f"Step {self.name}: command steps declare output via capture")

    @property
    def outputs(self) -> tuple[str, ...]:
        return (self.capture,) if self.capture else self.provides

    @classmethod
    def cli(
        cls,
        name: str,
        argv: Sequence[str],
        *,
        capture: str | None = None,
        requires: Iterable[str] = (),
        stdin: Callable[[RunContext], str] | None = None,
        timeout_s: float = 600,
        creates_container: bool = False,
        sensitive: bool = False,
        description: str = "",
    ) -> Step:
        """Command step from argv templates; `{key}` fields are filled from the context."""
        templates = tuple(argv)
        needed = template_fields(templates) + tuple(requires)
        return cls(
            name=name,
            command=lambda ctx: [t.format_map(ctx) for t in templates],
            requires=tuple(dict.fromkeys(needed)),
            capture=capture,
            stdin=stdin,
            timeout_s=timeout_s,
            creates_container=creates_container,
            sensitive=sensitive,
            description=description or " ".join(templates),
        )


@dataclass(frozen=True)
class CleanupAction:
    name: str
    argv: tuple[str, ...]
    timeout_s: float = 120

    @property
    def requires(self) -> tuple[str, ...]:
        return template_fields(self.argv)

    def command(self, ctx: RunContext) -> list[str]:
        return [t.format_map(ctx) for t in self.argv]


@dataclass(frozen=True)
class StepFailure:
    step: str
    step_index: int
    message: str
    exit_code: int | None = None

    def to_record(self) -> StepFailureRecord:
        return StepFailureRecord(
            step=self.step, step_index=self.step_index, message=self.message, exit_code=self.exit_code
        )


@dataclass(frozen=True)
class RunResult:
    status: Literal["SUCCEEDED", "FAILED"]
    outputs: dict[str, str]
    executed: list[str]
    failure: StepFailure | None = None
    cleanup_attempted: bool = False
    sensitive: frozenset[str] = frozenset()
    run_dir: Path | None = None

    @property
    def ok(self) -> bool:
        return self.status == "SUCCEEDED"

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def public_outputs(self) -> dict[str, str]:
        return {k: (REDACTED if k in self.sensitive else v) for k, v in self.outputs.items()}


def validate_plan(
    steps: Sequence[Step],
    initial_keys: Iterable[str],
    cleanup: CleanupAction | None = None,
) -> None:
    """Raise PlanError unless every step's inputs exist by the time it runs."""
    available = set(initial_keys)
    names: set[str] = set()
    for index, step in enumerate(steps):
        if step.name in names:
            raise PlanError(f"Duplicate step name: {step.name}")
        names.add(step.name)
        missing = [k for k in step.requires if k not in available]
        if missing:
            raise PlanError(f"Step {index + 1} ({step.name}) requires {missing} which nothing provides")
        for key in step.outputs:
            if key in available:
                raise PlanError(f"Step {step.name} output {key!r} is already provided earlier")
            available.add(key)
    if cleanup is not None:
        container_steps = [s for s in steps if s.creates_container]
        if not container_steps:
            raise PlanError(f"Cleanup {cleanup.name} registered but no step creates a container")
        # Cleanup can only run after the container step, so its inputs must exist by then.
        first = steps.index(container_steps[0])
        known = set(initial_keys)
        for step in steps[: first + 1]:
            known.update(step.outputs)
        missing = [k for k in cleanup.requires if k not in known]
        if missing:
            raise PlanError(f"Cleanup {cleanup.name} requires {missing}")


@dataclass(frozen=True)
class _Outcome:
    outputs: dict[str, str] = field(default_factory=dict)
    failure: StepFailure | None = None


@dataclass
class StepRunner:
    run_id: str
    plan: str
    steps: Sequence[Step]
    store: ArtifactStore
    cleanup: CleanupAction | None = None
    executor: Executor = run_cmd
    cwd: Path = Path(".")
    redactor: Redactor = field(default_factory=Redactor)
    state: RunState = "NOT_STARTED"
    step_index: int | None = None

    def __post_init__(self) -> None:
        self.events = EventLog(self.store.path("events.jsonl"), run_id=self.run_id)

    def run(self, context: RunContext) -> RunResult:
        if self.state != "NOT_STARTED":
            raise RuntimeError(f"Runner for {self.run_id} already used (state={self.state})")
        validate_plan(self.steps, context.keys(), self.cleanup)

        self.store.ensure()
        initial_keys = set(context)
        sensitive = frozenset(k for s in self.steps if s.sensitive for k in s.outputs)
        executed: list[str] = []
        container_created = False
        total = len(self.steps)

        self.state = "RUNNING"
        self.events.emit(stage="run", action="start", plan=self.plan, steps=total)

        for index, step in enumerate(self.steps):
            self.step_index = index
            missing = context.missing(step.requires)
            if missing:
                raise PlanError(f"Step {step.name} started without {missing}")

            self._write_status(message=f"running {step.name}", step=step.name)
            logger.info(f"[{index + 1}/{total}] {step.name}")
            self.events.emit(stage="step", action="start", step=step.name, index=index)
            executed.append(step.name)

            outcome = self._execute(index, step, context)
            if outcome.failure is not None:
                failure = outcome.failure
                logger.error(f"Step {step.name} failed: {failure.message}")
                self.events.emit(
                    stage="step",
                    action="fail",
                    step=step.name,
                    index=index,
                    exit_code=failure.exit_code,
                    message=failure.message,
                )
                cleanup_attempted = False
                if container_created and self.cleanup is not None:
                    cleanup_attempted = self._run_cleanup(context)
                result = RunResult(
                    status="FAILED",
                    outputs=self._produced(context, initial_keys),
                    executed=executed,
                    failure=failure,
                    cleanup_attempted=cleanup_attempted,
                    sensitive=sensitive,
                    run_dir=self.store.run_dir,
                )
                self.state = "FAILED"
                self._write_status(
                    message=f"{step.name} failed", step=step.name, failure=failure, cleanup=cleanup_attempted
                )
                self._write_summary(result)
                return result

            context.merge(outcome.outputs)
            if step.creates_container:
                container_created = True
            self.events.emit(stage="step", action="ok", step=step.name, index=index, outputs=list(outcome.outputs))

        self.state = "SUCCEEDED"
        self.step_index = None
        result = RunResult(
            status="SUCCEEDED",
            outputs=self._produced(context, initial_keys),
            executed=executed,
            sensitive=sensitive,
            run_dir=self.store.run_dir,
        )
        self._write_status(message="completed")
        self._write_summary(result)
        self.events.emit(stage="run", action="done", plan=self.plan)
        return result

    def _execute(self, index: int, step: Step, context: RunContext) -> _Outcome:
        if step.action is not None:
            return self._execute_action(index, step, context)

        stdout_path, stderr_path = self.store.step_log_paths(index + 1, step.name)
        try:
            argv = step.command(context)
            logger.debug(f"$ {self.redactor.redact(' '.join(mask_secret_args(argv)))}")
            res = self.executor(
                argv,
                cwd=self.cwd,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                timeout_s=step.timeout_s,
                input_text=step.stdin(context) if step.stdin else None,
            )
        except Exception as e:
            return _Outcome(
                failure=StepFailure(step=step.name, step_index=index, message=self.redactor.redact(str(e)))
            )
        value = res.stdout.strip()
        if step.sensitive and value:
            # Captured secrets live only in the context, never in the step log.
            res.stdout_path.write_text(REDACTED + "\n", encoding="utf-8")
        if res.returncode != 0:
            detail = self.redactor.redact(tail(res.stderr)) or f"see {stderr_path}"
            return _Outcome(
                failure=StepFailure(
                    step=step.name,
                    step_index=index,
                    message=f"exit code {res.returncode}: {detail}",
                    exit_code=res.returncode,
                )
            )
        if step.capture is None:
            return _Outcome()
        if not value:
            return _Outcome(
                failure=StepFailure(
                    step=step.name,
                    step_index=index,
                    message=f"command returned no value for {step.capture}",
                    exit_code=res.returncode,
                )
            )
        return _Outcome(outputs={step.capture: value})

    def _execute_action(self, index: int, step: Step, context: RunContext) -> _Outcome:
        try:
            produced = {k: str(v) for k, v in dict(step.action(context)).items()}
        except Exception as e:
            return _Outcome(
                failure=StepFailure(step=step.name, step_index=index, message=self.redactor.redact(str(e)))
            )
        if set(produced) != set(step.provides):
            raise PlanError(f"Step {step.name} returned {sorted(produced)}, declared {sorted(step.provides)}")
        empty = [k for k, v in produced.items() if not v.strip()]
        if empty:
            return _Outcome(
                failure=StepFailure(step=step.name, step_index=index, message=f"empty value for {empty}")
            )
        return _Outcome(outputs=produced)

    def _run_cleanup(self, context: RunContext) -> bool:
        """Best-effort rollback. Returns True when the cleanup command was attempted."""
        cleanup = self.cleanup
        missing = context.missing(cleanup.requires)
        if missing:
            logger.warning(f"Skipping cleanup {cleanup.name}: missing {missing}")
            return False
        argv = cleanup.command(context)
        logger.info(f"Cleaning up: {' '.join(argv)}")
        self.events.emit(stage="cleanup", action="start", name=cleanup.name)
        try:
            res = self.executor(
                argv,
                cwd=self.cwd,
                stdout_path=self.store.path("logs", "cleanup.stdout.log"),
                stderr_path=self.store.path("logs", "cleanup.stderr.log"),
                timeout_s=cleanup.timeout_s,
            )
        except Exception as e:
            logger.warning(f"Cleanup {cleanup.name} raised: {e}")
            self.events.emit(stage="cleanup", action="error", name=cleanup.name, message=str(e))
            return True
        if res.returncode != 0:
            logger.warning(f"Cleanup {cleanup.name} failed (rc={res.returncode}): {tail(res.stderr, 5)}")
            self.events.emit(stage="cleanup", action="fail", name=cleanup.name, exit_code=res.returncode)
        else:
            self.events.emit(stage="cleanup", action="ok", name=cleanup.name)
        return True

    @staticmethod
    def _produced(context: RunContext, initial_keys: set[str]) -> dict[str, str]:
        return {k: v for k, v in context.items() if k not in initial_keys}

    def _write_status(
        self,
        *,
        message: str,
        step: str | None = None,
        failure: StepFailure | None = None,
        cleanup: bool = False,
    ) -> None:
        self.store.write_status(
            RunStatus(
                run_id=self.run_id,
                plan=self.plan,
                state=self.state,
                step_index=self.step_index,
                step=step,
                message=message,
                failure=failure.to_record() if failure else None,
                cleanup_attempted=cleanup,
            )
        )

    def _write_summary(self, result: RunResult) -> None:
        outputs = self.redactor.redact_values(result.outputs, result.sensitive)
        self.store.write_summary(
            RunSummary(
                run_id=self.run_id,
                plan=self.plan,
                state=self.state,
                executed_steps=result.executed,
                outputs=outputs,
                failure=result.failure.to_record() if result.failure else None,
            )
        )
