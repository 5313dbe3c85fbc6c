from __future__ import annotations

"""Orchestrator for provisioning runs.

CONTRACT
- Inputs: RunConfig plus plan-specific inputs (resource names, hook inputs)
- Outputs (required):
  - RunResult from the step runner
  - Artifacts in .wiprov/runs/<run_id>/
    - RUN.json, RUN_STATUS.json, SUMMARY.json, events.jsonl, provision.log
    - logs/<NN>_<step>.stdout.log / .stderr.log
- Invariants:
  - Preconditions (tools, az login) are checked before the run dir is created
  - Plans are validated before any step executes
- Failure:
  - Raises PreconditionError if tools/login are missing (zero steps executed)
  - Raises ValueError on missing hook inputs
  - Step failures come back as RunResult(status="FAILED")
"""

from pathlib import Path

from loguru import logger

from .artifacts.schemas import RunMeta, RunStatus
from .artifacts.store import ArtifactStore
from .config import HookInputs, ResourceNames, RunConfig
from .doctor import check_preconditions
from .plans.base import Plan
from .plans.hooks import build_postprovision_plan, build_preprovision_plan
from .plans.setup import build_setup_plan
from .plans.teardown import build_teardown_plan
from .runner import RunContext, RunResult, StepRunner
from .util.logs import run_log
from .util.shell import Executor, run_cmd

LOG_FILE = "provision.log"


def run_plan(cfg: RunConfig, plan: Plan, store: ArtifactStore, *, executor: Executor = run_cmd) -> RunResult:
    plan.validate()
    store.ensure()
    with run_log(store.path(LOG_FILE)):
        store.write_run_meta(
            RunMeta(
                run_id=cfg.run_id,
                plan=plan.name,
                location=cfg.settings.location if plan.name == "setup" else None,
                steps=plan.step_names(),
                parameters=dict(plan.initial),
            )
        )
        store.write_status(RunStatus(run_id=cfg.run_id, plan=plan.name, state="NOT_STARTED", message="starting"))

        logger.info(f"Run {cfg.run_id}: plan {plan.name} ({len(plan.steps)} steps)")
        for key, value in plan.initial.items():
            logger.info(f"- {key}: {value}")

        runner = StepRunner(
            run_id=cfg.run_id,
            plan=plan.name,
            steps=plan.steps,
            store=store,
            cleanup=plan.cleanup,
            executor=executor,
            cwd=cfg.workdir,
        )
        result = runner.run(RunContext(plan.initial))

        if result.ok:
            logger.success(f"{plan.name} completed successfully!")
            for key, value in result.public_outputs().items():
                logger.info(f"- {key}: {value}")
        else:
            failure = result.failure
            logger.error(f"{plan.name} failed at step {failure.step}: {failure.message}")
            if result.cleanup_attempted:
                logger.info("Cleanup was requested; resources may take a few minutes to disappear.")
    return result


def _preflight(cfg: RunConfig, plan: Plan) -> None:
    if cfg.skip_preflight:
        return
    logger.info("Verifying prerequisites...")
    check_preconditions(plan.required_tools, check_login=plan.check_login, workdir=cfg.workdir)


def run_setup(
    cfg: RunConfig,
    *,
    names: ResourceNames | None = None,
    executor: Executor = run_cmd,
) -> RunResult:
    store = ArtifactStore(cfg.run_dir())
    names = names or ResourceNames.generate(cfg.settings.names)
    plan = build_setup_plan(cfg.settings, names, store)
    _preflight(cfg, plan)
    result = run_plan(cfg, plan, store, executor=executor)
    if result.ok:
        logger.info(f"To clean up resources, run: wiprov teardown --resource-group {names.resource_group}")
    return result


def run_postprovision(cfg: RunConfig, inputs: HookInputs, *, executor: Executor = run_cmd) -> RunResult:
    missing = inputs.missing_for_postprovision()
    if missing:
        raise ValueError(f"Missing required inputs: {', '.join(missing)}")
    store = ArtifactStore(cfg.run_dir())
    plan = build_postprovision_plan(cfg.settings, inputs, store, cfg.workdir)
    _preflight(cfg, plan)
    return run_plan(cfg, plan, store, executor=executor)


def run_preprovision(cfg: RunConfig, inputs: HookInputs, *, executor: Executor = run_cmd) -> RunResult:
    if not inputs.env_name:
        raise ValueError("Missing required inputs: environment name")
    store = ArtifactStore(cfg.run_dir())
    plan = build_preprovision_plan(inputs, cfg.workdir)
    _preflight(cfg, plan)
    return run_plan(cfg, plan, store, executor=executor)


def run_teardown(
    cfg: RunConfig,
    resource_group: str,
    *,
    wait: bool = False,
    executor: Executor = run_cmd,
) -> RunResult:
    if not resource_group:
        raise ValueError("Missing required inputs: resource group")
    store = ArtifactStore(cfg.run_dir())
    plan = build_teardown_plan(resource_group, wait=wait)
    _preflight(cfg, plan)
    return run_plan(cfg, plan, store, executor=executor)


def resource_group_from_run(run_dir: Path) -> str | None:
    """Resource group recorded by an earlier setup run, if any."""
    store = ArtifactStore(run_dir)
    try:
        meta = RunMeta(**store.read_json("RUN.json"))
    except (OSError, ValueError):
        return None
    return meta.parameters.get("resourceGroupName")
