"""wiprov package.

Simple API for scripts:

    import wiprov

    # Provision the full workload-identity environment
    result = wiprov.setup(location="westeurope")

    # Remove it again
    wiprov.teardown(result["resource_group"])
"""

from pathlib import Path
from typing import Optional

__version__ = "0.1.0"

from .config import RunConfig, resolve_settings
from .orchestrator import resource_group_from_run, run_setup, run_teardown
from .runner import RunContext, RunResult, Step, StepRunner
from .util.ids import new_run_id


def _summary(result: RunResult, resource_group: str | None) -> dict:
    return {
        "status": result.status,
        "exit_code": result.exit_code,
        "run_dir": str(result.run_dir) if result.run_dir else None,
        "resource_group": resource_group,
        "outputs": result.public_outputs(),
        "failed_step": result.failure.step if result.failure else None,
        "error": result.failure.message if result.failure else None,
    }


def setup(
    location: Optional[str] = None,
    *,
    workdir: str | Path = ".",
    run_id: Optional[str] = None,
    config_file: Optional[str | Path] = None,
) -> dict:
    """Provision the AKS + Key Vault workload-identity environment.

    Args:
        location: Azure region (default from config, else eastus2)
        workdir: Directory holding .wiprov/ (config and run artifacts)
        run_id: Optional custom run ID (auto-generated if not provided)
        config_file: Optional path to provision.yaml

    Returns:
        dict with keys: status, exit_code, run_dir, resource_group, outputs,
        failed_step, error
    """
    import dataclasses

    root = Path(workdir).resolve()
    settings = resolve_settings(Path(config_file) if config_file else None, root)
    if location:
        settings = dataclasses.replace(settings, location=location)
    cfg = RunConfig(
        run_id=run_id or new_run_id(),
        plan="setup",
        artifacts_root=root / ".wiprov" / "runs",
        workdir=root,
        settings=settings,
    )
    result = run_setup(cfg)
    return _summary(result, resource_group_from_run(cfg.run_dir()))


def teardown(resource_group: str, *, wait: bool = False, workdir: str | Path = ".") -> dict:
    """Delete a resource group created by `setup`."""
    root = Path(workdir).resolve()
    cfg = RunConfig(
        run_id=new_run_id(),
        plan="teardown",
        artifacts_root=root / ".wiprov" / "runs",
        workdir=root,
    )
    result = run_teardown(cfg, resource_group, wait=wait)
    return _summary(result, resource_group)


__all__ = [
    "setup",
    "teardown",
    "RunConfig",
    "RunContext",
    "RunResult",
    "Step",
    "StepRunner",
]
