"""CLI entrypoint.

Provisioning commands:
- wiprov setup [LOCATION]
- wiprov postprovision RESOURCE_GROUP CLUSTER KEYVAULT [ENV_NAME] [CLIENT_ID] [IDENTITY_NAME]
- wiprov preprovision [ENV_NAME]
- wiprov teardown --resource-group RG

Utilities:
- wiprov init
- wiprov doctor
- wiprov steps PLAN
- wiprov status --run ID

CONTRACT
- Inputs: Command line arguments (parsed by Typer)
- Outputs (required):
  - Exit code 0 on success, 1 on any step failure or unmet precondition
  - Console output (stdout/stderr) describing progress/results
- Invariants:
  - Preconditions are reported before any step runs
  - Sensitive outputs are never printed
- Failure:
  - Invalid arguments raise Typer exit/error
"""

from __future__ import annotations

import dataclasses
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from .artifacts.store import ArtifactStore
from .config import HookInputs, ResourceNames, RunConfig, resolve_settings
from .doctor import DoctorReport, PreconditionError, doctor_report
from .orchestrator import (
    resource_group_from_run,
    run_postprovision,
    run_preprovision,
    run_setup,
    run_teardown,
)
from .plans.base import Plan
from .plans.hooks import build_postprovision_plan, build_preprovision_plan
from .plans.setup import build_setup_plan
from .plans.teardown import build_teardown_plan
from .runner import RunResult
from .util.ids import new_run_id, validate_run_id
from .util.logs import configure_logging

app = typer.Typer(add_completion=False, help="Provision an AKS workload-identity + Key Vault environment.")

console = Console()


def _version_callback(value: bool):
    if value:
        from . import __version__

        console.print(f"wiprov version: {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every command line."),
):
    configure_logging(verbose=verbose)


_WORKDIR_OPTION = typer.Option(
    Path("."),
    "--workdir",
    help="Directory holding .wiprov/ and .azure/ (default: current dir).",
)
_ARTIFACTS_DIR_OPTION = typer.Option(
    None,
    "--artifacts-dir",
    help="Artifacts root dir (default: <workdir>/.wiprov/runs).",
)
_RUN_ID_OPTION = typer.Option(
    None,
    "--run-id",
    help="Run id (default: auto).",
)
_RUN_ID_REQUIRED_OPTION = typer.Option(
    ...,
    "--run",
    help="Run id.",
)
_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    help="provision.yaml (default: <workdir>/.wiprov/provision.yaml if present).",
)
_SKIP_PREFLIGHT_OPTION = typer.Option(
    False,
    "--skip-preflight",
    help="Do not check tools and az login before running.",
)
_ENV_NAME_ARGUMENT = typer.Argument(
    "",
    envvar="AZURE_ENV_NAME",
    help="Deployment environment name (.azure/<env>/.env).",
)


def _artifacts_root(workdir: Path, artifacts_dir: Path | None) -> Path:
    return artifacts_dir if artifacts_dir is not None else workdir / ".wiprov" / "runs"


def _check_run_id(run_id: str) -> str:
    try:
        return validate_run_id(run_id)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


def _run_config(
    plan: str,
    workdir: Path,
    artifacts_dir: Path | None,
    run_id: str | None,
    config_file: Path | None,
    skip_preflight: bool,
) -> RunConfig:
    try:
        rid = validate_run_id(run_id or new_run_id())
        settings = resolve_settings(config_file, workdir)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e
    return RunConfig(
        run_id=rid,
        plan=plan,
        artifacts_root=_artifacts_root(workdir, artifacts_dir),
        workdir=workdir,
        settings=settings,
        skip_preflight=skip_preflight,
    )


def _print_report(report: DoctorReport, title: str) -> None:
    table = Table(title=title)
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details")
    for item in report.items:
        table.add_row(item.name, item.status, item.details)
    console.print(table)


def _finish(result: RunResult) -> None:
    if result.ok:
        table = Table(title="Created resources")
        table.add_column("Key")
        table.add_column("Value")
        for key, value in result.public_outputs().items():
            table.add_row(key, value)
        console.print(table)
        console.print(f"[green]OK[/green] artifacts: {result.run_dir}")
        return
    failure = result.failure
    console.print(f"[red]FAILED[/red] at step [bold]{failure.step}[/bold]: {failure.message}")
    if result.cleanup_attempted:
        console.print("[yellow]Cleanup requested (best effort).[/yellow]")
    console.print(f"Artifacts: {result.run_dir}")
    raise typer.Exit(code=result.exit_code)


def _guarded(run) -> RunResult:
    try:
        return run()
    except PreconditionError as e:
        _print_report(e.report, "preflight")
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e


@app.command()
def init(
    workdir: Path = _WORKDIR_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite existing templates."),
) -> None:
    """Write `.wiprov/provision.yaml` into the working directory."""
    from .init import write_templates

    written = write_templates(workdir, force=force)
    if written:
        console.print(f"[green]Wrote[/green] {', '.join(str(p) for p in written)}")
    else:
        console.print("Templates already present (use --force to overwrite).")


@app.command()
def doctor(workdir: Path = _WORKDIR_OPTION) -> None:
    """Environment and preflight checks."""
    report = doctor_report(workdir)
    _print_report(report, "wiprov doctor")
    if report.ok:
        console.print("[green]OK[/green]")
    else:
        raise typer.Exit(code=1)


@app.command()
def setup(
    location: str | None = typer.Argument(None, help="Azure region (default: eastus2)."),
    workdir: Path = _WORKDIR_OPTION,
    config_file: Path | None = _CONFIG_OPTION,
    artifacts_dir: Path | None = _ARTIFACTS_DIR_OPTION,
    run_id: str | None = _RUN_ID_OPTION,
    node_count: int | None = typer.Option(None, "--node-count", min=1, help="AKS node count."),
    cleanup_wait: bool = typer.Option(
        False, "--cleanup-wait", help="Wait for the resource group delete after a failure."
    ),
    skip_preflight: bool = _SKIP_PREFLIGHT_OPTION,
) -> None:
    """Create the resource group, AKS cluster, identity, service account and Key Vault."""
    cfg = _run_config("setup", workdir, artifacts_dir, run_id, config_file, skip_preflight)
    settings = cfg.settings
    if location:
        settings = dataclasses.replace(settings, location=location)
    if node_count:
        settings = dataclasses.replace(
            settings, cluster=dataclasses.replace(settings.cluster, node_count=node_count)
        )
    if cleanup_wait:
        settings = dataclasses.replace(settings, cleanup_wait=True)
    cfg = dataclasses.replace(cfg, settings=settings)
    _finish(_guarded(lambda: run_setup(cfg)))


@app.command()
def postprovision(
    resource_group: str = typer.Argument("", envvar="AZURE_RESOURCE_GROUP_NAME"),
    cluster: str = typer.Argument("", envvar="AZURE_AKS_CLUSTER_NAME"),
    keyvault: str = typer.Argument("", envvar="AZURE_KEYVAULT_NAME"),
    env_name: str = _ENV_NAME_ARGUMENT,
    client_id: str = typer.Argument("", envvar="AZURE_MANAGED_IDENTITY_CLIENT_ID"),
    identity_name: str = typer.Argument("", envvar="AZURE_MANAGED_IDENTITY_NAME"),
    workdir: Path = _WORKDIR_OPTION,
    config_file: Path | None = _CONFIG_OPTION,
    artifacts_dir: Path | None = _ARTIFACTS_DIR_OPTION,
    run_id: str | None = _RUN_ID_OPTION,
    skip_preflight: bool = _SKIP_PREFLIGHT_OPTION,
) -> None:
    """Post-provision hook: Key Vault certificate, AKS credentials, service account."""
    cfg = _run_config("postprovision", workdir, artifacts_dir, run_id, config_file, skip_preflight)
    inputs = HookInputs(
        resource_group=resource_group,
        cluster=cluster,
        keyvault=keyvault,
        env_name=env_name,
        identity_client_id=client_id,
        identity_name=identity_name,
    )
    _finish(_guarded(lambda: run_postprovision(cfg, inputs)))


@app.command()
def preprovision(
    env_name: str = _ENV_NAME_ARGUMENT,
    workdir: Path = _WORKDIR_OPTION,
    artifacts_dir: Path | None = _ARTIFACTS_DIR_OPTION,
    run_id: str | None = _RUN_ID_OPTION,
    skip_preflight: bool = _SKIP_PREFLIGHT_OPTION,
) -> None:
    """Pre-provision hook: SSH key pair and SSH_PUBLIC_KEY in the env file."""
    cfg = _run_config("preprovision", workdir, artifacts_dir, run_id, None, skip_preflight)
    _finish(_guarded(lambda: run_preprovision(cfg, HookInputs(env_name=env_name))))


@app.command()
def teardown(
    resource_group: str | None = typer.Option(None, "--resource-group", "-g", help="Resource group to delete."),
    from_run: str | None = typer.Option(None, "--from-run", help="Take the resource group from a setup run."),
    wait: bool = typer.Option(False, "--wait", help="Block until the delete finishes."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    workdir: Path = _WORKDIR_OPTION,
    artifacts_dir: Path | None = _ARTIFACTS_DIR_OPTION,
    skip_preflight: bool = _SKIP_PREFLIGHT_OPTION,
) -> None:
    """Delete a resource group (and everything in it)."""
    if from_run and not resource_group:
        _check_run_id(from_run)
        resource_group = resource_group_from_run(_artifacts_root(workdir, artifacts_dir) / from_run)
        if not resource_group:
            raise typer.BadParameter(f"No resource group recorded for run {from_run}")
    if not resource_group:
        raise typer.BadParameter("Provide --resource-group or --from-run.")
    if not yes and not typer.confirm(f"Delete resource group {resource_group}?"):
        raise typer.Abort()
    cfg = _run_config("teardown", workdir, artifacts_dir, None, None, skip_preflight)
    _finish(_guarded(lambda: run_teardown(cfg, resource_group, wait=wait)))


def _plan_for_listing(name: str, workdir: Path) -> Plan:
    settings = resolve_settings(None, workdir)
    store = ArtifactStore(workdir / ".wiprov" / "runs" / "_plan")
    if name == "setup":
        return build_setup_plan(settings, ResourceNames.generate(settings.names, suffix="xxxxxx"), store)
    if name == "postprovision":
        inputs = HookInputs("<rg>", "<cluster>", "<keyvault>", "<env>", "<client-id>")
        return build_postprovision_plan(settings, inputs, store, workdir)
    if name == "preprovision":
        return build_preprovision_plan(HookInputs(env_name="<env>"), workdir)
    if name == "teardown":
        return build_teardown_plan("<rg>")
    raise typer.BadParameter(f"Unknown plan: {name}")


@app.command()
def steps(
    plan: str = typer.Argument("setup", help="setup | postprovision | preprovision | teardown"),
    workdir: Path = _WORKDIR_OPTION,
) -> None:
    """List the steps of a plan without running anything."""
    p = _plan_for_listing(plan, workdir)
    table = Table(title=f"{p.name} steps")
    table.add_column("#")
    table.add_column("Step")
    table.add_column("Requires")
    table.add_column("Outputs")
    for index, step in enumerate(p.steps, start=1):
        name = f"{step.name} *" if step.creates_container else step.name
        table.add_row(str(index), name, ", ".join(step.requires), ", ".join(step.outputs))
    console.print(table)
    if p.cleanup is not None:
        console.print(f"* on failure after this step: {' '.join(p.cleanup.argv)}")


@app.command()
def status(
    run_id: str = _RUN_ID_REQUIRED_OPTION,
    workdir: Path = _WORKDIR_OPTION,
    artifacts_dir: Path | None = _ARTIFACTS_DIR_OPTION,
) -> None:
    """Show RUN_STATUS.json of a run."""
    _check_run_id(run_id)
    status_path = _artifacts_root(workdir, artifacts_dir) / run_id / "RUN_STATUS.json"
    if not status_path.exists():
        raise typer.BadParameter(f"No status found: {status_path}")
    console.print_json(status_path.read_text(encoding="utf-8"))


if __name__ == "__main__":
    app()
