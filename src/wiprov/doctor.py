from __future__ import annotations

"""Environment health checks.

CONTRACT
- Inputs: required tool names, whether an az login is required, workdir
- Outputs (required):
  - DoctorReport (ok=bool, items=[(name, status, details)])
- Invariants:
  - Checks: required binaries on PATH, active `az` login session
  - Does not modify system state (read-only checks)
- Failure:
  - Returns DoctorReport with ok=False if any FAIL item exists
  - check_preconditions() raises PreconditionError instead
"""

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .util.shell import run_cmd, which

INSTALL_HINTS = {
    "az": "https://learn.microsoft.com/cli/azure/install-azure-cli",
    "kubectl": "`az aks install-cli`",
    "ssh-keygen": "install OpenSSH client",
    "kubelogin": "`az aks install-cli` (needed for AAD-enabled clusters)",
}

ALL_TOOLS = ("az", "kubectl", "ssh-keygen")


@dataclass(frozen=True)
class DoctorItem:
    name: str
    status: str
    details: str


@dataclass(frozen=True)
class DoctorReport:
    ok: bool
    items: list[DoctorItem]

    def failures(self) -> list[DoctorItem]:
        return [i for i in self.items if i.status == "FAIL"]


class PreconditionError(Exception):
    """Raised before a run starts when a required tool or session is missing."""

    def __init__(self, report: DoctorReport):
        reasons = "; ".join(f"{i.name}: {i.details}" for i in report.failures())
        super().__init__(f"Preconditions not met: {reasons}")
        self.report = report


def _az_login(workdir: Path) -> DoctorItem:
    res = run_cmd(["az", "account", "show", "--query", "name", "--output", "tsv"], cwd=workdir, timeout_s=30)
    account = res.stdout.strip()
    if res.returncode == 0 and account:
        return DoctorItem("az login", "OK", account)
    return DoctorItem("az login", "FAIL", "Not logged into Azure. Run 'az login' first")


def preflight(tools: Sequence[str], *, check_login: bool, workdir: Path) -> DoctorReport:
    items: list[DoctorItem] = []
    for tool in tools:
        path = which(tool)
        if path:
            items.append(DoctorItem(tool, "OK", path))
        else:
            hint = INSTALL_HINTS.get(tool, "")
            items.append(DoctorItem(tool, "FAIL", f"{tool} is required but not installed. {hint}".strip()))

    # Login can only be checked once az itself is present.
    if check_login and "az" in tools and which("az"):
        items.append(_az_login(workdir))

    return DoctorReport(ok=not any(i.status == "FAIL" for i in items), items=items)


def check_preconditions(tools: Sequence[str], *, check_login: bool, workdir: Path) -> DoctorReport:
    report = preflight(tools, check_login=check_login, workdir=workdir)
    if not report.ok:
        raise PreconditionError(report)
    return report


def doctor_report(workdir: Path) -> DoctorReport:
    """Full report for `wiprov doctor`: every tool any plan needs, plus optional extras."""
    report = preflight(ALL_TOOLS, check_login=True, workdir=workdir)
    items = list(report.items)

    kubelogin = which("kubelogin")
    if kubelogin:
        items.append(DoctorItem("kubelogin", "OK", kubelogin))
    else:
        items.append(DoctorItem("kubelogin", "INFO", f"kubelogin not found; {INSTALL_HINTS['kubelogin']}"))

    if which("kubectl"):
        res = run_cmd(["kubectl", "config", "current-context"], cwd=workdir, timeout_s=10)
        if res.returncode == 0 and res.stdout.strip():
            items.append(DoctorItem("kube context", "OK", res.stdout.strip()))
        else:
            items.append(DoctorItem("kube context", "INFO", "no current context (set by get-aks-credentials)"))

    return DoctorReport(ok=report.ok, items=items)
