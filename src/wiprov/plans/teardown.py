"""`teardown` plan: delete a resource group left behind by `setup`."""

from __future__ import annotations

from ..runner import Step
from .base import Plan


def build_teardown_plan(resource_group: str, *, wait: bool = False, timeout_s: float = 1800) -> Plan:
    argv = ["az", "group", "delete", "--name", "{resourceGroupName}", "--yes"]
    if not wait:
        argv.append("--no-wait")
    return Plan(
        name="teardown",
        steps=[Step.cli("delete-resource-group", argv, timeout_s=timeout_s)],
        initial={"resourceGroupName": resource_group},
    )
