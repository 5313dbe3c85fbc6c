from __future__ import annotations

"""Artifact schemas.

CONTRACT
- Inputs: Pydantic models
- Outputs:
  - Validated JSON-serializable objects
- Invariants:
  - Defines the shape of RUN.json, RUN_STATUS.json and SUMMARY.json
  - All schemas have schema_version int field
- Failure:
  - Raises ValidationError on schema mismatch
"""

from typing import Literal

from pydantic import BaseModel, Field

PlanName = Literal["setup", "postprovision", "preprovision", "teardown"]
RunState = Literal["NOT_STARTED", "RUNNING", "SUCCEEDED", "FAILED"]


class RunMeta(BaseModel):
    schema_version: int = 1
    run_id: str
    plan: PlanName
    location: str | None = None
    steps: list[str] = Field(default_factory=list)
    parameters: dict[str, str] = Field(default_factory=dict)


class StepFailureRecord(BaseModel):
    step: str
    step_index: int
    message: str
    exit_code: int | None = None


class RunStatus(BaseModel):
    schema_version: int = 1
    run_id: str
    plan: PlanName
    state: RunState
    step_index: int | None = None
    step: str | None = None
    message: str = ""
    failure: StepFailureRecord | None = None
    cleanup_attempted: bool = False


class RunSummary(BaseModel):
    schema_version: int = 1
    run_id: str
    plan: PlanName
    state: RunState
    executed_steps: list[str] = Field(default_factory=list)
    outputs: dict[str, str] = Field(default_factory=dict)
    failure: StepFailureRecord | None = None


def validate_run_status(data: dict) -> tuple[bool, RunStatus | None, str]:
    """Validate RUN_STATUS.json against schema."""
    try:
        status = RunStatus(**data)
        return True, status, ""
    except Exception as e:
        return False, None, str(e)
