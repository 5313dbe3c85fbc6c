from __future__ import annotations

"""Plan definition.

CONTRACT
- Inputs: plan name, ordered steps, initial context values, optional cleanup
- Outputs:
  - Plan objects consumed by the orchestrator
- Invariants:
  - `initial` holds run parameters only; step outputs are produced at run time
  - `required_tools` lists binaries checked before the run starts
"""

from dataclasses import dataclass, field

from ..artifacts.schemas import PlanName
from ..runner import CleanupAction, Step, validate_plan


@dataclass(frozen=True)
class Plan:
    name: PlanName
    steps: list[Step]
    initial: dict[str, str] = field(default_factory=dict)
    cleanup: CleanupAction | None = None
    required_tools: tuple[str, ...] = ("az",)
    check_login: bool = True

    def validate(self) -> None:
        validate_plan(self.steps, self.initial.keys(), self.cleanup)

    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]
