"""Aggregated outcome records shared by the orchestration components."""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class Failure:
    """One isolated failure, identified well enough for an operator to fix.

    Attributes:
        entity: Account email, policy name, OU path or stack name
        operation: What was being attempted (e.g. ``create-account``)
        reason: Error message or AWS failure reason
    """

    entity: str
    operation: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"entity": self.entity, "operation": self.operation, "reason": self.reason}


@dataclass
class StageOutcome:
    """Pass/fail status of one stage's in-process work."""

    stage: str
    succeeded: bool = True
    failures: List[Failure] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)

    def add_failures(self, failures: List[Failure]) -> None:
        self.failures.extend(failures)
