"""
Per-step outcome reporting.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List


class StepStatus(str, Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one provisioning or testing step."""
    step: str
    status: StepStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is not StepStatus.FAILED

    @classmethod
    def changed(cls, step: str, detail: str = "") -> "StepResult":
        return cls(step, StepStatus.CHANGED, detail)

    @classmethod
    def unchanged(cls, step: str, detail: str = "") -> "StepResult":
        return cls(step, StepStatus.UNCHANGED, detail)

    @classmethod
    def failed(cls, step: str, detail: str = "") -> "StepResult":
        return cls(step, StepStatus.FAILED, detail)


def summarize(results: List[StepResult]) -> str:
    """One-line summary, e.g. '2 unchanged, 7 changed, 0 failed'."""
    counts = {status: 0 for status in StepStatus}
    for result in results:
        counts[result.status] += 1
    return ", ".join(f"{counts[s]} {s.value}" for s in StepStatus)
