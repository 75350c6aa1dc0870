"""Role enumeration and the fixed order of a red-green-refactor cycle."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal


class Phase(str, Enum):
    """The three roles that take turns within a cycle."""

    TESTER = "tester"
    IMPLEMENTOR = "implementor"
    REFACTORER = "refactorer"


PHASE_SEQUENCE = [
    Phase.TESTER,
    Phase.IMPLEMENTOR,
    Phase.REFACTORER,
]

TestExpectation = Literal["fail", "pass"]


@dataclass(frozen=True, slots=True)
class PhaseSpec:
    """What a role must achieve for its turn to count as a success."""

    phase: Phase
    expected_tests: TestExpectation
    default_summary: str

    @property
    def expects_failure(self) -> bool:
        return self.expected_tests == "fail"


PHASE_SPECS: dict[Phase, PhaseSpec] = {
    Phase.TESTER: PhaseSpec(Phase.TESTER, "fail", "add failing test"),
    Phase.IMPLEMENTOR: PhaseSpec(Phase.IMPLEMENTOR, "pass", "make tests pass"),
    Phase.REFACTORER: PhaseSpec(Phase.REFACTORER, "pass", "improve design"),
}


__all__ = ["PHASE_SEQUENCE", "PHASE_SPECS", "Phase", "PhaseSpec", "TestExpectation"]
