"""
Exception taxonomy for flowsheet validation and solving.

StructuralError   – bad topology or configuration, raised before any unit runs
UnitError         – a unit operation rejected its inputs or failed internally
ConvergenceFailure – iteration budget exhausted (reported, never raised by run)
CancelledError    – the run was cancelled between iterations
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class MillflowError(Exception):
    """Base class for all engine errors."""


@dataclass(frozen=True)
class Issue:
    """A single structural problem found in a flowsheet."""

    code: str
    message: str
    unit_id: Optional[str] = None
    stream_id: Optional[str] = None
    # "error" blocks solving, "warning" does not
    severity: str = "error"

    def __str__(self) -> str:
        where = self.unit_id or self.stream_id
        return f"[{self.code}] {where}: {self.message}" if where else f"[{self.code}] {self.message}"


class StructuralError(MillflowError):
    def __init__(self, issues: List[Issue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(str(i) for i in self.issues[:5])
        if len(self.issues) > 5:
            summary += f" (+{len(self.issues) - 5} more)"
        super().__init__(f"Flowsheet is structurally invalid: {summary}")


class UnitError(MillflowError):
    kind = "unit_error"

    def __init__(self, unit_id: str, message: str) -> None:
        self.unit_id = unit_id
        self.message = message
        super().__init__(f"Unit '{unit_id}': {message}")


class InvalidInputError(UnitError):
    """Out-of-range inlet or parameter detected at solve time."""

    kind = "invalid"


class NumericalFailureError(UnitError):
    """An internal iterative sub-solve did not converge."""

    kind = "numerical_failure"


class ConvergenceFailure(MillflowError):
    def __init__(self, iterations: int, residual: float) -> None:
        self.iterations = iterations
        self.residual = residual
        super().__init__(
            f"Tear streams did not converge after {iterations} iterations "
            f"(residual {residual:.3e})"
        )


class CancelledError(MillflowError):
    def __init__(self, iteration: int) -> None:
        self.iteration = iteration
        super().__init__(f"Run cancelled before iteration {iteration}")
