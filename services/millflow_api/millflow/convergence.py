"""
Tear-stream convergence methods.

Each method maps the current guess x and the recomputed value g(x) of the
concatenated tear vector to the next guess.  Newton-Raphson additionally
gets a callable that re-evaluates g for arbitrary x, which it uses to build a
finite-difference Jacobian.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Callable, Mapping, Optional, Tuple

import numpy as np
from loguru import logger

from .streams import MaterialStream

FLOW_FLOOR = 1e-9  # kg/h


def stream_delta(old: MaterialStream, new: MaterialStream) -> float:
    """Relative change between two values of the same stream.

    Flows are scaled by the larger total mass, temperature by its absolute
    value in K, pressure and attributes by their previous magnitude.
    """
    scale = max(old.total_mass, new.total_mass, FLOW_FLOOR)
    terms = [
        (new.fiber - old.fiber) / scale,
        (new.water - old.water) / scale,
        (new.dissolved_solids - old.dissolved_solids) / scale,
    ]
    for name in set(old.species) | set(new.species):
        terms.append((new.get_species_flow(name) - old.get_species_flow(name)) / scale)
    terms.append((new.temperature - old.temperature) / (abs(old.temperature + 273.15) or 1.0))
    terms.append((new.pressure - old.pressure) / max(old.pressure, 1.0))
    for name in set(old.attributes) | set(new.attributes):
        a_old = old.attributes.get(name, 0.0)
        terms.append((new.attributes.get(name, 0.0) - a_old) / max(abs(a_old), 1.0))
    return math.sqrt(sum(t * t for t in terms))


def tear_residual(
    old: Mapping[str, MaterialStream], new: Mapping[str, MaterialStream]
) -> float:
    """Root-sum-square of per-stream relative deltas."""
    total = 0.0
    for sid in sorted(old):
        total += stream_delta(old[sid], new[sid]) ** 2
    return math.sqrt(total)


# ---------------------------------------------------------------------------
# Methods
# ---------------------------------------------------------------------------


Evaluator = Callable[[np.ndarray], np.ndarray]


class Accelerator(ABC):
    name: str = ""

    def reset(self) -> None:
        """Forget any history (called when the tear vector layout changes)."""

    @abstractmethod
    def next_guess(self, x: np.ndarray, gx: np.ndarray, evaluate: Evaluator) -> np.ndarray:
        ...


class DirectSubstitution(Accelerator):
    """x_{n+1} = g(x_n)"""

    name = "direct"

    def next_guess(self, x: np.ndarray, gx: np.ndarray, evaluate: Evaluator) -> np.ndarray:
        return gx.copy()


class Wegstein(Accelerator):
    """
    Wegstein acceleration, element by element.

    Uses the two most recent (x, g(x)) pairs:
        s_i = (g(x_n)_i - g(x_{n-1})_i) / (x_n_i - x_{n-1}_i)
        q_i = s_i / (s_i - 1)
        x_{n+1}_i = q_i * x_n_i + (1 - q_i) * g(x_n)_i

    q is clamped to [q_min, q_max]; q = 0 is direct substitution, q < 0
    extrapolates, q > 0 damps.  With no history the step is direct
    substitution.
    """

    name = "wegstein"

    def __init__(self, q_min: float = -5.0, q_max: float = 0.5) -> None:
        self.q_min = q_min
        self.q_max = q_max
        self._prev: Optional[Tuple[np.ndarray, np.ndarray]] = None

    def reset(self) -> None:
        self._prev = None

    def next_guess(self, x: np.ndarray, gx: np.ndarray, evaluate: Evaluator) -> np.ndarray:
        if self._prev is None:
            result = gx.copy()
        else:
            x_prev, gx_prev = self._prev
            dx = x - x_prev
            dgx = gx - gx_prev
            moved = np.abs(dx) > 1e-15 * np.maximum(np.abs(x), 1.0)
            s = np.zeros_like(x)
            s[moved] = dgx[moved] / dx[moved]
            with np.errstate(divide="ignore", invalid="ignore"):
                q = np.where(np.abs(s - 1.0) > 1e-12, s / (s - 1.0), self.q_min)
            q = np.clip(q, self.q_min, self.q_max)
            q[~moved] = 0.0
            result = q * x + (1.0 - q) * gx
        self._prev = (x.copy(), gx.copy())
        return result


class NewtonRaphson(Accelerator):
    """
    Newton-Raphson on F(x) = g(x) - x.

    The Jacobian dF/dx = dg/dx - I is approximated by forward differences,
    which costs one extra flowsheet sweep per tear element.  The step is the
    least-squares solution of J·dx = -F so a singular Jacobian (e.g. constant
    pressure elements) still yields a usable step.
    """

    name = "newton"

    def __init__(self, step: float = 1e-6) -> None:
        self.step = step

    def next_guess(self, x: np.ndarray, gx: np.ndarray, evaluate: Evaluator) -> np.ndarray:
        n = x.size
        F = gx - x
        J = np.empty((n, n))
        for j in range(n):
            h = self.step * max(abs(x[j]), 1.0)
            xp = x.copy()
            xp[j] += h
            J[:, j] = (evaluate(xp) - gx) / h
        J -= np.eye(n)

        dx, *_ = np.linalg.lstsq(J, -F, rcond=None)
        if not np.all(np.isfinite(dx)):
            logger.warning("Newton step is not finite, falling back to direct substitution")
            return gx.copy()
        return x + dx


def make_accelerator(method: str, q_bounds: Tuple[float, float] = (-5.0, 0.5), newton_step: float = 1e-6) -> Accelerator:
    if method == "direct":
        return DirectSubstitution()
    if method == "wegstein":
        return Wegstein(*q_bounds)
    if method == "newton":
        return NewtonRaphson(step=newton_step)
    raise ValueError(f"Unknown convergence method '{method}'")

