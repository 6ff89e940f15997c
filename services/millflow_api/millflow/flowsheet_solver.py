"""
Sequential-modular flowsheet solver.

  1. Validate the flowsheet and resolve tear streams + calculation order
  2. Seed the tear streams (user guesses or a scaled share of the first feed)
  3. Sweep every unit in order, extract the recomputed tear values
  4. Residual = root-sum-square of per-stream relative tear deltas
  5. Converge, or update the tear guesses (direct / Wegstein / Newton) and repeat

A run is a state machine:
  initialized -> iterating -> converged | max_iterations_exceeded | failed | cancelled

Each iteration works on a private copy of the stream table and is committed
in one step, so a failed or cancelled iteration never leaves a half-updated
table behind.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
from loguru import logger

from . import schemas
from .config import SolverSettings
from .convergence import Accelerator, make_accelerator, tear_residual
from .errors import (
    CancelledError,
    ConvergenceFailure,
    InvalidInputError,
    Issue,
    MillflowError,
    NumericalFailureError,
    StructuralError,
    UnitError,
)
from .registry import create_unit
from .streams import MaterialStream, VectorLayout, stream_from_properties
from .topology import FlowsheetGraph, TopologyPlan
from .unit_operations import UnitOpBase, UnitOutcome
from .validation import ensure_valid

# Share of the first feed used to seed a tear stream without a user guess
TEAR_SEED_SCALE = 0.3


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class SolverStatus(str, Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConvergencePoint:
    """One committed iteration; never modified after it is recorded."""

    iteration: int
    residual: float
    tear_snapshot: Mapping[str, MaterialStream]


@dataclass(frozen=True)
class ProgressEvent:
    iteration: int
    residual: float


ProgressCallback = Callable[[ProgressEvent], None]


class CancelToken:
    """Thread-safe cancellation flag checked at the top of every iteration."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class MassBalance:
    feed: float
    stoichiometric: float
    product: float

    @property
    def relative_error(self) -> float:
        basis = max(self.feed + self.stoichiometric, 1e-12)
        return abs(self.feed + self.stoichiometric - self.product) / basis


@dataclass
class SolverState:
    """Private mutable state of one run."""

    method: str
    tolerance: float
    max_iterations: int
    status: SolverStatus = SolverStatus.INITIALIZED
    iteration: int = 0
    streams: Dict[str, MaterialStream] = field(default_factory=dict)
    unit_outcomes: Dict[str, UnitOutcome] = field(default_factory=dict)
    history: List[ConvergencePoint] = field(default_factory=list)


@dataclass
class SolverOutcome:
    status: SolverStatus
    method: str
    iterations: int
    residual: Optional[float]
    streams: Dict[str, MaterialStream]
    unit_outcomes: Dict[str, UnitOutcome]
    history: Tuple[ConvergencePoint, ...]
    tear_streams: List[str]
    order: List[str]
    warnings: List[str]
    mass_balance: Optional[MassBalance] = None
    error: Optional[MillflowError] = None
    failed_unit: Optional[str] = None
    # Iteration in progress when the run stopped; equals ``iterations`` unless
    # a unit failure or a cancellation cut the next iteration short
    stopped_at: int = 0

    @property
    def converged(self) -> bool:
        return self.status is SolverStatus.CONVERGED

    @property
    def tear_snapshot(self) -> Mapping[str, MaterialStream]:
        return self.history[-1].tear_snapshot if self.history else MappingProxyType({})


@dataclass
class _Sweep:
    streams: Dict[str, MaterialStream]
    outcomes: Dict[str, UnitOutcome]


# ---------------------------------------------------------------------------
# Flowsheet (frozen view)
# ---------------------------------------------------------------------------


class Flowsheet:
    """Validated, immutable view of a flowsheet payload."""

    def __init__(self, payload: schemas.FlowsheetPayload, settings: Optional[SolverSettings] = None) -> None:
        report = ensure_valid(payload, settings)
        self.name = payload.name
        self.graph: FlowsheetGraph = report.graph
        self.plan: TopologyPlan = report.plan
        self.warnings = [str(i) for i in report.warnings]

        self.units: Dict[str, UnitOpBase] = {}
        self.unit_types: Dict[str, str] = {}
        for spec in payload.units:
            self.units[spec.id] = create_unit(spec.id, spec.type, spec.parameters, name=spec.name)
            self.unit_types[spec.id] = spec.type

        self.unit_inlets: Dict[str, Dict[str, str]] = {}
        self.unit_outlets: Dict[str, Dict[str, str]] = {}
        for i, uid in enumerate(self.graph.unit_ids):
            self.unit_inlets[uid] = self.graph.inlets_of(i)
            self.unit_outlets[uid] = self.graph.outlets_of(i)

        specs = {s.id: s for s in payload.streams}
        self.feeds: Dict[str, MaterialStream] = {
            sid: stream_from_properties(specs[sid].properties) for sid in self.plan.feed_streams
        }

    @property
    def tear_streams(self) -> List[str]:
        return self.plan.tear_streams

    @property
    def order(self) -> List[str]:
        return self.plan.order

    def enters_liquor_inlet(self, stream_id: str) -> bool:
        """True when ``stream_id`` feeds an optional liquor port (whitewater, dilution ...)."""
        for edge in self.graph.edges:
            if edge.stream_id == stream_id and edge.target is not None:
                unit = self.units[self.graph.unit_ids[edge.target]]
                return edge.target_port in unit.optional_inlets
        return False


# ---------------------------------------------------------------------------
# Solver
# ---------------------------------------------------------------------------


class FlowsheetSolver:
    """Sequential-modular flowsheet solver with tear-stream handling."""

    def __init__(
        self,
        flowsheet: Flowsheet,
        config: Optional[schemas.RunConfig] = None,
        settings: Optional[SolverSettings] = None,
    ) -> None:
        self.flowsheet = flowsheet
        self.config = config or schemas.RunConfig()
        self.settings = settings or SolverSettings()
        if self.config.max_iterations > self.settings.max_iterations_limit:
            raise StructuralError([Issue(
                "iteration_limit",
                f"max_iterations {self.config.max_iterations} exceeds the limit "
                f"of {self.settings.max_iterations_limit}",
            )])

    @classmethod
    def from_payload(
        cls,
        payload: schemas.FlowsheetPayload,
        config: Optional[schemas.RunConfig] = None,
        settings: Optional[SolverSettings] = None,
    ) -> "FlowsheetSolver":
        return cls(Flowsheet(payload, settings), config, settings)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SolverOutcome:
        """
        Run the sequential-modular solve loop.

        Blocks until the run reaches a terminal status.  ``progress`` is
        called once per committed iteration; ``cancel`` is polled before each
        iteration starts.
        """
        fs = self.flowsheet
        cfg = self.config
        tears = fs.tear_streams
        state = SolverState(method=cfg.method, tolerance=cfg.tolerance, max_iterations=cfg.max_iterations)
        warnings: List[str] = list(fs.warnings)
        accelerator = make_accelerator(cfg.method, tuple(cfg.wegstein_bounds), cfg.newton_step)

        guesses = self._initial_guesses(warnings)
        state.streams = {sid: s.copy() for sid, s in fs.feeds.items()}
        state.streams.update({sid: s.copy() for sid, s in guesses.items()})

        error: Optional[MillflowError] = None
        layout: Optional[VectorLayout] = None
        stopped_at = 0

        logger.info(
            "Solving '{}': {} units, {} tear stream(s), method={}",
            fs.name, len(fs.units), len(tears), cfg.method,
        )
        state.status = SolverStatus.ITERATING

        for iteration in range(1, cfg.max_iterations + 1):
            stopped_at = iteration
            if cancel is not None and cancel.cancelled:
                error = CancelledError(iteration)
                state.status = SolverStatus.CANCELLED
                logger.info("Run '{}' cancelled before iteration {}", fs.name, iteration)
                break

            try:
                sweep = self._sweep(guesses)
                computed = {sid: sweep.streams[sid] for sid in tears}
                residual = tear_residual(guesses, computed) if tears else 0.0
                converged = residual < cfg.tolerance

                next_guesses = guesses
                if not converged:
                    new_layout = VectorLayout.covering(list(guesses.values()) + list(computed.values()))
                    if new_layout != layout:
                        accelerator.reset()
                        layout = new_layout
                    next_guesses = self._update_guesses(accelerator, layout, guesses, computed)
            except UnitError as exc:
                error = exc
                state.status = SolverStatus.FAILED
                logger.error("Unit '{}' failed in iteration {}: {}", exc.unit_id, iteration, exc.message)
                break

            # Commit
            state.iteration = iteration
            state.streams = sweep.streams
            state.unit_outcomes = sweep.outcomes
            state.history.append(ConvergencePoint(
                iteration=iteration,
                residual=residual,
                tear_snapshot=MappingProxyType({sid: s.copy() for sid, s in computed.items()}),
            ))
            guesses = next_guesses
            logger.debug("Iteration {}: tear residual = {:.3e}", iteration, residual)

            if progress is not None:
                progress(ProgressEvent(iteration=iteration, residual=residual))

            if converged:
                state.status = SolverStatus.CONVERGED
                break
        else:
            residual = state.history[-1].residual if state.history else float("nan")
            error = ConvergenceFailure(state.iteration, residual)
            state.status = SolverStatus.MAX_ITERATIONS_EXCEEDED
            warnings.append(str(error))
            logger.warning("Run '{}': {}", fs.name, error)

        return self._finish(state, warnings, error, stopped_at)

    # ------------------------------------------------------------------
    # Unit calculation
    # ------------------------------------------------------------------

    def _sweep(self, guesses: Mapping[str, MaterialStream]) -> _Sweep:
        """Execute every unit once in calculation order on a fresh table."""
        fs = self.flowsheet
        streams: Dict[str, MaterialStream] = {sid: s.copy() for sid, s in fs.feeds.items()}
        streams.update({sid: s.copy() for sid, s in guesses.items()})
        outcomes: Dict[str, UnitOutcome] = {}

        for unit_id in fs.order:
            outcome = self._calculate_unit(fs.units[unit_id], streams)
            outcomes[unit_id] = outcome
            for port, sid in fs.unit_outlets[unit_id].items():
                streams[sid] = outcome.outlets[port]

        return _Sweep(streams=streams, outcomes=outcomes)

    def _calculate_unit(self, unit: UnitOpBase, streams: Mapping[str, MaterialStream]) -> UnitOutcome:
        """Gather inlets, call unit.calculate(), and check the outlets."""
        fs = self.flowsheet
        inlets = {port: streams[sid] for port, sid in fs.unit_inlets[unit.id].items()}

        try:
            outcome = unit.calculate(inlets)
        except UnitError:
            raise
        except (ValueError, TypeError, LookupError) as exc:
            raise InvalidInputError(unit.id, f"{type(exc).__name__}: {exc}") from exc
        except ArithmeticError as exc:
            raise NumericalFailureError(unit.id, f"{type(exc).__name__}: {exc}") from exc

        missing = [p for p in fs.unit_outlets[unit.id] if p not in outcome.outlets]
        if missing:
            raise UnitError(unit.id, f"produced no stream for connected outlet(s) {missing}")

        mass_in = sum(s.total_mass for s in inlets.values())
        mass_out = sum(s.total_mass for s in outcome.outlets.values())
        imbalance = mass_in + outcome.mass_source - mass_out
        rel = abs(imbalance) / max(mass_in + abs(outcome.mass_source), 1e-12)

        diagnostics = dict(outcome.diagnostics)
        diagnostics.update({
            "mass_in_kg_h": mass_in,
            "mass_out_kg_h": mass_out,
            "stoichiometric_term_kg_h": outcome.mass_source,
            "balance_error": rel,
        })
        unit_warnings = list(outcome.warnings)
        if rel > self.settings.balance_tolerance:
            unit_warnings.append(f"Mass balance error {rel * 100:.4f}% (in: {mass_in:.3f}, out: {mass_out:.3f} kg/h)")
        if unit.reactive and outcome.mass_source:
            logger.debug("Unit '{}' stoichiometric term {:+.4f} kg/h", unit.id, outcome.mass_source)

        return UnitOutcome(
            outlets=outcome.outlets,
            diagnostics=diagnostics,
            mass_source=outcome.mass_source,
            warnings=unit_warnings,
        )

    # ------------------------------------------------------------------
    # Tear stream helpers
    # ------------------------------------------------------------------

    def _initial_guesses(self, warnings: List[str]) -> Dict[str, MaterialStream]:
        """Seed every tear stream.

        User-supplied guesses win.  Otherwise the first feed is the template
        at ~30% of its flow: a tear entering an optional liquor inlet
        (whitewater, dilution, wash ...) gets only the template's liquor, every
        other tear gets the whole template.
        """
        fs = self.flowsheet
        supplied = self.config.initial_guesses
        for sid in supplied:
            if sid not in fs.tear_streams:
                warnings.append(f"Initial guess for '{sid}' ignored: not a tear stream")

        if fs.feeds:
            template = next(iter(fs.feeds.values())).scale(TEAR_SEED_SCALE)
        else:
            template = MaterialStream()
        liquor = template.with_updates(fiber=0.0, attributes={})

        guesses: Dict[str, MaterialStream] = {}
        for sid in fs.tear_streams:
            if sid in supplied:
                guesses[sid] = MaterialStream.from_dict(supplied[sid].model_dump())
            elif fs.enters_liquor_inlet(sid):
                guesses[sid] = liquor.copy()
            else:
                guesses[sid] = template.copy()
        return guesses

    def _update_guesses(
        self,
        accelerator: Accelerator,
        layout: VectorLayout,
        guesses: Mapping[str, MaterialStream],
        computed: Mapping[str, MaterialStream],
    ) -> Dict[str, MaterialStream]:
        tears = self.flowsheet.tear_streams
        size = layout.size

        def pack(streams: Mapping[str, MaterialStream]) -> np.ndarray:
            return np.array([v for sid in tears for v in layout.to_vector(streams[sid])], dtype=float)

        def unpack(vec: np.ndarray) -> Dict[str, MaterialStream]:
            return {
                sid: layout.from_vector(vec[i * size:(i + 1) * size], template=computed[sid])
                for i, sid in enumerate(tears)
            }

        def evaluate(vec: np.ndarray) -> np.ndarray:
            sweep = self._sweep(unpack(vec))
            return pack({sid: sweep.streams[sid] for sid in tears})

        x = pack(guesses)
        gx = pack(computed)
        return unpack(accelerator.next_guess(x, gx, evaluate))

    # ------------------------------------------------------------------
    # Balance checks
    # ------------------------------------------------------------------

    def _mass_balance(self, state: SolverState) -> MassBalance:
        """Boundary balance: feeds + stoichiometric terms vs products."""
        fs = self.flowsheet
        feed = sum(fs.feeds[sid].total_mass for sid in fs.plan.feed_streams)
        stoich = sum(o.mass_source for o in state.unit_outcomes.values())
        product = sum(
            state.streams[sid].total_mass
            for sid in fs.plan.product_streams
            if sid in state.streams
        )
        # Outlets that were left unconnected also leave the system
        for uid, outcome in state.unit_outcomes.items():
            connected = fs.unit_outlets[uid]
            for port, stream in outcome.outlets.items():
                if port not in connected:
                    product += stream.total_mass
        return MassBalance(feed=feed, stoichiometric=stoich, product=product)

    def _finish(
        self,
        state: SolverState,
        warnings: List[str],
        error: Optional[MillflowError],
        stopped_at: int,
    ) -> SolverOutcome:
        fs = self.flowsheet
        for uid, outcome in state.unit_outcomes.items():
            for w in outcome.warnings:
                warnings.append(f"[{fs.units[uid].name}] {w}")

        balance = None
        if state.status is SolverStatus.CONVERGED:
            balance = self._mass_balance(state)
            if balance.relative_error > max(10 * state.tolerance, self.settings.balance_tolerance):
                warnings.append(f"Overall mass balance error is {balance.relative_error * 100:.4f}%")
            logger.info(
                "Run '{}' converged in {} iteration(s), residual {:.3e}",
                fs.name, state.iteration, state.history[-1].residual,
            )

        return SolverOutcome(
            status=state.status,
            method=state.method,
            iterations=state.iteration,
            residual=state.history[-1].residual if state.history else None,
            streams=state.streams,
            unit_outcomes=state.unit_outcomes,
            history=tuple(state.history),
            tear_streams=list(fs.tear_streams),
            order=list(fs.order),
            warnings=warnings,
            mass_balance=balance,
            error=error,
            failed_unit=error.unit_id if isinstance(error, UnitError) else None,
            stopped_at=stopped_at,
        )
