from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from loguru import logger

from . import schemas
from .config import SolverSettings, load_settings
from .errors import CancelledError, ConvergenceFailure, Issue, UnitError
from .flowsheet_solver import CancelToken, FlowsheetSolver, ProgressCallback, SolverOutcome
from .streams import MaterialStream
from .validation import validate_flowsheet


def _stream_state(stream: MaterialStream) -> schemas.StreamState:
    return schemas.StreamState(**stream.to_dict())


def _stream_result(stream_id: str, stream: MaterialStream) -> schemas.StreamResult:
    return schemas.StreamResult(
        id=stream_id,
        consistency=stream.consistency,
        total_mass=stream.total_mass,
        enthalpy_kw=stream.enthalpy / 3600.0,
        **stream.to_dict(),
    )


def _issue_result(issue: Issue) -> schemas.IssueResult:
    return schemas.IssueResult(
        code=issue.code,
        message=issue.message,
        unit_id=issue.unit_id,
        stream_id=issue.stream_id,
        severity=issue.severity,
    )


def _snapshot(tears: Mapping[str, MaterialStream]) -> Dict[str, schemas.StreamState]:
    return {sid: _stream_state(s) for sid, s in tears.items()}


class SimulationService:
    """Converts between the wire models and the flowsheet engine."""

    def __init__(self, settings: Optional[SolverSettings] = None) -> None:
        self.settings = settings or load_settings()

    def default_config(self) -> schemas.RunConfig:
        return schemas.RunConfig(
            method=self.settings.default_method,
            tolerance=self.settings.default_tolerance,
            max_iterations=self.settings.default_max_iterations,
        )

    def simulate(
        self,
        request: schemas.SolveRequest,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> schemas.SimulationResult:
        """Solve one flowsheet.  Raises StructuralError for unsolvable input."""
        solver = self.prepare(request)
        return self.run(solver, progress=progress, cancel=cancel)

    def prepare(self, request: schemas.SolveRequest) -> FlowsheetSolver:
        """Validate and build the solver without running it."""
        config = request.config if "config" in request.model_fields_set else self.default_config()
        return FlowsheetSolver.from_payload(request.flowsheet, config, self.settings)

    def run(
        self,
        solver: FlowsheetSolver,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> schemas.SimulationResult:
        outcome = solver.run(progress=progress, cancel=cancel)
        return self._to_result(solver.flowsheet.name, solver, outcome)

    def validate(self, payload: schemas.FlowsheetPayload) -> schemas.ValidationResult:
        report = validate_flowsheet(payload, self.settings)
        return schemas.ValidationResult(
            valid=report.valid,
            issues=[_issue_result(i) for i in report.issues],
            tear_streams=report.plan.tear_streams if report.plan else [],
            order=report.plan.order if report.plan else [],
        )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _to_result(self, name: str, solver: FlowsheetSolver, outcome: SolverOutcome) -> schemas.SimulationResult:
        fs = solver.flowsheet

        units: List[schemas.UnitResult] = []
        for uid in fs.order:
            result = schemas.UnitResult(id=uid, type=fs.unit_types[uid])
            unit_outcome = outcome.unit_outcomes.get(uid)
            if uid == outcome.failed_unit:
                result.status = "failed"
            elif unit_outcome is not None:
                result.status = "ok"
                result.diagnostics = dict(unit_outcome.diagnostics)
                result.warnings = list(unit_outcome.warnings)
            units.append(result)

        mass_balance = None
        if outcome.mass_balance is not None:
            mb = outcome.mass_balance
            mass_balance = schemas.MassBalanceResult(
                feed_kg_h=mb.feed,
                stoichiometric_kg_h=mb.stoichiometric,
                product_kg_h=mb.product,
                relative_error=mb.relative_error,
            )

        error = None
        if outcome.error is not None:
            exc = outcome.error
            if isinstance(exc, UnitError):
                kind = exc.kind
                message = exc.message
            elif isinstance(exc, ConvergenceFailure):
                kind, message = "max_iterations_exceeded", str(exc)
            elif isinstance(exc, CancelledError):
                kind, message = "cancelled", str(exc)
            else:
                kind, message = "error", str(exc)
            error = schemas.ErrorDetail(
                kind=kind,
                message=message,
                unit_id=outcome.failed_unit,
                iteration=outcome.iterations,
                stopped_at=outcome.stopped_at,
                residual=outcome.residual,
                tear_streams=_snapshot(outcome.tear_snapshot),
            )
            logger.info("Flowsheet '{}' finished with status {}", name, outcome.status.value)

        return schemas.SimulationResult(
            flowsheet_name=name,
            status=outcome.status.value,
            method=outcome.method,
            iterations=outcome.iterations,
            residual=outcome.residual,
            tear_streams=outcome.tear_streams,
            order=outcome.order,
            streams=[_stream_result(sid, s) for sid, s in sorted(outcome.streams.items())],
            units=units,
            history=[
                schemas.ConvergencePointResult(
                    iteration=p.iteration,
                    residual=p.residual,
                    tear_streams=_snapshot(p.tear_snapshot),
                )
                for p in outcome.history
            ],
            mass_balance=mass_balance,
            warnings=outcome.warnings,
            error=error,
        )
