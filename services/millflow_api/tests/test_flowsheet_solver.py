"""
Tests for the flowsheet solver.

Runs whole flowsheets through the sequential-modular loop and checks the
run state machine, the conservation report and the convergence methods.
"""

from types import SimpleNamespace

import numpy as np
import pytest

from millflow import schemas
from millflow.config import SolverSettings
from millflow.digester import DigesterOp
from millflow.errors import CancelledError, ConvergenceFailure, InvalidInputError, StructuralError
from millflow.flowsheet_solver import CancelToken, FlowsheetSolver, SolverStatus


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_payload(name, units, streams):
    return schemas.FlowsheetPayload(
        name=name,
        units=[schemas.UnitSpec(**u) for u in units],
        streams=[schemas.StreamSpec(**s) for s in streams],
    )


FEED = {"fiber_kg_h": 100.0, "water_kg_h": 900.0, "temperature_c": 50.0}


def _recycle_loop(recycle_fraction=0.9):
    """feed → mixer → splitter → product, with ``recycle_fraction`` sent back."""
    return _make_payload(
        "recycle-loop",
        units=[
            {"id": "mix", "type": "mixer"},
            {"id": "split", "type": "splitter",
             "parameters": {"fractions": [1.0 - recycle_fraction, recycle_fraction]}},
        ],
        streams=[
            {"id": "feed", "target": "mix", "properties": FEED},
            {"id": "mix-out", "source": "mix", "target": "split"},
            {"id": "product", "source": "split", "source_port": "out-1"},
            {"id": "recycle", "source": "split", "source_port": "out-2", "target": "mix", "recycle": True},
        ],
    )


def _solve(payload, **config):
    return FlowsheetSolver.from_payload(payload, schemas.RunConfig(**config)).run()


# ---------------------------------------------------------------------------
# Once-through flowsheets
# ---------------------------------------------------------------------------


class TestOnceThrough:
    """feed → heater → product"""

    def test_single_sweep(self):
        payload = _make_payload(
            "heater-line",
            units=[{"id": "hx", "type": "heater", "parameters": {"outlet_temperature_c": 80.0}}],
            streams=[
                {"id": "feed", "target": "hx", "properties": FEED},
                {"id": "product", "source": "hx"},
            ],
        )
        outcome = _solve(payload)
        assert outcome.status is SolverStatus.CONVERGED
        assert outcome.converged
        assert outcome.iterations == 1
        assert outcome.residual == 0.0
        assert outcome.tear_streams == []
        assert outcome.streams["product"].temperature == 80.0
        assert outcome.unit_outcomes["hx"].diagnostics["duty_kw"] > 0

    def test_fibre_line(self):
        """chips → digester → washer → pulp / filtrate"""
        payload = _make_payload(
            "fibre-line",
            units=[
                {"id": "dig", "type": "digester", "parameters": {"h_factor": 1500.0}},
                {"id": "wash", "type": "washer"},
            ],
            streams=[
                {"id": "chips", "target": "dig",
                 "properties": {"fiber_kg_h": 1000.0, "water_kg_h": 6000.0, "species": {"NaOH": 10.0}}},
                {"id": "cooked", "source": "dig", "target": "wash"},
                {"id": "pulp", "source": "wash", "source_port": "pulp"},
                {"id": "filtrate", "source": "wash", "source_port": "filtrate"},
            ],
        )
        outcome = _solve(payload)
        assert outcome.converged
        mb = outcome.mass_balance
        assert mb.stoichiometric == pytest.approx(180.0)
        assert mb.product == pytest.approx(mb.feed + mb.stoichiometric)
        assert mb.relative_error < 1e-9
        assert outcome.streams["pulp"].attributes["kappa"] < 120.0
        for unit in outcome.unit_outcomes.values():
            assert unit.diagnostics["balance_error"] < 1e-9


# ---------------------------------------------------------------------------
# Recycle loops
# ---------------------------------------------------------------------------


class TestRecycleLoop:
    def test_conservation(self):
        outcome = _solve(_recycle_loop(), method="wegstein", tolerance=1e-9)
        assert outcome.converged
        assert outcome.tear_streams == ["recycle"]
        assert outcome.streams["product"].total_mass == pytest.approx(1000.0, rel=1e-6)
        assert outcome.streams["recycle"].total_mass == pytest.approx(9000.0, rel=1e-6)
        assert outcome.mass_balance.relative_error < 1e-6
        for unit in outcome.unit_outcomes.values():
            assert unit.diagnostics["balance_error"] < 1e-9

    def test_history_is_recorded_per_iteration(self):
        outcome = _solve(_recycle_loop(), method="direct", max_iterations=5)
        assert [p.iteration for p in outcome.history] == [1, 2, 3, 4, 5]
        assert all(set(p.tear_snapshot) == {"recycle"} for p in outcome.history)
        with pytest.raises(TypeError):
            outcome.history[0].tear_snapshot["recycle"] = None

    def test_idempotence(self):
        first = _solve(_recycle_loop(), tolerance=1e-10)
        assert first.converged
        guess = schemas.StreamState(**first.streams["recycle"].to_dict())
        second = _solve(_recycle_loop(), tolerance=1e-6, initial_guesses={"recycle": guess})
        assert second.converged
        assert second.iterations == 1

    def test_determinism(self):
        a = _solve(_recycle_loop(), method="wegstein", tolerance=1e-8)
        b = _solve(_recycle_loop(), method="wegstein", tolerance=1e-8)
        assert [p.residual for p in a.history] == [p.residual for p in b.history]
        assert {k: s.to_dict() for k, s in a.streams.items()} == {k: s.to_dict() for k, s in b.streams.items()}

    def test_wegstein_beats_direct_substitution(self):
        direct = _solve(_recycle_loop(), method="direct", tolerance=1e-6, max_iterations=500)
        wegstein = _solve(_recycle_loop(), method="wegstein", tolerance=1e-6, max_iterations=500)
        assert direct.converged and wegstein.converged
        assert wegstein.iterations < 20
        assert direct.iterations > 2 * wegstein.iterations
        assert wegstein.streams["product"].total_mass == pytest.approx(
            direct.streams["product"].total_mass, rel=1e-4
        )

    def test_newton(self):
        outcome = _solve(_recycle_loop(), method="newton", tolerance=1e-8)
        assert outcome.converged
        assert outcome.iterations <= 5
        assert outcome.streams["product"].total_mass == pytest.approx(1000.0, rel=1e-6)

    def test_untagged_recycle_is_found(self):
        payload = _recycle_loop()
        payload.streams[3].recycle = False
        outcome = _solve(payload, tolerance=1e-8)
        assert outcome.converged
        assert len(outcome.tear_streams) == 1
        assert outcome.streams["product"].total_mass == pytest.approx(1000.0, rel=1e-5)


# ---------------------------------------------------------------------------
# Terminal states
# ---------------------------------------------------------------------------


class TestTerminalStates:
    def test_max_iterations_exceeded(self):
        outcome = _solve(_recycle_loop(), method="direct", max_iterations=5)
        assert outcome.status is SolverStatus.MAX_ITERATIONS_EXCEEDED
        assert outcome.iterations == 5
        assert len(outcome.history) == 5
        assert outcome.stopped_at == 5
        assert isinstance(outcome.error, ConvergenceFailure)
        assert outcome.residual == outcome.history[-1].residual
        assert "product" in outcome.streams
        assert outcome.mass_balance is None

    def test_cancel_after_two_iterations(self):
        token = CancelToken()
        events = []

        def on_progress(event):
            events.append(event)
            if event.iteration == 2:
                token.cancel()

        solver = FlowsheetSolver.from_payload(_recycle_loop(), schemas.RunConfig(method="direct"))
        outcome = solver.run(progress=on_progress, cancel=token)
        assert outcome.status is SolverStatus.CANCELLED
        assert len(outcome.history) == 2
        assert outcome.iterations == 2
        assert [e.iteration for e in events] == [1, 2]
        assert isinstance(outcome.error, CancelledError)
        assert outcome.error.iteration == 3
        assert outcome.stopped_at == 3

    def test_cancel_before_start(self):
        token = CancelToken()
        token.cancel()
        outcome = FlowsheetSolver.from_payload(_recycle_loop()).run(cancel=token)
        assert outcome.status is SolverStatus.CANCELLED
        assert outcome.history == ()

    def test_progress_reports_every_iteration(self):
        events = []
        outcome = FlowsheetSolver.from_payload(_recycle_loop()).run(progress=events.append)
        assert [e.iteration for e in events] == list(range(1, outcome.iterations + 1))
        assert events[-1].residual == outcome.residual

    def test_unit_failure(self):
        payload = _make_payload(
            "thick-chest",
            units=[{"id": "chest", "type": "stockChest"}],
            streams=[
                {"id": "feed", "target": "chest", "properties": {"fiber_kg_h": 200.0, "water_kg_h": 800.0}},
                {"id": "product", "source": "chest"},
            ],
        )
        outcome = _solve(payload)
        assert outcome.status is SolverStatus.FAILED
        assert outcome.failed_unit == "chest"
        assert isinstance(outcome.error, InvalidInputError)
        assert outcome.history == ()
        assert outcome.iterations == 0
        assert outcome.stopped_at == 1
        # The table is left as it was before the failed iteration
        assert "product" not in outcome.streams
        assert outcome.streams["feed"].fiber == 200.0

    def test_failure_inside_loop_keeps_last_committed_iteration(self):
        """The recycle thickens the chest until it can no longer be agitated."""
        payload = _make_payload(
            "thickening-loop",
            units=[
                {"id": "mix", "type": "mixer"},
                {"id": "chest", "type": "stockChest", "parameters": {"max_consistency": 0.12}},
                {"id": "wash", "type": "washer", "parameters": {"discharge_consistency": 0.3}},
            ],
            streams=[
                {"id": "feed", "target": "mix", "properties": {"fiber_kg_h": 100.0, "water_kg_h": 900.0}},
                {"id": "m-c", "source": "mix", "target": "chest"},
                {"id": "c-w", "source": "chest", "target": "wash"},
                {"id": "thick", "source": "wash", "source_port": "pulp", "target": "mix", "recycle": True},
                {"id": "filtrate", "source": "wash", "source_port": "filtrate"},
            ],
        )
        outcome = _solve(payload, method="direct")
        assert outcome.status is SolverStatus.FAILED
        assert outcome.failed_unit == "chest"
        assert outcome.iterations == len(outcome.history) >= 1
        assert outcome.stopped_at == outcome.iterations + 1
        assert outcome.error.kind == "invalid"

    def test_iteration_limit_from_settings(self):
        with pytest.raises(StructuralError):
            FlowsheetSolver.from_payload(
                _recycle_loop(),
                schemas.RunConfig(max_iterations=50),
                SolverSettings(max_iterations_limit=10),
            )


# ---------------------------------------------------------------------------
# Paper machine short circulation
# ---------------------------------------------------------------------------


def _short_circulation():
    """thick stock → fan pump → headbox → wire; 70% of the whitewater returns to the fan pump."""
    return _make_payload(
        "short-circulation",
        units=[
            {"id": "fan", "type": "fanPump"},
            {"id": "hb", "type": "headbox"},
            {"id": "wire", "type": "wireSection", "parameters": {"retention": 0.8, "web_consistency": 0.2}},
            {"id": "silo", "type": "splitter", "parameters": {"fractions": [0.3, 0.7]}},
        ],
        streams=[
            {"id": "thick", "target": "fan", "target_port": "stock",
             "properties": {"fiber_kg_h": 12.0, "water_kg_h": 988.0}},
            {"id": "fan-hb", "source": "fan", "target": "hb"},
            {"id": "hb-wire", "source": "hb", "target": "wire"},
            {"id": "web", "source": "wire", "source_port": "web"},
            {"id": "ww", "source": "wire", "source_port": "whitewater", "target": "silo"},
            {"id": "overflow", "source": "silo", "source_port": "out-1"},
            {"id": "ww-return", "source": "silo", "source_port": "out-2",
             "target": "fan", "target_port": "whitewater"},
        ],
    )


class TestShortCirculation:
    def test_whitewater_loop_converges(self):
        outcome = _solve(_short_circulation(), method="wegstein", tolerance=1e-9)
        assert outcome.converged
        assert outcome.tear_streams == ["ww-return"]
        assert outcome.order == ["fan", "hb", "wire", "silo"]
        # Fibre: F_r = 0.7 · 0.2 · (12 + F_r); water: W_r = 0.7 · (988 + W_r - web water)
        assert outcome.streams["ww-return"].fiber == pytest.approx(0.14 * 12.0 / 0.86, rel=1e-6)
        assert outcome.streams["web"].fiber == pytest.approx(0.8 * 12.0 / 0.86, rel=1e-6)
        assert outcome.unit_outcomes["hb"].diagnostics["consistency"] == pytest.approx(0.0043562, rel=1e-3)
        assert outcome.mass_balance.relative_error < 1e-6

    def test_liquor_tear_is_seeded_without_fibre(self):
        solver = FlowsheetSolver.from_payload(_short_circulation(), schemas.RunConfig(max_iterations=1))
        outcome = solver.run()
        assert outcome.status is SolverStatus.MAX_ITERATIONS_EXCEEDED
        # First pass: thick stock plus 30% of its water as whitewater, no fibre
        consistency = outcome.unit_outcomes["hb"].diagnostics["consistency"]
        assert consistency == pytest.approx(12.0 / (12.0 + 988.0 * 1.3))

    def test_direct_substitution_agrees(self):
        wegstein = _solve(_short_circulation(), method="wegstein", tolerance=1e-9)
        direct = _solve(_short_circulation(), method="direct", tolerance=1e-9, max_iterations=200)
        assert direct.converged
        assert direct.streams["web"].total_mass == pytest.approx(wegstein.streams["web"].total_mass, rel=1e-6)


# ---------------------------------------------------------------------------
# Unit failures surface as a failed run
# ---------------------------------------------------------------------------


def _fibre_line(**digester):
    return _make_payload(
        "cook",
        units=[{"id": "dig", "type": "digester", "parameters": digester}],
        streams=[
            {"id": "chips", "target": "dig", "properties": {"fiber_kg_h": 1000.0, "water_kg_h": 4000.0}},
            {"id": "cooked", "source": "dig"},
        ],
    )


class TestUnitFailures:
    def test_integrator_failure_is_numerical(self, monkeypatch):
        monkeypatch.setattr(
            "millflow.digester.solve_ivp",
            lambda *args, **kwargs: SimpleNamespace(success=False, message="Required step size is too small"),
        )
        outcome = _solve(_fibre_line())
        assert outcome.status is SolverStatus.FAILED
        assert outcome.failed_unit == "dig"
        assert outcome.error.kind == "numerical_failure"
        assert "step size" in outcome.error.message

    def test_arithmetic_error_is_numerical(self, monkeypatch):
        def overflow(*args, **kwargs):
            raise OverflowError("math range error")

        monkeypatch.setattr("millflow.digester.depleted_kappa", overflow)
        outcome = _solve(_fibre_line(h_factor=1500.0))
        assert outcome.status is SolverStatus.FAILED
        assert outcome.failed_unit == "dig"
        assert outcome.error.kind == "numerical_failure"

    def test_lookup_error_is_invalid_input(self, monkeypatch):
        def broken(self, inlets):
            return np.array([])[-1]

        monkeypatch.setattr(DigesterOp, "calculate", broken)
        outcome = _solve(_fibre_line(h_factor=1500.0))
        assert outcome.status is SolverStatus.FAILED
        assert outcome.failed_unit == "dig"
        assert isinstance(outcome.error, InvalidInputError)
        assert "IndexError" in outcome.error.message

    def test_empty_profile_is_rejected_before_solving(self):
        with pytest.raises(StructuralError) as exc:
            FlowsheetSolver.from_payload(_fibre_line(h_factor=1500.0, profile=[]))
        assert [(i.code, i.unit_id) for i in exc.value.issues] == [("invalid_parameter", "dig")]

    def test_outlet_temperature_with_fixed_h_factor(self):
        outcome = _solve(_fibre_line(h_factor=1500.0, temperature_c=160.0))
        assert outcome.converged
        assert outcome.streams["cooked"].temperature == 160.0
