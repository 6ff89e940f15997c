"""
Tests for pre-solve structural validation.
"""

import pytest

from millflow import schemas
from millflow.config import SolverSettings
from millflow.errors import StructuralError
from millflow.flowsheet_solver import FlowsheetSolver
from millflow.unit_operations import MixerOp, SplitterOp
from millflow.validation import ensure_valid, validate_flowsheet


def _make_payload(name, units, streams):
    return schemas.FlowsheetPayload(
        name=name,
        units=[schemas.UnitSpec(**u) for u in units],
        streams=[schemas.StreamSpec(**s) for s in streams],
    )


FEED = {"fiber_kg_h": 100.0, "water_kg_h": 900.0, "temperature_c": 50.0}


def _loop_payload(fractions=(0.1, 0.9)):
    return _make_payload(
        "loop",
        units=[
            {"id": "mix", "type": "mixer"},
            {"id": "split", "type": "splitter", "parameters": {"fractions": list(fractions)}},
        ],
        streams=[
            {"id": "feed", "target": "mix", "properties": FEED},
            {"id": "mix-out", "source": "mix", "target": "split"},
            {"id": "product", "source": "split", "source_port": "out-1"},
            {"id": "recycle", "source": "split", "source_port": "out-2", "target": "mix", "recycle": True},
        ],
    )


def _codes(report):
    return [i.code for i in report.issues]


class TestValidFlowsheet:
    def test_report(self):
        report = validate_flowsheet(_loop_payload())
        assert report.valid
        assert report.issues == []
        assert report.plan.tear_streams == ["recycle"]
        assert report.plan.order == ["mix", "split"]

    def test_unconnected_outlet_is_only_a_warning(self):
        payload = _make_payload(
            "open-outlet",
            units=[{"id": "split", "type": "splitter", "parameters": {"fractions": [0.5, 0.5]}}],
            streams=[
                {"id": "feed", "target": "split", "properties": FEED},
                {"id": "product", "source": "split", "source_port": "out-1"},
            ],
        )
        report = validate_flowsheet(payload)
        assert report.valid
        assert _codes(report) == ["unconnected_outlet"]
        assert report.warnings[0].severity == "warning"


class TestSplitFractions:
    def test_fractions_summing_to_point_nine(self):
        report = validate_flowsheet(_loop_payload(fractions=(0.4, 0.5)))
        assert not report.valid
        assert "split_fractions" in _codes(report)

    def test_rejected_before_any_unit_executes(self, monkeypatch):
        calls = []

        def spy(self, inlets):
            calls.append(self.id)
            raise AssertionError("unit executed")

        monkeypatch.setattr(MixerOp, "calculate", spy)
        monkeypatch.setattr(SplitterOp, "calculate", spy)

        with pytest.raises(StructuralError) as exc:
            FlowsheetSolver.from_payload(_loop_payload(fractions=(0.4, 0.5))).run()
        assert any(i.code == "split_fractions" for i in exc.value.issues)
        assert calls == []


class TestStructuralErrors:
    def test_duplicate_ids(self):
        payload = _make_payload(
            "dupes",
            units=[
                {"id": "hx", "type": "heater", "parameters": {"outlet_temperature_c": 50.0}},
                {"id": "hx", "type": "heater", "parameters": {"outlet_temperature_c": 60.0}},
            ],
            streams=[
                {"id": "feed", "target": "hx", "properties": FEED},
                {"id": "feed", "source": "hx"},
            ],
        )
        report = validate_flowsheet(payload)
        assert _codes(report).count("duplicate_id") == 2
        assert not report.valid

    def test_unknown_unit_type(self):
        payload = _make_payload(
            "unknown",
            units=[{"id": "c", "type": "centrifuge"}],
            streams=[{"id": "feed", "target": "c", "properties": FEED}],
        )
        report = validate_flowsheet(payload)
        assert "unknown_unit_type" in _codes(report)

    def test_invalid_parameter(self):
        payload = _make_payload(
            "no-spec",
            units=[{"id": "hx", "type": "heater"}],
            streams=[
                {"id": "feed", "target": "hx", "properties": FEED},
                {"id": "product", "source": "hx"},
            ],
        )
        report = validate_flowsheet(payload)
        assert _codes(report) == ["invalid_parameter"]
        assert report.issues[0].unit_id == "hx"

    def test_parameter_issue_codes_come_from_the_unit(self):
        payload = _make_payload(
            "codes",
            units=[
                {"id": "split", "type": "splitter", "parameters": {"fractions": "half"}},
                {"id": "wash", "type": "washer", "parameters": {"fiber_loss": 0.5}},
            ],
            streams=[
                {"id": "feed", "target": "split", "properties": FEED},
                {"id": "s-w", "source": "split", "target": "wash"},
                {"id": "pulp", "source": "wash", "source_port": "pulp"},
                {"id": "filtrate", "source": "wash", "source_port": "filtrate"},
            ],
        )
        report = validate_flowsheet(payload)
        assert [(i.code, i.unit_id) for i in report.issues[:2]] == [
            ("split_fractions", "split"),
            ("invalid_parameter", "wash"),
        ]

    def test_inlet_cardinality(self):
        payload = _make_payload(
            "two-into-one",
            units=[{"id": "hx", "type": "heater", "parameters": {"outlet_temperature_c": 50.0}}],
            streams=[
                {"id": "f1", "target": "hx", "properties": FEED},
                {"id": "f2", "target": "hx", "properties": FEED},
                {"id": "product", "source": "hx"},
            ],
        )
        assert "inlet_cardinality" in _codes(validate_flowsheet(payload))

    def test_implicit_fan_out(self):
        payload = _make_payload(
            "fan-out",
            units=[{"id": "hx", "type": "heater", "parameters": {"outlet_temperature_c": 50.0}}],
            streams=[
                {"id": "feed", "target": "hx", "properties": FEED},
                {"id": "p1", "source": "hx"},
                {"id": "p2", "source": "hx"},
            ],
        )
        assert "implicit_fan_out" in _codes(validate_flowsheet(payload))

    def test_unknown_port(self):
        payload = _make_payload(
            "bad-port",
            units=[{"id": "hx", "type": "heater", "parameters": {"outlet_temperature_c": 50.0}}],
            streams=[
                {"id": "feed", "target": "hx", "target_port": "steam", "properties": FEED},
                {"id": "product", "source": "hx"},
            ],
        )
        codes = _codes(validate_flowsheet(payload))
        assert "unknown_port" in codes
        assert "missing_inlet" in codes

    def test_missing_required_inlet(self):
        payload = _make_payload(
            "no-stock",
            units=[{"id": "fan", "type": "fanPump"}],
            streams=[
                {"id": "ww", "target": "fan", "target_port": "whitewater", "properties": {"water_kg_h": 1000.0}},
                {"id": "product", "source": "fan"},
            ],
        )
        report = validate_flowsheet(payload)
        assert _codes(report) == ["missing_inlet"]

    def test_dangling_endpoint(self):
        payload = _make_payload(
            "dangling",
            units=[{"id": "hx", "type": "heater", "parameters": {"outlet_temperature_c": 50.0}}],
            streams=[
                {"id": "feed", "target": "hx", "properties": FEED},
                {"id": "product", "source": "hx", "target": "nowhere"},
            ],
        )
        assert "dangling_endpoint" in _codes(validate_flowsheet(payload))

    def test_feed_without_data(self):
        payload = _make_payload(
            "empty-feed",
            units=[{"id": "hx", "type": "heater", "parameters": {"outlet_temperature_c": 50.0}}],
            streams=[
                {"id": "feed", "target": "hx"},
                {"id": "product", "source": "hx"},
            ],
        )
        report = validate_flowsheet(payload)
        assert _codes(report) == ["invalid_feed"]
        assert report.issues[0].stream_id == "feed"

    def test_oversized(self):
        report = validate_flowsheet(_loop_payload(), SolverSettings(max_units=1))
        assert _codes(report) == ["oversized"]

    def test_ensure_valid_collects_every_issue(self):
        payload = _make_payload(
            "many",
            units=[
                {"id": "hx", "type": "heater"},
                {"id": "c", "type": "centrifuge"},
            ],
            streams=[
                {"id": "feed", "target": "hx", "properties": FEED},
                {"id": "product", "source": "hx"},
            ],
        )
        with pytest.raises(StructuralError) as exc:
            ensure_valid(payload)
        assert {i.code for i in exc.value.issues} == {"invalid_parameter", "unknown_unit_type"}
