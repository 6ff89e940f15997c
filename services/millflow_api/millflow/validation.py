"""
Pre-solve structural validation.

Checks everything that can be decided without running a unit: sizes, ids,
unit types and parameters, port cardinality, feed data, and finally that the
topology resolves to a tear set plus evaluation order.  The editor calls this
directly for interactive error flags; the solver calls it before every run.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from loguru import logger

from . import schemas
from .config import SolverSettings
from .errors import Issue, StructuralError
from .registry import lookup
from .streams import InvalidStreamError, stream_from_properties
from .topology import FlowsheetGraph, TopologyPlan, resolve


@dataclass
class ValidationReport:
    issues: List[Issue] = field(default_factory=list)
    plan: Optional[TopologyPlan] = None
    graph: Optional[FlowsheetGraph] = None

    @property
    def errors(self) -> List[Issue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> List[Issue]:
        return [i for i in self.issues if i.severity != "error"]

    @property
    def valid(self) -> bool:
        return not self.errors and self.plan is not None


def validate_flowsheet(
    payload: schemas.FlowsheetPayload,
    settings: Optional[SolverSettings] = None,
) -> ValidationReport:
    settings = settings or SolverSettings()
    report = ValidationReport()
    issues = report.issues

    # 1. Size limits: reject before doing any graph work
    if len(payload.units) > settings.max_units:
        issues.append(Issue(
            "oversized",
            f"flowsheet has {len(payload.units)} units, limit is {settings.max_units}",
        ))
    if len(payload.streams) > settings.max_streams:
        issues.append(Issue(
            "oversized",
            f"flowsheet has {len(payload.streams)} streams, limit is {settings.max_streams}",
        ))
    if report.errors:
        return report

    # 2. Ids, types, parameters
    for uid, n in Counter(u.id for u in payload.units).items():
        if n > 1:
            issues.append(Issue("duplicate_id", f"unit id declared {n} times", unit_id=uid))
    for sid, n in Counter(s.id for s in payload.streams).items():
        if n > 1:
            issues.append(Issue("duplicate_id", f"stream id declared {n} times", stream_id=sid))

    for unit in payload.units:
        cls = lookup(unit.type)
        if cls is None:
            issues.append(Issue("unknown_unit_type", f"unknown unit type '{unit.type}'", unit_id=unit.id))
            continue
        for problem in cls.check_parameters(unit.parameters):
            issues.append(replace(problem, unit_id=unit.id))

    # 3. Graph and ports
    graph = FlowsheetGraph.from_payload(payload)
    report.graph = graph
    issues.extend(graph.issues)
    issues.extend(_check_ports(graph))
    issues.extend(_check_feeds(payload))

    if report.errors:
        logger.info("Flowsheet '{}' failed validation with {} error(s)", payload.name, len(report.errors))
        return report

    # 4. Topology
    try:
        report.plan = resolve(graph)
    except StructuralError as exc:
        issues.extend(exc.issues)
    return report


def ensure_valid(
    payload: schemas.FlowsheetPayload,
    settings: Optional[SolverSettings] = None,
) -> ValidationReport:
    """Validate and raise StructuralError if the flowsheet cannot be solved."""
    report = validate_flowsheet(payload, settings)
    if not report.valid:
        raise StructuralError(report.errors or [Issue("unresolved", "topology could not be resolved")])
    return report


def _check_ports(graph: FlowsheetGraph) -> List[Issue]:
    issues: List[Issue] = []
    inbound: Dict[Tuple[int, str], List[str]] = defaultdict(list)
    outbound: Dict[Tuple[int, str], List[str]] = defaultdict(list)

    for e in graph.edges:
        if e.source is None and e.target is None:
            issues.append(Issue("unconnected_stream", "stream has neither source nor target", stream_id=e.stream_id))
        if e.target is not None:
            inbound[(e.target, e.target_port)].append(e.stream_id)
        if e.source is not None:
            outbound[(e.source, e.source_port)].append(e.stream_id)

    for (unit, port), sids in inbound.items():
        if len(sids) > 1:
            issues.append(Issue(
                "inlet_cardinality",
                f"inlet port '{port}' is fed by {len(sids)} streams {sids}; use a mixer",
                unit_id=graph.unit_ids[unit],
            ))
    for (unit, port), sids in outbound.items():
        if len(sids) > 1:
            issues.append(Issue(
                "implicit_fan_out",
                f"outlet port '{port}' feeds {len(sids)} streams {sids}; use a splitter",
                unit_id=graph.unit_ids[unit],
            ))

    for u, (uid, utype) in enumerate(zip(graph.unit_ids, graph.unit_types)):
        cls = lookup(utype)
        if cls is None:
            continue
        params = graph.unit_params[u]
        connected_in = {port for (unit, port) in inbound if unit == u}
        connected_out = {port for (unit, port) in outbound if unit == u}

        for port in sorted(connected_in):
            if not cls.accepts_inlet(port, params):
                issues.append(Issue("unknown_port", f"'{utype}' has no inlet port '{port}'", unit_id=uid))
        for port in cls.required_inlets(params):
            if port not in connected_in:
                issues.append(Issue("missing_inlet", f"inlet port '{port}' has no supplying stream", unit_id=uid))
        if cls.variable_inlets and not connected_in:
            issues.append(Issue("missing_inlet", "unit has no inlet streams", unit_id=uid))

        declared_out = cls.declared_outlets(params)
        for port in sorted(connected_out):
            if port not in declared_out:
                issues.append(Issue("unknown_port", f"'{utype}' has no outlet port '{port}'", unit_id=uid))
        for port in declared_out:
            if port not in connected_out:
                issues.append(Issue(
                    "unconnected_outlet",
                    f"outlet port '{port}' is not connected; its flow leaves the balance",
                    unit_id=uid,
                    severity="warning",
                ))
    return issues


def _check_feeds(payload: schemas.FlowsheetPayload) -> List[Issue]:
    issues: List[Issue] = []
    for spec in payload.streams:
        if spec.source is not None:
            continue
        try:
            stream_from_properties(spec.properties)
        except InvalidStreamError as exc:
            issues.append(Issue("invalid_feed", str(exc), stream_id=spec.id))
    return issues
