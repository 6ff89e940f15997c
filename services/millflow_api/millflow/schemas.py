from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class UnitSpec(BaseModel):
    id: str
    type: str
    name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class StreamSpec(BaseModel):
    """A directed connection source unit/port -> target unit/port.

    ``source`` is None for feed streams, ``target`` is None for products.
    Feed streams carry their state in ``properties``.
    """

    id: str
    name: Optional[str] = None
    source: Optional[str] = None
    source_port: Optional[str] = None
    target: Optional[str] = None
    target_port: Optional[str] = None
    recycle: bool = False
    properties: Dict[str, Any] = Field(default_factory=dict)


class FlowsheetPayload(BaseModel):
    name: str = Field(default="flowsheet")
    units: List[UnitSpec]
    streams: List[StreamSpec]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StreamState(BaseModel):
    fiber: float = Field(default=0.0, ge=0)
    water: float = Field(default=0.0, ge=0)
    dissolved_solids: float = Field(default=0.0, ge=0)
    species: Dict[str, float] = Field(default_factory=dict)
    temperature: float = 25.0
    pressure: float = Field(default=101.325, ge=0)
    attributes: Dict[str, float] = Field(default_factory=dict)

    @field_validator("species")
    @classmethod
    def _non_negative_species(cls, value: Dict[str, float]) -> Dict[str, float]:
        for name, flow in value.items():
            if flow < 0:
                raise ValueError(f"species '{name}' flow must be >= 0")
        return value


class RunConfig(BaseModel):
    method: Literal["direct", "wegstein", "newton"] = "wegstein"
    tolerance: float = Field(default=1e-6, gt=0)
    max_iterations: int = Field(default=100, ge=1)
    initial_guesses: Dict[str, StreamState] = Field(default_factory=dict)
    wegstein_bounds: Tuple[float, float] = (-5.0, 0.5)
    newton_step: float = Field(default=1e-6, gt=0)

    @field_validator("wegstein_bounds")
    @classmethod
    def _ordered_bounds(cls, value: Tuple[float, float]) -> Tuple[float, float]:
        lo, hi = value
        if lo > hi or hi >= 1.0:
            raise ValueError("wegstein_bounds must satisfy q_min <= q_max < 1")
        return value


class SolveRequest(BaseModel):
    flowsheet: FlowsheetPayload
    config: RunConfig = Field(default_factory=RunConfig)


class StreamResult(StreamState):
    id: str
    consistency: float = 0.0
    total_mass: float = 0.0
    enthalpy_kw: float = 0.0


class UnitResult(BaseModel):
    id: str
    type: str
    status: str = "not-run"
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


class IssueResult(BaseModel):
    code: str
    message: str
    unit_id: Optional[str] = None
    stream_id: Optional[str] = None
    severity: str = "error"


class ConvergencePointResult(BaseModel):
    iteration: int
    residual: float
    tear_streams: Dict[str, StreamState] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    kind: str
    message: str
    unit_id: Optional[str] = None
    # Last committed iteration
    iteration: int = 0
    # Iteration that was running (or about to start) when the run stopped
    stopped_at: int = 0
    residual: Optional[float] = None
    tear_streams: Dict[str, StreamState] = Field(default_factory=dict)
    issues: List[IssueResult] = Field(default_factory=list)


class MassBalanceResult(BaseModel):
    feed_kg_h: float
    stoichiometric_kg_h: float
    product_kg_h: float
    relative_error: float


class SimulationResult(BaseModel):
    flowsheet_name: str
    status: str
    method: str
    iterations: int = 0
    residual: Optional[float] = None
    tear_streams: List[str] = Field(default_factory=list)
    order: List[str] = Field(default_factory=list)
    streams: List[StreamResult] = Field(default_factory=list)
    units: List[UnitResult] = Field(default_factory=list)
    history: List[ConvergencePointResult] = Field(default_factory=list)
    mass_balance: Optional[MassBalanceResult] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[ErrorDetail] = None


class ValidationResult(BaseModel):
    valid: bool
    issues: List[IssueResult] = Field(default_factory=list)
    tear_streams: List[str] = Field(default_factory=list)
    order: List[str] = Field(default_factory=list)


class ProgressEvent(BaseModel):
    event: str = "progress"
    iteration: int
    residual: float


class ResultEvent(BaseModel):
    event: str = "result"
    result: SimulationResult
