"""
Multi-species material stream model.

A MaterialStream carries three bulk phases (fibre, water, dissolved solids),
any number of tracked species, and temperature / pressure.  Everything else
(consistency, enthalpy, total mass) is derived on access so it can never drift
out of sync with the flows.

Units: kg/h for flows, °C for temperature, kPa (abs) for pressure,
kJ/h for enthalpy (referenced to 0 °C).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

# Specific heat capacities, kJ/(kg·K)
CP_FIBER = 1.34
CP_WATER = 4.186
CP_DISSOLVED_SOLIDS = 1.80
CP_SPECIES_DEFAULT = 2.00

SPECIES_CP: Dict[str, float] = {
    "NaOH": 2.0,
    "Na2S": 1.9,
    "ClO2": 0.9,
    "H2O2": 2.6,
    "O2": 0.92,
}

AMBIENT_TEMPERATURE_C = 25.0
ATMOSPHERIC_PRESSURE_KPA = 101.325


class InvalidStreamError(ValueError):
    """Raised when a stream would violate its non-negativity invariants."""


def _check_flow(name: str, value: float) -> float:
    value = float(value)
    if not math.isfinite(value):
        raise InvalidStreamError(f"{name} flow must be finite, got {value}")
    if value < 0.0:
        raise InvalidStreamError(f"{name} flow must be >= 0, got {value}")
    return value


@dataclass
class MaterialStream:
    """Fibre / water / dissolved-solids stream with tracked species."""

    fiber: float = 0.0  # kg/h, primary phase
    water: float = 0.0  # kg/h, carrier phase
    dissolved_solids: float = 0.0  # kg/h
    species: Dict[str, float] = field(default_factory=dict)  # kg/h
    temperature: float = AMBIENT_TEMPERATURE_C  # °C
    pressure: float = ATMOSPHERIC_PRESSURE_KPA  # kPa
    # Intensive quality indicators (kappa number, brightness ...)
    attributes: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.fiber = _check_flow("fiber", self.fiber)
        self.water = _check_flow("water", self.water)
        self.dissolved_solids = _check_flow("dissolved_solids", self.dissolved_solids)
        self.species = {str(k): _check_flow(f"species '{k}'", v) for k, v in self.species.items()}
        self.temperature = float(self.temperature)
        self.pressure = float(self.pressure)
        if not math.isfinite(self.temperature) or not math.isfinite(self.pressure):
            raise InvalidStreamError("temperature and pressure must be finite")
        if self.pressure < 0.0:
            raise InvalidStreamError(f"pressure must be >= 0, got {self.pressure}")
        self.attributes = {str(k): float(v) for k, v in self.attributes.items()}

    # ------------------------------------------------------------------
    # Derived properties
    # ------------------------------------------------------------------

    @property
    def consistency(self) -> float:
        """Fibre mass fraction of the fibre + water suspension."""
        total = self.fiber + self.water
        return self.fiber / total if total > 0 else 0.0

    @property
    def species_total(self) -> float:
        return sum(self.species.values())

    @property
    def total_mass(self) -> float:
        return self.fiber + self.water + self.dissolved_solids + self.species_total

    @property
    def heat_capacity_flow(self) -> float:
        """Total heat capacity flow, kJ/(h·K)."""
        c = (
            self.fiber * CP_FIBER
            + self.water * CP_WATER
            + self.dissolved_solids * CP_DISSOLVED_SOLIDS
        )
        for name, flow in self.species.items():
            c += flow * SPECIES_CP.get(name, CP_SPECIES_DEFAULT)
        return c

    @property
    def enthalpy(self) -> float:
        """Sensible enthalpy flow relative to 0 °C, kJ/h."""
        return self.heat_capacity_flow * self.temperature

    @property
    def is_empty(self) -> bool:
        return self.total_mass <= 0.0

    # ------------------------------------------------------------------
    # Species
    # ------------------------------------------------------------------

    def add_species(self, name: str, flow: float) -> None:
        flow = float(flow)
        current = self.species.get(name, 0.0)
        self.species[name] = _check_flow(f"species '{name}'", current + flow)

    def get_species_flow(self, name: str) -> float:
        return self.species.get(name, 0.0)

    # ------------------------------------------------------------------
    # Transformations (all return new streams)
    # ------------------------------------------------------------------

    def copy(self) -> "MaterialStream":
        return MaterialStream(
            fiber=self.fiber,
            water=self.water,
            dissolved_solids=self.dissolved_solids,
            species=dict(self.species),
            temperature=self.temperature,
            pressure=self.pressure,
            attributes=dict(self.attributes),
        )

    def scale(self, factor: float) -> "MaterialStream":
        """Multiply every extensive flow by ``factor``; intensive state is kept."""
        factor = float(factor)
        if factor < 0.0 or not math.isfinite(factor):
            raise InvalidStreamError(f"scale factor must be a finite value >= 0, got {factor}")
        return MaterialStream(
            fiber=self.fiber * factor,
            water=self.water * factor,
            dissolved_solids=self.dissolved_solids * factor,
            species={k: v * factor for k, v in self.species.items()},
            temperature=self.temperature,
            pressure=self.pressure,
            attributes=dict(self.attributes),
        )

    def merge(self, other: "MaterialStream") -> "MaterialStream":
        return merge_all([self, other])

    def with_updates(self, **changes: Any) -> "MaterialStream":
        data = {
            "fiber": self.fiber,
            "water": self.water,
            "dissolved_solids": self.dissolved_solids,
            "species": dict(self.species),
            "temperature": self.temperature,
            "pressure": self.pressure,
            "attributes": dict(self.attributes),
        }
        data.update(changes)
        return MaterialStream(**data)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fiber": self.fiber,
            "water": self.water,
            "dissolved_solids": self.dissolved_solids,
            "species": dict(self.species),
            "temperature": self.temperature,
            "pressure": self.pressure,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MaterialStream":
        return cls(
            fiber=data.get("fiber", 0.0),
            water=data.get("water", 0.0),
            dissolved_solids=data.get("dissolved_solids", 0.0),
            species=dict(data.get("species") or {}),
            temperature=data.get("temperature", AMBIENT_TEMPERATURE_C),
            pressure=data.get("pressure", ATMOSPHERIC_PRESSURE_KPA),
            attributes=dict(data.get("attributes") or {}),
        )


def merge_all(streams: Sequence[MaterialStream]) -> MaterialStream:
    """Componentwise sum of ``streams``.

    Temperature follows from an enthalpy balance, pressure is the lowest
    inlet pressure and attributes are fibre-weighted.
    """
    if not streams:
        raise InvalidStreamError("cannot merge an empty list of streams")

    species: Dict[str, float] = {}
    for s in streams:
        for name, flow in s.species.items():
            species[name] = species.get(name, 0.0) + flow

    heat_cap = sum(s.heat_capacity_flow for s in streams)
    if heat_cap > 0:
        temperature = sum(s.heat_capacity_flow * s.temperature for s in streams) / heat_cap
    else:
        temperature = streams[0].temperature

    return MaterialStream(
        fiber=sum(s.fiber for s in streams),
        water=sum(s.water for s in streams),
        dissolved_solids=sum(s.dissolved_solids for s in streams),
        species=species,
        temperature=temperature,
        pressure=min(s.pressure for s in streams),
        attributes=_blend_attributes(streams),
    )


def _blend_attributes(streams: Sequence[MaterialStream]) -> Dict[str, float]:
    names: List[str] = []
    for s in streams:
        for name in s.attributes:
            if name not in names:
                names.append(name)

    blended: Dict[str, float] = {}
    for name in names:
        carriers = [s for s in streams if name in s.attributes]
        weight = sum(s.fiber for s in carriers)
        if weight > 0:
            blended[name] = sum(s.attributes[name] * s.fiber for s in carriers) / weight
        else:
            blended[name] = carriers[0].attributes[name]
    return blended


# ---------------------------------------------------------------------------
# Vector view used by the convergence methods
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VectorLayout:
    """Fixed element order for converting streams to numeric vectors.

    [fiber, water, dissolved_solids, *species, temperature, pressure, *attributes]
    """

    species: Tuple[str, ...] = ()
    attributes: Tuple[str, ...] = ()

    N_BULK = 3

    @classmethod
    def covering(cls, streams: Iterable[MaterialStream]) -> "VectorLayout":
        species: set = set()
        attributes: set = set()
        for s in streams:
            species.update(s.species)
            attributes.update(s.attributes)
        return cls(species=tuple(sorted(species)), attributes=tuple(sorted(attributes)))

    @property
    def size(self) -> int:
        return self.N_BULK + len(self.species) + 2 + len(self.attributes)

    @property
    def n_flows(self) -> int:
        return self.N_BULK + len(self.species)

    def to_vector(self, stream: MaterialStream) -> List[float]:
        vec = [stream.fiber, stream.water, stream.dissolved_solids]
        vec.extend(stream.get_species_flow(name) for name in self.species)
        vec.append(stream.temperature)
        vec.append(stream.pressure)
        vec.extend(stream.attributes.get(name, 0.0) for name in self.attributes)
        return vec

    def from_vector(
        self, vec: Sequence[float], template: Optional[MaterialStream] = None
    ) -> MaterialStream:
        """Rebuild a stream; flows and pressure are clipped at zero."""
        if len(vec) != self.size:
            raise ValueError(f"vector has {len(vec)} elements, layout expects {self.size}")
        n = self.n_flows
        flows = [max(float(v), 0.0) for v in vec[:n]]
        species = {name: flows[self.N_BULK + i] for i, name in enumerate(self.species)}
        if template is not None:
            # Keep species the template tracks even if they are outside the layout
            for name, flow in template.species.items():
                species.setdefault(name, flow)
        attributes = {name: float(vec[n + 2 + i]) for i, name in enumerate(self.attributes)}
        return MaterialStream(
            fiber=flows[0],
            water=flows[1],
            dissolved_solids=flows[2],
            species=species,
            temperature=float(vec[n]),
            pressure=max(float(vec[n + 1]), 0.0),
            attributes=attributes,
        )


def _first_number(props: Mapping[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        value = props.get(key)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            raise InvalidStreamError(f"'{key}' must be numeric, got {value!r}")
    return None


def stream_from_properties(props: Mapping[str, Any]) -> MaterialStream:
    """Build a feed stream from a flowsheet stream's ``properties`` dict.

    Phases are given either directly (``fiber_kg_h``, ``water_kg_h``) or as
    a total suspension flow plus consistency (``flow_rate`` + ``consistency``).
    """
    if not props:
        raise InvalidStreamError("feed stream has no properties")

    fiber = _first_number(props, "fiber_kg_h", "fiber")
    water = _first_number(props, "water_kg_h", "water")
    total = _first_number(props, "flow_rate", "mass_flow_kg_per_h")
    consistency = _first_number(props, "consistency")

    if fiber is None and water is None:
        if total is None:
            raise InvalidStreamError("feed stream needs 'fiber_kg_h'/'water_kg_h' or 'flow_rate'")
        c = consistency if consistency is not None else 0.0
        if not 0.0 <= c <= 1.0:
            raise InvalidStreamError(f"consistency must lie in [0, 1], got {c}")
        fiber, water = total * c, total * (1.0 - c)

    attributes = dict(props.get("attributes") or {})
    kappa = _first_number(props, "kappa")
    if kappa is not None:
        attributes["kappa"] = kappa

    temperature = _first_number(props, "temperature_c", "temperature")
    pressure = _first_number(props, "pressure_kpa", "pressure")

    return MaterialStream(
        fiber=fiber or 0.0,
        water=water or 0.0,
        dissolved_solids=_first_number(props, "dissolved_solids_kg_h", "dissolved_solids") or 0.0,
        species=dict(props.get("species") or {}),
        temperature=AMBIENT_TEMPERATURE_C if temperature is None else temperature,
        pressure=ATMOSPHERIC_PRESSURE_KPA if pressure is None else pressure,
        attributes=attributes,
    )
