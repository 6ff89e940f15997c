"""
Unit operation models for pulp & paper flowsheets.

Every unit operation is a pure mapping from inlet MaterialStreams (keyed by
port name) and its parameter record to outlet MaterialStreams plus a
diagnostics dict.  A unit instance holds nothing but its id, display name and
a read-only view of its parameters, so one instance can be shared by any
number of concurrent runs.

Reactive units (digester, bleach stage) report the mass they add through an
explicit stoichiometric term (``UnitOutcome.mass_source``); every other unit
conserves mass exactly.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from .errors import InvalidInputError, Issue
from .streams import MaterialStream, merge_all

# kg/m³, used for volumetric estimates of dilute stock
STOCK_DENSITY = 1000.0


@dataclass
class UnitOutcome:
    """Result of one unit evaluation."""

    outlets: Dict[str, MaterialStream]
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    # kg/h created (> 0) or destroyed (< 0) by declared stoichiometry
    mass_source: float = 0.0
    warnings: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class UnitOpBase(ABC):
    """Abstract base for all unit operations."""

    inlet_ports: Tuple[str, ...] = ("in",)
    optional_inlets: Tuple[str, ...] = ()
    outlet_ports: Tuple[str, ...] = ("out",)
    # Mixer-style units accept any number of "in-N" ports
    variable_inlets: bool = False
    reactive: bool = False

    # name -> (min, max); None leaves a side open
    parameter_bounds: Dict[str, Tuple[Optional[float], Optional[float]]] = {}

    def __init__(self, id: str, name: str, params: Mapping[str, Any]) -> None:
        self.id = id
        self.name = name
        self.params = MappingProxyType(dict(params))

    @abstractmethod
    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        """
        Calculate outlet streams from inlet streams.

        Parameters
        ----------
        inlets : mapping of port name -> MaterialStream

        Returns
        -------
        UnitOutcome with outlets keyed by port name
        """

    # ------------------------------------------------------------------
    # Port declarations
    # ------------------------------------------------------------------

    @classmethod
    def required_inlets(cls, params: Mapping[str, Any]) -> Tuple[str, ...]:
        return cls.inlet_ports

    @classmethod
    def declared_outlets(cls, params: Mapping[str, Any]) -> Tuple[str, ...]:
        return cls.outlet_ports

    @classmethod
    def accepts_inlet(cls, port: str, params: Mapping[str, Any]) -> bool:
        if cls.variable_inlets:
            return port == "in" or port.startswith("in-")
        return port in cls.required_inlets(params) or port in cls.optional_inlets

    # ------------------------------------------------------------------
    # Configuration-time checks
    # ------------------------------------------------------------------

    @classmethod
    def check_parameters(cls, params: Mapping[str, Any]) -> List[Issue]:
        """Return the problems with ``params`` (empty when valid).

        Issues carry their code but no unit id; the caller attaches it.
        """
        problems: List[Issue] = []
        for key, (lo, hi) in cls.parameter_bounds.items():
            if key not in params or params[key] is None:
                continue
            try:
                value = float(params[key])
            except (TypeError, ValueError):
                message = f"parameter '{key}' must be numeric, got {params[key]!r}"
            else:
                if not math.isfinite(value):
                    message = f"parameter '{key}' must be finite"
                elif lo is not None and value < lo:
                    message = f"parameter '{key}'={value} is below the minimum {lo}"
                elif hi is not None and value > hi:
                    message = f"parameter '{key}'={value} is above the maximum {hi}"
                else:
                    continue
            problems.append(Issue("invalid_parameter", message))
        return problems

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_param(self, key: str, default=None):
        return self.params.get(key, default)

    def _float_param(self, key: str, default: Optional[float] = None) -> Optional[float]:
        raw = self.params.get(key, default)
        if raw is None:
            return None
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise InvalidInputError(self.id, f"parameter '{key}' must be numeric, got {raw!r}")
        lo, hi = self.parameter_bounds.get(key, (None, None))
        if (lo is not None and value < lo) or (hi is not None and value > hi) or not math.isfinite(value):
            raise InvalidInputError(
                self.id, f"parameter '{key}'={value} outside operating range [{lo}, {hi}]"
            )
        return value

    def _first_inlet(self, inlets: Mapping[str, MaterialStream]) -> MaterialStream:
        """Return the first (or only) inlet stream."""
        if not inlets:
            raise InvalidInputError(self.id, "no inlet streams")
        return next(iter(inlets.values()))

    def _inlet(self, inlets: Mapping[str, MaterialStream], port: str) -> MaterialStream:
        stream = inlets.get(port)
        if stream is None:
            raise InvalidInputError(self.id, f"missing inlet stream on port '{port}'")
        return stream

    def _check_consistency(
        self, stream: MaterialStream, low: float, high: float, label: str = "inlet"
    ) -> None:
        c = stream.consistency
        if c < low or c > high:
            raise InvalidInputError(
                self.id,
                f"{label} consistency {c * 100:.3f}% outside operating envelope "
                f"[{low * 100:.2f}%, {high * 100:.2f}%]",
            )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"


# ---------------------------------------------------------------------------
# Mixer
# ---------------------------------------------------------------------------


class MixerOp(UnitOpBase):
    """
    Adiabatic mixer.

    Sums N inlet streams componentwise.  Outlet temperature comes from the
    enthalpy balance, outlet pressure is the lowest inlet pressure unless
    ``outlet_pressure_kpa`` is given.
    """

    variable_inlets = True
    parameter_bounds = {"outlet_pressure_kpa": (0.0, None)}

    @classmethod
    def required_inlets(cls, params: Mapping[str, Any]) -> Tuple[str, ...]:
        return ()

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        if not inlets:
            raise InvalidInputError(self.id, "mixer has no inlet streams")

        streams = [inlets[port] for port in sorted(inlets)]
        outlet = merge_all(streams)

        outlet_P = self._float_param("outlet_pressure_kpa")
        if outlet_P is not None:
            outlet = outlet.with_updates(pressure=outlet_P)

        return UnitOutcome(
            outlets={"out": outlet},
            diagnostics={"n_inlets": len(streams), "consistency": outlet.consistency},
        )


# ---------------------------------------------------------------------------
# Splitter
# ---------------------------------------------------------------------------


class SplitterOp(UnitOpBase):
    """
    Stream splitter.

    Divides one inlet across K outlets ("out-1" … "out-K") by ``fractions``.
    All outlets share the inlet's temperature, pressure and composition.
    The fractions are checked when the flowsheet is validated, not here.
    """

    FRACTION_TOLERANCE = 1e-6

    @classmethod
    def _fractions(cls, params: Mapping[str, Any]) -> List[float]:
        return [float(f) for f in params.get("fractions", [0.5, 0.5])]

    @classmethod
    def declared_outlets(cls, params: Mapping[str, Any]) -> Tuple[str, ...]:
        try:
            n = len(cls._fractions(params))
        except (TypeError, ValueError):
            n = 0
        return tuple(f"out-{i + 1}" for i in range(n))

    @classmethod
    def check_parameters(cls, params: Mapping[str, Any]) -> List[Issue]:
        problems = super().check_parameters(params)
        try:
            fractions = cls._fractions(params)
        except (TypeError, ValueError):
            message = f"'fractions' must be a list of numbers, got {params.get('fractions')!r}"
            return problems + [Issue("split_fractions", message)]
        if len(fractions) < 2:
            problems.append(Issue("split_fractions", "a splitter needs at least two fractions"))
        if any(f < 0.0 or f > 1.0 for f in fractions):
            problems.append(Issue("split_fractions", f"split fractions must each lie in [0, 1], got {fractions}"))
        total = sum(fractions)
        if abs(total - 1.0) > cls.FRACTION_TOLERANCE:
            problems.append(Issue("split_fractions", f"split fractions sum to {total:.6g}, expected 1.0"))
        return problems

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        inlet = self._first_inlet(inlets)
        fractions = self._fractions(self.params)

        outlets: Dict[str, MaterialStream] = {}
        for i, frac in enumerate(fractions):
            outlets[f"out-{i + 1}"] = inlet.scale(frac)

        return UnitOutcome(outlets=outlets, diagnostics={"fractions": list(fractions)})


# ---------------------------------------------------------------------------
# Heater
# ---------------------------------------------------------------------------


class HeaterOp(UnitOpBase):
    """
    Indirect heater / cooler.

    Specify either ``outlet_temperature_c`` (duty is computed) or ``duty_kw``
    (outlet temperature is computed).  Positive duty means heat added.
    """

    parameter_bounds = {
        "outlet_temperature_c": (-50.0, 400.0),
        "pressure_drop_kpa": (0.0, None),
    }

    @classmethod
    def check_parameters(cls, params: Mapping[str, Any]) -> List[Issue]:
        problems = super().check_parameters(params)
        if params.get("outlet_temperature_c") is None and params.get("duty_kw") is None:
            problems.append(Issue("invalid_parameter", "heater needs 'outlet_temperature_c' or 'duty_kw'"))
        return problems

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        inlet = self._first_inlet(inlets)

        dp = self._float_param("pressure_drop_kpa", 0.0)
        P_out = inlet.pressure - dp
        if P_out < 0:
            raise InvalidInputError(self.id, f"pressure drop {dp} kPa exceeds inlet pressure {inlet.pressure} kPa")

        T_out = self._float_param("outlet_temperature_c")
        duty_kw = self._float_param("duty_kw")
        heat_cap = inlet.heat_capacity_flow

        if T_out is not None:
            duty_kw = heat_cap * (T_out - inlet.temperature) / 3600.0
        elif duty_kw is None:
            raise InvalidInputError(self.id, "heater needs 'outlet_temperature_c' or 'duty_kw'")
        else:
            if heat_cap <= 0:
                raise InvalidInputError(self.id, "cannot apply a duty to an empty stream")
            T_out = inlet.temperature + duty_kw * 3600.0 / heat_cap

        outlet = inlet.with_updates(temperature=T_out, pressure=P_out)
        return UnitOutcome(
            outlets={"out": outlet},
            diagnostics={"duty_kw": duty_kw, "outlet_temperature_c": T_out},
        )


# ---------------------------------------------------------------------------
# Stock chest
# ---------------------------------------------------------------------------


class StockChestOp(UnitOpBase):
    """
    Agitated storage chest.

    Blends the stock with an optional dilution inlet, reports residence time
    and loses heat to ambient at ``heat_loss_kw``.  Stock above
    ``max_consistency`` cannot be agitated and is rejected.
    """

    optional_inlets = ("dilution",)
    parameter_bounds = {
        "volume_m3": (0.0, None),
        "max_consistency": (0.0, 0.5),
        "heat_loss_kw": (0.0, None),
    }

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        stock = self._inlet(inlets, "in")
        parts = [stock]
        if "dilution" in inlets:
            parts.append(inlets["dilution"])
        blended = merge_all(parts)

        max_c = self._float_param("max_consistency", 0.15)
        self._check_consistency(blended, 0.0, max_c, label="chest")

        volume = self._float_param("volume_m3", 100.0)
        q_m3_h = blended.total_mass / STOCK_DENSITY
        residence_min = volume / q_m3_h * 60.0 if q_m3_h > 0 else None

        heat_loss_kw = self._float_param("heat_loss_kw", 0.0)
        outlet = blended
        if heat_loss_kw > 0 and blended.heat_capacity_flow > 0:
            T_out = blended.temperature - heat_loss_kw * 3600.0 / blended.heat_capacity_flow
            outlet = blended.with_updates(temperature=T_out)

        warnings = []
        if residence_min is not None and residence_min < 5.0:
            warnings.append(f"Residence time {residence_min:.1f} min is short for level control")

        return UnitOutcome(
            outlets={"out": outlet},
            diagnostics={
                "residence_time_min": residence_min,
                "consistency": outlet.consistency,
                "volumetric_flow_m3_h": q_m3_h,
            },
            warnings=warnings,
        )


# ---------------------------------------------------------------------------
# Fan pump
# ---------------------------------------------------------------------------


class FanPumpOp(UnitOpBase):
    """
    Fan pump: dilutes thick stock with whitewater and pressurises it for the
    headbox.  Hydraulic power = Q · ΔP / η.
    """

    inlet_ports = ("stock",)
    optional_inlets = ("whitewater",)
    parameter_bounds = {
        "pressure_rise_kpa": (0.0, 2000.0),
        "efficiency": (0.05, 1.0),
    }

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        stock = self._inlet(inlets, "stock")
        parts = [stock]
        if "whitewater" in inlets:
            parts.append(inlets["whitewater"])
        blended = merge_all(parts)

        dp = self._float_param("pressure_rise_kpa", 250.0)
        eta = self._float_param("efficiency", 0.75)

        q_m3_s = blended.total_mass / STOCK_DENSITY / 3600.0
        power_kw = q_m3_s * dp / eta  # m³/s · kPa = kW
        outlet = blended.with_updates(pressure=blended.pressure + dp)

        return UnitOutcome(
            outlets={"out": outlet},
            diagnostics={
                "power_kw": power_kw,
                "volumetric_flow_m3_h": q_m3_s * 3600.0,
                "consistency": outlet.consistency,
            },
        )


# ---------------------------------------------------------------------------
# Washer (displacement separator)
# ---------------------------------------------------------------------------


class WasherOp(UnitOpBase):
    """
    Brown-stock washer.

    Thickens the pulp to ``discharge_consistency`` and displaces dissolved
    solids into the filtrate.  Displacement efficiency rises with the
    dilution factor DF (t wash liquor in excess of the liquor leaving with
    the pulp, per t fibre):

        E = 1 - (1 - E0) · exp(-k · DF),   bounded to [0, 1]

    DF is measured from the ``wash`` inlet when one is connected, otherwise the
    ``dilution_factor`` setting is used.  Dissolved solids and dissolved
    species split E → filtrate, (1 - E) → pulp, so their totals are conserved.
    """

    inlet_ports = ("pulp",)
    optional_inlets = ("wash",)
    outlet_ports = ("pulp", "filtrate")
    parameter_bounds = {
        "discharge_consistency": (0.01, 0.5),
        "base_efficiency": (0.0, 1.0),
        "efficiency_slope": (0.0, None),
        "dilution_factor": (-10.0, 50.0),
        "fiber_loss": (0.0, 0.05),
    }

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        pulp_in = self._inlet(inlets, "pulp")
        wash = inlets.get("wash")
        combined = merge_all([pulp_in, wash]) if wash is not None else pulp_in

        c_out = self._float_param("discharge_consistency", 0.12)
        E0 = self._float_param("base_efficiency", 0.5)
        k = self._float_param("efficiency_slope", 0.35)
        loss = self._float_param("fiber_loss", 0.0)

        fiber_pulp = combined.fiber * (1.0 - loss)
        fiber_filtrate = combined.fiber - fiber_pulp
        water_pulp = fiber_pulp * (1.0 - c_out) / c_out
        if water_pulp > combined.water:
            raise InvalidInputError(
                self.id,
                f"feed consistency {combined.consistency * 100:.2f}% is above the discharge "
                f"consistency {c_out * 100:.2f}%; nothing to wash out",
            )
        water_filtrate = combined.water - water_pulp

        if wash is not None and fiber_pulp > 0:
            dilution_factor = (wash.water - water_pulp) / fiber_pulp
        else:
            dilution_factor = self._float_param("dilution_factor", 2.0)

        efficiency = 1.0 - (1.0 - E0) * math.exp(-k * dilution_factor)
        efficiency = min(max(efficiency, 0.0), 1.0)

        ds_pulp = combined.dissolved_solids * (1.0 - efficiency)
        ds_filtrate = combined.dissolved_solids - ds_pulp
        species_pulp = {n: f * (1.0 - efficiency) for n, f in combined.species.items()}
        species_filtrate = {n: f - species_pulp[n] for n, f in combined.species.items()}

        pulp = MaterialStream(
            fiber=fiber_pulp,
            water=water_pulp,
            dissolved_solids=ds_pulp,
            species=species_pulp,
            temperature=combined.temperature,
            pressure=combined.pressure,
            attributes=dict(combined.attributes),
        )
        filtrate = MaterialStream(
            fiber=fiber_filtrate,
            water=water_filtrate,
            dissolved_solids=ds_filtrate,
            species=species_filtrate,
            temperature=combined.temperature,
            pressure=combined.pressure,
            attributes=dict(combined.attributes) if fiber_filtrate > 0 else {},
        )

        if efficiency < 0.3:
            logger.debug("Washer '{}' efficiency {:.2f} at DF {:.2f}", self.id, efficiency, dilution_factor)

        return UnitOutcome(
            outlets={"pulp": pulp, "filtrate": filtrate},
            diagnostics={
                "displacement_efficiency": efficiency,
                "dilution_factor": dilution_factor,
                "dissolved_solids_removed_kg_h": ds_filtrate,
                "discharge_consistency": pulp.consistency,
            },
        )
