"""
Reactive fibre-line units: kraft digester and bleach stage.

Digester kinetics follow the H-factor concept: the relative delignification
rate k(T)/k(100 °C) = exp(43.181 - 16113 / T) is integrated over the cooking
time-temperature profile (time in hours, T in K).  The H-factor, scaled by the
alkali charge, is the severity index that drives a two-regime (bulk, then
residual) kappa depletion law toward a floor.

Both units add chemicals through a declared charge ratio; the charged mass is
reported as the unit's stoichiometric term so the plant balance closes.
"""

from __future__ import annotations

import math
from typing import Any, List, Mapping, Sequence, Tuple

import numpy as np
from loguru import logger
from scipy.integrate import solve_ivp

from .errors import InvalidInputError, Issue, NumericalFailureError
from .streams import MaterialStream
from .unit_operations import UnitOpBase, UnitOutcome

H_FACTOR_A = 43.181
H_FACTOR_B = 16113.0  # K

DEFAULT_PROFILE: List[Tuple[float, float]] = [(0.0, 80.0), (1.5, 170.0), (3.5, 170.0)]


def relative_rate(temperature_c: float) -> float:
    """Delignification rate relative to 100 °C."""
    return math.exp(H_FACTOR_A - H_FACTOR_B / (temperature_c + 273.15))


def _parse_profile(raw: Any) -> Tuple[np.ndarray, np.ndarray]:
    points = [(float(t), float(T)) for t, T in raw]
    times = np.array([p[0] for p in points])
    temps = np.array([p[1] for p in points])
    return times, temps


def profile_problems(raw: Any) -> List[str]:
    try:
        times, temps = _parse_profile(raw)
    except (TypeError, ValueError):
        return [f"'profile' must be a list of [time_h, temperature_c] pairs, got {raw!r}"]
    problems = []
    if len(times) < 2:
        problems.append("'profile' needs at least two points")
    elif np.any(np.diff(times) <= 0):
        problems.append("'profile' times must be strictly increasing")
    if len(times) and times[0] < 0:
        problems.append("'profile' must start at t >= 0")
    if np.any(temps < 0) or np.any(temps > 200):
        problems.append("'profile' temperatures must lie within [0, 200] °C")
    return problems


def h_factor(profile: Sequence[Sequence[float]]) -> float:
    """Integrate the relative rate over a piecewise-linear profile.

    Raises RuntimeError when the integrator does not reach the end time.
    """
    times, temps = _parse_profile(profile)

    def rhs(t, _h):
        return [relative_rate(float(np.interp(t, times, temps)))]

    # Keep the integrator from stepping across profile breakpoints
    max_step = float(np.min(np.diff(times))) / 4.0
    sol = solve_ivp(
        rhs,
        (float(times[0]), float(times[-1])),
        [0.0],
        method="RK45",
        rtol=1e-8,
        atol=1e-6,
        max_step=max_step,
    )
    if not sol.success:
        raise RuntimeError(sol.message)
    return float(sol.y[0, -1])


def depleted_kappa(
    kappa0: float,
    severity: float,
    kappa_floor: float,
    k_fast: float,
    k_slow: float,
    transition: float,
) -> float:
    """Two-regime kappa depletion: bulk phase up to ``transition``, then residual.

    Strictly decreasing in ``severity`` whenever kappa0 > kappa_floor.
    """
    if kappa0 <= kappa_floor:
        return kappa0
    excess = kappa0 - kappa_floor
    if severity <= transition:
        return kappa_floor + excess * math.exp(-k_fast * severity)
    excess_t = excess * math.exp(-k_fast * transition)
    return kappa_floor + excess_t * math.exp(-k_slow * (severity - transition))


# ---------------------------------------------------------------------------
# Digester
# ---------------------------------------------------------------------------


class DigesterOp(UnitOpBase):
    """
    Kraft batch/continuous digester.

    Parameters:
      - profile: [[time_h, temperature_c], ...] cooking schedule
      - h_factor: fixes the H-factor instead of integrating ``profile``
      - temperature_c: outlet temperature; defaults to the last profile point
      - alkali_charge: kg reagent per kg oven-dry fibre (charge ratio)
      - reference_alkali_charge, charge_exponent: charge scaling of severity
      - initial_kappa: used when the inlet carries no "kappa" attribute
      - kappa_floor, k_fast, k_slow, transition_severity: depletion law
      - yield_base, yield_kappa_slope, yield_severity_slope, yield_min, yield_max
      - alkali_consumption: kg reagent consumed per kg wood substance dissolved
      - reagent: species id of the cooking chemical (default "NaOH")
      - pressure_kpa: digester pressure
    """

    reactive = True
    parameter_bounds = {
        "h_factor": (0.0, 20000.0),
        "temperature_c": (0.0, 200.0),
        "alkali_charge": (0.0, 0.4),
        "reference_alkali_charge": (0.01, 0.4),
        "charge_exponent": (0.0, 5.0),
        "initial_kappa": (0.0, 300.0),
        "kappa_floor": (0.0, 100.0),
        "k_fast": (0.0, None),
        "k_slow": (0.0, None),
        "transition_severity": (0.0, None),
        "yield_base": (0.0, 1.0),
        "yield_min": (0.0, 1.0),
        "yield_max": (0.0, 1.0),
        "alkali_consumption": (0.0, 2.0),
        "pressure_kpa": (0.0, 2500.0),
    }

    @classmethod
    def check_parameters(cls, params: Mapping[str, Any]) -> List[Issue]:
        problems = super().check_parameters(params)
        if params.get("profile") is not None:
            for problem in profile_problems(params["profile"]):
                problems.append(Issue("invalid_parameter", problem))
        return problems

    def _profile(self) -> Any:
        profile = self._get_param("profile")
        if profile is None:
            return DEFAULT_PROFILE
        problems = profile_problems(profile)
        if problems:
            raise InvalidInputError(self.id, "; ".join(problems))
        return profile

    def severity(self) -> Tuple[float, float]:
        """Return (H-factor, charge-scaled severity index)."""
        H = self._float_param("h_factor")
        if H is None:
            try:
                H = h_factor(self._profile())
            except RuntimeError as exc:
                raise NumericalFailureError(self.id, f"H-factor integration failed: {exc}") from exc

        charge = self._float_param("alkali_charge", 0.18)
        ref = self._float_param("reference_alkali_charge", 0.18)
        exponent = self._float_param("charge_exponent", 1.0)
        return H, H * (charge / ref) ** exponent

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        chips = self._first_inlet(inlets)
        if chips.fiber <= 0:
            raise InvalidInputError(self.id, "digester feed carries no fibre")

        reagent = str(self._get_param("reagent", "NaOH"))
        kappa0 = chips.attributes.get("kappa", self._float_param("initial_kappa", 120.0))
        floor = self._float_param("kappa_floor", 12.0)

        H, S = self.severity()
        kappa_out = depleted_kappa(
            kappa0,
            S,
            floor,
            k_fast=self._float_param("k_fast", 2.0e-3),
            k_slow=self._float_param("k_slow", 8.0e-4),
            transition=self._float_param("transition_severity", 400.0),
        )

        y_min = self._float_param("yield_min", 0.30)
        y_max = self._float_param("yield_max", 0.95)
        pulp_yield = (
            self._float_param("yield_base", 0.40)
            + self._float_param("yield_kappa_slope", 0.0025) * kappa_out
            - self._float_param("yield_severity_slope", 0.01) * math.log1p(S / 1000.0)
        )
        pulp_yield = min(max(pulp_yield, y_min), y_max)

        fiber_out = chips.fiber * pulp_yield
        dissolved_wood = chips.fiber - fiber_out

        # Reagent: charged by ratio, consumed in proportion to dissolved wood
        charged = self._float_param("alkali_charge", 0.18) * chips.fiber
        available = chips.get_species_flow(reagent) + charged
        consumed = min(self._float_param("alkali_consumption", 0.25) * dissolved_wood, available)
        residual = available - consumed

        species = dict(chips.species)
        species[reagent] = residual

        T_out = self._float_param("temperature_c")
        if T_out is None:
            T_out = float(_parse_profile(self._profile())[1][-1])
        P_out = self._float_param("pressure_kpa", chips.pressure)

        attributes = dict(chips.attributes)
        attributes["kappa"] = kappa_out

        outlet = MaterialStream(
            fiber=fiber_out,
            water=chips.water,
            dissolved_solids=chips.dissolved_solids + dissolved_wood + consumed,
            species=species,
            temperature=T_out,
            pressure=P_out,
            attributes=attributes,
        )

        logger.debug(
            "Digester '{}': H={:.0f}, kappa {:.1f} -> {:.1f}, yield {:.3f}, stoichiometric term {:+.3f} kg/h",
            self.id, H, kappa0, kappa_out, pulp_yield, charged,
        )

        warnings = []
        if residual <= 0:
            warnings.append(f"Cooking reagent '{reagent}' fully consumed; cook is alkali-limited")

        return UnitOutcome(
            outlets={"out": outlet},
            diagnostics={
                "h_factor": H,
                "severity": S,
                "kappa_in": kappa0,
                "kappa_out": kappa_out,
                "yield": pulp_yield,
                "reagent_charged_kg_h": charged,
                "reagent_consumed_kg_h": consumed,
                "residual_reagent_kg_h": residual,
            },
            mass_source=charged,
            warnings=warnings,
        )


# ---------------------------------------------------------------------------
# Bleach stage
# ---------------------------------------------------------------------------


class BleachStageOp(UnitOpBase):
    """
    Single bleaching stage (D, E, P, O ...).

    kappa_out = floor + (kappa_in - floor) · exp(-k · charge)

    with charge in kg chemical per t oven-dry pulp.  Removed lignin
    (``lignin_per_kappa`` of pulp mass per kappa unit) leaves the fibre as
    dissolved solids; the consumed share of the chemical reacts into
    dissolved solids, the rest stays as residual species.
    """

    reactive = True
    parameter_bounds = {
        "charge_kg_per_t": (0.0, 200.0),
        "efficiency_k": (0.0, None),
        "kappa_floor": (0.0, 50.0),
        "inlet_kappa": (0.0, 200.0),
        "consumption": (0.0, 1.0),
        "lignin_per_kappa": (0.0, 0.01),
        "temperature_c": (0.0, 150.0),
        "min_consistency": (0.0, 0.5),
        "max_consistency": (0.0, 0.5),
    }

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        pulp = self._first_inlet(inlets)
        self._check_consistency(
            pulp,
            self._float_param("min_consistency", 0.02),
            self._float_param("max_consistency", 0.20),
        )

        kappa_in = pulp.attributes.get("kappa", self._float_param("inlet_kappa"))
        if kappa_in is None:
            raise InvalidInputError(self.id, "inlet pulp has no kappa number and no 'inlet_kappa' was given")

        chemical = str(self._get_param("chemical", "ClO2"))
        charge = self._float_param("charge_kg_per_t", 20.0)
        floor = min(self._float_param("kappa_floor", 2.0), kappa_in)
        k = self._float_param("efficiency_k", 0.08)
        kappa_out = floor + (kappa_in - floor) * math.exp(-k * charge)

        lignin = self._float_param("lignin_per_kappa", 0.0015) * (kappa_in - kappa_out) * pulp.fiber
        lignin = min(lignin, pulp.fiber)

        charged = charge * pulp.fiber / 1000.0
        consumed = charged * self._float_param("consumption", 0.95)

        species = dict(pulp.species)
        species[chemical] = species.get(chemical, 0.0) + charged - consumed

        T_out = self._float_param("temperature_c", pulp.temperature)
        attributes = dict(pulp.attributes)
        attributes["kappa"] = kappa_out

        outlet = MaterialStream(
            fiber=pulp.fiber - lignin,
            water=pulp.water,
            dissolved_solids=pulp.dissolved_solids + lignin + consumed,
            species=species,
            temperature=T_out,
            pressure=pulp.pressure,
            attributes=attributes,
        )
        duty_kw = pulp.heat_capacity_flow * (T_out - pulp.temperature) / 3600.0

        logger.debug(
            "Bleach stage '{}': kappa {:.2f} -> {:.2f}, stoichiometric term {:+.3f} kg/h {}",
            self.id, kappa_in, kappa_out, charged, chemical,
        )

        return UnitOutcome(
            outlets={"out": outlet},
            diagnostics={
                "kappa_in": kappa_in,
                "kappa_out": kappa_out,
                "chemical_charged_kg_h": charged,
                "chemical_consumed_kg_h": consumed,
                "lignin_removed_kg_h": lignin,
                "heating_duty_kw": duty_kw,
            },
            mass_source=charged,
        )
