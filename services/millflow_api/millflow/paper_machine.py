"""
Paper machine wet end and dryer section.

Headbox -> wire (forming) -> press -> dryer.  Each unit dewaters the web to a
target dryness; dissolved solids and dissolved species follow the water they
are dissolved in, so every split conserves mass exactly.
"""

from __future__ import annotations

import math
from typing import Mapping, Tuple

from .errors import InvalidInputError
from .streams import ATMOSPHERIC_PRESSURE_KPA, MaterialStream
from .unit_operations import STOCK_DENSITY, UnitOpBase, UnitOutcome

LATENT_HEAT_KJ_KG = 2257.0


def _split_by_water(
    stream: MaterialStream, fiber_a: float, water_a: float
) -> Tuple[MaterialStream, MaterialStream]:
    """Split ``stream`` into (a, b) with fibre/water of ``a`` given.

    Dissolved material is carried in proportion to water.
    """
    share = water_a / stream.water if stream.water > 0 else 0.0
    ds_a = stream.dissolved_solids * share
    species_a = {n: f * share for n, f in stream.species.items()}
    a = stream.with_updates(
        fiber=fiber_a,
        water=water_a,
        dissolved_solids=ds_a,
        species=species_a,
    )
    b = stream.with_updates(
        fiber=stream.fiber - fiber_a,
        water=stream.water - water_a,
        dissolved_solids=stream.dissolved_solids - ds_a,
        species={n: f - species_a[n] for n, f in stream.species.items()},
    )
    return a, b


def _water_at_dryness(fiber: float, dryness: float) -> float:
    return fiber * (1.0 - dryness) / dryness


# ---------------------------------------------------------------------------
# Headbox
# ---------------------------------------------------------------------------


class HeadboxOp(UnitOpBase):
    """
    Pressurised headbox.

    Checks the stock consistency envelope and computes the slice jet
    velocity v = sqrt(2·ΔP/ρ) and the jet-to-wire speed ratio.  The stock
    leaves the slice at atmospheric pressure.
    """

    parameter_bounds = {
        "min_consistency": (0.0, 0.05),
        "max_consistency": (0.0, 0.05),
        "wire_speed_m_min": (1.0, 3000.0),
    }

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        stock = self._first_inlet(inlets)
        self._check_consistency(
            stock,
            self._float_param("min_consistency", 0.001),
            self._float_param("max_consistency", 0.015),
            label="headbox",
        )

        dp_kpa = stock.pressure - ATMOSPHERIC_PRESSURE_KPA
        if dp_kpa <= 0:
            raise InvalidInputError(
                self.id, f"headbox stock at {stock.pressure:.1f} kPa is not pressurised"
            )
        jet_m_s = math.sqrt(2.0 * dp_kpa * 1000.0 / STOCK_DENSITY)
        wire_speed = self._float_param("wire_speed_m_min", 1000.0)
        ratio = jet_m_s * 60.0 / wire_speed

        warnings = []
        if abs(ratio - 1.0) > 0.1:
            warnings.append(f"Jet-to-wire ratio {ratio:.3f} is far from 1.0")

        return UnitOutcome(
            outlets={"out": stock.with_updates(pressure=ATMOSPHERIC_PRESSURE_KPA)},
            diagnostics={
                "jet_velocity_m_s": jet_m_s,
                "jet_to_wire_ratio": ratio,
                "consistency": stock.consistency,
            },
            warnings=warnings,
        )


# ---------------------------------------------------------------------------
# Wire (forming) section
# ---------------------------------------------------------------------------


class WireSectionOp(UnitOpBase):
    """Forming section: first-pass retention and drainage to web consistency."""

    outlet_ports = ("web", "whitewater")
    parameter_bounds = {
        "retention": (0.0, 1.0),
        "web_consistency": (0.02, 0.40),
    }

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        stock = self._first_inlet(inlets)
        retention = self._float_param("retention", 0.8)
        c_web = self._float_param("web_consistency", 0.20)

        fiber_web = stock.fiber * retention
        water_web = _water_at_dryness(fiber_web, c_web)
        if water_web > stock.water:
            raise InvalidInputError(
                self.id,
                f"stock consistency {stock.consistency * 100:.2f}% is above the web consistency",
            )
        web, whitewater = _split_by_water(stock, fiber_web, water_web)

        return UnitOutcome(
            outlets={"web": web, "whitewater": whitewater},
            diagnostics={
                "first_pass_retention": retention,
                "web_consistency": web.consistency,
                "drainage_kg_h": whitewater.water,
            },
        )


# ---------------------------------------------------------------------------
# Press section
# ---------------------------------------------------------------------------


class PressSectionOp(UnitOpBase):
    """
    Wet press.

    dryness_out = d_max - (d_max - d_in) · exp(-k · nip_load)
    """

    outlet_ports = ("web", "press_water")
    parameter_bounds = {
        "nip_load_kn_m": (0.0, 1500.0),
        "max_dryness": (0.1, 0.7),
        "press_constant": (0.0, None),
    }

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        web_in = self._first_inlet(inlets)
        if web_in.fiber <= 0:
            raise InvalidInputError(self.id, "press feed carries no fibre")

        load = self._float_param("nip_load_kn_m", 100.0)
        d_max = self._float_param("max_dryness", 0.55)
        k = self._float_param("press_constant", 0.01)

        d_in = web_in.consistency
        d_out = d_in if d_in >= d_max else d_max - (d_max - d_in) * math.exp(-k * load)
        water_web = min(_water_at_dryness(web_in.fiber, d_out), web_in.water)
        web, press_water = _split_by_water(web_in, web_in.fiber, water_web)

        return UnitOutcome(
            outlets={"web": web, "press_water": press_water},
            diagnostics={
                "dryness_in": d_in,
                "dryness_out": web.consistency,
                "water_removed_kg_h": press_water.water,
            },
        )


# ---------------------------------------------------------------------------
# Dryer section
# ---------------------------------------------------------------------------


class DryerSectionOp(UnitOpBase):
    """
    Steam-heated cylinder dryers.

    Evaporates water down to ``target_dryness`` (fibre / (fibre + water)).
    Dissolved solids stay in the sheet.  Steam demand = heat load / latent
    heat × ``steam_economy`` (kg steam per kg evaporated at unit load).
    """

    outlet_ports = ("paper", "vapor")
    parameter_bounds = {
        "target_dryness": (0.5, 0.999),
        "sheet_temperature_c": (20.0, 150.0),
        "steam_economy": (1.0, 3.0),
    }

    def calculate(self, inlets: Mapping[str, MaterialStream]) -> UnitOutcome:
        web = self._first_inlet(inlets)
        if web.fiber <= 0:
            raise InvalidInputError(self.id, "dryer feed carries no fibre")

        d_target = self._float_param("target_dryness", 0.92)
        T_sheet = self._float_param("sheet_temperature_c", 90.0)
        economy = self._float_param("steam_economy", 1.25)

        water_paper = min(_water_at_dryness(web.fiber, d_target), web.water)
        evaporated = web.water - water_paper

        paper = web.with_updates(water=water_paper, temperature=T_sheet, pressure=ATMOSPHERIC_PRESSURE_KPA)
        vapor = MaterialStream(water=evaporated, temperature=100.0, pressure=ATMOSPHERIC_PRESSURE_KPA)

        heat_kj_h = paper.enthalpy + vapor.enthalpy + evaporated * LATENT_HEAT_KJ_KG - web.enthalpy
        steam_kg_h = max(heat_kj_h, 0.0) / LATENT_HEAT_KJ_KG * economy

        return UnitOutcome(
            outlets={"paper": paper, "vapor": vapor},
            diagnostics={
                "evaporation_kg_h": evaporated,
                "dryness_out": paper.consistency,
                "heat_load_kw": heat_kj_h / 3600.0,
                "steam_demand_kg_h": steam_kg_h,
            },
        )
