"""Registry: maps flowsheet unit type tags to unit operation classes."""

from __future__ import annotations

from typing import Dict, Optional

from .digester import BleachStageOp, DigesterOp
from .paper_machine import DryerSectionOp, HeadboxOp, PressSectionOp, WireSectionOp
from .unit_operations import (
    FanPumpOp,
    HeaterOp,
    MixerOp,
    SplitterOp,
    StockChestOp,
    UnitOpBase,
    WasherOp,
)

UNIT_OP_REGISTRY: Dict[str, type] = {
    # Mixers & splitters
    "mixer": MixerOp,
    "splitter": SplitterOp,
    # Heat transfer
    "heater": HeaterOp,
    "heaterCooler": HeaterOp,
    # Storage & pumping
    "stockChest": StockChestOp,
    "fanPump": FanPumpOp,
    # Fibre line
    "digester": DigesterOp,
    "reactor": DigesterOp,
    "washer": WasherOp,
    "separator": WasherOp,
    "bleachStage": BleachStageOp,
    # Paper machine
    "headbox": HeadboxOp,
    "wireSection": WireSectionOp,
    "pressSection": PressSectionOp,
    "dryerSection": DryerSectionOp,
}


def lookup(unit_type: str) -> Optional[type]:
    return UNIT_OP_REGISTRY.get(unit_type)


def create_unit(unit_id: str, unit_type: str, params: dict, name: Optional[str] = None) -> UnitOpBase:
    cls = UNIT_OP_REGISTRY.get(unit_type)
    if cls is None:
        raise KeyError(f"Unknown unit type '{unit_type}'")
    return cls(id=unit_id, name=name or unit_id, params=params)
