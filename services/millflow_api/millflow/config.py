from __future__ import annotations

import os
from typing import Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError


class SolverSettings(BaseModel):
    """Process-wide limits and defaults applied to every run."""

    max_units: int = Field(default=200, ge=1)
    max_streams: int = Field(default=400, ge=1)
    max_iterations_limit: int = Field(default=1000, ge=1)
    default_method: Literal["direct", "wegstein", "newton"] = "wegstein"
    default_tolerance: float = Field(default=1e-6, gt=0)
    default_max_iterations: int = Field(default=100, ge=1)
    # Relative per-unit mass balance closure that triggers a warning
    balance_tolerance: float = Field(default=1e-6, gt=0)


_ENV_FIELDS = {
    "MILLFLOW_MAX_UNITS": ("max_units", int),
    "MILLFLOW_MAX_STREAMS": ("max_streams", int),
    "MILLFLOW_MAX_ITERATIONS_LIMIT": ("max_iterations_limit", int),
    "MILLFLOW_DEFAULT_METHOD": ("default_method", str),
    "MILLFLOW_DEFAULT_TOLERANCE": ("default_tolerance", float),
    "MILLFLOW_DEFAULT_MAX_ITERATIONS": ("default_max_iterations", int),
    "MILLFLOW_BALANCE_TOLERANCE": ("balance_tolerance", float),
}


def load_settings(env: Optional[dict] = None) -> SolverSettings:
    """Build settings from ``MILLFLOW_*`` environment variables."""
    source = os.environ if env is None else env
    values = {}
    for var, (name, cast) in _ENV_FIELDS.items():
        raw = source.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError:
            logger.warning("Ignoring {}={!r}: not a valid {}", var, raw, cast.__name__)
            continue
        # Check each field on its own so one bad variable keeps only its default
        try:
            SolverSettings(**{name: value})
        except ValidationError as exc:
            reason = exc.errors()[0]["msg"]
            logger.warning("Ignoring {}={!r}: {}", var, raw, reason)
            continue
        values[name] = value
    return SolverSettings(**values)
