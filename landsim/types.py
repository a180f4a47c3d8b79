"""Core data types for landsim.

This module is the single place that defines:
  - Exception hierarchy (ConfigurationError, InvalidArgument, SamplingError)
  - NegativeCountWarning for clamped floating-point underflow
  - Breakdown: the six intermediate quantities of one generation
  - BREAKDOWN_FIELDS: canonical field order used by history persistence
    and lineage sampling

All modules import these types from here.
"""

from dataclasses import dataclass, fields
from typing import Any, Mapping, Union

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ERRORS & WARNINGS
# ═══════════════════════════════════════════════════════════════════════

class ConfigurationError(ValueError):
    """Model or grid configuration is inconsistent.

    Raised for mismatched genotype sets, missing model fields, invalid
    vital rates, and geometrically incompatible grids.
    """


class InvalidArgument(ValueError):
    """Malformed index set or mask passed to matrix construction."""


class SamplingError(ValueError):
    """All backward weights at a lineage sampling step are zero."""


class NegativeCountWarning(UserWarning):
    """Negative counts from floating-point error were clamped to zero."""


# ═══════════════════════════════════════════════════════════════════════
# GENERATION BREAKDOWN
# ═══════════════════════════════════════════════════════════════════════

BREAKDOWN_FIELDS = (
    'seeders',
    'pollen',
    'seed_production',
    'seeds_dispersed',
    'germination',
    'death',
)


@dataclass
class Breakdown:
    """Intermediate quantities from one generation step.

    Every array has shape (n_habitable, n_genotypes):
      seeders:          individuals that set seed (sampled if stochastic)
      pollen:           pollen arriving at each location, by pollen-parent genotype
      seed_production:  expected seeds produced locally, by offspring genotype
      seeds_dispersed:  seeds arriving after seed migration (× fecundity)
      germination:      new individuals (sampled if stochastic)
      death:            individuals dying (sampled if stochastic)
    """
    seeders: np.ndarray
    pollen: np.ndarray
    seed_production: np.ndarray
    seeds_dispersed: np.ndarray
    germination: np.ndarray
    death: np.ndarray

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


BreakdownLike = Union[Breakdown, Mapping[str, Any]]


def as_breakdown(obj: BreakdownLike) -> Breakdown:
    """Coerce a Breakdown or mapping with the six fields to a Breakdown.

    Raises:
        ConfigurationError: If any of BREAKDOWN_FIELDS is missing or None.
    """
    if isinstance(obj, Breakdown):
        values = obj.as_dict()
    elif isinstance(obj, Mapping):
        values = {name: obj.get(name) for name in BREAKDOWN_FIELDS}
    else:
        values = {name: getattr(obj, name, None) for name in BREAKDOWN_FIELDS}

    missing = [name for name in BREAKDOWN_FIELDS if values.get(name) is None]
    if missing:
        raise ConfigurationError(
            f"generation breakdown is missing required fields: {missing}"
        )
    return Breakdown(**{
        name: np.asarray(values[name], dtype=np.float64)
        for name in BREAKDOWN_FIELDS
    })
