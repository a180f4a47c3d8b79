"""Forward generation step.

One generation turns the population matrix N (habitable cells × genotypes)
into the next one:

  1. seeders         = N × prob_seed                       (Poisson if stochastic)
  2. pollen          = Pᵀ N                                (always expected, full N)
  3. seed_production = Σ_{u,v} seeders[·,u] pollen[·,v] T[u,v,·]
  4. seeds_dispersed = fecundity × Sᵀ seed_production
  5. germination     = seeds_dispersed × prob_germination  (Poisson if stochastic)
  6. death           = N × (1 − prob_survival)             (Binomial if stochastic)
  7. next N          = N − death + germination

Pollen flux is computed from every individual present, not only seeders:
pollen output is taken to be proportional to presence regardless of
seeding probability.
"""

from __future__ import annotations

import warnings
from typing import Any, Mapping, Optional, Tuple, Union

import numpy as np

from landsim.demography import DemographicModel
from landsim.migration import migrate
from landsim.types import (
    Breakdown,
    ConfigurationError,
    InvalidArgument,
    NegativeCountWarning,
)


def seed_production(
    seeders: np.ndarray,
    pollen: np.ndarray,
    mating: np.ndarray,
) -> np.ndarray:
    """Expected seeds by offspring genotype at each location.

    out[ℓ, g] = Σ_{u,v} seeders[ℓ, u] × pollen[ℓ, v] × T[u, v, g]

    Args:
        seeders: (n_locations, G) seed parents.
        pollen: (n_locations, G) pollen arriving, by pollen-parent genotype.
        mating: (G, G, G) mating tensor.

    Returns:
        (n_locations, G) float64.
    """
    return np.einsum('lu,lv,uvg->lg', seeders, pollen, mating)


def _clamp_nonnegative(x: np.ndarray, name: str, strict: bool) -> np.ndarray:
    neg = x < 0
    if not np.any(neg):
        return x
    worst = float(x[neg].min())
    if strict:
        raise ValueError(
            f"{name} has {int(neg.sum())} negative entries (min {worst:.3g})"
        )
    warnings.warn(
        f"clamped {int(neg.sum())} negative entries of {name} to zero "
        f"(min {worst:.3g})",
        NegativeCountWarning,
        stacklevel=3,
    )
    return np.where(neg, 0.0, x)


def _integer_counts(N: np.ndarray) -> np.ndarray:
    rounded = np.rint(N)
    if not np.allclose(N, rounded, rtol=0.0, atol=1e-8):
        raise InvalidArgument(
            "stochastic generations need integer-valued counts; "
            "round or sample the initial state first"
        )
    return rounded.astype(np.int64)


def generation(
    N: np.ndarray,
    model: DemographicModel,
    covariates: Optional[Mapping[str, Any]] = None,
    expected: bool = False,
    rng: Optional[np.random.Generator] = None,
    return_breakdown: bool = False,
    strict: bool = False,
) -> Union[np.ndarray, Tuple[np.ndarray, Breakdown]]:
    """Advance the population by one generation.

    Args:
        N: (n_habitable, G) current counts.
        model: DemographicModel on which setup() has been called.
        covariates: Extra arguments for computed vital rates
            (e.g. carrying_capacity).
        expected: If True, use expected values throughout; otherwise
            sample seeders and germinants (Poisson) and deaths (Binomial).
        rng: Random generator; required unless expected=True.
        return_breakdown: Also return the six intermediate quantities.
        strict: Raise instead of clamping negative results.

    Returns:
        next_N, or (next_N, Breakdown) if return_breakdown.

    Raises:
        ConfigurationError: Model not set up, or N has the wrong shape.
        InvalidArgument: Non-integer N in stochastic mode.
        ValueError: Stochastic mode without an rng; negatives with strict.
    """
    if not model.is_setup:
        raise ConfigurationError(
            "demographic model has no migration matrices; call setup(model, population) first"
        )
    N = np.asarray(N, dtype=np.float64)
    shape = (model.pollen_matrix.shape[0], model.n_genotypes)
    if N.shape != shape:
        raise ConfigurationError(
            f"population matrix has shape {N.shape}, model expects {shape}"
        )
    if not expected and rng is None:
        raise ValueError("stochastic generation requires an rng")

    rates = model.resolve_rates(N, covariates)

    seeders = N * rates['prob_seed']
    if not expected:
        seeders = rng.poisson(seeders).astype(np.float64)

    pollen = migrate(N, model.pollen_matrix)
    production = seed_production(seeders, pollen, model.mating)
    seeds_dispersed = migrate(production, model.seed_matrix) * rates['fecundity']

    germination = seeds_dispersed * rates['prob_germination']
    if not expected:
        germination = rng.poisson(germination).astype(np.float64)

    p_death = 1.0 - rates['prob_survival']
    if expected:
        death = N * p_death
    else:
        death = rng.binomial(_integer_counts(N), np.clip(p_death, 0.0, 1.0)).astype(np.float64)

    next_N = _clamp_nonnegative(N - death + germination, 'next N', strict)

    if not return_breakdown:
        return next_N
    breakdown = Breakdown(
        seeders=seeders,
        pollen=pollen,
        seed_production=production,
        seeds_dispersed=seeds_dispersed,
        germination=germination,
        death=death,
    )
    return next_N, breakdown
