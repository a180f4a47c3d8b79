"""Demographic model: vital rates, dispersal and mating.

A vital rate is one of
  - Constant(value):         scalar (or fixed array broadcastable to N)
  - PerGenotype(values):     one value per genotype
  - Computed(func, params):  func(N, **params, **covariates) → matrix,
                             re-evaluated on every generation call

and is resolved to an (n_habitable, n_genotypes) matrix before use.

``setup(model, population)`` materialises the pollen and seed migration
matrices against the population's grid (rows = habitable cells, columns =
accessible cells) and caches them on the model together with the
habitable-column slices the generation engine uses. Dispersal into an
accessible but uninhabitable cell is lost from the population.
"""

from __future__ import annotations

import hashlib
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import numpy as np
from scipy import sparse

from landsim.genetics import mating_tensor, validate_mating_tensor
from landsim.grid import Population
from landsim.migration import Migration, migrate, migration_matrix
from landsim.types import ConfigurationError


# ═══════════════════════════════════════════════════════════════════════
# VITAL RATES
# ═══════════════════════════════════════════════════════════════════════

class VitalRate:
    """Base class for the three vital-rate variants."""

    def resolve(self, N: np.ndarray, covariates: Optional[Mapping[str, Any]] = None,
                name: str = 'vital rate') -> np.ndarray:
        raise NotImplementedError

    @staticmethod
    def _broadcast(value, N: np.ndarray, name: str) -> np.ndarray:
        value = np.asarray(value, dtype=np.float64)
        try:
            return np.broadcast_to(value, N.shape)
        except ValueError:
            raise ConfigurationError(
                f"{name} of shape {value.shape} cannot be broadcast to "
                f"population shape {N.shape}"
            ) from None


@dataclass
class Constant(VitalRate):
    value: Any

    def resolve(self, N, covariates=None, name='vital rate'):
        return self._broadcast(self.value, N, name)


@dataclass
class PerGenotype(VitalRate):
    values: Any

    def __post_init__(self):
        self.values = np.asarray(self.values, dtype=np.float64)
        if self.values.ndim != 1:
            raise ConfigurationError(
                f"per-genotype rate must be a vector, got shape {self.values.shape}"
            )

    def resolve(self, N, covariates=None, name='vital rate'):
        if len(self.values) != N.shape[1]:
            raise ConfigurationError(
                f"{name} has {len(self.values)} per-genotype values, "
                f"population has {N.shape[1]} genotypes"
            )
        return self._broadcast(self.values[np.newaxis, :], N, name)


@dataclass
class Computed(VitalRate):
    func: Callable
    params: Dict[str, Any] = field(default_factory=dict)

    def resolve(self, N, covariates=None, name='vital rate'):
        kwargs = dict(self.params)
        kwargs.update(_accepted_covariates(self.func, covariates or {}))
        return self._broadcast(self.func(N, **kwargs), N, name)


def _accepted_covariates(func: Callable, covariates: Mapping[str, Any]) -> Dict[str, Any]:
    """Subset of covariates that func's signature can take."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return dict(covariates)
    params = sig.parameters
    if any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values()):
        return dict(covariates)
    return {k: v for k, v in covariates.items() if k in params}


def as_vital_rate(x) -> VitalRate:
    """Coerce a scalar, vector, callable or (callable, params) to a VitalRate."""
    if isinstance(x, VitalRate):
        return x
    if callable(x):
        return Computed(x)
    if isinstance(x, tuple) and len(x) == 2 and callable(x[0]):
        return Computed(x[0], dict(x[1]))
    arr = np.asarray(x, dtype=np.float64)
    if arr.ndim == 1:
        return PerGenotype(arr)
    return Constant(arr if arr.ndim else float(arr))


def _check_probability(value: np.ndarray, name: str) -> None:
    if not np.all(np.isfinite(value)) or np.any(value < 0) or np.any(value > 1):
        raise ConfigurationError(
            f"{name} must be in [0, 1], got values in "
            f"[{np.nanmin(value)}, {np.nanmax(value)}]"
        )


# ═══════════════════════════════════════════════════════════════════════
# BUILT-IN DENSITY-DEPENDENT RATES
# ═══════════════════════════════════════════════════════════════════════

def beverton_holt_germination(
    N: np.ndarray,
    r0: float = 1.0,
    carrying_capacity=1.0,
    competition: Optional[sparse.spmatrix] = None,
) -> np.ndarray:
    """Germination probability r0 / (1 + density / K).

    density is the local total over genotypes, optionally smoothed through
    a competition migration matrix (habitable × habitable).
    """
    density = np.asarray(N, dtype=np.float64).sum(axis=1)
    if competition is not None:
        density = migrate(density, competition)
    K = np.asarray(carrying_capacity, dtype=np.float64)
    if np.any(K <= 0):
        raise ConfigurationError("carrying_capacity must be positive")
    p = r0 / (1.0 + density / K)
    return np.broadcast_to(p[:, np.newaxis], N.shape)


def density_survival(
    N: np.ndarray,
    s0: float = 1.0,
    carrying_capacity=1.0,
) -> np.ndarray:
    """Survival probability s0 / (1 + density / K), density = local total."""
    density = np.asarray(N, dtype=np.float64).sum(axis=1)
    K = np.asarray(carrying_capacity, dtype=np.float64)
    if np.any(K <= 0):
        raise ConfigurationError("carrying_capacity must be positive")
    p = s0 / (1.0 + density / K)
    return np.broadcast_to(p[:, np.newaxis], N.shape)


# ═══════════════════════════════════════════════════════════════════════
# DEMOGRAPHIC MODEL
# ═══════════════════════════════════════════════════════════════════════

_PROBABILITY_RATES = ('prob_seed', 'prob_germination', 'prob_survival')


@dataclass
class DemographicModel:
    """Per-generation vital rates, dispersal parameters and mating tensor.

    Migration matrices are None until ``setup`` is called against a
    population; after that they are treated as read-only and may be shared
    between runs on the same grid.
    """
    prob_seed: Any
    fecundity: Any
    prob_germination: Any
    prob_survival: Any
    pollen_migration: Migration
    seed_migration: Migration
    genotypes: List[str]
    mating: Optional[np.ndarray] = None

    # Materialised by setup()
    pollen_matrix: Optional[sparse.csr_matrix] = field(default=None, init=False, repr=False)
    seed_matrix: Optional[sparse.csr_matrix] = field(default=None, init=False, repr=False)
    pollen_matrix_full: Optional[sparse.csr_matrix] = field(default=None, init=False, repr=False)
    seed_matrix_full: Optional[sparse.csr_matrix] = field(default=None, init=False, repr=False)
    setup_fingerprint: Optional[str] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.genotypes = [str(g) for g in self.genotypes]
        if len(self.genotypes) == 0:
            raise ConfigurationError("demographic model needs at least one genotype")
        if len(set(self.genotypes)) != len(self.genotypes):
            raise ConfigurationError(f"genotype labels must be unique, got {self.genotypes}")

        for name in _PROBABILITY_RATES + ('fecundity',):
            value = getattr(self, name)
            if value is None:
                raise ConfigurationError(f"demographic model requires '{name}'")
            setattr(self, name, as_vital_rate(value))

        for name in _PROBABILITY_RATES:
            rate = getattr(self, name)
            if isinstance(rate, Constant):
                _check_probability(np.asarray(rate.value), name)
            elif isinstance(rate, PerGenotype):
                _check_probability(rate.values, name)
                if len(rate.values) != self.n_genotypes:
                    raise ConfigurationError(
                        f"{name} has {len(rate.values)} per-genotype values, "
                        f"model has {self.n_genotypes} genotypes"
                    )
        if isinstance(self.fecundity, Constant):
            fec = np.asarray(self.fecundity.value, dtype=np.float64)
        elif isinstance(self.fecundity, PerGenotype):
            fec = self.fecundity.values
        else:
            fec = np.zeros(0)
        if np.any(fec < 0):
            raise ConfigurationError("fecundity must be non-negative")

        for name in ('pollen_migration', 'seed_migration'):
            mig = getattr(self, name)
            if mig is None:
                raise ConfigurationError(f"demographic model requires '{name}'")
            if isinstance(mig, Mapping):
                mig = Migration(**mig)
                setattr(self, name, mig)
            mig.validate()

        if self.mating is None:
            self.mating = mating_tensor(self.genotypes)
        self.mating = validate_mating_tensor(self.mating, self.n_genotypes)

    @property
    def n_genotypes(self) -> int:
        return len(self.genotypes)

    @property
    def is_setup(self) -> bool:
        return self.pollen_matrix is not None and self.seed_matrix is not None

    def resolve_rates(
        self,
        N: np.ndarray,
        covariates: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, np.ndarray]:
        """Resolve all four vital rates to (n_habitable, n_genotypes) matrices.

        Computed rates are evaluated here against the current N.
        """
        rates = {}
        for name in _PROBABILITY_RATES:
            value = getattr(self, name).resolve(N, covariates, name=name)
            _check_probability(value, name)
            rates[name] = value
        fec = self.fecundity.resolve(N, covariates, name='fecundity')
        if np.any(fec < 0):
            raise ConfigurationError("fecundity must be non-negative")
        rates['fecundity'] = fec
        return rates

    def setup(self, population: Population) -> 'DemographicModel':
        return setup(self, population)


def _setup_fingerprint(model: DemographicModel, population: Population) -> str:
    """Hash of the population geometry and both dispersal parameter sets."""
    key = f"{population.fingerprint()}|{model.pollen_migration!r}|{model.seed_migration!r}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def setup(model: DemographicModel, population: Population) -> DemographicModel:
    """Materialise pollen and seed migration matrices for a population's grid.

    Rows are habitable cells, columns accessible cells. Calling again with a
    grid and masks that are bitwise identical, and unchanged pollen and seed
    Migration parameters, keeps the cached matrices.

    Raises:
        ConfigurationError: Model and population genotype lists differ.
    """
    if list(model.genotypes) != list(population.genotypes):
        raise ConfigurationError(
            f"model genotypes {model.genotypes} do not match "
            f"population genotypes {population.genotypes}"
        )

    for mig in (model.pollen_migration, model.seed_migration):
        mig.validate()
    fingerprint = _setup_fingerprint(model, population)
    if model.is_setup and model.setup_fingerprint == fingerprint:
        return model

    habitable = population.habitable_cells()
    accessible = population.accessible_cells()
    hab_cols = np.searchsorted(accessible, habitable)

    for name in ('pollen', 'seed'):
        full = migration_matrix(
            population,
            getattr(model, f'{name}_migration'),
            from_cells=habitable,
            to_cells=accessible,
            accessible=population.accessible,
        )
        setattr(model, f'{name}_matrix_full', full)
        setattr(model, f'{name}_matrix', full[:, hab_cols].tocsr())

    model.setup_fingerprint = fingerprint
    return model
