"""Simulation driver.

Iterates the generation engine over a time grid:
  - every integer generation between requested times is computed
  - snapshots and summary statistics are kept at requested times only
  - an optional stop predicate is checked after every generation
  - with retain_history=True the full breakdown of every generation is
    kept for backward lineage sampling

Also builds grid, population and model from a SimulationConfig
(``build_from_config``), runs them (``run_from_config``) and traces
lineages back through a retained run (``trace_lineages``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from landsim.config import SimulationConfig, default_config
from landsim.demography import (
    Computed,
    DemographicModel,
    beverton_holt_germination,
    setup,
)
from landsim.generation import generation
from landsim.genetics import (
    allele_counts,
    hardy_weinberg_proportions,
    total_allele_frequency,
)
from landsim.grid import Grid, Population
from landsim.history import GenerationHistory
from landsim.lineage import LineageTrace, sample_lineages, simulate_lineages
from landsim.migration import Migration
from landsim.rng import create_rng_hierarchy


SummaryFunc = Callable[[np.ndarray], Any]


# ═══════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationResult:
    """Snapshots and summaries from one simulation run."""
    times: np.ndarray                       # (n_snapshots,) recorded times
    N: np.ndarray                           # (n_snapshots, n_habitable, G)
    summaries: Dict[str, List[Any]] = field(default_factory=dict)
    history: Optional[GenerationHistory] = None
    stopped_early: bool = False
    final_time: int = 0
    n_generations: int = 0

    @property
    def final_N(self) -> np.ndarray:
        return self.N[-1]

    def summary_array(self, name: str) -> np.ndarray:
        return np.asarray(self.summaries[name])


def _check_times(times: Sequence[int]) -> List[int]:
    times = [int(t) for t in times]
    if len(times) == 0:
        raise ValueError("times must contain at least the starting time")
    if times[0] < 0:
        raise ValueError(f"times must be non-negative, got {times[0]}")
    if any(b <= a for a, b in zip(times, times[1:])):
        raise ValueError(f"times must be strictly increasing, got {times}")
    return times


# ═══════════════════════════════════════════════════════════════════════
# DRIVER
# ═══════════════════════════════════════════════════════════════════════

def simulate(
    population: Population,
    model: DemographicModel,
    times: Sequence[int],
    covariates: Optional[Mapping[str, Any]] = None,
    summaries: Optional[Mapping[str, SummaryFunc]] = None,
    stop: Optional[Callable[[np.ndarray], bool]] = None,
    retain_history: bool = False,
    expected: bool = False,
    rng: Optional[np.random.Generator] = None,
    strict: bool = False,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> SimulationResult:
    """Run the generation engine from times[0] to times[-1].

    The population's N is the state at times[0]. One generation is computed
    per unit of time; the state is snapshotted (and every summary evaluated
    on it) at each requested time, including the initial one.

    Args:
        population: Starting population (grid, masks, N).
        model: DemographicModel; setup() is called against the population.
        times: Strictly increasing non-negative integer times.
        covariates: Passed to computed vital rates every generation.
        summaries: name → f(N); results appended to result.summaries[name].
        stop: Predicate on the new N, checked after every generation. When it
            returns True the run ends there; the stopping state is appended
            as the last snapshot.
        retain_history: Keep every generation's breakdown (memory heavy).
        expected: Deterministic expected-value generations.
        rng: Random generator; required unless expected=True.
        strict: Raise on negative counts instead of clamping.
        progress_callback: Optional callable(t, t_end).

    Returns:
        SimulationResult.
    """
    times = _check_times(times)
    setup(model, population)

    N = population.N.copy()
    summaries = dict(summaries or {})
    series: Dict[str, List[Any]] = {name: [] for name in summaries}
    snap_times = []
    snaps = []

    def _snapshot(t: int, state: np.ndarray) -> None:
        snap_times.append(t)
        snaps.append(state.copy())
        for name, func in summaries.items():
            series[name].append(func(state))

    _snapshot(times[0], N)

    history = GenerationHistory() if retain_history else None
    wanted = set(times[1:])
    t = times[0]
    t_end = times[-1]
    n_generations = 0
    stopped_early = False

    while t < t_end:
        if history is not None:
            N_next, breakdown = generation(
                N, model, covariates, expected=expected, rng=rng,
                return_breakdown=True, strict=strict,
            )
            history.record(t, N, breakdown)
        else:
            N_next = generation(
                N, model, covariates, expected=expected, rng=rng, strict=strict,
            )
        N = N_next
        t += 1
        n_generations += 1

        halt = stop is not None and bool(stop(N))
        if t in wanted or halt:
            _snapshot(t, N)
        if progress_callback is not None:
            progress_callback(t, t_end)
        if halt:
            stopped_early = t < t_end
            break

    return SimulationResult(
        times=np.array(snap_times, dtype=np.int64),
        N=np.stack(snaps),
        summaries=series,
        history=history,
        stopped_early=stopped_early,
        final_time=t,
        n_generations=n_generations,
    )


# ═══════════════════════════════════════════════════════════════════════
# CONFIG BUILDERS
# ═══════════════════════════════════════════════════════════════════════

def build_grid(config: SimulationConfig) -> Grid:
    h = config.habitat
    return Grid.uniform(
        h.nrow, h.ncol,
        resolution=h.resolution,
        origin=(h.xmin, h.ymin),
        missing=h.missing_cells,
    )


def initial_state(
    population: Population,
    config: SimulationConfig,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Starting counts: initial_density per cell split across genotypes.

    Three-genotype models start at Hardy-Weinberg proportions for
    initial_frequency; others split evenly. With an rng, counts are
    Poisson-sampled around those means.
    """
    gen = config.genetics
    G = population.n_genotypes
    if G == 3:
        props = hardy_weinberg_proportions(gen.initial_frequency)
    else:
        props = np.full(G, 1.0 / G)
    means = np.outer(np.full(population.n_habitable, gen.initial_density), props)
    if rng is None:
        return means
    return rng.poisson(means).astype(np.float64)


def build_from_config(
    config: SimulationConfig,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[Population, DemographicModel, Dict[str, Any]]:
    """Population, model and covariates described by a config."""
    grid = build_grid(config)
    accessible = grid.non_missing_mask()
    habitable = accessible.copy()
    if config.habitat.uninhabitable_cells:
        habitable[np.asarray(config.habitat.uninhabitable_cells, dtype=np.int64)] = False

    population = Population(
        habitat=grid,
        genotypes=list(config.genetics.genotypes),
        habitable=habitable,
        accessible=accessible,
    )
    population.N = initial_state(
        population, config, rng=None if config.simulation.expected else rng,
    )

    dem = config.demography
    covariates: Dict[str, Any] = {}
    if dem.germination_model == 'beverton_holt':
        prob_germination = Computed(beverton_holt_germination, {'r0': dem.prob_germination})
        covariates['carrying_capacity'] = dem.carrying_capacity
    else:
        prob_germination = dem.prob_germination

    model = DemographicModel(
        prob_seed=dem.prob_seed,
        fecundity=dem.fecundity,
        prob_germination=prob_germination,
        prob_survival=dem.prob_survival,
        pollen_migration=_migration_from_section(config.pollen),
        seed_migration=_migration_from_section(config.seed),
        genotypes=list(config.genetics.genotypes),
    )
    return population, model, covariates


def _migration_from_section(section) -> Migration:
    return Migration(
        kern=section.kernel,
        sigma=section.sigma,
        radius=section.radius,
        normalize=section.normalize,
        min_prob=section.min_prob,
    )


def config_num_alleles(config: SimulationConfig) -> np.ndarray:
    """Tracked-allele copies per genotype: explicit, or 0..G-1."""
    if config.genetics.num_alleles is not None:
        return np.asarray(config.genetics.num_alleles, dtype=np.int64)
    return allele_counts(config.genetics.genotypes)


def default_summaries(config: SimulationConfig) -> Dict[str, SummaryFunc]:
    """Total population and landscape allele frequency."""
    num_alleles = config_num_alleles(config)
    return {
        'total_population': lambda N: float(N.sum()),
        'allele_frequency': lambda N: total_allele_frequency(N, num_alleles),
    }


def run_from_config(
    config: Optional[SimulationConfig] = None,
    summaries: Optional[Mapping[str, SummaryFunc]] = None,
    stop: Optional[Callable[[np.ndarray], bool]] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> Tuple[SimulationResult, Population, DemographicModel]:
    """Build everything from a config and run one simulation.

    Uses the 'global' stream for the starting state and the 'demography'
    stream for generations.
    """
    if config is None:
        config = default_config()
    rngs = create_rng_hierarchy(config.simulation.seed)
    population, model, covariates = build_from_config(config, rng=rngs['global'])
    result = simulate(
        population, model,
        times=config.simulation.resolved_times(),
        covariates=covariates,
        summaries=summaries if summaries is not None else default_summaries(config),
        stop=stop,
        retain_history=config.simulation.retain_history,
        expected=config.simulation.expected,
        rng=rngs['demography'],
        strict=config.simulation.strict,
        progress_callback=progress_callback,
    )
    return result, population, model


def trace_lineages(
    config: SimulationConfig,
    result: SimulationResult,
    model: DemographicModel,
    n_lineages: int,
) -> List[LineageTrace]:
    """Sample lineages from a run's final state and trace them back to its start.

    Uses the 'lineage' stream of the config seed's hierarchy, so the traces
    are reproducible and independent of the forward draws.

    Raises:
        ValueError: The run kept no history (retain_history was off).
        SamplingError: The final state holds no copies of the tracked allele.
    """
    if result.history is None:
        raise ValueError("lineage tracing needs a run with retain_history=True")
    rng = create_rng_hierarchy(config.simulation.seed)['lineage']
    num_alleles = config_num_alleles(config)
    lineages = sample_lineages(result.final_N, num_alleles, n_lineages, rng)
    return simulate_lineages(result.history, lineages, model, num_alleles, rng)
