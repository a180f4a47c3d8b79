"""Backward-in-time lineage sampling.

Given a recorded forward generation, each tracked allele copy (a lineage
sitting in an individual of genotype g at location ℓ) is traced one
generation back by undoing the forward steps in reverse:

  1. survivor or germinant?  P(survivor) = survivors / (survivors + germinants)
     survivors stay put with the same genotype
  2. seed source s         ∝ S[s, ℓ] × seed_production[s, g]
  3. parental pair (u, v)  ∝ seeders[s, u] × pollen[s, v] × T[u, v, g]
  4. allele came from the seed parent with probability
     num_alleles[u] / (num_alleles[u] + num_alleles[v]), else pollen parent
  5. pollen parent location s2 ∝ P[s2, s] × N[s2, v]

Lineages are independent: each one is sampled on its own and keeps no
identity beyond its own trajectory. A lineage whose backward weights are all
zero raises SamplingError; ``simulate_lineages`` records that error on the
lineage's trace and carries on with the rest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import sparse

from landsim.demography import DemographicModel
from landsim.grid import HabitatIndex
from landsim.history import GenerationHistory
from landsim.types import (
    Breakdown,
    BreakdownLike,
    ConfigurationError,
    SamplingError,
    as_breakdown,
)


# ═══════════════════════════════════════════════════════════════════════
# TRACE
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class LineageTrace:
    """Ordered (time, row, genotype) positions of one lineage, latest first."""
    path: List[Tuple[int, int, int]] = field(default_factory=list)
    error: Optional[SamplingError] = None

    @property
    def complete(self) -> bool:
        return self.error is None

    @property
    def current(self) -> Tuple[int, int, int]:
        return self.path[-1]

    def as_array(self) -> np.ndarray:
        """(n_steps, 3) int64 array of (time, row, genotype)."""
        return np.array(self.path, dtype=np.int64).reshape(-1, 3)

    def cells(self, index: HabitatIndex) -> np.ndarray:
        """Grid cell index at each step."""
        return np.array([index.cell(row) for _, row, _ in self.path], dtype=np.int64)


# ═══════════════════════════════════════════════════════════════════════
# ONE BACKWARD STEP
# ═══════════════════════════════════════════════════════════════════════

def _choose(weights: np.ndarray, rng: np.random.Generator, what: str) -> int:
    total = weights.sum()
    if not total > 0:
        raise SamplingError(f"all backward weights are zero when sampling {what}")
    return int(rng.choice(len(weights), p=weights / total))


def _column(M: sparse.csc_matrix, j: int) -> Tuple[np.ndarray, np.ndarray]:
    start, end = M.indptr[j], M.indptr[j + 1]
    return M.indices[start:end], M.data[start:end]


class _StepContext:
    """Arrays shared by every lineage within one backward step."""

    def __init__(self, N_before, breakdown: Breakdown, model: DemographicModel, num_alleles):
        self.N = N_before
        self.bd = breakdown
        self.T = model.mating
        self.G = model.n_genotypes
        self.S = sparse.csc_matrix(model.seed_matrix)
        self.P = sparse.csc_matrix(model.pollen_matrix)
        self.num_alleles = num_alleles


def _trace_one(loc: int, g: int, ctx: _StepContext, rng: np.random.Generator) -> Tuple[int, int]:
    bd = ctx.bd
    survivors = max(ctx.N[loc, g] - bd.death[loc, g], 0.0)
    germinants = bd.germination[loc, g]
    if not survivors + germinants > 0:
        raise SamplingError(
            f"no survivors or germinants of genotype {g} at location {loc}"
        )
    if rng.random() < survivors / (survivors + germinants):
        return loc, g

    sources, s_weights = _column(ctx.S, loc)
    k = _choose(s_weights * bd.seed_production[sources, g], rng,
                f"a seed source for location {loc}, genotype {g}")
    s = int(sources[k])

    pair_weights = np.outer(bd.seeders[s], bd.pollen[s]) * ctx.T[:, :, g]
    u, v = divmod(_choose(pair_weights.ravel(), rng,
                          f"parental genotypes at location {s} for offspring {g}"), ctx.G)

    nu, nv = ctx.num_alleles[u], ctx.num_alleles[v]
    p_seed_parent = 0.5 if nu + nv == 0 else nu / (nu + nv)
    if rng.random() < p_seed_parent:
        return s, u

    donors, p_weights = _column(ctx.P, s)
    k = _choose(p_weights * ctx.N[donors, v], rng,
                f"a pollen source for location {s}, genotype {v}")
    return int(donors[k]), v


def lineage_step(
    lineages,
    N_before: np.ndarray,
    breakdown: BreakdownLike,
    model: DemographicModel,
    num_alleles: Sequence[int],
    rng: np.random.Generator,
    on_error: str = 'raise',
) -> Union[np.ndarray, Tuple[np.ndarray, List[Tuple[int, SamplingError]]]]:
    """Sample each lineage's parental (location, genotype) one generation back.

    Args:
        lineages: (k, 2) int array of (row, genotype) after the generation.
        N_before: (n_habitable, G) state before the generation.
        breakdown: Breakdown (or mapping) of that generation.
        model: The DemographicModel that produced it (set up).
        num_alleles: Copies of the tracked allele per genotype.
        rng: Random generator.
        on_error: 'raise' stops at the first lineage that cannot be
            sampled. 'mark' gives that lineage a (-1, -1) row and keeps
            going. Rows already at -1 are passed through unchanged.

    Returns:
        (k, 2) int64 array of parental (row, genotype). With
        on_error='mark', a tuple (parents, errors) where errors lists
        (position, SamplingError) for every failed lineage.

    Raises:
        ConfigurationError: Breakdown missing a field, model not set up,
            or shapes inconsistent.
        SamplingError: Zero backward weights (with on_error='raise').
        ValueError: Unknown on_error mode.
    """
    if on_error not in ('raise', 'mark'):
        raise ValueError(f"on_error must be 'raise' or 'mark', got '{on_error}'")
    bd = as_breakdown(breakdown)
    if not model.is_setup:
        raise ConfigurationError("demographic model must be set up before lineage sampling")
    N_before = np.asarray(N_before, dtype=np.float64)
    for name, arr in bd.as_dict().items():
        if arr.shape != N_before.shape:
            raise ConfigurationError(
                f"breakdown field '{name}' has shape {arr.shape}, "
                f"state has shape {N_before.shape}"
            )
    num_alleles = np.asarray(num_alleles, dtype=np.float64)
    if len(num_alleles) != model.n_genotypes:
        raise ConfigurationError(
            f"num_alleles has {len(num_alleles)} entries, model has "
            f"{model.n_genotypes} genotypes"
        )

    lineages = np.asarray(lineages, dtype=np.int64).reshape(-1, 2)
    ctx = _StepContext(N_before, bd, model, num_alleles)
    parents = np.full_like(lineages, -1)
    errors: List[Tuple[int, SamplingError]] = []
    for i, (loc, g) in enumerate(lineages):
        if loc < 0:
            continue
        try:
            parents[i] = _trace_one(int(loc), int(g), ctx, rng)
        except SamplingError as exc:
            if on_error == 'raise':
                raise SamplingError(f"lineage {i}: {exc}") from exc
            errors.append((i, exc))
    if on_error == 'mark':
        return parents, errors
    return parents


# ═══════════════════════════════════════════════════════════════════════
# MULTI-GENERATION TRACING
# ═══════════════════════════════════════════════════════════════════════

def simulate_lineages(
    history: GenerationHistory,
    lineages,
    model: DemographicModel,
    num_alleles: Sequence[int],
    rng: np.random.Generator,
) -> List[LineageTrace]:
    """Trace lineages back through a whole recorded history.

    The lineages are positions in the state just after the last recorded
    generation (time = last history time + 1). Each trace starts there and
    gains one (time, row, genotype) entry per generation walked back.

    Raises:
        ValueError: History times are not consecutive.
    """
    lineages = np.asarray(lineages, dtype=np.int64).reshape(-1, 2)
    times = history.times
    if any(b != a + 1 for a, b in zip(times, times[1:])):
        raise ValueError("lineage tracing needs a history of consecutive generations")
    t_end = times[-1] + 1 if times else 0

    traces = [LineageTrace(path=[(t_end, int(loc), int(g))]) for loc, g in lineages]
    current = lineages.copy()
    for entry in history.reversed_entries():
        active = [i for i, tr in enumerate(traces) if tr.error is None]
        if not active:
            break
        parents, errors = lineage_step(
            current[active], entry.N_before, entry.breakdown,
            model, num_alleles, rng, on_error='mark',
        )
        for pos, exc in errors:
            traces[active[pos]].error = SamplingError(
                f"lineage {active[pos]} at time {entry.time + 1}: {exc}"
            )
        for pos, i in enumerate(active):
            if traces[i].error is None:
                current[i] = parents[pos]
                traces[i].path.append((entry.time, int(parents[pos, 0]), int(parents[pos, 1])))
    return traces


def sample_lineages(
    N: np.ndarray,
    num_alleles: Sequence[int],
    n: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw n starting lineages ∝ copies of the tracked allele.

    Returns:
        (n, 2) int64 array of (row, genotype).

    Raises:
        SamplingError: No copies of the tracked allele in N.
    """
    N = np.asarray(N, dtype=np.float64)
    weights = N * np.asarray(num_alleles, dtype=np.float64)[np.newaxis, :]
    flat = weights.ravel()
    total = flat.sum()
    if not total > 0:
        raise SamplingError("no copies of the tracked allele to start lineages from")
    picks = rng.choice(flat.size, size=n, p=flat / total)
    rows, genos = np.divmod(picks, N.shape[1])
    return np.column_stack([rows, genos]).astype(np.int64)
