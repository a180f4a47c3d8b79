"""Tests for landsim.generation — forward generation step.

Tests:
  1. seed_production contraction against an explicit loop
  2. Conservation and non-negativity in expected mode
  3. Single-cell closed-form scenarios
  4. Stochastic mode: integer counts, reproducibility, argument checks
  5. Negative-count clamping and strict mode
"""

import warnings

import numpy as np
import pytest

from landsim.demography import Computed, DemographicModel, setup
from landsim.generation import _clamp_nonnegative, generation, seed_production
from landsim.genetics import mating_tensor
from landsim.grid import Grid, Population
from landsim.migration import Migration
from landsim.types import (
    BREAKDOWN_FIELDS,
    Breakdown,
    ConfigurationError,
    InvalidArgument,
    NegativeCountWarning,
)


GENOTYPES = ['aa', 'aA', 'AA']


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def landscape():
    """3x3 grid, one uninhabitable sink cell, expected-mode-friendly rates."""
    grid = Grid.uniform(3, 3)
    habitable = np.ones(9, dtype=bool)
    habitable[4] = False
    N = np.tile([3.0, 5.0, 2.0], (8, 1))
    N[0] = [10.0, 0.0, 0.0]
    pop = Population(grid, GENOTYPES, N=N, habitable=habitable,
                     accessible=np.ones(9, dtype=bool))
    model = DemographicModel(
        prob_seed=[0.6, 0.5, 0.4],
        fecundity=1.5,
        prob_germination=0.05,
        prob_survival=[0.7, 0.8, 0.9],
        pollen_migration=Migration(sigma=1.0, radius=1.5, normalize=0.1),
        seed_migration=Migration(sigma=0.8, radius=1.0),
        genotypes=GENOTYPES,
    )
    setup(model, pop)
    return pop, model


def single_cell_model(prob_survival, genotypes=('A',), mating=None):
    if mating is None:
        mating = np.ones((1, 1, 1))
    model = DemographicModel(
        prob_seed=1.0,
        fecundity=1.0,
        prob_germination=1.0,
        prob_survival=prob_survival,
        pollen_migration=Migration(sigma=1.0, radius=0.0),
        seed_migration=Migration(sigma=1.0, radius=0.0),
        genotypes=list(genotypes),
        mating=mating,
    )
    pop = Population(Grid.uniform(1, 1), list(genotypes), N=np.ones((1, len(genotypes))))
    setup(model, pop)
    return pop, model


# ═══════════════════════════════════════════════════════════════════════
# SEED PRODUCTION
# ═══════════════════════════════════════════════════════════════════════

class TestSeedProduction:
    def test_matches_loop(self, rng):
        T = mating_tensor(GENOTYPES)
        seeders = rng.random((5, 3))
        pollen = rng.random((5, 3))
        expected = np.zeros((5, 3))
        for loc in range(5):
            for u in range(3):
                for v in range(3):
                    expected[loc] += seeders[loc, u] * pollen[loc, v] * T[u, v]
        np.testing.assert_allclose(seed_production(seeders, pollen, T), expected)

    def test_total_is_product_of_totals(self, rng):
        T = mating_tensor(GENOTYPES)
        seeders = rng.random((4, 3))
        pollen = rng.random((4, 3))
        out = seed_production(seeders, pollen, T)
        np.testing.assert_allclose(out.sum(axis=1), seeders.sum(axis=1) * pollen.sum(axis=1))

    def test_homozygous_cross(self):
        T = mating_tensor(GENOTYPES)
        out = seed_production(np.array([[2.0, 0.0, 0.0]]), np.array([[0.0, 0.0, 3.0]]), T)
        np.testing.assert_allclose(out, [[0.0, 6.0, 0.0]])


# ═══════════════════════════════════════════════════════════════════════
# EXPECTED MODE
# ═══════════════════════════════════════════════════════════════════════

class TestExpectedGeneration:
    def test_conservation(self, landscape):
        pop, model = landscape
        next_N, bd = generation(pop.N, model, expected=True, return_breakdown=True)
        assert np.all(next_N >= 0)
        assert next_N.sum() == pytest.approx(
            pop.N.sum() - bd.death.sum() + bd.germination.sum(), rel=1e-12
        )
        np.testing.assert_allclose(next_N, pop.N - bd.death + bd.germination)

    def test_breakdown_fields(self, landscape):
        pop, model = landscape
        _, bd = generation(pop.N, model, expected=True, return_breakdown=True)
        assert isinstance(bd, Breakdown)
        for name in BREAKDOWN_FIELDS:
            arr = getattr(bd, name)
            assert arr.shape == pop.N.shape, name
            assert np.all(arr >= 0), name

    def test_pollen_uses_full_population(self, landscape):
        pop, model = landscape
        _, bd = generation(pop.N, model, expected=True, return_breakdown=True)
        np.testing.assert_allclose(bd.pollen, model.pollen_matrix.T @ pop.N)

    def test_fecundity_applied_after_dispersal(self, landscape):
        pop, model = landscape
        _, bd = generation(pop.N, model, expected=True, return_breakdown=True)
        np.testing.assert_allclose(
            bd.seeds_dispersed, 1.5 * (model.seed_matrix.T @ bd.seed_production)
        )

    def test_deterministic(self, landscape):
        pop, model = landscape
        a = generation(pop.N, model, expected=True)
        b = generation(pop.N, model, expected=True)
        np.testing.assert_array_equal(a, b)

    def test_input_not_modified(self, landscape):
        pop, model = landscape
        before = pop.N.copy()
        generation(pop.N, model, expected=True)
        np.testing.assert_array_equal(pop.N, before)

    def test_covariates_reach_computed_rates(self, landscape):
        pop, model = landscape
        seen = {}

        def germ(N, carrying_capacity):
            seen['K'] = carrying_capacity
            return np.full(N.shape, 0.01)
        model.prob_germination = Computed(germ)
        generation(pop.N, model, covariates={'carrying_capacity': 50.0}, expected=True)
        assert seen['K'] == 50.0

    def test_zero_population_stays_zero(self, landscape):
        _, model = landscape
        out = generation(np.zeros((8, 3)), model, expected=True)
        np.testing.assert_array_equal(out, 0.0)


class TestSingleCell:
    def test_fixed_point_with_full_turnover(self):
        # seeders 1, pollen 1, one seed that germinates, the parent dies
        pop, model = single_cell_model(prob_survival=0.0)
        next_N = generation(pop.N, model, expected=True)
        np.testing.assert_allclose(next_N, pop.N)

    def test_full_survival_adds_germinants(self):
        # with survival 1 the germinants (N * N) are added on top
        pop, model = single_cell_model(prob_survival=1.0)
        N = np.array([[2.0]])
        np.testing.assert_allclose(generation(N, model, expected=True), [[6.0]])

    def test_self_migration_weight_one(self):
        _, model = single_cell_model(prob_survival=1.0)
        np.testing.assert_allclose(model.pollen_matrix.toarray(), [[1.0]])
        np.testing.assert_allclose(model.seed_matrix.toarray(), [[1.0]])


# ═══════════════════════════════════════════════════════════════════════
# STOCHASTIC MODE
# ═══════════════════════════════════════════════════════════════════════

class TestStochasticGeneration:
    def test_integer_output(self, landscape, rng):
        pop, model = landscape
        next_N, bd = generation(pop.N, model, rng=rng, return_breakdown=True)
        np.testing.assert_array_equal(next_N, np.rint(next_N))
        np.testing.assert_array_equal(bd.seeders, np.rint(bd.seeders))
        np.testing.assert_array_equal(bd.germination, np.rint(bd.germination))
        assert np.all(bd.death <= pop.N)

    def test_reproducible(self, landscape):
        pop, model = landscape
        a = generation(pop.N, model, rng=np.random.default_rng(7))
        b = generation(pop.N, model, rng=np.random.default_rng(7))
        np.testing.assert_array_equal(a, b)

    def test_requires_rng(self, landscape):
        pop, model = landscape
        with pytest.raises(ValueError, match="rng"):
            generation(pop.N, model)

    def test_requires_integer_counts(self, landscape, rng):
        pop, model = landscape
        with pytest.raises(InvalidArgument):
            generation(pop.N + 0.5, model, rng=rng)

    def test_no_deaths_at_full_survival(self, rng):
        pop, model = single_cell_model(prob_survival=1.0)
        _, bd = generation(np.array([[5.0]]), model, rng=rng, return_breakdown=True)
        assert bd.death[0, 0] == 0.0


# ═══════════════════════════════════════════════════════════════════════
# ERRORS & CLAMPING
# ═══════════════════════════════════════════════════════════════════════

class TestGenerationErrors:
    def test_not_setup(self):
        model = DemographicModel(
            prob_seed=0.5, fecundity=1.0, prob_germination=0.5, prob_survival=0.5,
            pollen_migration=Migration(), seed_migration=Migration(),
            genotypes=GENOTYPES,
        )
        with pytest.raises(ConfigurationError, match="setup"):
            generation(np.ones((4, 3)), model, expected=True)

    def test_wrong_shape(self, landscape):
        _, model = landscape
        with pytest.raises(ConfigurationError):
            generation(np.ones((9, 3)), model, expected=True)


class TestClampNonnegative:
    def test_clamps_with_warning(self):
        x = np.array([1.0, -1e-12, 2.0])
        with pytest.warns(NegativeCountWarning):
            out = _clamp_nonnegative(x, 'next N', strict=False)
        np.testing.assert_array_equal(out, [1.0, 0.0, 2.0])

    def test_strict_raises(self):
        with pytest.raises(ValueError, match="negative"):
            _clamp_nonnegative(np.array([-1.0]), 'next N', strict=True)

    def test_no_warning_when_clean(self):
        x = np.array([0.0, 1.0])
        with warnings.catch_warnings():
            warnings.simplefilter('error')
            out = _clamp_nonnegative(x, 'next N', strict=False)
        assert out is x
