"""Tests for landsim.demography — vital rates, model construction and setup."""

import numpy as np
import pytest

from landsim.demography import (
    Computed,
    Constant,
    DemographicModel,
    PerGenotype,
    as_vital_rate,
    beverton_holt_germination,
    density_survival,
    setup,
)
from landsim.grid import Grid, Population
from landsim.migration import Migration
from landsim.types import ConfigurationError


GENOTYPES = ['aa', 'aA', 'AA']


def make_model(**overrides):
    kwargs = dict(
        prob_seed=0.5,
        fecundity=2.0,
        prob_germination=0.3,
        prob_survival=0.8,
        pollen_migration=Migration(sigma=1.0, radius=1.5),
        seed_migration=Migration(sigma=0.5, radius=1.0),
        genotypes=GENOTYPES,
    )
    kwargs.update(overrides)
    return DemographicModel(**kwargs)


@pytest.fixture
def population():
    return Population(Grid.uniform(3, 3), GENOTYPES, N=np.full((9, 3), 4.0))


# ═══════════════════════════════════════════════════════════════════════
# VITAL RATES
# ═══════════════════════════════════════════════════════════════════════

class TestVitalRates:
    def test_constant_broadcasts(self):
        N = np.ones((4, 3))
        out = Constant(0.25).resolve(N)
        assert out.shape == (4, 3)
        np.testing.assert_allclose(out, 0.25)

    def test_per_genotype_broadcasts_by_column(self):
        N = np.ones((2, 3))
        out = PerGenotype([0.1, 0.2, 0.3]).resolve(N)
        np.testing.assert_allclose(out, [[0.1, 0.2, 0.3], [0.1, 0.2, 0.3]])

    def test_per_genotype_length_mismatch(self):
        with pytest.raises(ConfigurationError):
            PerGenotype([0.1, 0.2]).resolve(np.ones((2, 3)))

    def test_per_genotype_must_be_vector(self):
        with pytest.raises(ConfigurationError):
            PerGenotype(np.ones((2, 2)))

    def test_constant_bad_shape(self):
        with pytest.raises(ConfigurationError):
            Constant(np.ones((5, 3))).resolve(np.ones((2, 3)))

    def test_computed_reevaluated_each_call(self):
        rate = Computed(lambda N, scale: N / scale, {'scale': 10.0})
        np.testing.assert_allclose(rate.resolve(np.full((1, 3), 2.0)), 0.2)
        np.testing.assert_allclose(rate.resolve(np.full((1, 3), 5.0)), 0.5)

    def test_computed_filters_covariates(self):
        def f(N, carrying_capacity):
            return np.full(N.shape, 1.0 / carrying_capacity)
        out = Computed(f).resolve(np.ones((2, 3)),
                                  {'carrying_capacity': 4.0, 'unused': 1.0})
        np.testing.assert_allclose(out, 0.25)

    def test_computed_kwargs_receives_all_covariates(self):
        seen = {}

        def f(N, **kwargs):
            seen.update(kwargs)
            return np.zeros(N.shape)
        Computed(f).resolve(np.ones((1, 3)), {'a': 1, 'b': 2})
        assert seen == {'a': 1, 'b': 2}

    def test_covariates_override_params(self):
        rate = Computed(lambda N, k: np.full(N.shape, k), {'k': 0.1})
        np.testing.assert_allclose(rate.resolve(np.ones((1, 3)), {'k': 0.9}), 0.9)


class TestAsVitalRate:
    def test_scalar(self):
        assert isinstance(as_vital_rate(0.5), Constant)

    def test_vector(self):
        assert isinstance(as_vital_rate([0.1, 0.2, 0.3]), PerGenotype)

    def test_callable(self):
        assert isinstance(as_vital_rate(lambda N: N), Computed)

    def test_callable_with_params(self):
        rate = as_vital_rate((lambda N, r: N * r, {'r': 2.0}))
        assert isinstance(rate, Computed)
        assert rate.params == {'r': 2.0}

    def test_passthrough(self):
        rate = Constant(1.0)
        assert as_vital_rate(rate) is rate


class TestDensityDependence:
    def test_beverton_holt(self):
        N = np.array([[2.0, 4.0, 4.0], [0.0, 0.0, 0.0]])
        p = beverton_holt_germination(N, r0=0.8, carrying_capacity=10.0)
        np.testing.assert_allclose(p[0], 0.4)
        np.testing.assert_allclose(p[1], 0.8)

    def test_beverton_holt_with_competition(self):
        from scipy import sparse
        N = np.array([[10.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
        competition = sparse.csr_matrix(np.array([[0.5, 0.5], [0.5, 0.5]]))
        p = beverton_holt_germination(N, r0=1.0, carrying_capacity=5.0,
                                      competition=competition)
        np.testing.assert_allclose(p, 0.5)

    def test_non_positive_capacity(self):
        with pytest.raises(ConfigurationError):
            beverton_holt_germination(np.ones((1, 3)), carrying_capacity=0.0)

    def test_density_survival(self):
        p = density_survival(np.full((1, 3), 10.0), s0=0.9, carrying_capacity=30.0)
        np.testing.assert_allclose(p, 0.45)


# ═══════════════════════════════════════════════════════════════════════
# MODEL CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

class TestDemographicModel:
    def test_rates_coerced(self):
        model = make_model(prob_survival=[0.9, 0.8, 0.7])
        assert isinstance(model.prob_seed, Constant)
        assert isinstance(model.prob_survival, PerGenotype)

    def test_default_mating_tensor(self):
        model = make_model()
        assert model.mating.shape == (3, 3, 3)

    def test_two_genotypes_without_tensor(self):
        with pytest.raises(ConfigurationError):
            make_model(genotypes=['aa', 'AA'])

    def test_two_genotypes_with_custom_tensor(self):
        T = np.zeros((2, 2, 2))
        T[0, 0, 0] = T[1, 1, 1] = 1.0
        T[0, 1] = T[1, 0] = [0.5, 0.5]
        model = make_model(genotypes=['aa', 'AA'], mating=T)
        assert model.n_genotypes == 2

    def test_probability_out_of_range(self):
        with pytest.raises(ConfigurationError, match="prob_seed"):
            make_model(prob_seed=1.5)

    def test_per_genotype_probability_out_of_range(self):
        with pytest.raises(ConfigurationError):
            make_model(prob_survival=[0.5, -0.1, 0.5])

    def test_per_genotype_wrong_length(self):
        with pytest.raises(ConfigurationError):
            make_model(prob_germination=[0.5, 0.5])

    def test_negative_fecundity(self):
        with pytest.raises(ConfigurationError):
            make_model(fecundity=-1.0)

    def test_missing_rate(self):
        with pytest.raises(ConfigurationError, match="fecundity"):
            make_model(fecundity=None)

    def test_migration_from_mapping(self):
        model = make_model(seed_migration={'sigma': 2.0, 'radius': 3.0})
        assert isinstance(model.seed_migration, Migration)
        assert model.seed_migration.sigma == 2.0

    def test_invalid_migration(self):
        with pytest.raises(ConfigurationError):
            make_model(pollen_migration=Migration(sigma=-1.0))

    def test_computed_rate_checked_at_resolve(self):
        model = make_model(prob_germination=lambda N: np.full(N.shape, 2.0))
        with pytest.raises(ConfigurationError, match="prob_germination"):
            model.resolve_rates(np.ones((4, 3)))

    def test_resolve_rates(self):
        model = make_model()
        rates = model.resolve_rates(np.ones((4, 3)))
        assert set(rates) == {'prob_seed', 'prob_germination', 'prob_survival', 'fecundity'}
        for value in rates.values():
            assert value.shape == (4, 3)


# ═══════════════════════════════════════════════════════════════════════
# SETUP
# ═══════════════════════════════════════════════════════════════════════

class TestSetup:
    def test_not_setup_initially(self):
        assert not make_model().is_setup

    def test_materialises_matrices(self, population):
        model = setup(make_model(), population)
        assert model.is_setup
        assert model.pollen_matrix.shape == (9, 9)
        assert model.seed_matrix.shape == (9, 9)

    def test_idempotent(self, population):
        model = setup(make_model(), population)
        P1 = model.pollen_matrix.toarray().copy()
        S1 = model.seed_matrix.toarray().copy()
        pollen_obj = model.pollen_matrix
        setup(model, population)
        assert model.pollen_matrix is pollen_obj
        np.testing.assert_array_equal(model.pollen_matrix.toarray(), P1)
        np.testing.assert_array_equal(model.seed_matrix.toarray(), S1)

    def test_same_as_fresh_setup(self, population):
        once = setup(make_model(), population)
        twice = setup(setup(make_model(), population), population)
        np.testing.assert_array_equal(once.seed_matrix.toarray(), twice.seed_matrix.toarray())

    def test_changed_grid_rematerialises(self, population):
        model = setup(make_model(), population)
        smaller = Population(Grid.uniform(2, 2), GENOTYPES)
        setup(model, smaller)
        assert model.pollen_matrix.shape == (4, 4)

    def test_changed_seed_migration_rematerialises(self, population):
        model = setup(make_model(seed_migration=Migration(sigma=1.0, radius=1.5)), population)
        assert model.seed_matrix.nnz == 49
        model.seed_migration = Migration(sigma=1.0, radius=0.0)
        setup(model, population)
        assert model.seed_matrix.nnz == 9
        np.testing.assert_allclose(model.seed_matrix.toarray(), np.eye(9))

    def test_mutated_pollen_params_rematerialises(self, population):
        model = setup(make_model(), population)
        before = model.pollen_matrix.toarray().copy()
        model.pollen_migration.sigma = 3.0
        setup(model, population)
        assert not np.allclose(model.pollen_matrix.toarray(), before)
        fresh = setup(make_model(pollen_migration=Migration(sigma=3.0, radius=1.5)), population)
        np.testing.assert_allclose(model.pollen_matrix.toarray(), fresh.pollen_matrix.toarray())

    def test_method_form(self, population):
        model = make_model()
        assert model.setup(population) is model
        assert model.is_setup

    def test_genotype_mismatch(self, population):
        model = make_model(genotypes=['AA', 'aA', 'aa'])
        with pytest.raises(ConfigurationError):
            setup(model, population)

    def test_uninhabitable_sink_loses_mass(self):
        g = Grid.uniform(1, 3)
        pop = Population(g, GENOTYPES,
                         habitable=np.array([True, False, True]),
                         accessible=np.ones(3, dtype=bool))
        model = setup(make_model(seed_migration=Migration(sigma=1.0, radius=1.0)), pop)
        assert model.seed_matrix_full.shape == (2, 3)
        assert model.seed_matrix.shape == (2, 2)
        full_sums = np.asarray(model.seed_matrix_full.sum(axis=1)).ravel()
        kept_sums = np.asarray(model.seed_matrix.sum(axis=1)).ravel()
        np.testing.assert_allclose(full_sums, 1.0)
        assert np.all(kept_sums < 1.0)
