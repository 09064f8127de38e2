import numpy as np
import pytest

from predator_prey_occupancy.config import Interaction
from predator_prey_occupancy.predictive import (
    SUMMARY_COLUMNS,
    default_parameters,
    observed_summary,
    posterior_predictive,
    ppc_pvalues,
    simulate_survey_data,
    stack_replicates,
)

from conftest import make_fit


def test_observed_summary_schema(small_data):
    table = observed_summary(small_data)
    assert list(table.columns) == SUMMARY_COLUMNS
    assert len(table) == 6
    assert table['detections'].sum() == small_data.y.sum()
    for species, sp in (('predator', 0), ('prey', 1)):
        night = table[(table['species'] == species) & (table['diel'] == 'night')].iloc[0]
        mask = small_data.night == 1
        assert night['detections'] == small_data.y[:, sp, mask].sum()
        assert night['n_sites_detected'] == (small_data.y[:, sp, mask].sum(axis=1) > 0).sum()


def test_missing_diel_category_reports_zeros():
    data, _, _ = simulate_survey_data(n_sites=5, diel=((0, 0), (1, 0)), seed=0)
    table = observed_summary(data)
    twilight = table[table['diel'] == 'twilight']
    assert (twilight['detections'] == 0).all()
    assert (twilight['n_sites_detected'] == 0).all()


def test_posterior_predictive_matches_observed_schema(small_data):
    fit = make_fit(small_data, noise=0.05)
    replicates = posterior_predictive(fit, n_draws=10, seed=4)
    observed = observed_summary(small_data)
    assert len(replicates) == 10
    for table in replicates:
        assert list(table.columns) == list(observed.columns)
        assert table[['species', 'diel']].equals(observed[['species', 'diel']])
        assert 0 <= table.attrs['draw'] < fit.n_chains * fit.n_draws
        assert (table['n_sites_detected'] <= small_data.n_sites).all()


def test_posterior_predictive_is_reproducible(small_data):
    fit = make_fit(small_data, noise=0.05)
    a = posterior_predictive(fit, n_draws=5, seed=9)
    b = posterior_predictive(fit, n_draws=5, seed=9)
    for x, y in zip(a, b):
        assert x.equals(y)
    with pytest.raises(ValueError):
        posterior_predictive(fit, n_draws=0)


def test_more_replicates_than_draws(small_data):
    fit = make_fit(small_data, n_chains=1, n_draws=3)
    assert len(posterior_predictive(fit, n_draws=8, seed=1)) == 8


def test_ppc_pvalues(small_data):
    fit = make_fit(small_data, noise=0.05)
    observed = observed_summary(small_data)
    replicates = posterior_predictive(fit, n_draws=10, seed=2)
    pvalues = ppc_pvalues(observed, replicates)
    assert len(pvalues) == 2 * len(observed)
    assert pvalues['p_value'].between(0, 1).all()

    stacked = stack_replicates(replicates)
    assert sorted(stacked['replicate'].unique()) == list(range(10))


def test_simulated_survey_design():
    data, params, z = simulate_survey_data(n_sites=12, n_periods=(2, 1, 3), n_occasions=4, seed=5)
    assert data.n_sites == 12
    assert data.n_cells == 6
    assert np.all(data.n_occasions == 4)
    assert data.night.tolist() == [0, 1, 0]
    assert data.twilight.tolist() == [0, 0, 1]
    assert np.all(data.y[z == 0] == 0)
    assert params['p0'].shape == (2, 6)


def test_default_parameters_zero_inactive_effects():
    params = default_parameters(3, Interaction.NONE)
    assert np.all(params['beta_psi_psi'] == 0.0)
    assert params['beta_psi'][0] == 0.0
    params = default_parameters(3, Interaction.PREDATOR_TO_PREY)
    assert params['beta_psi_psi'][0] == 0.0 and params['beta_psi_psi'][1] != 0.0
