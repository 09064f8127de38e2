import numpy as np
import pytest

from predator_prey_occupancy.config import PREDATOR, PREY, Interaction
from predator_prey_occupancy.model import inv_logit, logit
from predator_prey_occupancy.summary import (
    detection_probability,
    detection_table,
    interval_summary,
    latent_occupancy_table,
    occupancy_probability,
    occupancy_table,
    parameter_table,
    posterior_params,
    predator_effect_table,
    stack_draws,
)

from conftest import make_fit


def test_interval_summary():
    values = np.arange(1, 1001, dtype=float)
    stats = interval_summary(values)
    assert stats['mean'] == pytest.approx(500.5)
    assert stats['lower'] == pytest.approx(np.percentile(values, 2.5))
    assert stats['upper'] == pytest.approx(np.percentile(values, 97.5))


def test_stack_draws_flattens_chains(gapped_data):
    fit = make_fit(gapped_data, n_chains=3, n_draws=20)
    assert stack_draws(fit.idata, 'p0').shape == (60, 2, 3, 3)
    assert stack_draws(fit.idata, 'beta_night').shape == (60, 2)
    params = posterior_params(fit)
    assert params['p0'].shape == (60, 2, gapped_data.n_cells)
    assert params['beta_psi'][:, PREDATOR].tolist() == [0.0] * 60


def test_parameter_table_skips_absent_cells(gapped_data):
    fit = make_fit(gapped_data, noise=0.02)
    table = parameter_table(fit, 'psi0')
    assert len(table) == 2 * gapped_data.n_cells
    assert table[['mean', 'lower', 'upper']].notna().all().all()
    assert not ((table['pa'] == 'PA2') & (table['period'] > 1)).any()

    effects = parameter_table(fit, 'beta_psi')
    assert effects['species'].tolist() == ['prey']
    with pytest.raises(KeyError):
        parameter_table(fit, 'gamma')


def test_counterfactual_occupancy_uses_same_draws(small_data):
    fit = make_fit(small_data, noise=0.0)
    params = posterior_params(fit)
    psi0 = params['psi0'][0, PREDATOR, 0]
    beta = params['beta_psi_psi'][0, PREDATOR]

    absent = occupancy_probability(fit, PREDATOR, leader_present=0)
    present = occupancy_probability(fit, PREDATOR, leader_present=1)
    marginal = occupancy_probability(fit, PREDATOR)
    assert np.allclose(absent, psi0)
    assert np.allclose(present, inv_logit(logit(psi0) + beta))
    psi_prey = params['psi0'][0, PREY, 0]
    assert np.allclose(marginal, psi_prey * present + (1 - psi_prey) * absent)
    # prey is the leader: no condition applies
    assert np.allclose(occupancy_probability(fit, PREY, leader_present=1), params['psi0'][:, PREY])


def test_occupancy_table_conditions_follow_direction(small_data):
    table = occupancy_table(make_fit(small_data, Interaction.PREY_TO_PREDATOR))
    conditions = table.groupby('species')['condition'].unique()
    assert set(conditions['predator']) == {'prey_absent', 'prey_present', 'marginal'}
    assert set(conditions['prey']) == {'unconditional'}

    table = occupancy_table(make_fit(small_data, Interaction.PREDATOR_TO_PREY))
    conditions = table.groupby('species')['condition'].unique()
    assert set(conditions['prey']) == {'predator_absent', 'predator_present', 'marginal'}
    assert set(conditions['predator']) == {'unconditional'}

    table = occupancy_table(make_fit(small_data, Interaction.NONE))
    assert set(table['condition']) == {'unconditional'}


def test_detection_probability_counterfactuals(small_data):
    fit = make_fit(small_data, noise=0.0)
    params = posterior_params(fit)
    day_absent = detection_probability(fit, PREY, 'day', 0)
    night_present = detection_probability(fit, PREY, 'night', 1)
    expected = inv_logit(
        logit(params['p0'][:, PREY])
        + params['beta_night'][:, PREY, None]
        + params['beta_psi'][:, PREY, None]
        + params['beta_psi_night'][:, PREY, None]
    )
    assert np.allclose(day_absent, params['p0'][:, PREY])
    assert np.allclose(night_present, expected)
    # predator detection has no predator-presence term
    assert np.allclose(
        detection_probability(fit, PREDATOR, 'twilight', 1),
        detection_probability(fit, PREDATOR, 'twilight', 0),
    )
    with pytest.raises(ValueError):
        detection_probability(fit, PREY, 'dusk')


def test_detection_table_layout(gapped_data):
    fit = make_fit(gapped_data, noise=0.02)
    table = detection_table(fit)
    n_cells = gapped_data.n_cells
    assert len(table[table['species'] == 'predator']) == 3 * n_cells
    assert len(table[table['species'] == 'prey']) == 3 * 2 * n_cells
    assert table.loc[table['species'] == 'predator', 'predator_present'].isna().all()

    pooled = detection_table(fit, pool_cells=True)
    assert len(pooled) == 3 + 6
    assert {'species', 'diel', 'predator_present', 'mean', 'lower', 'upper'} <= set(pooled.columns)
    assert (pooled['lower'] <= pooled['mean']).all() and (pooled['mean'] <= pooled['upper']).all()


def test_latent_and_effect_tables(small_data):
    fit = make_fit(small_data, noise=0.1)
    sites = latent_occupancy_table(fit)
    assert len(sites) == small_data.n_sites
    assert (sites['predator_occupied'] == 1.0).all()

    effects = predator_effect_table(fit)
    assert effects['diel'].tolist() == ['day', 'night', 'twilight']
    assert effects['prob_negative'].between(0, 1).all()
