import numpy as np
import pytest

from predator_prey_occupancy.config import EPS, PREDATOR, PREY, Interaction
from predator_prey_occupancy.model import (
    BASELINES,
    EFFECTS,
    OccupancyModel,
    ParamGroup,
    active_species,
    inv_logit,
    logit,
    parameter_names,
)
from predator_prey_occupancy.predictive import default_parameters

from conftest import make_design


def _params(data, interaction=Interaction.PREY_TO_PREDATOR, **overrides):
    params = default_parameters(data.n_cells, interaction)
    for name, value in overrides.items():
        params[name] = np.asarray(value, dtype=float)
    return params


def test_link_roundtrip():
    p = np.array([EPS * 10, 1e-6, 0.2, 0.5, 0.8, 1 - 1e-6])
    assert np.allclose(inv_logit(logit(p)), p, rtol=1e-9, atol=1e-15)


def test_link_clamps_boundaries():
    assert np.isfinite(logit(np.array([0.0, 1.0]))).all()
    out = inv_logit(np.array([-1e6, 1e6]))
    assert out[0] >= EPS and out[1] <= 1 - EPS


def test_active_species_by_direction():
    assert active_species('beta_psi') == (PREY,)
    assert active_species('beta_psi_night') == (PREY,)
    assert active_species('beta_night') == (PREDATOR, PREY)
    assert active_species('beta_psi_psi', Interaction.PREY_TO_PREDATOR) == (PREDATOR,)
    assert active_species('beta_psi_psi', Interaction.PREDATOR_TO_PREY) == (PREY,)
    assert active_species('beta_psi_psi', Interaction.NONE) == ()
    with pytest.raises(KeyError):
        active_species('gamma')


def test_parameter_groups():
    assert parameter_names([ParamGroup.BASELINE]) == BASELINES
    assert parameter_names([ParamGroup.EFFECT]) == EFFECTS
    assert parameter_names([ParamGroup.LATENT]) == ('z',)


def test_absent_site_never_detected():
    data = make_design(n_sites=50)
    model = OccupancyModel(data)
    params = _params(data, p0=np.full((2, 1), 0.99), beta_night=[4.0, 4.0], beta_twilight=[4.0, 4.0])
    rng = np.random.default_rng(3)
    z = rng.integers(0, 2, size=(50, 2))
    _, y = model.simulate(params, rng, z=z)
    assert np.all(y[z == 0] == 0)
    assert y[z == 1].sum() > 0


def test_detection_loglik_absent_with_detections_is_impossible():
    data = make_design(n_sites=2)
    y = np.zeros_like(data.y)
    y[0, PREY, 1] = 2
    data = data.with_detections(y)
    model = OccupancyModel(data)
    params = _params(data)
    z = np.array([[1, 0], [0, 0]])
    ll = model.detection_loglik(params, z)
    assert ll[0, PREY] == -np.inf
    assert ll[1, PREY] == 0.0
    assert np.isfinite(ll[0, PREDATOR])
    assert model.log_density(params, z) == -np.inf


def test_prey_detection_ignores_predator_without_effects():
    data = make_design(n_sites=3)
    model = OccupancyModel(data)
    params = _params(data, beta_psi=[0.0, 0.0], beta_psi_night=[0.0, 0.0], beta_psi_twilight=[0.0, 0.0])
    z_absent = np.array([[0, 1]] * 3)
    z_present = np.array([[1, 1]] * 3)
    p_absent = model.detection_probability(params, z_absent)[:, PREY]
    p_present = model.detection_probability(params, z_present)[:, PREY]
    assert np.allclose(p_absent, p_present)
    # and the predator's own detection never depends on the prey
    params = _params(data)
    assert np.allclose(
        model.detection_probability(params, np.array([[1, 0]] * 3))[:, PREDATOR],
        model.detection_probability(params, np.array([[1, 1]] * 3))[:, PREDATOR],
    )


def test_prey_detection_responds_to_predator_presence():
    data = make_design(n_sites=1)
    model = OccupancyModel(data)
    params = _params(data, beta_psi=[0.0, -1.0], beta_psi_night=[0.0, 0.5], beta_psi_twilight=[0.0, 0.0])
    eta_absent = model.detection_logit(params, np.array([[0, 1]]))[0, PREY]
    eta_present = model.detection_logit(params, np.array([[1, 1]]))[0, PREY]
    # strata are day, night, twilight
    assert np.allclose(eta_present - eta_absent, [-1.0, -0.5, -1.0])


def test_predator_occupancy_ignores_prey_without_interaction():
    data = make_design(n_sites=3)
    model = OccupancyModel(data, Interaction.PREY_TO_PREDATOR)
    params = _params(data, beta_psi_psi=[0.0, 0.0])
    psi_prey_absent = model.occupancy_probability(params, np.array([[0, 0]] * 3))
    psi_prey_present = model.occupancy_probability(params, np.array([[0, 1]] * 3))
    assert np.allclose(psi_prey_absent, psi_prey_present)


def test_prey_to_predator_direction():
    data = make_design(n_sites=2)
    model = OccupancyModel(data, Interaction.PREY_TO_PREDATOR)
    params = _params(data, beta_psi_psi=[1.5, 0.0])
    absent = model.occupancy_logit(params, np.array([[0, 0], [1, 0]]))
    present = model.occupancy_logit(params, np.array([[0, 1], [1, 1]]))
    assert np.allclose(present[:, PREDATOR] - absent[:, PREDATOR], 1.5)
    assert np.allclose(present[:, PREY], absent[:, PREY])
    # predator's own state does not feed back into prey occupancy
    assert np.allclose(absent[0, PREY], absent[1, PREY])


def test_predator_to_prey_direction():
    data = make_design(n_sites=2)
    model = OccupancyModel(data, Interaction.PREDATOR_TO_PREY)
    params = _params(data, Interaction.PREDATOR_TO_PREY, beta_psi_psi=[0.0, -0.8])
    absent = model.occupancy_logit(params, np.array([[0, 0], [0, 1]]))
    present = model.occupancy_logit(params, np.array([[1, 0], [1, 1]]))
    assert np.allclose(present[:, PREY] - absent[:, PREY], -0.8)
    assert np.allclose(present[:, PREDATOR], absent[:, PREDATOR])


def test_no_interaction_ignores_beta_psi_psi():
    data = make_design(n_sites=2)
    model = OccupancyModel(data, Interaction.NONE)
    params = _params(data, Interaction.NONE, beta_psi_psi=[3.0, 3.0])
    base = model.occupancy_logit(params, np.array([[0, 0], [0, 0]]))
    other = model.occupancy_logit(params, np.array([[1, 1], [1, 1]]))
    assert np.allclose(base, other)
    assert np.allclose(base, logit(params['psi0'][:, data.site_cell]).T)


def test_log_prior_rejects_out_of_range_baselines():
    data = make_design(n_sites=2)
    model = OccupancyModel(data)
    params = _params(data)
    assert np.isfinite(model.log_prior(params))
    params['psi0'] = params['psi0'].copy()
    params['psi0'][0, 0] = 1.0
    assert model.log_prior(params) == -np.inf


def test_log_prior_ignores_inactive_effects():
    data = make_design(n_sites=2)
    model = OccupancyModel(data)
    params = _params(data)
    base = model.log_prior(params)
    params['beta_psi'] = np.array([25.0, params['beta_psi'][PREY]])
    assert model.log_prior(params) == pytest.approx(base)


def test_initial_values_respect_detections(small_data):
    model = OccupancyModel(small_data)
    params, z = model.initial_values(np.random.default_rng(0))
    assert np.all(z[small_data.detected] == 1)
    assert np.isfinite(model.log_density(params, z))
    for name in EFFECTS:
        inactive = [sp for sp in (PREDATOR, PREY) if sp not in model.active[name]]
        assert np.all(params[name][inactive] == 0.0)


def test_pymc_model_declares_active_parameters(small_data):
    model = OccupancyModel(small_data, Interaction.PREY_TO_PREDATOR)
    pm_model = model.build_pymc_model()
    free = {rv.name for rv in pm_model.free_RVs}
    assert {'p0', 'psi0', 'z_predator', 'z_prey', 'beta_psi_psi'} <= free
    assert {rv.name for rv in pm_model.observed_RVs} == {'y_predator', 'y_prey'}

    none_model = OccupancyModel(small_data, Interaction.NONE).build_pymc_model()
    assert 'beta_psi_psi' not in {rv.name for rv in none_model.free_RVs}
