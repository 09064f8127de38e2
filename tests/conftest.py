import numpy as np
import pytest

from predator_prey_occupancy.config import SPECIES, Interaction, RunConfig
from predator_prey_occupancy.data import SurveyData
from predator_prey_occupancy.model import BASELINES, EFFECTS, OccupancyModel
from predator_prey_occupancy.orchestrator import OccupancyFit, chains_to_idata
from predator_prey_occupancy.predictive import default_parameters, simulate_survey_data


@pytest.fixture
def small_data():
    data, _, _ = simulate_survey_data(n_sites=10, n_periods=(1, 1), n_occasions=5, seed=1)
    return data


@pytest.fixture
def gapped_data():
    """Three PAs with n_periods = [2, 1, 3]: (PA2, period 2/3) and (PA1, period 3) do not exist."""
    data, _, _ = simulate_survey_data(n_sites=24, n_periods=(2, 1, 3), n_occasions=5, seed=7)
    return data


def make_design(n_sites=4, n_periods=(1,), diel=((0, 0), (1, 0), (0, 1)), n_occasions=5):
    cells = [(a, t) for a, n in enumerate(n_periods) for t in range(n)]
    shape = (n_sites, len(SPECIES), len(diel))
    diel = np.asarray(diel)
    return SurveyData(
        y=np.zeros(shape, dtype=int),
        n_occasions=np.full(shape, n_occasions),
        night=diel[:, 0],
        twilight=diel[:, 1],
        pa=[cells[i % len(cells)][0] for i in range(n_sites)],
        period=[cells[i % len(cells)][1] for i in range(n_sites)],
        n_periods=list(n_periods),
    )


def make_fit(data, interaction=Interaction.PREY_TO_PREDATOR, params=None,
             n_chains=2, n_draws=50, noise=0.0, seed=0):
    """OccupancyFit whose draws scatter around ``params`` (no sampling involved)."""
    rng = np.random.default_rng(seed)
    model = OccupancyModel(data, interaction)
    params = default_parameters(data.n_cells, interaction) if params is None else params
    chains = []
    for _ in range(n_chains):
        entry = {}
        for name in BASELINES:
            jitter = noise * rng.standard_normal((n_draws,) + params[name].shape)
            entry[name] = np.clip(params[name] + jitter, 0.01, 0.99)
        for name in EFFECTS:
            entry[name] = params[name] + noise * rng.standard_normal((n_draws, len(SPECIES)))
        entry['z'] = np.ones((n_draws, data.n_sites, len(SPECIES)), dtype=int)
        chains.append(entry)
    config = RunConfig(n_iter=n_draws + 1, burn_in=1, thin=1, n_chains=n_chains, interaction=interaction)
    idata = chains_to_idata(data, model, chains, np.zeros((n_chains, n_draws)), config)
    return OccupancyFit(idata=idata, data=data, model=model, config=config, acceptance=None)
