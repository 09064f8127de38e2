"""
Two-species occupancy model with predator-prey interaction terms.

For every site i (species index 0 = predator, 1 = prey):

    logit(psi[i, s]) = logit(psi0[s, PA(i), period(i)])
                       + beta_psi_psi[s] * z[i, leader]        (follower species only)
    z[i, s]          ~ Bernoulli(psi[i, s])
    logit(p[i, s, j]) = logit(p0[s, PA(i), period(i)])
                       + beta_night[s] * night[j] + beta_twilight[s] * twilight[j]
                       + z[i, predator] * (beta_psi[prey] + beta_psi_night[prey] * night[j]
                                           + beta_psi_twilight[prey] * twilight[j])   (prey only)
    y[i, s, j]       ~ Binomial(n_occasions[i, s, j], z[i, s] * p[i, s, j])

Priors: beta.* ~ Logistic(0, 1), p0 and psi0 ~ Uniform(0, 1) per valid
(species, PA, period) cell. Baselines are stored over the flat list of valid
cells (``SurveyData.cells``) so absent PA-period combinations never exist.
"""

from enum import Enum

import numpy as np
import pymc as pm
from scipy.special import expit, log_expit
from scipy.special import logit as _logit
from scipy.stats import logistic

from predator_prey_occupancy.config import EPS, PREDATOR, PREY, SPECIES, Interaction


def logit(p):
    """Log-odds with the probability clamped to (EPS, 1 - EPS)."""
    return _logit(np.clip(p, EPS, 1.0 - EPS))


def inv_logit(x):
    """Inverse log-odds, clamped to (EPS, 1 - EPS)."""
    return np.clip(expit(x), EPS, 1.0 - EPS)


class ParamGroup(Enum):
    BASELINE = 'baseline'   # species x PA x period, (0, 1)
    EFFECT = 'effect'       # species, unrestricted
    LATENT = 'latent'       # site x species, {0, 1}


BASELINES = ('p0', 'psi0')
EFFECTS = (
    'beta_night',
    'beta_twilight',
    'beta_psi',
    'beta_psi_night',
    'beta_psi_twilight',
    'beta_psi_psi',
)

PARAMETERS = {
    **{name: ParamGroup.BASELINE for name in BASELINES},
    **{name: ParamGroup.EFFECT for name in EFFECTS},
    'z': ParamGroup.LATENT,
}


def active_species(name, interaction=Interaction.PREY_TO_PREDATOR):
    """Species indices that carry parameter ``name`` under ``interaction``."""
    interaction = Interaction(interaction)
    if name in ('beta_psi', 'beta_psi_night', 'beta_psi_twilight'):
        return (PREY,)
    if name == 'beta_psi_psi':
        return () if interaction.follower is None else (interaction.follower,)
    if name in PARAMETERS:
        return (PREDATOR, PREY)
    raise KeyError(f"Unknown parameter '{name}'")


def parameter_names(groups=(ParamGroup.BASELINE, ParamGroup.EFFECT)):
    """Names of the parameters belonging to ``groups``, in declaration order."""
    groups = tuple(groups)
    return tuple(name for name, group in PARAMETERS.items() if group in groups)


class OccupancyModel:
    """
    Pure log-density and forward-simulation functions of (params, z).

    ``params`` is a dict with ``p0`` and ``psi0`` of shape (species, n_cells)
    on the probability scale and one length-2 array per effect name. Entries
    of inactive species are ignored.
    """

    def __init__(self, data, interaction=Interaction.PREY_TO_PREDATOR):
        self.data = data
        self.interaction = Interaction(interaction)
        self.active = {name: active_species(name, self.interaction) for name in EFFECTS}

        self._night = data.night.astype(float)
        self._twilight = data.twilight.astype(float)
        self._y = data.y.astype(float)
        self._failures = (data.n_occasions - data.y).astype(float)
        self._site_cell = np.asarray(data.site_cell)

    # ------------------------------------------------------------------
    # Linear predictors
    # ------------------------------------------------------------------

    def occupancy_logit(self, params, z):
        """(site, species) log-odds of occupancy given the current latent states."""
        eta = logit(params['psi0'][:, self._site_cell]).T.copy()
        follower = self.interaction.follower
        if follower is not None:
            leader = self.interaction.leader
            eta[:, follower] += params['beta_psi_psi'][follower] * z[:, leader]
        return eta

    def detection_logit(self, params, z):
        """(site, species, stratum) log-odds of detection given occupancy."""
        base = logit(params['p0'][:, self._site_cell]).T
        eta = (
            base[:, :, None]
            + params['beta_night'][None, :, None] * self._night
            + params['beta_twilight'][None, :, None] * self._twilight
        )
        z_pred = np.asarray(z[:, PREDATOR], dtype=float)[:, None]
        eta[:, PREY, :] += z_pred * (
            params['beta_psi'][PREY]
            + params['beta_psi_night'][PREY] * self._night
            + params['beta_psi_twilight'][PREY] * self._twilight
        )
        return eta

    def occupancy_probability(self, params, z):
        return inv_logit(self.occupancy_logit(params, z))

    def detection_probability(self, params, z):
        return inv_logit(self.detection_logit(params, z))

    # ------------------------------------------------------------------
    # Log-density contributions
    # ------------------------------------------------------------------

    def occupancy_loglik(self, params, z):
        """(site, species) Bernoulli log-probability of the latent states."""
        eta = self.occupancy_logit(params, z)
        return np.where(z == 1, log_expit(eta), log_expit(-eta))

    def detection_loglik(self, params, z):
        """
        (site, species) Binomial log-likelihood summed over strata.

        An unoccupied site has zero expected detections: its contribution is 0
        when nothing was detected and -inf otherwise.
        """
        eta = self.detection_logit(params, z)
        occupied = (self._y * log_expit(eta) + self._failures * log_expit(-eta)).sum(axis=2)
        occupied = occupied + self.data.log_binom_coef
        absent = np.where(self.data.detected, -np.inf, 0.0)
        return np.where(z == 1, occupied, absent)

    def site_log_density(self, params, z):
        """Per-site sum of latent-state and detection terms over both species."""
        return (self.occupancy_loglik(params, z) + self.detection_loglik(params, z)).sum(axis=1)

    def log_prior(self, params):
        # Sampler proposals go through inv_logit and stay inside (0, 1); the
        # range check is for parameter dicts built by callers
        for name in BASELINES:
            values = np.asarray(params[name])
            if np.any((values <= 0.0) | (values >= 1.0)):
                return -np.inf
        lp = 0.0
        for name in EFFECTS:
            for sp in self.active[name]:
                lp += logistic.logpdf(params[name][sp])
        return float(lp)

    def log_density(self, params, z):
        """Unnormalised joint log posterior of (params, z) given the observed detections."""
        lp = self.log_prior(params)
        if not np.isfinite(lp):
            return -np.inf
        return lp + float(self.site_log_density(params, z).sum())

    # ------------------------------------------------------------------
    # Forward simulation
    # ------------------------------------------------------------------

    def simulate_latent(self, params, rng):
        """Draw z for every site, leader species first."""
        z = np.zeros((self.data.n_sites, len(SPECIES)), dtype=np.int64)
        for sp in self.interaction.simulation_order():
            psi = self.occupancy_probability(params, z)[:, sp]
            z[:, sp] = rng.random(self.data.n_sites) < psi
        return z

    def simulate(self, params, rng, z=None):
        """
        Forward-simulate (z, y) under the survey design of ``self.data``.

        Passing ``z`` fixes the latent states and only draws detections.
        """
        if z is None:
            z = self.simulate_latent(params, rng)
        z = np.asarray(z, dtype=np.int64)
        p = self.detection_probability(params, z)
        y = rng.binomial(self.data.n_occasions, z[:, :, None] * p)
        return z, y

    # ------------------------------------------------------------------
    # Starting values
    # ------------------------------------------------------------------

    def initial_values(self, rng):
        """Independently perturbed starting point (params, z) for one chain."""
        n_cells = self.data.n_cells
        params = {
            'p0': rng.uniform(0.2, 0.8, size=(len(SPECIES), n_cells)),
            'psi0': rng.uniform(0.3, 0.9, size=(len(SPECIES), n_cells)),
        }
        for name in EFFECTS:
            values = np.zeros(len(SPECIES))
            active = list(self.active[name])
            values[active] = rng.uniform(-1.0, 1.0, size=len(active))
            params[name] = values
        # Sites with detections must start occupied
        z = np.where(self.data.detected, 1, rng.random(self.data.detected.shape) < 0.5)
        return params, z.astype(np.int64)

    # ------------------------------------------------------------------
    # PyMC declaration of the same graph
    # ------------------------------------------------------------------

    def build_pymc_model(self):
        """Declare the generative graph as a ``pm.Model``."""
        print("\n" + "=" * 80)
        print("Building Predator-Prey Occupancy Model (PyMC)")
        print("=" * 80)

        data = self.data
        coords = {
            'species': list(SPECIES),
            'cell': [f"{data.pa_labels[a]}:{t + 1}" for a, t in data.cells],
            'site': list(data.site_labels),
            'stratum': list(data.stratum_labels),
        }
        for name in EFFECTS:
            if self.active[name]:
                coords[f'{name}_species'] = [SPECIES[s] for s in self.active[name]]

        print(f"🔧 Sites: {data.n_sites}, strata: {data.n_strata}, PA-period cells: {data.n_cells}")
        print(f"  Occupancy interaction: {self.interaction.value}")

        with pm.Model(coords=coords) as model:
            night = pm.Data('night', self._night, dims='stratum')
            twilight = pm.Data('twilight', self._twilight, dims='stratum')
            site_cell = pm.Data('site_cell', np.array(self._site_cell), dims='site')

            p0 = pm.Uniform('p0', lower=0.0, upper=1.0, dims=('species', 'cell'))
            psi0 = pm.Uniform('psi0', lower=0.0, upper=1.0, dims=('species', 'cell'))

            effects = {}
            for name in EFFECTS:
                if self.active[name]:
                    effects[name] = pm.Logistic(name, mu=0.0, s=1.0, dims=f'{name}_species')

            def effect(name, sp):
                if sp not in self.active[name]:
                    return 0.0
                return effects[name][self.active[name].index(sp)]

            logit_psi0 = pm.math.logit(psi0[:, site_cell])
            logit_p0 = pm.math.logit(p0[:, site_cell])

            z = {}
            for sp in self.interaction.simulation_order():
                eta = logit_psi0[sp]
                if sp == self.interaction.follower:
                    eta = eta + effect('beta_psi_psi', sp) * z[self.interaction.leader]
                z[sp] = pm.Bernoulli(f'z_{SPECIES[sp]}', p=pm.math.invlogit(eta), dims='site')

            for sp in (PREDATOR, PREY):
                eta = (
                    logit_p0[sp][:, None]
                    + effect('beta_night', sp) * night[None, :]
                    + effect('beta_twilight', sp) * twilight[None, :]
                )
                if sp == PREY:
                    eta = eta + z[PREDATOR][:, None] * (
                        effect('beta_psi', PREY)
                        + effect('beta_psi_night', PREY) * night[None, :]
                        + effect('beta_psi_twilight', PREY) * twilight[None, :]
                    )
                pm.Binomial(
                    f'y_{SPECIES[sp]}',
                    n=np.array(data.n_occasions[:, sp, :]),
                    p=z[sp][:, None] * pm.math.invlogit(eta),
                    observed=np.array(data.y[:, sp, :]),
                    dims=('site', 'stratum'),
                )

        print("✅ PyMC occupancy model built successfully!")
        return model
