"""
Metropolis-within-Gibbs sampler for the two-species occupancy model.

One sweep updates, in order:
  1. latent states z[:, s] for each species, drawn exactly from their
     Bernoulli full conditionals (vectorised over sites);
  2. psi0 and p0, adaptive random-walk Metropolis on the log-odds scale; all
     (species, cell) entries of a group are proposed together and accepted
     independently, since their full conditionals factorise by cell;
  3. every active effect coefficient, one scalar at a time.

Proposal scales are tuned during burn-in only and frozen afterward.
"""

from dataclasses import dataclass
from typing import Dict

import numpy as np
from scipy.special import expit, log_expit

from predator_prey_occupancy.config import (
    INITIAL_PROPOSAL_SCALE,
    MAX_PROPOSAL_SCALE,
    MIN_PROPOSAL_SCALE,
    SPECIES,
)
from predator_prey_occupancy.model import BASELINES, EFFECTS, inv_logit, logit


@dataclass
class ChainResult:
    """Retained (post burn-in, thinned) draws of one chain."""

    chain: int
    samples: Dict[str, np.ndarray]
    log_density: np.ndarray
    acceptance: Dict[str, np.ndarray]
    proposal_scale: Dict[str, np.ndarray]


def tune_scale(scale, acc_rate):
    """
    Rescale proposal standard deviations from the acceptance rate of the last
    tuning window (same schedule as ``pymc.Metropolis``).
    """
    factor = np.select(
        [acc_rate < 0.001, acc_rate < 0.05, acc_rate < 0.2,
         acc_rate > 0.95, acc_rate > 0.75, acc_rate > 0.5],
        [0.1, 0.5, 0.9, 10.0, 2.0, 1.1],
        default=1.0,
    )
    return np.clip(scale * factor, MIN_PROPOSAL_SCALE, MAX_PROPOSAL_SCALE)


class OccupancySampler:
    """A single Markov chain over (p0, psi0, beta.*, z)."""

    def __init__(self, model, config, rng, chain=0):
        self.model = model
        self.config = config
        self.rng = rng
        self.chain = chain

        data = model.data
        self._site_cell = np.asarray(data.site_cell)
        self._n_cells = data.n_cells

        params, z = model.initial_values(rng)
        # Baselines live on the log-odds scale inside the sampler
        self.x = {name: logit(params[name]) for name in BASELINES}
        self.effects = {name: params[name].copy() for name in EFFECTS}
        self.z = z

        shapes = {name: self.x[name].shape for name in BASELINES}
        shapes.update({name: (len(SPECIES),) for name in EFFECTS})
        self.scale = {name: np.full(shape, INITIAL_PROPOSAL_SCALE) for name, shape in shapes.items()}
        self._window_accepted = {name: np.zeros(shape) for name, shape in shapes.items()}
        self._window_proposed = {name: np.zeros(shape) for name, shape in shapes.items()}
        self._accepted = {name: np.zeros(shape) for name, shape in shapes.items()}
        self._proposed = {name: np.zeros(shape) for name, shape in shapes.items()}

    # ------------------------------------------------------------------
    # State views
    # ------------------------------------------------------------------

    @property
    def params(self):
        params = {name: inv_logit(self.x[name]) for name in BASELINES}
        params.update(self.effects)
        return params

    def _cell_sums(self, site_values):
        """Sum (site, species) values into (species, cell)."""
        return np.stack([
            np.bincount(self._site_cell, weights=site_values[:, sp], minlength=self._n_cells)
            for sp in range(site_values.shape[1])
        ])

    def _record(self, name, accepted, tuning):
        counts = self._window_accepted if tuning else self._accepted
        proposed = self._window_proposed if tuning else self._proposed
        counts[name] += accepted
        proposed[name] += 1

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_latent(self):
        """Exact Gibbs draw of z[:, s] for each species given everything else."""
        params = self.params
        n_sites = self.z.shape[0]
        for sp in range(len(SPECIES)):
            z1 = self.z.copy()
            z1[:, sp] = 1
            z0 = self.z.copy()
            z0[:, sp] = 0
            log_odds = self.model.site_log_density(params, z1) - self.model.site_log_density(params, z0)
            prob = expit(log_odds)
            self.z[:, sp] = self.rng.random(n_sites) < prob

    def _baseline_log_target(self, name, x, params):
        """(species, cell) log full conditional of one baseline group on the log-odds scale."""
        params = dict(params)
        params[name] = inv_logit(x)
        if name == 'psi0':
            site_terms = self.model.occupancy_loglik(params, self.z)
        else:
            site_terms = self.model.detection_loglik(params, self.z)
        # Uniform(0, 1) prior mapped to log-odds: log p + log(1 - p)
        jacobian = log_expit(x) + log_expit(-x)
        return self._cell_sums(site_terms) + jacobian

    def update_baseline(self, name, tuning):
        params = self.params
        current = self._baseline_log_target(name, self.x[name], params)
        proposal = self.x[name] + self.scale[name] * self.rng.standard_normal(self.x[name].shape)
        proposed = self._baseline_log_target(name, proposal, params)
        accept = np.log(self.rng.random(proposal.shape)) < (proposed - current)
        self.x[name] = np.where(accept, proposal, self.x[name])
        self._record(name, accept, tuning)

    def update_effect(self, name, sp, tuning, current):
        """Random-walk update of one effect coefficient; returns the new log density."""
        params = self.params
        params[name] = self.effects[name].copy()
        params[name][sp] += self.scale[name][sp] * self.rng.standard_normal()
        proposed = self.model.log_density(params, self.z)
        accepted = np.log(self.rng.random()) < (proposed - current)
        if accepted:
            self.effects[name] = params[name]
            current = proposed
        counts = self._window_accepted if tuning else self._accepted
        proposed_counts = self._window_proposed if tuning else self._proposed
        counts[name][sp] += float(accepted)
        proposed_counts[name][sp] += 1
        return current

    def sweep(self, tuning=False):
        """One full pass over every latent state and every parameter."""
        self.update_latent()
        for name in ('psi0', 'p0'):
            self.update_baseline(name, tuning)
        lp = self.model.log_density(self.params, self.z)
        for name in EFFECTS:
            for sp in self.model.active[name]:
                lp = self.update_effect(name, sp, tuning, lp)
        return lp

    def adapt(self):
        """Retune proposal scales from the last window, then reset the window."""
        for name in self.scale:
            proposed = self._window_proposed[name]
            tried = proposed > 0
            rate = np.where(tried, self._window_accepted[name] / np.maximum(proposed, 1), 0.5)
            self.scale[name] = np.where(tried, tune_scale(self.scale[name], rate), self.scale[name])
            self._window_accepted[name][...] = 0.0
            self._window_proposed[name][...] = 0.0

    def _check_finite(self, iteration, lp):
        for name, values in self.params.items():
            if name in EFFECTS:
                values = values[list(self.model.active[name])]
            if not np.all(np.isfinite(values)):
                raise FloatingPointError(
                    f"Chain {self.chain}: non-finite value in '{name}' at iteration {iteration}"
                )
        if not np.isfinite(lp):
            raise FloatingPointError(
                f"Chain {self.chain}: non-finite log density ({lp}) at iteration {iteration}"
            )

    # ------------------------------------------------------------------
    # Chain driver
    # ------------------------------------------------------------------

    def run(self):
        config = self.config
        n_keep = config.n_retained
        n_sites = self.z.shape[0]
        samples = {name: np.empty((n_keep,) + self.x[name].shape) for name in BASELINES}
        samples.update({name: np.empty((n_keep, len(SPECIES))) for name in EFFECTS})
        samples['z'] = np.empty((n_keep, n_sites, len(SPECIES)), dtype=np.int8)
        log_density = np.empty(n_keep)

        k = 0
        for iteration in range(config.n_iter):
            tuning = iteration < config.burn_in
            lp = self.sweep(tuning=tuning)
            if tuning and (iteration + 1) % config.adapt_interval == 0:
                self.adapt()
            self._check_finite(iteration, lp)
            if config.is_retained(iteration):
                params = self.params
                for name in BASELINES + EFFECTS:
                    samples[name][k] = params[name]
                samples['z'][k] = self.z
                log_density[k] = lp
                k += 1

        acceptance = {
            name: self._accepted[name] / np.maximum(self._proposed[name], 1)
            for name in self._accepted
        }
        return ChainResult(
            chain=self.chain,
            samples=samples,
            log_density=log_density,
            acceptance=acceptance,
            proposal_scale={name: scale.copy() for name, scale in self.scale.items()},
        )


def run_chain(model, config, seed, chain):
    """Run one independent chain; ``seed`` is a ``numpy.random.SeedSequence``."""
    rng = np.random.default_rng(seed)
    sampler = OccupancySampler(model, config, rng, chain=chain)
    print(f"  ⏱️  Chain {chain}: {config.n_iter} iterations "
          f"(burn-in {config.burn_in}, thin {config.thin})")
    result = sampler.run()
    print(f"  ✅ Chain {chain} finished ({len(result.log_density)} retained draws)")
    return result
