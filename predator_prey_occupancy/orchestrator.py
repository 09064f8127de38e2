"""
Run several independent chains of the occupancy sampler and collect their
retained draws into one ``arviz.InferenceData``.
"""

import dataclasses
import os
import sys
import time
from dataclasses import dataclass

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
from joblib import Parallel, delayed

from predator_prey_occupancy.config import SPECIES, RunConfig
from predator_prey_occupancy.data import SurveyData
from predator_prey_occupancy.model import BASELINES, EFFECTS, OccupancyModel
from predator_prey_occupancy.sampler import run_chain


@dataclass
class OccupancyFit:
    """Posterior draws plus everything needed to interpret and re-simulate them."""

    idata: az.InferenceData
    data: SurveyData
    model: OccupancyModel
    config: RunConfig
    acceptance: pd.DataFrame

    @property
    def n_chains(self):
        return self.idata.posterior.sizes['chain']

    @property
    def n_draws(self):
        return self.idata.posterior.sizes['draw']


def posterior_coords(data):
    coords = {
        'species': list(SPECIES),
        'pa': list(data.pa_labels),
        'period': list(range(1, data.max_periods + 1)),
        'site': list(data.site_labels),
        'stratum': list(data.stratum_labels),
    }
    dims = {name: ['species', 'pa', 'period'] for name in BASELINES}
    dims.update({name: ['species'] for name in EFFECTS})
    dims['z'] = ['site', 'species']
    dims['y'] = ['site', 'species', 'stratum']
    return coords, dims


def chains_to_idata(data, model, chains, log_density, config):
    """
    Stack per-chain draws into the structured posterior layout.

    ``chains`` is a list (one entry per chain) of dicts holding ``p0``/``psi0``
    as (draw, species, cell), effects as (draw, species) and ``z`` as
    (draw, site, species). Absent PA-period cells and inactive effects become NaN.
    """
    lengths = {len(c['z']) for c in chains}
    if len(lengths) != 1:
        raise RuntimeError(f"Chains returned unequal numbers of retained draws: {sorted(lengths)}")

    posterior = {}
    for name in BASELINES:
        posterior[name] = data.expand_cells(np.stack([c[name] for c in chains]))
    for name in EFFECTS:
        values = np.stack([c[name] for c in chains]).astype(float)
        inactive = [sp for sp in range(len(SPECIES)) if sp not in model.active[name]]
        values[..., inactive] = np.nan
        posterior[name] = values
    posterior['z'] = np.stack([c['z'] for c in chains]).astype(np.int64)

    coords, dims = posterior_coords(data)
    idata = az.from_dict(
        posterior=posterior,
        sample_stats={'lp': np.asarray(log_density)},
        observed_data={'y': np.asarray(data.y)},
        coords=coords,
        dims=dims,
    )
    idata.posterior.attrs['interaction'] = model.interaction.value
    idata.posterior.attrs['engine'] = config.engine
    idata.posterior.attrs['n_iter'] = config.n_iter
    idata.posterior.attrs['burn_in'] = config.burn_in
    idata.posterior.attrs['thin'] = config.thin
    return idata


def acceptance_table(data, model, results):
    """Post burn-in acceptance rates and frozen proposal scales of every updated scalar."""
    rows = []
    for result in results:
        for name in BASELINES:
            for sp, species in enumerate(SPECIES):
                for k, (pa, period) in enumerate(data.cells):
                    rows.append({
                        'chain': result.chain,
                        'parameter': name,
                        'species': species,
                        'pa': data.pa_labels[pa],
                        'period': period + 1,
                        'acceptance_rate': result.acceptance[name][sp, k],
                        'proposal_scale': result.proposal_scale[name][sp, k],
                    })
        for name in EFFECTS:
            for sp in model.active[name]:
                rows.append({
                    'chain': result.chain,
                    'parameter': name,
                    'species': SPECIES[sp],
                    'pa': None,
                    'period': None,
                    'acceptance_rate': result.acceptance[name][sp],
                    'proposal_scale': result.proposal_scale[name][sp],
                })
    return pd.DataFrame(rows)


def _fit_with_gibbs(data, model, config):
    seeds = np.random.SeedSequence(config.seed).spawn(config.n_chains)
    results = Parallel(n_jobs=config.n_jobs)(
        delayed(run_chain)(model, config, seeds[chain], chain)
        for chain in range(config.n_chains)
    )
    results = sorted(results, key=lambda r: r.chain)
    idata = chains_to_idata(
        data, model,
        [r.samples for r in results],
        np.stack([r.log_density for r in results]),
        config,
    )
    return idata, acceptance_table(data, model, results)


def _fit_with_pymc(data, model, config):
    """Sample the PyMC declaration with BinaryGibbsMetropolis + Metropolis steps."""
    pm_model = model.build_pymc_model()
    z_names = [f'z_{species}' for species in SPECIES]

    with pm_model:
        z_vars = [pm_model[name] for name in z_names]
        continuous = [v for v in pm_model.free_RVs if v.name not in z_names]
        step = [pm.BinaryGibbsMetropolis(z_vars), pm.Metropolis(continuous)]
        initvals = {name: np.ones(data.n_sites, dtype=int) for name in z_names}
        trace = pm.sample(
            draws=config.n_iter - config.burn_in,
            tune=config.burn_in,
            chains=config.n_chains,
            cores=1 if config.n_jobs == 1 else None,
            step=step,
            initvals=initvals,
            random_seed=config.seed,
            progressbar=False,
            compute_convergence_checks=False,
            return_inferencedata=True,
        )

    full = trace.posterior
    thinned = full.isel(draw=slice(None, None, config.thin))
    chains = []
    for c in range(thinned.sizes['chain']):
        draws = thinned.isel(chain=c)
        entry = {name: draws[name].values for name in BASELINES}
        for name in EFFECTS:
            values = np.zeros((draws.sizes['draw'], len(SPECIES)))
            if model.active[name]:
                values[:, list(model.active[name])] = draws[name].values.reshape(draws.sizes['draw'], -1)
            entry[name] = values
        entry['z'] = np.stack([draws[name].values for name in z_names], axis=-1)
        chains.append(entry)

    log_density = np.array([
        [model.log_density({name: chain[name][d] for name in BASELINES + EFFECTS}, chain['z'][d])
         for d in range(len(chain['z']))]
        for chain in chains
    ])
    idata = chains_to_idata(data, model, chains, log_density, config)

    # Move rate between consecutive (unthinned) draws stands in for the acceptance rate
    rows = []
    for name in BASELINES + tuple(n for n in EFFECTS if model.active[n]):
        values = full[name].values
        moved = (np.diff(values, axis=1) != 0).mean(axis=1)
        for c in range(moved.shape[0]):
            rows.append({
                'chain': c,
                'parameter': name,
                'species': None,
                'pa': None,
                'period': None,
                'acceptance_rate': float(moved[c].mean()),
                'proposal_scale': np.nan,
            })
    return idata, pd.DataFrame(rows)


def fit_occupancy_model(data, config=None, **overrides):
    """
    Run ``config.n_chains`` independent chains and return an ``OccupancyFit``.

    Keyword overrides replace fields of ``config`` (e.g. ``n_iter=500``).
    Invalid configurations raise ``ValueError`` before any sampling starts;
    a chain reaching a non-finite value raises ``FloatingPointError``.
    """
    print("\n" + "=" * 80)
    print("Fitting Predator-Prey Occupancy Model")
    print("=" * 80)

    config = config or RunConfig()
    if overrides:
        config = dataclasses.replace(config, **overrides)
    if not isinstance(data, SurveyData):
        raise ValueError(f"data must be a SurveyData instance, got {type(data).__name__}")

    model = OccupancyModel(data, config.interaction)

    print(f"Engine: {config.engine}, interaction: {config.interaction.value}")
    print(f"Using {config.n_chains} chains x {config.n_iter} iterations "
          f"(burn-in {config.burn_in}, thin {config.thin}, n_jobs {config.n_jobs})")
    print(f"Start time: {time.strftime('%Y-%m-%d %H:%M:%S')}")
    sys.stdout.flush()

    start_time = time.time()
    if config.engine == 'pymc':
        idata, acceptance = _fit_with_pymc(data, model, config)
    else:
        idata, acceptance = _fit_with_gibbs(data, model, config)
    elapsed_time = time.time() - start_time

    print(f"\n✅ Model sampling completed in {elapsed_time / 60:.1f} minutes!")
    print(f"  Retained draws per chain: {idata.posterior.sizes['draw']}")
    if len(acceptance):
        rates = acceptance['acceptance_rate']
        print(f"  Acceptance rate: mean {rates.mean():.3f}, min {rates.min():.3f}, max {rates.max():.3f}")

    return OccupancyFit(idata=idata, data=data, model=model, config=config, acceptance=acceptance)


def save_fit(fit, directory):
    """Write the posterior (netCDF) and acceptance table (CSV) into ``directory``."""
    os.makedirs(directory, exist_ok=True)
    acceptance_file = os.path.join(directory, 'acceptance_rates.csv')
    fit.acceptance.to_csv(acceptance_file, index=False)
    print(f"✅ Acceptance rates saved to {acceptance_file}")

    idata_file = os.path.join(directory, 'occupancy_interaction_inference_data.nc')
    try:
        fit.idata.to_netcdf(idata_file)
        print(f"✅ Inference data saved to {idata_file}")
    except Exception as e:
        print(f"⚠️  Warning: Could not save inference data: {e}")
        idata_file = None
    return idata_file
