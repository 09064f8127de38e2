"""
Posterior summaries: structured parameter tables and derived occupancy and
detection probabilities under fixed (counterfactual) covariate settings.

All derived quantities are evaluated draw by draw from the same retained
draws of ``psi0``/``p0``/``beta.*`` and then reduced to a posterior mean and a
95% credible interval.
"""

import numpy as np
import pandas as pd

from predator_prey_occupancy.config import CREDIBLE_INTERVAL, DIEL_CATEGORIES, PREY, SPECIES
from predator_prey_occupancy.model import BASELINES, EFFECTS, inv_logit, logit


def stack_draws(idata, var):
    """Retained draws of ``var`` with (chain, draw) flattened into the leading axis."""
    da = idata.posterior[var]
    extra = [dim for dim in da.dims if dim not in ('chain', 'draw')]
    return da.stack(sample=('chain', 'draw')).transpose('sample', *extra).values


def interval_summary(values, axis=0):
    """Posterior mean and equal-tailed credible interval along ``axis``."""
    values = np.asarray(values, dtype=float)
    lower, upper = np.percentile(values, CREDIBLE_INTERVAL, axis=axis)
    return {'mean': values.mean(axis=axis), 'lower': lower, 'upper': upper}


def posterior_params(fit):
    """
    Every retained draw in the sampler's layout.

    Baselines come back as (sample, species, n_cells) over the valid cells,
    effects as (sample, species) with inactive entries set to 0, and ``z`` as
    (sample, site, species).
    """
    data = fit.data
    params = {name: data.collapse_cells(stack_draws(fit.idata, name)) for name in BASELINES}
    for name in EFFECTS:
        params[name] = np.nan_to_num(stack_draws(fit.idata, name), nan=0.0)
    params['z'] = stack_draws(fit.idata, 'z').astype(np.int64)
    return params


def select_draw(params, index):
    """The parameter dict and latent states of one retained draw."""
    draw = {name: params[name][index] for name in BASELINES + EFFECTS}
    return draw, params['z'][index]


def _cell_rows(data):
    for k, (pa, period) in enumerate(data.cells):
        yield k, {
            'pa': data.pa_labels[pa],
            'period': period + 1,
            'year': data.year_of(pa, period),
        }


def parameter_table(fit, var):
    """Posterior mean and 95% interval of one parameter, skipping absent cells."""
    data = fit.data
    rows = []
    if var in BASELINES:
        values = data.collapse_cells(stack_draws(fit.idata, var))
        stats = interval_summary(values)
        for sp, species in enumerate(SPECIES):
            for k, cell in _cell_rows(data):
                rows.append({
                    'parameter': var, 'species': species, **cell,
                    'mean': stats['mean'][sp, k],
                    'lower': stats['lower'][sp, k],
                    'upper': stats['upper'][sp, k],
                })
    elif var in EFFECTS:
        values = stack_draws(fit.idata, var)
        for sp in fit.model.active[var]:
            stats = interval_summary(values[:, sp])
            rows.append({
                'parameter': var, 'species': SPECIES[sp],
                'mean': stats['mean'], 'lower': stats['lower'], 'upper': stats['upper'],
            })
    else:
        raise KeyError(f"Unknown parameter '{var}'")
    return pd.DataFrame(rows)


def occupancy_probability(fit, species, leader_present=None, params=None):
    """
    Occupancy probability of ``species`` per draw and valid cell.

    For the follower species of the interaction, ``leader_present`` fixes the
    leader's latent state (0 or 1); ``None`` gives the marginal probability
    over the leader's own occupancy. Returns (sample, n_cells).
    """
    params = posterior_params(fit) if params is None else params
    interaction = fit.model.interaction
    psi0 = params['psi0'][:, species]
    if species != interaction.follower:
        return psi0

    def conditional(present):
        return inv_logit(logit(psi0) + params['beta_psi_psi'][:, species, None] * present)

    if leader_present is not None:
        return conditional(leader_present)
    psi_leader = params['psi0'][:, interaction.leader]
    return psi_leader * conditional(1) + (1 - psi_leader) * conditional(0)


def detection_probability(fit, species, diel='day', predator_present=0, params=None):
    """
    Per-occasion detection probability per draw and valid cell, at a fixed
    diel category and (for the prey) a fixed predator latent state.
    """
    if diel not in DIEL_CATEGORIES:
        raise ValueError(f"Unknown diel category '{diel}', expected {DIEL_CATEGORIES}")
    params = posterior_params(fit) if params is None else params
    night = float(diel == 'night')
    twilight = float(diel == 'twilight')

    def effect(name):
        return params[name][:, species, None]

    eta = logit(params['p0'][:, species]) + effect('beta_night') * night + effect('beta_twilight') * twilight
    if species == PREY:
        eta = eta + predator_present * (
            effect('beta_psi') + effect('beta_psi_night') * night + effect('beta_psi_twilight') * twilight
        )
    return inv_logit(eta)


def occupancy_table(fit):
    """Occupancy probabilities per species, cell and leader-state condition."""
    print("\n📊 Summarising occupancy probabilities...")
    data = fit.data
    params = posterior_params(fit)
    interaction = fit.model.interaction

    rows = []
    for sp, species in enumerate(SPECIES):
        if sp == interaction.follower:
            leader = SPECIES[interaction.leader]
            conditions = {
                f'{leader}_absent': occupancy_probability(fit, sp, 0, params),
                f'{leader}_present': occupancy_probability(fit, sp, 1, params),
                'marginal': occupancy_probability(fit, sp, None, params),
            }
        else:
            conditions = {'unconditional': occupancy_probability(fit, sp, params=params)}

        for condition, values in conditions.items():
            stats = interval_summary(values)
            for k, cell in _cell_rows(data):
                rows.append({
                    'species': species, **cell, 'condition': condition,
                    'mean': stats['mean'][k], 'lower': stats['lower'][k], 'upper': stats['upper'][k],
                })
    return pd.DataFrame(rows)


def detection_table(fit, pool_cells=False):
    """
    Detection probabilities per species x diel category x predator presence.

    With ``pool_cells`` the per-cell probabilities are averaged over surveyed
    sites within each draw before summarising, giving one row per scenario.
    """
    print("\n📊 Summarising detection probabilities...")
    data = fit.data
    params = posterior_params(fit)
    site_cell = np.asarray(data.site_cell)

    rows = []
    for sp, species in enumerate(SPECIES):
        presence = (0, 1) if sp == PREY else (None,)
        for diel in DIEL_CATEGORIES:
            for present in presence:
                values = detection_probability(fit, sp, diel, present or 0, params)
                scenario = {'species': species, 'diel': diel, 'predator_present': present}
                if pool_cells:
                    stats = interval_summary(values[:, site_cell].mean(axis=1))
                    rows.append({**scenario, **stats})
                    continue
                stats = interval_summary(values)
                for k, cell in _cell_rows(data):
                    rows.append({
                        **scenario, **cell,
                        'mean': stats['mean'][k], 'lower': stats['lower'][k], 'upper': stats['upper'][k],
                    })
    table = pd.DataFrame(rows)
    table['predator_present'] = table['predator_present'].astype('Int64')
    return table


def latent_occupancy_table(fit):
    """Posterior probability that each species occupies each site."""
    z = stack_draws(fit.idata, 'z')
    share = z.mean(axis=0)
    data = fit.data
    rows = []
    for i, site in enumerate(data.site_labels):
        row = {'site': site, 'pa': data.pa_labels[data.pa[i]], 'period': int(data.period[i]) + 1}
        for sp, species in enumerate(SPECIES):
            row[f'{species}_occupied'] = share[i, sp]
            row[f'{species}_detected'] = bool(data.detected[i, sp])
        rows.append(row)
    return pd.DataFrame(rows)


def predator_effect_table(fit):
    """Change in prey detection when the predator is present, by diel category."""
    params = posterior_params(fit)
    rows = []
    for diel in DIEL_CATEGORIES:
        night = float(diel == 'night')
        twilight = float(diel == 'twilight')
        shift = (
            params['beta_psi'][:, PREY]
            + params['beta_psi_night'][:, PREY] * night
            + params['beta_psi_twilight'][:, PREY] * twilight
        )
        stats = interval_summary(shift)
        rows.append({
            'diel': diel, 'log_odds_shift': stats['mean'],
            'lower': stats['lower'], 'upper': stats['upper'],
            'prob_negative': float((shift < 0).mean()),
        })
    return pd.DataFrame(rows)
