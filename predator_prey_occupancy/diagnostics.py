"""
Convergence diagnostics over the retained draws of several chains.

Every monitored variable is flattened to one ``(chain, draw)`` array per scalar
instance. Instances that are NaN across every draw (structurally absent
PA-period cells, effects a species does not carry) are dropped before any
variance is computed.
"""

import arviz as az
import numpy as np
import pandas as pd

from predator_prey_occupancy.config import ESS_MIN, RHAT_THRESHOLD
from predator_prey_occupancy.model import ParamGroup, parameter_names

DIAGNOSTIC_COLUMNS = [
    'parameter', 'species', 'pa', 'period', 'site',
    'rhat', 'ess_bulk', 'ess_tail', 'converged',
]


def scalar_columns(idata, var_names):
    """
    List of ``(label, values)`` pairs, one per scalar instance.

    ``label`` maps ``parameter`` and each structural dimension to its
    coordinate value; ``values`` has shape (chain, draw).
    """
    columns = []
    for name in var_names:
        da = idata.posterior[name]
        extra = [dim for dim in da.dims if dim not in ('chain', 'draw')]
        values = da.transpose('chain', 'draw', *extra).values
        for index in np.ndindex(*values.shape[2:]):
            column = values[(slice(None), slice(None)) + index].astype(float)
            if np.all(np.isnan(column)):
                continue
            label = {'parameter': name}
            for dim, i in zip(extra, index):
                value = da[dim].values[i]
                label[dim] = value.item() if hasattr(value, 'item') else value
            columns.append((label, column))
    return columns


def _scalar_diagnostics(column, method):
    # Constant columns (e.g. z at sites with detections) count as converged
    if np.ptp(column) == 0:
        return 1.0, float(column.size), float(column.size)
    rhat = float(az.rhat(column, method=method))
    ess_bulk = float(az.ess(column, method='bulk'))
    ess_tail = float(az.ess(column, method='tail'))
    return rhat, ess_bulk, ess_tail


def compute_diagnostics(idata, groups=(ParamGroup.BASELINE, ParamGroup.EFFECT),
                        threshold=RHAT_THRESHOLD, method='rank', var_names=None):
    """
    Rhat and bulk/tail ESS for every applicable scalar parameter instance.

    Returns a DataFrame with one row per instance. ``converged`` is False when
    Rhat is not below ``threshold``; nothing is raised for poor convergence.
    """
    if var_names is None:
        var_names = [name for name in parameter_names(groups) if name in idata.posterior]

    rows = []
    for label, column in scalar_columns(idata, var_names):
        rhat, ess_bulk, ess_tail = _scalar_diagnostics(column, method)
        rows.append({**label, 'rhat': rhat, 'ess_bulk': ess_bulk, 'ess_tail': ess_tail})

    table = pd.DataFrame(rows, columns=DIAGNOSTIC_COLUMNS[:-1])
    # Effect rows have no period; keep the column integer
    table['period'] = table['period'].astype('Int64')
    table['converged'] = table['rhat'] < threshold
    return table


def convergence_report(table, threshold=RHAT_THRESHOLD, ess_min=ESS_MIN):
    """Print a convergence summary and return it as a JSON-friendly dict."""
    print("\n📊 Convergence Diagnostics:")

    rhat_vals = table['rhat'].dropna()
    ess_bulk = table['ess_bulk'].dropna()
    ess_tail = table['ess_tail'].dropna()

    report = {
        'n_parameters': int(len(table)),
        'rhat_threshold': float(threshold),
        'max_rhat': float(rhat_vals.max()) if len(rhat_vals) else None,
        'mean_rhat': float(rhat_vals.mean()) if len(rhat_vals) else None,
        'n_high_rhat': int((~table['converged']).sum()),
        'min_ess_bulk': float(ess_bulk.min()) if len(ess_bulk) else None,
        'min_ess_tail': float(ess_tail.min()) if len(ess_tail) else None,
        'n_low_ess': int((ess_bulk < ess_min).sum()),
    }

    if len(rhat_vals):
        print(f"  Mean R-hat: {report['mean_rhat']:.4f}")
        print(f"  Max R-hat: {report['max_rhat']:.4f}")
    print(f"  Parameters with R-hat >= {threshold}: {report['n_high_rhat']} / {report['n_parameters']}")
    if len(ess_bulk):
        print(f"  Min Bulk ESS: {report['min_ess_bulk']:.0f}")
        print(f"  Min Tail ESS: {report['min_ess_tail']:.0f}")
        print(f"  Parameters with ESS < {ess_min}: {report['n_low_ess']} / {len(ess_bulk)}")

    flagged = table.loc[~table['converged']]
    report['flagged'] = [_flag_entry(row) for _, row in flagged.iterrows()]
    report['converged'] = report['n_high_rhat'] == 0

    if report['converged'] and report['n_low_ess'] == 0:
        print(f"\n✅ Model converged successfully!")
    elif report['converged']:
        print(f"\n⚠️  R-hat acceptable but some effective sample sizes are low")
    else:
        print(f"\n⚠️  Model may not have converged. Consider running longer chains.")
        for entry in report['flagged'][:10]:
            where = ', '.join(f"{k}={v}" for k, v in entry.items() if k not in ('parameter', 'rhat'))
            print(f"    {entry['parameter']}[{where}]: R-hat = {entry['rhat']}")
    return report


def _flag_entry(row):
    entry = {}
    for key in ('parameter', 'species', 'pa', 'period', 'site'):
        value = row[key]
        if pd.isna(value):
            continue
        if key == 'period':
            value = int(value)
        entry[key] = value
    entry['rhat'] = None if pd.isna(row['rhat']) else round(float(row['rhat']), 4)
    return entry
