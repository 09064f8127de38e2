"""
Figures built from the structured outputs (summary tables, diagnostics and
posterior-predictive replicates).
"""

import os

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from predator_prey_occupancy.config import DIEL_CATEGORIES, SPECIES
from predator_prey_occupancy.predictive import STATISTICS, stack_replicates


def plot_posterior_predictive(observed, replicates, output_dir):
    """Replicated summary statistics (boxes) against the observed value (red marker)."""
    os.makedirs(output_dir, exist_ok=True)
    stacked = stack_replicates(replicates)

    sns.set(style="whitegrid", context="talk")
    fig, axes = plt.subplots(len(STATISTICS), len(SPECIES), figsize=(16, 5 * len(STATISTICS)), squeeze=False)
    for row, stat in enumerate(STATISTICS):
        for col, species in enumerate(SPECIES):
            ax = axes[row, col]
            sims = stacked[stacked['species'] == species]
            obs = observed[observed['species'] == species].set_index('diel')[stat]
            sns.boxplot(data=sims, x='diel', y=stat, order=list(DIEL_CATEGORIES), color='#8fb3d9', ax=ax)
            ax.scatter(range(len(DIEL_CATEGORIES)), obs.reindex(list(DIEL_CATEGORIES)).to_numpy(),
                       color='#d62728', marker='D', s=80, zorder=5, label='Observed')
            ax.set_title(f"{species.capitalize()}: {stat.replace('_', ' ')}")
            ax.set_xlabel('Diel category')
            ax.set_ylabel(stat.replace('_', ' '))
            if row == 0 and col == 0:
                ax.legend(loc='upper right')

    plt.tight_layout()
    plot_file = os.path.join(output_dir, 'posterior_predictive_check.png')
    plt.savefig(plot_file, dpi=300, bbox_inches='tight')
    plt.close()
    print(f"✅ Saved posterior predictive plot: {plot_file}")
    return plot_file


def plot_occupancy_estimates(occupancy, output_dir):
    """Posterior mean occupancy with 95% intervals per PA-period cell and condition."""
    os.makedirs(output_dir, exist_ok=True)
    df = occupancy.copy()
    df['cell'] = df['pa'].astype(str) + ':' + df['period'].astype(str)

    sns.set(style="whitegrid", context="talk")
    fig, axes = plt.subplots(1, len(SPECIES), figsize=(20, 8), sharey=True, squeeze=False)
    for col, species in enumerate(SPECIES):
        ax = axes[0, col]
        sub = df[df['species'] == species]
        conditions = list(dict.fromkeys(sub['condition']))
        cells = list(dict.fromkeys(sub['cell']))
        width = 0.8 / max(len(conditions), 1)
        palette = sns.color_palette('deep', len(conditions))
        for c, condition in enumerate(conditions):
            part = sub[sub['condition'] == condition].set_index('cell').reindex(cells)
            x = np.arange(len(cells)) + (c - (len(conditions) - 1) / 2) * width
            ax.errorbar(
                x, part['mean'],
                yerr=[part['mean'] - part['lower'], part['upper'] - part['mean']],
                fmt='o', capsize=4, color=palette[c], label=condition.replace('_', ' '),
            )
        ax.set_xticks(np.arange(len(cells)))
        ax.set_xticklabels(cells, rotation=45, ha='right')
        ax.set_ylim(0, 1)
        ax.set_title(f"{species.capitalize()} occupancy")
        ax.set_xlabel('Protected area : period')
        if col == 0:
            ax.set_ylabel('Occupancy probability (95% CI)')
        ax.legend(loc='best', fontsize=11)

    plt.tight_layout()
    plot_file = os.path.join(output_dir, 'occupancy_estimates.png')
    plt.savefig(plot_file, dpi=300, bbox_inches='tight')
    plt.close()
    print(f"✅ Saved occupancy plot: {plot_file}")
    return plot_file


def plot_rhat(diagnostics, output_dir, threshold):
    """Rhat of every monitored scalar, grouped by parameter, with the threshold line."""
    os.makedirs(output_dir, exist_ok=True)
    df = diagnostics.dropna(subset=['rhat'])

    sns.set(style="whitegrid", context="talk")
    fig, ax = plt.subplots(figsize=(14, 7))
    sns.stripplot(data=df, x='parameter', y='rhat', hue='species', dodge=True, size=7, ax=ax)
    ax.axhline(threshold, color='#d62728', linestyle='--', linewidth=1.5, label=f'R-hat = {threshold}')
    ax.set_xlabel('')
    ax.set_ylabel('R-hat')
    ax.set_title('Convergence diagnostics')
    plt.setp(ax.get_xticklabels(), rotation=30, ha='right')
    ax.legend(loc='upper right', fontsize=11)

    plt.tight_layout()
    plot_file = os.path.join(output_dir, 'rhat.png')
    plt.savefig(plot_file, dpi=300, bbox_inches='tight')
    plt.close()
    print(f"✅ Saved R-hat plot: {plot_file}")
    return plot_file
