#!/usr/bin/env python3
"""
Predator-Prey Occupancy Model with Interaction Terms

This script:
1. Loads camera-trap detections (long-format CSVs) or simulates a survey
2. Fits the two-species occupancy model over several MCMC chains
3. Checks convergence (R-hat, bulk/tail ESS)
4. Summarises occupancy and detection probabilities (95% credible intervals)
5. Runs a posterior predictive check against the observed detections
"""

import argparse
import json
import os
import sys
import time
import traceback

import pandas as pd

from predator_prey_occupancy.config import (
    BASE_INTERACTION_DIR,
    DEFAULT_BURN_IN,
    DEFAULT_N_CHAINS,
    DEFAULT_N_ITER,
    DEFAULT_PPC_DRAWS,
    DEFAULT_SEED,
    DEFAULT_THIN,
    ENGINES,
    RHAT_THRESHOLD,
    Interaction,
    RunConfig,
)
from predator_prey_occupancy.data import prepare_survey_data
from predator_prey_occupancy.diagnostics import compute_diagnostics, convergence_report
from predator_prey_occupancy.model import BASELINES, EFFECTS
from predator_prey_occupancy.orchestrator import fit_occupancy_model, save_fit
from predator_prey_occupancy.plots import plot_occupancy_estimates, plot_posterior_predictive, plot_rhat
from predator_prey_occupancy.predictive import (
    observed_summary,
    posterior_predictive,
    ppc_pvalues,
    simulate_survey_data,
    stack_replicates,
)
from predator_prey_occupancy.summary import (
    detection_table,
    latent_occupancy_table,
    occupancy_table,
    parameter_table,
    predator_effect_table,
)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Fit the predator-prey occupancy model with interaction terms')
    parser.add_argument('--detections', help='CSV with site, species, stratum, detections, occasions')
    parser.add_argument('--sites', help='CSV with site, pa, period (1-based) and optional year')
    parser.add_argument('--strata', help='CSV with stratum, diel (day/night/twilight)')
    parser.add_argument('--simulate', action='store_true', help='Fit a simulated survey instead of CSV inputs')
    parser.add_argument('--n-sites', type=int, default=60, help='Number of simulated sites')
    parser.add_argument('--n-periods', type=int, nargs='+', default=[2, 1, 3],
                        help='Valid periods per protected area for the simulated survey')
    parser.add_argument('--n-occasions', type=int, default=5, help='Occasions per stratum for the simulated survey')

    parser.add_argument('--n-iter', type=int, default=DEFAULT_N_ITER)
    parser.add_argument('--burn-in', type=int, default=DEFAULT_BURN_IN)
    parser.add_argument('--thin', type=int, default=DEFAULT_THIN)
    parser.add_argument('--chains', type=int, default=DEFAULT_N_CHAINS)
    parser.add_argument('--n-jobs', type=int, default=1, help='Parallel chains (-1 for all cores)')
    parser.add_argument('--seed', type=int, default=DEFAULT_SEED)
    parser.add_argument('--engine', choices=ENGINES, default='gibbs')
    parser.add_argument('--interaction', choices=[i.value for i in Interaction],
                        default=Interaction.PREY_TO_PREDATOR.value)
    parser.add_argument('--rhat-threshold', type=float, default=RHAT_THRESHOLD)
    parser.add_argument('--ppc-draws', type=int, default=DEFAULT_PPC_DRAWS)
    parser.add_argument('--out-dir', default=BASE_INTERACTION_DIR, help='Root directory for run outputs')
    return parser.parse_args(argv)


def load_survey(args):
    """Survey data from CSVs, or a simulated survey with --simulate."""
    print("\n" + "=" * 80)
    print("STEP 1: Loading Survey Data")
    print("=" * 80)

    if args.simulate:
        print(f"📊 Simulating {args.n_sites} sites over n_periods = {args.n_periods}")
        data, truth, _ = simulate_survey_data(
            n_sites=args.n_sites,
            n_periods=args.n_periods,
            n_occasions=args.n_occasions,
            interaction=args.interaction,
            seed=args.seed,
        )
        return data, truth

    missing = [flag for flag in ('detections', 'sites', 'strata') if getattr(args, flag) is None]
    if missing:
        raise ValueError(f"Missing inputs: {', '.join('--' + m for m in missing)} (or use --simulate)")
    for path in (args.detections, args.sites, args.strata):
        if not os.path.exists(path):
            raise FileNotFoundError(f"Input file not found: {path}")

    print(f"📊 Reading {args.detections}")
    detections = pd.read_csv(args.detections)
    sites = pd.read_csv(args.sites)
    strata = pd.read_csv(args.strata)
    return prepare_survey_data(detections, sites, strata), None


def main(argv=None):
    """Main execution function"""
    args = parse_args(argv)

    print("\n" + "=" * 80)
    print("PREDATOR-PREY OCCUPANCY MODEL WITH INTERACTION TERMS")
    print("=" * 80)
    print(f"Start time: {time.strftime('%Y-%m-%d %H:%M:%S')}")

    run_dir = os.path.join(args.out_dir, f"run_{time.strftime('%Y%m%d_%H%M%S')}")
    os.makedirs(run_dir, exist_ok=True)
    print(f"  Run directory: {run_dir}")

    try:
        config = RunConfig(
            n_iter=args.n_iter,
            burn_in=args.burn_in,
            thin=args.thin,
            n_chains=args.chains,
            seed=args.seed,
            n_jobs=args.n_jobs,
            engine=args.engine,
            interaction=args.interaction,
            rhat_threshold=args.rhat_threshold,
        )
        data, truth = load_survey(args)

        print("\n" + "=" * 80)
        print("STEP 2: Fitting Model")
        print("=" * 80)
        fit = fit_occupancy_model(data, config)
        save_fit(fit, run_dir)

        print("\n" + "=" * 80)
        print("STEP 3: Convergence Diagnostics")
        print("=" * 80)
        diagnostics = compute_diagnostics(fit.idata, threshold=config.rhat_threshold, method=config.rhat_method)
        diagnostics.to_csv(os.path.join(run_dir, 'convergence_diagnostics.csv'), index=False)
        report = convergence_report(diagnostics, threshold=config.rhat_threshold)
        with open(os.path.join(run_dir, 'convergence_report.json'), 'w') as f:
            json.dump(report, f, indent=2, default=str)
        try:
            plot_rhat(diagnostics, run_dir, config.rhat_threshold)
        except Exception as e:
            print(f"⚠️  Could not create R-hat plot: {e}")

        print("\n" + "=" * 80)
        print("STEP 4: Posterior Summaries")
        print("=" * 80)
        parameters = pd.concat([parameter_table(fit, name) for name in BASELINES + EFFECTS], ignore_index=True)
        parameters.to_csv(os.path.join(run_dir, 'parameter_estimates.csv'), index=False)
        occupancy = occupancy_table(fit)
        occupancy.to_csv(os.path.join(run_dir, 'occupancy_probabilities.csv'), index=False)
        detection_table(fit).to_csv(os.path.join(run_dir, 'detection_probabilities.csv'), index=False)
        detection_table(fit, pool_cells=True).to_csv(
            os.path.join(run_dir, 'detection_probabilities_pooled.csv'), index=False
        )
        latent_occupancy_table(fit).to_csv(os.path.join(run_dir, 'site_occupancy.csv'), index=False)
        predator_effects = predator_effect_table(fit)
        predator_effects.to_csv(os.path.join(run_dir, 'predator_effect_on_prey_detection.csv'), index=False)

        print("\n📋 Predator presence effect on prey detection (log-odds):")
        for _, row in predator_effects.iterrows():
            print(f"  {row['diel']:>9}: {row['log_odds_shift']:+.3f} "
                  f"[{row['lower']:+.3f}, {row['upper']:+.3f}]  P(<0) = {row['prob_negative']:.2f}")
        if truth is not None:
            print("\n📋 Simulated effect values:")
            for name in EFFECTS:
                print(f"  {name}: {truth[name].round(3).tolist()}")

        try:
            plot_occupancy_estimates(occupancy, run_dir)
        except Exception as e:
            print(f"⚠️  Could not create occupancy plot: {e}")

        print("\n" + "=" * 80)
        print("STEP 5: Posterior Predictive Check")
        print("=" * 80)
        observed = observed_summary(data)
        replicates = posterior_predictive(fit, n_draws=args.ppc_draws, n_jobs=config.n_jobs)
        observed.to_csv(os.path.join(run_dir, 'ppc_observed.csv'), index=False)
        stack_replicates(replicates).to_csv(os.path.join(run_dir, 'ppc_replicates.csv'), index=False)
        pvalues = ppc_pvalues(observed, replicates)
        pvalues.to_csv(os.path.join(run_dir, 'ppc_pvalues.csv'), index=False)
        print(pvalues.to_string(index=False))
        try:
            plot_posterior_predictive(observed, replicates, run_dir)
        except Exception as e:
            print(f"⚠️  Could not create posterior predictive plot: {e}")

        print("\n" + "=" * 80)
        print("ANALYSIS COMPLETE")
        print("=" * 80)
        print(f"End time: {time.strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"\nAll outputs saved to: {run_dir}")
        return 0

    except Exception as e:
        print(f"\n❌ FATAL ERROR: {e}")
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
