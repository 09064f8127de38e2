"""
Constants and run configuration for the predator-prey occupancy models.
"""

import math
import numbers
import os
from dataclasses import dataclass
from enum import Enum

# =============================================================================
# Model constants
# =============================================================================

SPECIES = ('predator', 'prey')
PREDATOR = 0
PREY = 1

# Day is the implicit baseline (night = twilight = 0)
DIEL_CATEGORIES = ('day', 'night', 'twilight')

# Probabilities are clamped to (EPS, 1 - EPS) before taking log-odds
EPS = 1e-10

# =============================================================================
# Sampler defaults
# =============================================================================

DEFAULT_N_ITER = 3000
DEFAULT_BURN_IN = 1000
DEFAULT_THIN = 2
DEFAULT_N_CHAINS = 3
DEFAULT_SEED = 42

ADAPT_INTERVAL = 50
INITIAL_PROPOSAL_SCALE = 0.5
MIN_PROPOSAL_SCALE = 1e-4
MAX_PROPOSAL_SCALE = 50.0

ENGINES = ('gibbs', 'pymc')
RHAT_METHODS = ('rank', 'split', 'folded', 'z_scale', 'identity')

# =============================================================================
# Diagnostics / summaries
# =============================================================================

RHAT_THRESHOLD = 1.1
ESS_MIN = 400
CREDIBLE_INTERVAL = (2.5, 97.5)
DEFAULT_PPC_DRAWS = 10

# =============================================================================
# Output locations
# =============================================================================

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
OUTPUT_DIR = os.path.join(os.path.dirname(PACKAGE_DIR), 'outputs')
BASE_INTERACTION_DIR = os.path.join(OUTPUT_DIR, 'occupancy_interaction')


class Interaction(str, Enum):
    """Direction of the occupancy interaction between the two species."""

    PREY_TO_PREDATOR = 'prey_to_predator'
    PREDATOR_TO_PREY = 'predator_to_prey'
    NONE = 'none'

    @property
    def leader(self):
        """Species whose latent state enters the other's occupancy."""
        if self is Interaction.PREY_TO_PREDATOR:
            return PREY
        if self is Interaction.PREDATOR_TO_PREY:
            return PREDATOR
        return None

    @property
    def follower(self):
        """Species whose occupancy depends on the leader's latent state."""
        if self is Interaction.PREY_TO_PREDATOR:
            return PREDATOR
        if self is Interaction.PREDATOR_TO_PREY:
            return PREY
        return None

    def simulation_order(self):
        """Order in which latent states are drawn when simulating."""
        if self.leader is None:
            return (PREDATOR, PREY)
        return (self.leader, self.follower)


@dataclass(frozen=True)
class RunConfig:
    """Immutable MCMC run configuration, validated before any sampling starts."""

    n_iter: int = DEFAULT_N_ITER
    burn_in: int = DEFAULT_BURN_IN
    thin: int = DEFAULT_THIN
    n_chains: int = DEFAULT_N_CHAINS
    seed: int = DEFAULT_SEED
    n_jobs: int = 1
    engine: str = 'gibbs'
    interaction: Interaction = Interaction.PREY_TO_PREDATOR
    adapt_interval: int = ADAPT_INTERVAL
    rhat_threshold: float = RHAT_THRESHOLD
    rhat_method: str = 'rank'

    def __post_init__(self):
        # Accept plain strings for the interaction direction
        try:
            object.__setattr__(self, 'interaction', Interaction(self.interaction))
        except ValueError:
            valid = [i.value for i in Interaction]
            raise ValueError(f"Unknown interaction '{self.interaction}', expected one of {valid}")

        for name in ('n_iter', 'thin', 'n_chains', 'adapt_interval'):
            value = getattr(self, name)
            if not isinstance(value, numbers.Integral) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.burn_in, numbers.Integral) or self.burn_in < 0:
            raise ValueError(f"burn_in must be a non-negative integer, got {self.burn_in!r}")
        if self.burn_in >= self.n_iter:
            raise ValueError(
                f"burn_in ({self.burn_in}) must be smaller than n_iter ({self.n_iter})"
            )
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero (use -1 for all cores)")
        if self.engine not in ENGINES:
            raise ValueError(f"Unknown engine '{self.engine}', expected one of {ENGINES}")
        if self.rhat_method not in RHAT_METHODS:
            raise ValueError(f"Unknown rhat_method '{self.rhat_method}', expected one of {RHAT_METHODS}")
        if not self.rhat_threshold > 1.0:
            raise ValueError(f"rhat_threshold must exceed 1.0, got {self.rhat_threshold}")

    @property
    def n_retained(self):
        """Number of post-burn-in iterations kept per chain after thinning."""
        return math.ceil((self.n_iter - self.burn_in) / self.thin)

    def is_retained(self, iteration):
        """Whether the 0-based ``iteration`` is kept in the output trajectory."""
        return iteration >= self.burn_in and (iteration - self.burn_in) % self.thin == 0
