"""
Survey design and observed detection data for the predator-prey occupancy models.

The external loader owns raw storage; this module only holds the arrays the
sampler needs and validates them once, before any sampling starts.
"""

from dataclasses import dataclass, field
from functools import cached_property
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.special import gammaln
from sklearn.preprocessing import OneHotEncoder

from predator_prey_occupancy.config import DIEL_CATEGORIES, SPECIES


def _frozen_array(values, dtype):
    arr = np.array(values, dtype=dtype)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class SurveyData:
    """
    Observed detections plus the survey design they were collected under.

    Parameters
    ----------
    y : array (site, species, stratum)
        Detection counts. Species axis follows ``config.SPECIES``.
    n_occasions : array (site, species, stratum)
        Number of independent detection opportunities, ``y <= n_occasions``.
    night, twilight : array (stratum,)
        Mutually exclusive diel indicators; day when both are 0.
    pa, period : array (site,)
        0-based protected-area and sampling-period codes.
    n_periods : array (pa,)
        Number of valid periods for each protected area.
    years : dict, optional
        ``(pa, period) -> calendar year``, only used for presentation.
    """

    y: np.ndarray
    n_occasions: np.ndarray
    night: np.ndarray
    twilight: np.ndarray
    pa: np.ndarray
    period: np.ndarray
    n_periods: np.ndarray
    pa_labels: Optional[Tuple[str, ...]] = None
    site_labels: Optional[Tuple[str, ...]] = None
    stratum_labels: Optional[Tuple[str, ...]] = None
    years: Optional[Dict[Tuple[int, int], int]] = field(default=None)

    def __post_init__(self):
        y = np.asarray(self.y)
        n_occ = np.asarray(self.n_occasions)
        if y.ndim != 3:
            raise ValueError(f"y must be 3-dimensional (site, species, stratum), got shape {y.shape}")
        if y.shape != n_occ.shape:
            raise ValueError(f"y shape {y.shape} does not match n_occasions shape {n_occ.shape}")
        if y.shape[1] != len(SPECIES):
            raise ValueError(f"species axis must have length {len(SPECIES)}, got {y.shape[1]}")
        if np.any(y < 0) or np.any(n_occ < 0):
            raise ValueError("Detection and occasion counts must be non-negative")
        if np.any(y > n_occ):
            raise ValueError("Detections exceed the number of occasions (y > n_occasions)")

        n_sites, _, n_strata = y.shape
        night = np.asarray(self.night)
        twilight = np.asarray(self.twilight)
        for name, cov in (('night', night), ('twilight', twilight)):
            if cov.shape != (n_strata,):
                raise ValueError(f"{name} must have shape ({n_strata},), got {cov.shape}")
            if not np.isin(cov, (0, 1)).all():
                raise ValueError(f"{name} must be a 0/1 indicator")
        if np.any((night == 1) & (twilight == 1)):
            raise ValueError("night and twilight indicators are mutually exclusive")

        pa = np.asarray(self.pa)
        period = np.asarray(self.period)
        n_periods = np.asarray(self.n_periods)
        if pa.shape != (n_sites,) or period.shape != (n_sites,):
            raise ValueError(f"pa and period must have one entry per site ({n_sites})")
        if n_periods.ndim != 1 or np.any(n_periods < 0):
            raise ValueError("n_periods must be a 1-D array of non-negative counts")
        if np.any(pa < 0) or np.any(pa >= len(n_periods)):
            raise ValueError(f"pa codes must lie in [0, {len(n_periods) - 1}]")
        if np.any(period < 0) or np.any(period >= n_periods[pa]):
            bad = np.flatnonzero((period < 0) | (period >= n_periods[pa]))
            raise ValueError(
                f"{len(bad)} site(s) have a period outside the valid range of their "
                f"protected area (first offending site index: {bad[0]})"
            )

        object.__setattr__(self, 'y', _frozen_array(y, np.int64))
        object.__setattr__(self, 'n_occasions', _frozen_array(n_occ, np.int64))
        object.__setattr__(self, 'night', _frozen_array(night, np.int64))
        object.__setattr__(self, 'twilight', _frozen_array(twilight, np.int64))
        object.__setattr__(self, 'pa', _frozen_array(pa, np.int64))
        object.__setattr__(self, 'period', _frozen_array(period, np.int64))
        object.__setattr__(self, 'n_periods', _frozen_array(n_periods, np.int64))

        if self.pa_labels is None:
            object.__setattr__(self, 'pa_labels', tuple(f"PA{i + 1}" for i in range(len(n_periods))))
        elif len(self.pa_labels) != len(n_periods):
            raise ValueError("pa_labels must have one entry per protected area")
        if self.site_labels is None:
            object.__setattr__(self, 'site_labels', tuple(f"site{i + 1}" for i in range(n_sites)))
        elif len(self.site_labels) != n_sites:
            raise ValueError("site_labels must have one entry per site")
        if self.stratum_labels is None:
            object.__setattr__(self, 'stratum_labels', tuple(f"stratum{j + 1}" for j in range(n_strata)))
        elif len(self.stratum_labels) != n_strata:
            raise ValueError("stratum_labels must have one entry per stratum")

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    @property
    def n_sites(self):
        return self.y.shape[0]

    @property
    def n_species(self):
        return self.y.shape[1]

    @property
    def n_strata(self):
        return self.y.shape[2]

    @property
    def n_pa(self):
        return len(self.n_periods)

    @property
    def max_periods(self):
        return int(self.n_periods.max()) if self.n_pa else 0

    # ------------------------------------------------------------------
    # Structural adjacency (PA -> valid periods)
    # ------------------------------------------------------------------

    @cached_property
    def periods_by_pa(self):
        """Ordered valid period codes of every protected area."""
        return {pa: tuple(range(int(n))) for pa, n in enumerate(self.n_periods)}

    @cached_property
    def cells(self):
        """Valid (pa, period) combinations in PA-major order."""
        return tuple((pa, period) for pa, periods in self.periods_by_pa.items() for period in periods)

    @property
    def n_cells(self):
        return len(self.cells)

    @cached_property
    def cell_index(self):
        return {cell: k for k, cell in enumerate(self.cells)}

    @cached_property
    def site_cell(self):
        """Index into ``cells`` of every site."""
        lookup = self.cell_index
        return _frozen_array([lookup[(int(a), int(t))] for a, t in zip(self.pa, self.period)], np.int64)

    def expand_cells(self, flat):
        """
        Map ``(..., n_cells)`` values onto a ``(..., pa, period)`` grid.

        Structurally absent (pa, period) combinations are filled with NaN.
        """
        flat = np.asarray(flat, dtype=float)
        out = np.full(flat.shape[:-1] + (self.n_pa, self.max_periods), np.nan)
        pa_idx = np.array([c[0] for c in self.cells], dtype=int)
        period_idx = np.array([c[1] for c in self.cells], dtype=int)
        out[..., pa_idx, period_idx] = flat
        return out

    def collapse_cells(self, grid):
        """Inverse of ``expand_cells``: keep only the valid (pa, period) entries."""
        grid = np.asarray(grid)
        pa_idx = np.array([c[0] for c in self.cells], dtype=int)
        period_idx = np.array([c[1] for c in self.cells], dtype=int)
        return grid[..., pa_idx, period_idx]

    def year_of(self, pa, period):
        if not self.years:
            return None
        return self.years.get((int(pa), int(period)))

    # ------------------------------------------------------------------
    # Convenience views
    # ------------------------------------------------------------------

    @cached_property
    def diel_category(self):
        """Diel category name of every stratum."""
        cats = np.full(self.n_strata, DIEL_CATEGORIES[0], dtype=object)
        cats[self.night == 1] = DIEL_CATEGORIES[1]
        cats[self.twilight == 1] = DIEL_CATEGORIES[2]
        return cats

    @cached_property
    def detected(self):
        """(site, species) flag: species recorded at least once at the site."""
        return self.y.sum(axis=2) > 0

    @cached_property
    def log_binom_coef(self):
        """Sum over strata of log C(n, y), per (site, species)."""
        n = self.n_occasions.astype(float)
        y = self.y.astype(float)
        return (gammaln(n + 1) - gammaln(y + 1) - gammaln(n - y + 1)).sum(axis=2)

    def with_detections(self, y):
        """Copy of the design with a different detection array (same shape)."""
        return SurveyData(
            y=y, n_occasions=self.n_occasions, night=self.night, twilight=self.twilight,
            pa=self.pa, period=self.period, n_periods=self.n_periods,
            pa_labels=self.pa_labels, site_labels=self.site_labels,
            stratum_labels=self.stratum_labels, years=self.years,
        )


def encode_diel(categories: Sequence[str]):
    """One-hot encode diel categories into (night, twilight) indicators, day as baseline."""
    cats = pd.Series(list(categories), dtype=object).str.strip().str.lower()
    unknown = sorted(set(cats) - set(DIEL_CATEGORIES))
    if unknown:
        raise ValueError(f"Unknown diel categories {unknown}, expected {DIEL_CATEGORIES}")
    encoder = OneHotEncoder(categories=[list(DIEL_CATEGORIES)], drop='first', sparse_output=False)
    encoded = encoder.fit_transform(cats.to_frame('diel'))
    return encoded[:, 0].astype(int), encoded[:, 1].astype(int)


def prepare_survey_data(detections, sites, strata, n_periods=None):
    """
    Build ``SurveyData`` from long-format tables.

    Parameters
    ----------
    detections : pd.DataFrame
        Columns ``site``, ``species`` (predator/prey), ``stratum``,
        ``detections`` and ``occasions``. Missing rows mean zero occasions.
    sites : pd.DataFrame
        Columns ``site``, ``pa``, ``period`` (1-based) and optionally ``year``.
    strata : pd.DataFrame
        Columns ``stratum`` and ``diel`` (day/night/twilight).
    n_periods : dict or sequence, optional
        Valid period count per PA. Defaults to the largest period observed.
    """
    print("\n🔄 Preparing survey data for the occupancy model...")

    required = {
        'detections': (detections, {'site', 'species', 'stratum', 'detections', 'occasions'}),
        'sites': (sites, {'site', 'pa', 'period'}),
        'strata': (strata, {'stratum', 'diel'}),
    }
    for name, (frame, cols) in required.items():
        missing = cols - set(frame.columns)
        if missing:
            raise ValueError(f"{name} table is missing columns: {sorted(missing)}")

    sites = sites.drop_duplicates('site').reset_index(drop=True)
    strata = strata.drop_duplicates('stratum').reset_index(drop=True)
    site_ids = list(sites['site'])
    stratum_ids = list(strata['stratum'])

    pa_cat = sites['pa'].astype('category')
    pa_labels = tuple(str(c) for c in pa_cat.cat.categories)
    pa_codes = pa_cat.cat.codes.to_numpy()
    period_codes = sites['period'].astype(int).to_numpy() - 1

    if n_periods is None:
        n_per = np.zeros(len(pa_labels), dtype=int)
        for code, period in zip(pa_codes, period_codes):
            n_per[code] = max(n_per[code], period + 1)
    elif isinstance(n_periods, dict):
        n_per = np.array([int(n_periods[label]) for label in pa_cat.cat.categories])
    else:
        n_per = np.asarray(n_periods, dtype=int)

    years = None
    if 'year' in sites.columns:
        years = {}
        for code, period, year in zip(pa_codes, period_codes, sites['year']):
            if pd.notna(year):
                years[(int(code), int(period))] = int(year)

    night, twilight = encode_diel(strata['diel'])

    unknown_species = sorted(set(detections['species'].str.lower()) - set(SPECIES))
    if unknown_species:
        raise ValueError(f"Unknown species {unknown_species}, expected {SPECIES}")

    site_pos = {s: i for i, s in enumerate(site_ids)}
    stratum_pos = {s: j for j, s in enumerate(stratum_ids)}
    species_pos = {s: k for k, s in enumerate(SPECIES)}

    y = np.zeros((len(site_ids), len(SPECIES), len(stratum_ids)), dtype=int)
    n_occ = np.zeros_like(y)
    grouped = detections.assign(species=detections['species'].str.lower()).groupby(
        ['site', 'species', 'stratum'], observed=True
    )[['detections', 'occasions']].sum()
    for (site, species, stratum), row in grouped.iterrows():
        if site not in site_pos or stratum not in stratum_pos:
            raise ValueError(f"Detection record references unknown site/stratum ({site}, {stratum})")
        i, k, j = site_pos[site], species_pos[species], stratum_pos[stratum]
        y[i, k, j] = int(row['detections'])
        n_occ[i, k, j] = int(row['occasions'])

    data = SurveyData(
        y=y, n_occasions=n_occ, night=night, twilight=twilight,
        pa=pa_codes, period=period_codes, n_periods=n_per,
        pa_labels=pa_labels,
        site_labels=tuple(str(s) for s in site_ids),
        stratum_labels=tuple(str(s) for s in stratum_ids),
        years=years,
    )

    print(f"✅ Prepared survey data:")
    print(f"  Sites: {data.n_sites}")
    print(f"  Strata: {data.n_strata}")
    print(f"  Protected areas: {data.n_pa} (valid PA-period cells: {data.n_cells})")
    print(f"  Detections: {dict(zip(SPECIES, data.y.sum(axis=(0, 2)).tolist()))}")
    return data
