"""
Tests for permutation-based peak refinement.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add scripts directory to path for imports
scripts_dir = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(scripts_dir))

from mutmap.config import DistanceSettings, RefinementSettings
from mutmap.distance import allele_distance, pair_pileups
from mutmap.loess import LoessSmoother
from mutmap.models import PairedCounts, Peak
from mutmap.pileup import records_from_counts
from mutmap.refine import (
    empirical_significance,
    peak_interval,
    permutation_null_maxima,
    permute_pool_labels,
    refine_peaks,
    trial_seeds,
)


@pytest.fixture
def paired(peak_chromosome):
    positions, wt, mut = peak_chromosome
    return pair_pileups(
        "chr1",
        records_from_counts("chr1", positions, wt),
        records_from_counts("chr1", positions, mut),
        min_depth=10,
    )


# ============================================================================
# Tests: Permutation
# ============================================================================


class TestPermutePoolLabels:
    """Tests for permute_pool_labels function."""

    def test_depths_and_totals_preserved(self):
        """Each position keeps both pool depths and its combined base counts."""
        rng = np.random.default_rng(5)
        wt = np.array([[30, 5, 0, 2], [0, 0, 12, 12], [7, 7, 7, 7]])
        mut = np.array([[1, 40, 0, 0], [10, 0, 0, 3], [0, 0, 0, 50]])
        paired = PairedCounts("chr1", np.array([1, 2, 3]), wt, mut)

        permuted = permute_pool_labels(paired, rng)

        np.testing.assert_array_equal(permuted.wild_type.sum(axis=1), wt.sum(axis=1))
        np.testing.assert_array_equal(permuted.mutant.sum(axis=1), mut.sum(axis=1))
        np.testing.assert_array_equal(permuted.wild_type + permuted.mutant, wt + mut)
        assert (permuted.wild_type >= 0).all()
        assert (permuted.mutant >= 0).all()

    def test_seeded_trials_reproducible(self, paired):
        """The same seeds give the same null maxima, however they are split."""
        smoother = LoessSmoother(span=0.3)
        seeds = trial_seeds(42, "chr1", 20)
        whole = permutation_null_maxima(paired, DistanceSettings(), smoother, 0.3, seeds)

        again = trial_seeds(42, "chr1", 20)
        halves = np.concatenate([
            permutation_null_maxima(paired, DistanceSettings(), smoother, 0.3, again[:7]),
            permutation_null_maxima(paired, DistanceSettings(), smoother, 0.3, again[7:]),
        ])
        np.testing.assert_array_equal(whole, halves)

    def test_seeds_differ_by_chromosome(self, paired):
        smoother = LoessSmoother(span=0.3)
        a = permutation_null_maxima(paired, DistanceSettings(), smoother, 0.3, trial_seeds(1, "chr1", 30))
        b = permutation_null_maxima(paired, DistanceSettings(), smoother, 0.3, trial_seeds(1, "chr2", 30))
        assert not np.array_equal(a, b)

    def test_null_maxima_below_observed_peak(self, paired):
        """Shuffled pool labels do not reproduce a strong true difference."""
        smoother = LoessSmoother(span=0.3)
        values = allele_distance(paired.wild_type, paired.mutant)
        observed = smoother.max_smoothed(paired.positions, values, 0.3)

        null = permutation_null_maxima(paired, DistanceSettings(), smoother, 0.3,
                                       trial_seeds(20240601, "chr1", 100))
        assert np.isfinite(null).all()
        assert null.max() < observed

    def test_unsmoothable_trials_are_nan(self):
        """Too few positions leaves every trial unusable."""
        paired = PairedCounts("chr1", np.array([1, 2]),
                              np.array([[10, 0, 0, 0], [10, 0, 0, 0]]),
                              np.array([[0, 10, 0, 0], [10, 0, 0, 0]]))
        null = permutation_null_maxima(paired, DistanceSettings(), LoessSmoother(), 0.3,
                                       trial_seeds(1, "chr1", 5))
        assert np.isnan(null).all()


# ============================================================================
# Tests: Significance and Interval
# ============================================================================


class TestEmpiricalSignificance:
    """Tests for empirical_significance function."""

    def test_fraction_at_or_above(self):
        null = np.array([0.1, 0.5, 0.9, 1.0])
        significance, n = empirical_significance(0.9, null, min_null_samples=4)
        assert significance == pytest.approx(0.5)
        assert n == 4

    def test_indeterminate_below_min_samples(self):
        null = np.array([0.1, np.nan, np.nan])
        assert empirical_significance(0.5, null, min_null_samples=2) == (None, 1)


class TestPeakInterval:
    """Tests for peak_interval function."""

    def test_bounds_at_first_position_below_threshold(self):
        track = pd.DataFrame({
            "position": [10, 20, 30, 40, 50, 60, 70],
            "smoothed": [0.0, 0.2, 0.8, 1.0, 0.9, 0.3, 0.0],
            "local_variance": [0.0, 0.0, 0.0, 0.01, 0.0, 0.0, 0.0],
        })
        # threshold = max(1.0 - 1.96 * 0.1, 0.5) = 0.804
        assert peak_interval(track, 40) == (30, 60)

    def test_floor_keeps_interval_finite(self):
        """A huge variance cannot pull the threshold below floor * apex."""
        track = pd.DataFrame({
            "position": [10, 20, 30, 40, 50],
            "smoothed": [0.1, 0.4, 1.0, 0.6, 0.1],
            "local_variance": [0.0, 0.0, 100.0, 0.0, 0.0],
        })
        assert peak_interval(track, 30, floor_fraction=0.5) == (20, 50)

    def test_interval_reaches_track_end(self):
        track = pd.DataFrame({
            "position": [10, 20, 30],
            "smoothed": [0.9, 1.0, 0.95],
            "local_variance": [0.0, 0.01, 0.0],
        })
        assert peak_interval(track, 20) == (10, 30)

    def test_apex_must_be_track_position(self):
        track = pd.DataFrame({"position": [10, 20], "smoothed": [0.1, 0.2], "local_variance": [0.0, 0.0]})
        with pytest.raises(ValueError):
            peak_interval(track, 15)


class TestRefinePeaks:
    """Tests for refine_peaks function."""

    def test_significance_and_interval_attached(self):
        track = pd.DataFrame({
            "position": [10, 20, 30, 40, 50],
            "smoothed": [0.0, 0.3, 1.0, 0.3, 0.0],
            "local_variance": [0.0, 0.0, 0.0, 0.0, 0.0],
        })
        peaks = [Peak("chr1", 30, 1.0, 1.0)]
        null = np.full(60, 0.2)
        refined = refine_peaks("chr1", peaks, track, null, RefinementSettings(min_null_samples=50))
        assert len(refined) == 1
        assert refined[0].start <= 30 <= refined[0].end
        assert refined[0].significance == 0.0
        assert refined[0].null_samples == 60
        assert not refined[0].indeterminate

    def test_indeterminate_peak_is_kept(self):
        track = pd.DataFrame({
            "position": [10, 20, 30],
            "smoothed": [0.0, 1.0, 0.0],
            "local_variance": [0.0, 0.0, 0.0],
        })
        refined = refine_peaks("chr1", [Peak("chr1", 20, 1.0, 1.0)], track,
                               np.full(10, np.nan), RefinementSettings(min_null_samples=50))
        assert refined[0].significance is None
        assert refined[0].indeterminate
