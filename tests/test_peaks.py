"""
Tests for preliminary peak detection.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add scripts directory to path for imports
scripts_dir = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(scripts_dir))

from mutmap.peaks import find_peaks


def make_track(values, positions=None):
    if positions is None:
        positions = np.arange(1, len(values) + 1) * 10
    return pd.DataFrame({"position": positions, "smoothed": values,
                         "local_variance": np.zeros(len(values))})


class TestFindPeaks:
    """Tests for find_peaks function."""

    def test_single_peak(self):
        """One clear maximum gives one peak at its position."""
        track = make_track([0.0, 0.1, 0.5, 1.2, 0.4, 0.1, 0.0])
        peaks = find_peaks("chr1", track, min_prominence=0.1)
        assert len(peaks) == 1
        assert peaks[0].apex == 40
        assert peaks[0].value == pytest.approx(1.2)
        assert peaks[0].prominence == pytest.approx(1.2)
        assert peaks[0].chrom == "chr1"

    def test_prominence_filter(self):
        """A shoulder on a larger peak is ignored below min_prominence."""
        track = make_track([0.0, 1.0, 0.95, 0.97, 0.2, 0.0])
        peaks = find_peaks("chr1", track, min_prominence=0.1)
        assert [p.apex for p in peaks] == [20]

    def test_two_peaks_in_position_order(self):
        track = make_track([0.0, 0.8, 0.1, 0.0, 0.6, 0.0])
        peaks = find_peaks("chr2", track, min_prominence=0.1)
        assert [p.apex for p in peaks] == [20, 50]

    def test_flat_track_has_no_peaks(self):
        track = make_track(np.zeros(20))
        assert find_peaks("chr1", track, min_prominence=0.0) == []

    def test_plateau_apex_at_midpoint(self):
        """A plateau counts once; its apex is closest to the coordinate midpoint."""
        track = make_track([0.0, 0.5, 0.5, 0.5, 0.0], positions=[10, 20, 30, 80, 90])
        peaks = find_peaks("chr1", track, min_prominence=0.1)
        assert len(peaks) == 1
        # plateau spans 20..80, midpoint 50
        assert peaks[0].apex == 30

    def test_track_edges_are_not_peaks(self):
        """A maximum at the first position has no left neighbour."""
        track = make_track([1.0, 0.5, 0.2, 0.1])
        assert find_peaks("chr1", track, min_prominence=0.1) == []

    def test_short_track(self):
        assert find_peaks("chr1", make_track([0.3, 0.9]), min_prominence=0.0) == []
