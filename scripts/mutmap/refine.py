"""
Peak Refinement by Pool-Label Permutation

Null distribution:
    For each trial the reads of the two pools are pooled position by
    position and dealt back into two groups of the original depths
    (a multivariate hypergeometric draw). This shuffles the wild-type /
    mutant labels of the reads while keeping every position's depths, so
    the same positions pass the filters. Distance and loess smoothing are
    recomputed and the trial contributes the maximum smoothed value of the
    chromosome.

    Trials are pure functions of (paired counts, settings, seed). Seeds are
    spawned from (run seed, chromosome) so any split of the trials across
    workers yields the same null distribution.

Significance:
    Fraction of null maxima at or above the apex value. With fewer than
    min_null_samples usable trials the peak is kept with significance None
    (indeterminate).

Interval:
    threshold = max(apex - z * sqrt(local variance at apex),
                    floor_fraction * apex)
    Walking outward from the apex, each bound is the first position whose
    smoothed value falls below the threshold, or the first/last position of
    the track.
"""

import logging
import zlib
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import DistanceSettings, RefinementSettings
from .distance import allele_distance
from .errors import InsufficientSample
from .loess import LoessSmoother
from .models import PairedCounts, Peak, RefinedPeak

logger = logging.getLogger(__name__)


def trial_seeds(seed: int, chrom: str, n_trials: int) -> List[np.random.SeedSequence]:
    """Independent, reproducible seeds for a chromosome's permutation trials."""
    root = np.random.SeedSequence([seed, zlib.crc32(chrom.encode("utf-8"))])
    return root.spawn(n_trials)


def permute_pool_labels(paired: PairedCounts, rng: np.random.Generator) -> PairedCounts:
    """
    Redistribute each position's pooled reads into groups of the original depths.

    The wild-type share of each base is drawn base by base from the
    hypergeometric marginals, which is an exact multivariate
    hypergeometric draw, vectorised over positions.
    """
    combined = paired.wild_type + paired.mutant
    remaining_total = combined.sum(axis=1)
    remaining_sample = paired.wild_type.sum(axis=1)

    permuted_wt = np.zeros_like(combined)
    for k in range(combined.shape[1] - 1):
        good = combined[:, k]
        rest = remaining_total - good
        draw = rng.hypergeometric(good, rest, remaining_sample)
        permuted_wt[:, k] = draw
        remaining_sample = remaining_sample - draw
        remaining_total = rest
    permuted_wt[:, -1] = remaining_sample

    return PairedCounts(
        chrom=paired.chrom,
        positions=paired.positions,
        wild_type=permuted_wt,
        mutant=combined - permuted_wt,
    )


def permutation_null_maxima(
    paired: PairedCounts,
    distance: DistanceSettings,
    smoother: LoessSmoother,
    span: float,
    seeds: Sequence[np.random.SeedSequence],
) -> np.ndarray:
    """
    Run one permutation trial per seed.

    Returns:
        Maximum smoothed distance of each trial (NaN where the trial could
        not be smoothed)
    """
    maxima = np.full(len(seeds), np.nan)
    for j, seed in enumerate(seeds):
        rng = np.random.default_rng(seed)
        permuted = permute_pool_labels(paired, rng)
        values = allele_distance(permuted.wild_type, permuted.mutant,
                                 distance.power, distance.depth_pseudocount)
        try:
            maxima[j] = smoother.max_smoothed(paired.positions, values, span)
        except InsufficientSample:
            continue
    return maxima


def empirical_significance(
    apex_value: float,
    null_maxima: np.ndarray,
    min_null_samples: int = 50,
) -> Tuple[Optional[float], int]:
    """
    Fraction of usable null maxima at or above the observed apex value.

    Returns:
        (significance or None when indeterminate, number of usable samples)

    Examples:
        >>> empirical_significance(0.9, np.array([0.1, 0.95, 0.2, 0.3]), 2)
        (0.25, 4)
        >>> empirical_significance(0.9, np.array([0.1, np.nan]), 2)
        (None, 1)
    """
    usable = null_maxima[np.isfinite(null_maxima)]
    if len(usable) < min_null_samples:
        return None, int(len(usable))
    return float(np.mean(usable >= apex_value)), int(len(usable))


def peak_interval(
    track: pd.DataFrame,
    apex: int,
    confidence_z: float = 1.96,
    floor_fraction: float = 0.5,
) -> Tuple[int, int]:
    """
    Interval around an apex where the smoothed track stays above threshold.

    Args:
        track: Smoothed track (position, smoothed, local_variance)
        apex: Apex position (must be a track position)
        confidence_z: Standard deviations below the apex value
        floor_fraction: Threshold never falls below this fraction of the apex

    Returns:
        (start, end) with start <= apex <= end
    """
    positions = track["position"].to_numpy()
    values = track["smoothed"].to_numpy(dtype=float)
    variances = track["local_variance"].to_numpy(dtype=float)

    i = int(np.searchsorted(positions, apex))
    if i >= len(positions) or positions[i] != apex:
        raise ValueError(f"Apex {apex} is not a position of the track")

    apex_value = values[i]
    threshold = max(apex_value - confidence_z * np.sqrt(variances[i]),
                    floor_fraction * apex_value)
    below = values < threshold

    left = np.flatnonzero(below[:i])
    right = np.flatnonzero(below[i + 1:])
    start = positions[left[-1]] if len(left) else positions[0]
    end = positions[i + 1 + right[0]] if len(right) else positions[-1]

    return int(start), int(end)


def refine_peaks(
    chrom: str,
    peaks: Sequence[Peak],
    track: pd.DataFrame,
    null_maxima: np.ndarray,
    settings: RefinementSettings,
) -> List[RefinedPeak]:
    """Attach interval bounds and significance to each preliminary peak."""
    refined = []
    for peak in peaks:
        significance, n_null = empirical_significance(peak.value, null_maxima, settings.min_null_samples)
        if significance is None:
            logger.warning(
                f"{chrom}:{peak.apex} significance indeterminate "
                f"({n_null} usable null samples < {settings.min_null_samples})"
            )
        start, end = peak_interval(track, peak.apex, settings.confidence_z, settings.interval_floor_fraction)
        refined.append(RefinedPeak(
            chrom=chrom,
            start=start,
            end=end,
            apex=peak.apex,
            value=peak.value,
            significance=significance,
            null_samples=n_null,
        ))
    return refined
