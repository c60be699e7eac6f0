"""
Allele-Frequency Distance Between Pools

Each retained position gets one distance score comparing the wild-type and
mutant pools:

    freq_pool  = counts_pool / depth_pool            (over A, C, G, T)
    euclid     = || freq_wt - freq_mut ||_2
    confidence = d / (d + pseudocount),  d = min(depth_wt, depth_mut)
    distance   = euclid ** power * confidence

The metric is symmetric in the two pools. Raising to a power > 1 sharpens
strongly diverged positions against background noise; the confidence factor
keeps a 2-read position from scoring like a 200-read one.

Filtering:
    - positions below min_depth in either pool are dropped (not zeroed)
    - optionally, positions whose combined minor-allele frequency is below
      min_allele_frequency are dropped
"""

import logging
from typing import Iterable, Iterator, Tuple

import numpy as np
import pandas as pd

from .models import BASES, PairedCounts, PositionRecord

logger = logging.getLogger(__name__)

DISTANCE_COLUMNS = ["position", "distance", "wild_type_depth", "mutant_depth"]


def _join_by_position(
    wild_type: Iterable[PositionRecord],
    mutant: Iterable[PositionRecord],
) -> Iterator[Tuple[PositionRecord, PositionRecord]]:
    """Merge-join two position-ordered streams, yielding shared positions."""
    wt_iter = iter(wild_type)
    mut_iter = iter(mutant)
    wt = next(wt_iter, None)
    mut = next(mut_iter, None)

    while wt is not None and mut is not None:
        if wt.pos == mut.pos:
            yield wt, mut
            wt = next(wt_iter, None)
            mut = next(mut_iter, None)
        elif wt.pos < mut.pos:
            wt = next(wt_iter, None)
        else:
            mut = next(mut_iter, None)


def pair_pileups(
    chrom: str,
    wild_type: Iterable[PositionRecord],
    mutant: Iterable[PositionRecord],
    min_depth: int = 10,
    min_allele_frequency: float = 0.0,
) -> PairedCounts:
    """
    Align two pools' pileup streams and apply the position filters.

    Args:
        chrom: Chromosome the streams belong to
        wild_type: Position-ordered wild-type records
        mutant: Position-ordered mutant records
        min_depth: Minimum depth required in both pools
        min_allele_frequency: Minimum minor-allele frequency of the combined
            pools (0 disables the filter)

    Returns:
        PairedCounts with only the qualifying positions
    """
    positions = []
    wt_rows = []
    mut_rows = []

    for wt, mut in _join_by_position(wild_type, mutant):
        wt_vec = wt.count_vector()
        mut_vec = mut.count_vector()
        if wt_vec.sum() < min_depth or mut_vec.sum() < min_depth:
            continue
        positions.append(wt.pos)
        wt_rows.append(wt_vec)
        mut_rows.append(mut_vec)

    paired = PairedCounts(
        chrom=chrom,
        positions=np.array(positions, dtype=np.int64),
        wild_type=np.array(wt_rows, dtype=np.int64).reshape(-1, len(BASES)),
        mutant=np.array(mut_rows, dtype=np.int64).reshape(-1, len(BASES)),
    )

    if min_allele_frequency > 0 and not paired.is_empty:
        combined = paired.wild_type + paired.mutant
        minor = 1.0 - combined.max(axis=1) / combined.sum(axis=1)
        keep = minor >= min_allele_frequency
        paired = PairedCounts(
            chrom=chrom,
            positions=paired.positions[keep],
            wild_type=paired.wild_type[keep],
            mutant=paired.mutant[keep],
        )

    return paired


def allele_distance(
    wild_type: np.ndarray,
    mutant: np.ndarray,
    power: float = 4.0,
    depth_pseudocount: float = 10.0,
) -> np.ndarray:
    """
    Depth-weighted Euclidean distance between allele-frequency vectors.

    Args:
        wild_type: Count matrix (n, 4) of the wild-type pool
        mutant: Count matrix (n, 4) of the mutant pool
        power: Exponent applied to the Euclidean distance
        depth_pseudocount: Depth at which the confidence factor is 0.5

    Returns:
        Array of n non-negative distances

    Examples:
        >>> wt = np.array([[30, 0, 0, 0]])
        >>> mut = np.array([[0, 0, 0, 30]])
        >>> round(float(allele_distance(wt, mut, power=1, depth_pseudocount=0)), 3)
        1.414
    """
    wt_depth = wild_type.sum(axis=1)
    mut_depth = mutant.sum(axis=1)
    if np.any(wt_depth == 0) or np.any(mut_depth == 0):
        raise ValueError("Distance is undefined at positions with zero depth")

    wt_freq = wild_type / wt_depth[:, None]
    mut_freq = mutant / mut_depth[:, None]
    euclid = np.sqrt(((wt_freq - mut_freq) ** 2).sum(axis=1))

    shared_depth = np.minimum(wt_depth, mut_depth).astype(float)
    confidence = shared_depth / (shared_depth + depth_pseudocount)

    return euclid ** power * confidence


def distance_frame(
    paired: PairedCounts,
    power: float = 4.0,
    depth_pseudocount: float = 10.0,
) -> pd.DataFrame:
    """DistancePoint table for one chromosome's paired counts."""
    if paired.is_empty:
        return pd.DataFrame({
            "position": pd.Series(dtype="int64"),
            "distance": pd.Series(dtype="float64"),
            "wild_type_depth": pd.Series(dtype="int64"),
            "mutant_depth": pd.Series(dtype="int64"),
        })

    return pd.DataFrame({
        "position": paired.positions,
        "distance": allele_distance(paired.wild_type, paired.mutant, power, depth_pseudocount),
        "wild_type_depth": paired.wild_type.sum(axis=1),
        "mutant_depth": paired.mutant.sum(axis=1),
    }, columns=DISTANCE_COLUMNS)


def calculate_distance(
    chrom: str,
    wild_type: Iterable[PositionRecord],
    mutant: Iterable[PositionRecord],
    min_depth: int = 10,
    min_allele_frequency: float = 0.0,
    power: float = 4.0,
    depth_pseudocount: float = 10.0,
) -> pd.DataFrame:
    """
    Convert paired pileup streams into one chromosome's DistancePoints.

    Returns an empty frame (not zeros) when no position qualifies.
    """
    paired = pair_pileups(chrom, wild_type, mutant, min_depth, min_allele_frequency)

    frame = distance_frame(paired, power, depth_pseudocount)
    logger.debug(f"{chrom}: {len(frame)} positions pass depth filters")
    return frame
