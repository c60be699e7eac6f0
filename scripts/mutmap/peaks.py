"""
Preliminary Peak Detection

Peaks are local maxima of a smoothed track that stand out from the
surrounding curve by at least min_prominence. Prominence is the
topographic one: the drop from the apex to the higher of the two lowest
points separating it from higher terrain on either side (or the track
end). A plateau of equal values counts as one local maximum when it is
strictly higher than both of its outer neighbours; its apex is the plateau
point whose coordinate is closest to the plateau's coordinate midpoint.

Topographic prominence is used deliberately instead of the height above
the nearest lower local minimum on either side. The two agree on isolated
peaks but differ on an asymmetric shoulder: a shoulder on the flank of a
higher peak only gets credit for the dip separating it from that peak, so
it is not reported as a peak of its own.
"""

import logging
from typing import List

import numpy as np
import pandas as pd
from scipy import signal

from .models import Peak

logger = logging.getLogger(__name__)


def _plateau_apex(positions: np.ndarray, left: int, right: int) -> int:
    """Index within [left, right] closest to the plateau's coordinate midpoint."""
    midpoint = (positions[left] + positions[right]) / 2.0
    offsets = np.abs(positions[left:right + 1] - midpoint)
    return left + int(np.argmin(offsets))


def find_peaks(chrom: str, track: pd.DataFrame, min_prominence: float = 0.05) -> List[Peak]:
    """
    Locate preliminary peaks in one chromosome's smoothed track.

    Args:
        chrom: Chromosome name
        track: Smoothed track with columns position, smoothed
        min_prominence: Minimum prominence of a reported peak

    Returns:
        Peaks ordered by apex position; empty when the track has no
        sufficiently prominent local maximum

    Examples:
        >>> track = pd.DataFrame({"position": [1, 2, 3, 4, 5],
        ...                       "smoothed": [0.0, 0.2, 1.0, 0.2, 0.0]})
        >>> [p.apex for p in find_peaks("chr1", track, 0.5)]
        [3]
    """
    if len(track) < 3:
        return []

    positions = track["position"].to_numpy()
    values = track["smoothed"].to_numpy(dtype=float)

    indices, properties = signal.find_peaks(values, prominence=min_prominence, plateau_size=1)

    peaks = []
    for k in range(len(indices)):
        prominence = float(properties["prominences"][k])
        # find_peaks can report zero-prominence maxima when the threshold is 0
        if prominence <= 0:
            continue
        apex = _plateau_apex(positions, int(properties["left_edges"][k]), int(properties["right_edges"][k]))
        peaks.append(Peak(
            chrom=chrom,
            apex=int(positions[apex]),
            value=float(values[apex]),
            prominence=prominence,
        ))

    logger.debug(f"{chrom}: {len(indices)} local maxima pass prominence {min_prominence}")
    return peaks
