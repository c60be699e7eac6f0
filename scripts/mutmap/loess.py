"""
Local Regression (Loess) Smoothing of Distance Tracks

For each fit location x0 a polynomial of the configured degree is fitted
by weighted least squares to the points within a symmetric coordinate
window around x0, using tricube weights:

    h      = max(span * (x_max - x_min) / 2, 1.5 * d_k(x0))
    w_j    = (1 - (|x_j - x0| / h) ** 3) ** 3     for |x_j - x0| < h
    smooth = fitted polynomial evaluated at x0

d_k(x0) is the distance from x0 to its (degree + 2)-th nearest point (x0
itself counted), which
guarantees each local fit has enough points even where depth filtering left
the track sparse. The window is defined in coordinates, not point counts, so
unevenly spaced positions are handled correctly.

The local variance at x0 is the tricube-weighted mean squared residual of
the local fit.

Long tracks are fitted exactly at up to max_fit_points anchor points (spread
evenly over the retained points) and linearly interpolated in between.
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .errors import InsufficientSample

logger = logging.getLogger(__name__)

SMOOTHED_COLUMNS = ["position", "smoothed", "local_variance"]

# Minimum window radius in units of the distance to the (degree + 2)-th nearest point
NEIGHBOUR_MARGIN = 1.5


def tricube(u: np.ndarray) -> np.ndarray:
    """
    Tricube kernel, zero outside |u| < 1.

    Examples:
        >>> tricube(np.array([0.0, 1.0, 2.0])).tolist()
        [1.0, 0.0, 0.0]
    """
    u = np.clip(np.abs(u), 0.0, 1.0)
    return (1.0 - u ** 3) ** 3


class LoessSmoother:
    """
    Tricube-weighted local polynomial regression.

    Args:
        span: Window width as a fraction of the position range, or "auto"
            to choose among span_candidates by AICc
        degree: Local polynomial degree (1 or 2)
        max_fit_points: Maximum number of exact local fits per track
        span_candidates: Spans tried when span is "auto"
    """

    def __init__(
        self,
        span: Union[float, str] = 0.3,
        degree: int = 1,
        max_fit_points: int = 500,
        span_candidates: Sequence[float] = (0.05, 0.1, 0.2, 0.3, 0.5),
    ):
        if degree not in (1, 2):
            raise ValueError(f"Loess degree must be 1 or 2, got {degree}")
        self.span = span
        self.degree = degree
        self.max_fit_points = max_fit_points
        self.span_candidates = tuple(span_candidates)

    @property
    def min_points(self) -> int:
        """Smallest track that can be smoothed."""
        return self.degree + 2

    def _anchors(self, n: int) -> np.ndarray:
        if n <= self.max_fit_points:
            return np.arange(n)
        return np.unique(np.linspace(0, n - 1, self.max_fit_points).round().astype(np.int64))

    def _bandwidths(self, x: np.ndarray, anchors: np.ndarray, span: float) -> np.ndarray:
        k = self.min_points
        offsets = np.arange(-k, k + 1)
        idx = anchors[:, None] + offsets[None, :]
        valid = (idx >= 0) & (idx < len(x))
        dist = np.full(idx.shape, np.inf)
        dist[valid] = np.abs(x[idx[valid]] - np.repeat(x[anchors], valid.sum(axis=1)))
        kth = np.sort(dist, axis=1)[:, k - 1]

        base = span * (x[-1] - x[0]) / 2.0
        return np.maximum(base, NEIGHBOUR_MARGIN * kth)

    def _local_fit(self, x: np.ndarray, y: np.ndarray, i: int, h: float) -> Tuple[float, float, float]:
        """Fit at x[i]; returns (fitted value, local variance, leverage of point i)."""
        x0 = x[i]
        lo = np.searchsorted(x, x0 - h, side="left")
        hi = np.searchsorted(x, x0 + h, side="right")

        u = (x[lo:hi] - x0) / h
        w = tricube(u)
        design = np.vander(u, self.degree + 1, increasing=True)
        sw = np.sqrt(w)

        beta, _, _, _ = np.linalg.lstsq(design * sw[:, None], y[lo:hi] * sw, rcond=None)
        resid = y[lo:hi] - design @ beta
        variance = float(np.sum(w * resid ** 2) / np.sum(w))

        # x[i] sits at u = 0, so its design row is (1, 0, ...) with weight 1
        gram = design.T @ (design * w[:, None])
        leverage = float(np.linalg.pinv(gram)[0, 0])

        return float(beta[0]), variance, leverage

    def _fit(self, x: np.ndarray, y: np.ndarray, span: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        anchors = self._anchors(len(x))
        bandwidths = self._bandwidths(x, anchors, span)

        fits = np.empty(len(anchors))
        variances = np.empty(len(anchors))
        leverages = np.empty(len(anchors))
        for j, (i, h) in enumerate(zip(anchors, bandwidths)):
            fits[j], variances[j], leverages[j] = self._local_fit(x, y, int(i), float(h))

        return anchors, fits, variances, leverages

    def _prepare(self, positions: Sequence[int], values: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
        x = np.asarray(positions, dtype=float)
        y = np.asarray(values, dtype=float)
        if x.shape != y.shape:
            raise ValueError("positions and values must have the same length")
        if len(x) < self.min_points:
            raise InsufficientSample(
                f"{len(x)} points, degree-{self.degree} loess needs at least {self.min_points}"
            )
        if np.any(np.diff(x) <= 0):
            raise ValueError("positions must be strictly increasing")
        return x, y

    def aicc(self, positions: Sequence[int], values: Sequence[float], span: float) -> float:
        """
        Corrected AIC of the fit (Hurvich, Simonoff & Tsai 1998).

        With anchor subsampling the residual sum of squares and the hat
        matrix trace are extrapolated from the anchor points.
        """
        x, y = self._prepare(positions, values)
        n = len(x)
        anchors, fits, _, leverages = self._fit(x, y, span)

        sigma2 = max(float(np.mean((y[anchors] - fits) ** 2)), np.finfo(float).tiny)
        trace = float(np.mean(leverages)) * n
        if n - trace - 2 <= 0:
            return np.inf
        return float(np.log(sigma2) + 1 + 2 * (trace + 1) / (n - trace - 2))

    def select_span(self, positions: Sequence[int], values: Sequence[float]) -> float:
        """Candidate span with the lowest AICc (first one wins ties)."""
        scores = [self.aicc(positions, values, s) for s in self.span_candidates]
        best = self.span_candidates[int(np.argmin(scores))]
        logger.debug(f"Span AICc scores {dict(zip(self.span_candidates, scores))}, chose {best}")
        return best

    def smooth(self, positions: Sequence[int], values: Sequence[float],
               span: Optional[float] = None) -> pd.DataFrame:
        """
        Smooth one chromosome's distance track.

        Args:
            positions: Strictly increasing coordinates
            values: Distance at each coordinate
            span: Override of the configured span

        Returns:
            DataFrame with columns position, smoothed, local_variance; one
            row per input position

        Raises:
            InsufficientSample: If there are fewer than min_points positions
        """
        x, y = self._prepare(positions, values)

        if span is None:
            span = self.span
        if span == "auto":
            span = self.select_span(x, y)

        anchors, fits, variances, _ = self._fit(x, y, float(span))
        if len(anchors) < len(x):
            fits = np.interp(x, x[anchors], fits)
            variances = np.interp(x, x[anchors], variances)

        return pd.DataFrame({
            "position": x.astype(np.int64),
            "smoothed": fits,
            "local_variance": np.maximum(variances, 0.0),
        }, columns=SMOOTHED_COLUMNS)

    def max_smoothed(self, positions: Sequence[int], values: Sequence[float], span: float) -> float:
        """Largest smoothed value of a track, used as the permutation statistic."""
        x, y = self._prepare(positions, values)
        _, fits, _, _ = self._fit(x, y, span)
        return float(fits.max())
