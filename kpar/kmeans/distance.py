"""Squared Euclidean distance kernel with missing-value rescaling.

For a point ``x`` with ``pts`` observed (non-NaN) columns out of ``d``,
the squared distance to a centroid only sums the observed columns and is
then scaled by ``d / pts``, as if every missing column contributed the
average of the observed ones. The nearest centroid is the first one with
the smallest distance. A point without any observed column is *broken*:
it reports cluster 0 at distance 0.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

# Upper bound on the (rows x centroids x columns) temporaries built at once.
BLOCK_ELEMENTS = 1 << 22


class ClusterDistance:
    """Reusable output record for ``closest``."""

    __slots__ = ("cluster", "distance", "broken")

    def __init__(self):
        self.cluster = -1
        self.distance = np.inf
        self.broken = False

    def __repr__(self):
        return f"ClusterDistance(cluster={self.cluster}, distance={self.distance}, broken={self.broken})"


def _squared_distances(centroids: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Rescaled squared distances of shape ``(len(points), len(centroids))``."""
    d = points.shape[1]
    observed = ~np.isnan(points)
    pts = observed.sum(axis=1)
    sqr = np.zeros((points.shape[0], centroids.shape[0]))
    # Accumulate column by column so every row sums in the same order.
    for column in range(d):
        delta = points[:, column, None] - centroids[None, :, column]
        sqr += np.where(observed[:, column, None], delta * delta, 0.0)
    partial = (pts > 0) & (pts < d)
    if partial.any():
        sqr[partial] = sqr[partial] * d / pts[partial, None]
    sqr[pts == 0] = 0.0
    return sqr


def closest_rows(
    centroids: np.ndarray, points: np.ndarray, count: Optional[int] = None
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Nearest centroid for every row of *points*.

    Parameters
    ----------
    centroids:
        Array of shape ``(m, d)``; only the first *count* rows are candidates.
    points:
        Array of shape ``(n, d)``, NaN marks missing cells.
    count:
        Number of leading centroids to consider (default all).

    Returns
    -------
    clusters:
        ``int64`` array of shape ``(n,)`` with the nearest centroid index.
    distances:
        ``float64`` array of shape ``(n,)`` with the rescaled squared distance.
    broken:
        ``bool`` array of shape ``(n,)``, true for rows without observed cells.
    """

    count = centroids.shape[0] if count is None else int(count)
    if count < 1:
        raise ValueError("At least one centroid is required.")
    centroids = centroids[:count]
    n, d = points.shape
    clusters = np.zeros(n, dtype=np.int64)
    distances = np.zeros(n, dtype=np.float64)
    step = max(1, BLOCK_ELEMENTS // max(1, count * d))
    for start in range(0, n, step):
        sqr = _squared_distances(centroids, points[start:start+step])
        clusters[start:start+step] = sqr.argmin(axis=1)
        distances[start:start+step] = sqr[np.arange(sqr.shape[0]), clusters[start:start+step]]
    broken = np.isnan(points).all(axis=1)
    return clusters, distances, broken


def closest(
    centroids: np.ndarray,
    point: np.ndarray,
    out: Optional[ClusterDistance] = None,
    count: Optional[int] = None,
) -> ClusterDistance:
    """Fill *out* with the nearest of the first *count* centroids to *point*."""
    out = ClusterDistance() if out is None else out
    clusters, distances, broken = closest_rows(centroids, point.reshape((1, -1)), count)
    out.cluster = int(clusters[0])
    out.distance = float(distances[0])
    out.broken = bool(broken[0])
    return out


def min_sqr(
    centroids: np.ndarray,
    point: np.ndarray,
    out: Optional[ClusterDistance] = None,
    count: Optional[int] = None,
) -> float:
    """Squared distance from *point* to the nearest of the first *count* centroids."""
    return closest(centroids, point, out, count).distance


__all__ = ["ClusterDistance", "closest", "closest_rows", "min_sqr"]
