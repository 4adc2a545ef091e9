"""Reduce an oversampled candidate set to exactly ``k`` centroids."""

from __future__ import annotations

import logging

import numpy as np

from .distance import closest_rows
from .schema import Initialization

logger = logging.getLogger(__name__)


def _plus_plus_pick(sqr: np.ndarray, rand) -> int:
    # Scan candidates in order, each against its own uniform threshold.
    total = float(sqr.sum())
    draws = rand.next_doubles(sqr.shape[0])
    hits = np.flatnonzero(sqr >= draws * total)
    if hits.size:
        return int(hits[0])
    # Rounding left every candidate under its threshold.
    logger.debug("K-Means++ scan found no candidate, taking the furthest one.")
    return int(np.argmax(sqr))


def recluster(points: np.ndarray, k: int, rand, initialization) -> np.ndarray:
    """Choose *k* of *points* as centroids.

    Parameters
    ----------
    points:
        Candidate centroids of shape ``(m, d)``. The first candidate is always kept.
    k:
        Number of centroids to return.
    rand:
        Generator (see ``kpar.random.make_rng``) driving K-Means++ picks.
    initialization:
        ``PLUS_PLUS`` for squared-distance weighted picks, ``FURTHEST``
        for repeatedly taking the candidate furthest from those chosen
        (least index on ties).

    Returns
    -------
    Array of shape ``(k, d)``. When fewer than *k* distinct candidates
    exist some centroids repeat.
    """

    initialization = Initialization.parse(initialization)
    if initialization is Initialization.NONE:
        raise ValueError("Reclustering requires the 'plus_plus' or 'furthest' initialization.")
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[0] == 0:
        raise ValueError(f"Expected a non-empty 2-D array of candidates, received shape {points.shape}.")
    res = np.empty((k, points.shape[1]))
    res[0] = points[0]
    count = 1
    # Squared distance of every candidate to its nearest chosen centroid.
    _, sqr, _ = closest_rows(res, points, count)
    while count < k:
        if initialization is Initialization.PLUS_PLUS:
            index = _plus_plus_pick(sqr, rand)
        else:
            index = int(np.argmax(sqr))
        res[count] = points[index]
        count += 1
        if count < k:
            _, latest, _ = closest_rows(res[count-1:count], points)
            sqr = np.minimum(sqr, latest)
    return res


__all__ = ["recluster"]
