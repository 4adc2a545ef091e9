# Data-parallel passes over the chunks of a frame.
#
# A pass is a MapReduceTask: its inputs are plain attributes set before
# the pass (shared read-only by every chunk), "map" fills the output
# attributes of a fresh copy of the task from one chunk, and "reduce"
# merges the outputs of another copy into this one. Reductions are
# associative and commutative, partial results are merged in chunk order.

import copy
import logging
from multiprocessing.pool import ThreadPool

import numpy as np

from ..random import make_rng
from .distance import closest_rows
from .rows import IDENTITY, fill_missing, rows


logger = logging.getLogger(__name__)


# Generic map/reduce pass. Subclasses implement "map" and "reduce".
class MapReduceTask:
    # Outputs are filled from one chunk.
    def map(self, chunk): raise NotImplementedError
    # Merge the outputs of "other" (a task mapped over other chunks) into self.
    def reduce(self, other): raise NotImplementedError

    # Run this pass on every chunk of "frame" and return the merged task.
    def do_all(self, frame, workers=1):
        return run_task(self, frame, workers=workers)


# Map a copy of "task" over a single chunk.
def _map_chunk(arguments):
    task, chunk = arguments
    local = copy.copy(task)
    local.map(chunk)
    return local


# Run "task" over all chunks of "frame" with up to "workers" threads.
# The input attributes of "task" are shared (not copied) with every
# chunk. Exceptions raised by any chunk propagate to the caller.
#
# Returns:
#   MapReduceTask: A copy of "task" holding the reduced outputs.
#
def run_task(task, frame, workers=1):
    work = [(task, chunk) for chunk in frame.chunks]
    if not work:
        raise ValueError("Can not run a pass over a frame without chunks.")
    if (workers <= 1) or (len(work) == 1):
        partials = list(map(_map_chunk, work))
    else:
        with ThreadPool(min(workers, len(work))) as pool:
            partials = pool.map(_map_chunk, work)
    result = partials[0]
    for partial in partials[1:]:
        result.reduce(partial)
    return result


# Total (rescaled) squared distance of every row to its nearest centroid.
class SumSqr(MapReduceTask):
    def __init__(self, clusters, norm=IDENTITY):
        # IN
        self.clusters = clusters
        self.norm = norm
        # OUT
        self.sqr = 0.0

    def map(self, chunk):
        _, distances, _ = closest_rows(self.clusters, rows(chunk, self.norm))
        self.sqr = float(distances.sum())

    def reduce(self, other):
        self.sqr += other.sqr


# Propose new centroid candidates with probability proportional to the
# squared distance of every row to its nearest current centroid. Every
# chunk draws from its own generator seeded with "seed + chunk.start".
class Sampler(MapReduceTask):
    def __init__(self, clusters, sqr, probability, seed, norm=IDENTITY, fill=None):
        # IN
        self.clusters = clusters
        self.sqr = sqr                  # Min-square-error over the frame
        self.probability = probability  # Over-sampling factor
        self.seed = seed
        self.norm = norm
        self.fill = fill                # Values replacing missing cells of candidates
        # OUT
        self.sampled = np.empty((0, clusters.shape[1]))

    def map(self, chunk):
        values = rows(chunk, self.norm)
        _, distances, _ = closest_rows(self.clusters, values)
        rand = make_rng(self.seed + chunk.start)
        draws = rand.next_doubles(chunk.length)
        selected = values[self.probability * distances > draws * self.sqr]
        if self.fill is not None:
            selected = fill_missing(selected, self.fill)
        self.sampled = selected
        logger.debug("Sampled %d candidates from chunk at row %d.", selected.shape[0], chunk.start)

    def reduce(self, other):
        self.sampled = np.concatenate((self.sampled, other.sampled), axis=0)


# One Lloyd step: assign every row to its nearest centroid and compute
# per cluster (and per column, over observed cells) the count, mean, and
# sum of squared deviations from the mean.
#
# A row with "pts" of "d" observed cells is weighted by d / pts, the same
# factor the distance kernel rescales it by, so the weighted means are the
# centroids minimizing the error the assignment step measured.
class Lloyds(MapReduceTask):
    def __init__(self, clusters, norm=IDENTITY):
        # IN
        self.clusters = clusters
        self.norm = norm
        # OUT
        k, d = clusters.shape
        self.means = np.zeros((k, d))    # Per cluster weighted means
        self.sigms = np.zeros((k, d))    # Weighted sum of squared deviations from the means
        self.weights = np.zeros((k, d))  # Total row weight per cluster and column
        self.counts = np.zeros((k, d))   # Observed cells per cluster and column
        self.rows = np.zeros(k, dtype=np.int64)  # Rows per cluster
        self.sqr = 0.0                   # Total sqr distance

    def map(self, chunk):
        k, d = self.clusters.shape
        values = rows(chunk, self.norm)
        clusters, distances, broken = closest_rows(self.clusters, values)
        self.sqr = float(distances.sum())
        # Ignore broken rows.
        keep = ~broken
        values, clusters = values[keep], clusters[keep]
        observed = ~np.isnan(values)
        scale = d / observed.sum(axis=1)
        weights = np.where(observed, scale[:, None], 0.0)
        sums, totals, counts = np.zeros((k, d)), np.zeros((k, d)), np.zeros((k, d))
        np.add.at(sums, clusters, np.where(observed, values, 0.0) * weights)
        np.add.at(totals, clusters, weights)
        np.add.at(counts, clusters, observed.astype(np.float64))
        self.rows = np.bincount(clusters, minlength=k).astype(np.int64)
        self.weights = totals
        self.counts = counts
        with np.errstate(invalid="ignore", divide="ignore"):
            self.means = np.where(totals > 0, sums / totals, 0.0)
        # Second pass for in-cluster deviations from the local means.
        deltas = np.where(observed, values - self.means[clusters], 0.0)
        sigms = np.zeros((k, d))
        np.add.at(sigms, clusters, weights * deltas * deltas)
        self.sigms = sigms

    # Chan et al. pairwise combination of weights, means, and squared deviations.
    def reduce(self, other):
        w1, w2 = self.weights, other.weights
        w = w1 + w2
        nonzero = w > 0
        safe = np.where(nonzero, w, 1.0)
        delta = other.means - self.means
        means = self.means + delta * (w2 / safe)
        sigms = self.sigms + other.sigms + delta * delta * (w1 * w2 / safe)
        self.means = np.where(nonzero, means, 0.0)
        self.sigms = np.where(nonzero, sigms, 0.0)
        self.weights = w
        self.counts = self.counts + other.counts
        self.rows = self.rows + other.rows
        self.sqr += other.sqr

    # Per cluster sample variances, NaN where fewer than two cells were
    # observed. Without missing cells this is sigms / (counts - 1).
    def variances(self):
        with np.errstate(invalid="ignore", divide="ignore"):
            spread = self.sigms / self.weights
            return np.where(self.counts >= 2, spread * self.counts / (self.counts - 1), np.nan)
