# Row materialization and per-column normalization.
#
# When normalization is on, a cell "x" of column "c" is read as
# (x - subs[c]) * muls[c], with subs[c] the column mean and muls[c] the
# inverse standard deviation (1 for near-constant columns). Missing
# cells stay NaN.

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .schema import SIGMA_THRESHOLD


# Whether a column with standard deviation "sigma" is scaled. Columns at
# or below the threshold (and columns without a defined sigma) are
# treated as constant and only shifted.
def normalize_sigma(sigma):
    return bool(sigma > SIGMA_THRESHOLD)


# Normalization arrays broadcast read-only to every pass. Either both
# arrays are present or neither is ("identity" normalization).
@dataclass(frozen=True)
class Normalization:
    subs: Optional[np.ndarray] = None
    muls: Optional[np.ndarray] = None

    def __post_init__(self):
        if (self.subs is None) != (self.muls is None):
            raise ValueError("Normalization requires both 'subs' and 'muls' or neither.")
        if self.subs is not None:
            subs = np.array(self.subs, dtype=np.float64)
            muls = np.array(self.muls, dtype=np.float64)
            if subs.shape != muls.shape or subs.ndim != 1:
                raise ValueError(f"Mismatched normalization shapes {subs.shape} and {muls.shape}.")
            subs.setflags(write=False)
            muls.setflags(write=False)
            object.__setattr__(self, "subs", subs)
            object.__setattr__(self, "muls", muls)

    @property
    def active(self) -> bool:
        return self.subs is not None

    # Shift by column means and scale by inverse sigmas of "frame".
    @classmethod
    def from_frame(cls, frame) -> "Normalization":
        d = frame.column_count()
        subs = np.empty(d)
        muls = np.empty(d)
        for c in range(d):
            subs[c] = frame.column_mean(c)
            sigma = frame.column_sigma(c)
            muls[c] = (1.0 / sigma) if normalize_sigma(sigma) else 1.0
        return cls(subs, muls)


IDENTITY = Normalization()


# Fill "values" with row "i" of "chunk", normalized when "norm" is active.
def row(values, chunk, i, norm=IDENTITY):
    for c in range(values.shape[0]):
        d = chunk.at(c, i)
        if norm.active:
            d = (d - norm.subs[c]) * norm.muls[c]
        values[c] = d
    return values


# All rows of "chunk" as a new (length, d) array, normalized when "norm"
# is active. Matches calling "row" on every row.
def rows(chunk, norm=IDENTITY):
    values = np.array(chunk.block(), dtype=np.float64)
    if norm.active:
        values -= norm.subs
        values *= norm.muls
    return values


# Column means of "frame" as seen through "norm" (all zeros when active).
def column_fill(frame, norm=IDENTITY):
    means = np.array([frame.column_mean(c) for c in range(frame.column_count())])
    if norm.active:
        means = (means - norm.subs) * norm.muls
    return means


# Replace missing cells of a row that is about to become a centroid with
# the matching entries of "fill" (see "column_fill"). Centroids never
# hold NaN.
def fill_missing(values, fill):
    missing = np.isnan(values)
    if missing.any():
        values = np.where(missing, fill, values)
    return values


# Return centroids "clusters" (normalized space) in the original units of
# "frame". Reporting always rescales by the full sigma. A column without
# a defined sigma (one observed cell) is constant and maps to its mean.
def denormalize(clusters, frame):
    clusters = np.asarray(clusters, dtype=np.float64)
    means = np.array([frame.column_mean(c) for c in range(clusters.shape[1])])
    sigmas = np.array([frame.column_sigma(c) for c in range(clusters.shape[1])])
    return clusters * np.nan_to_num(sigmas, nan=0.0) + means


# Inverse of "denormalize": bring centroids in original units into the
# normalized space of "frame".
def normalize(clusters, frame):
    clusters = np.asarray(clusters, dtype=np.float64)
    d = clusters.shape[1]
    means = np.array([frame.column_mean(c) for c in range(d)])
    sigmas = np.array([frame.column_sigma(c) for c in range(d)])
    divisors = np.where([normalize_sigma(s) for s in sigmas], sigmas, 1.0)
    return (clusters - means) / divisors
