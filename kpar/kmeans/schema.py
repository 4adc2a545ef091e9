"""Shared constants, configuration, errors, and the model produced by training."""

from __future__ import annotations

import enum
import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from ..random import INT64_MAX, INT64_MIN, os_seed

# ---------------------------------------------------------------------------
# Configuration constants
K_MIN = 2
K_MAX = 100_000
MAX_ITER_MIN = 1
MAX_ITER_MAX = 100_000
DEFAULT_MAX_ITER = 100
OVERSAMPLE_ROUNDS = 5
OVERSAMPLE_FACTOR = 3  # candidates drawn per round are about this times k
SIGMA_THRESHOLD = 1e-6
DEFAULT_DESTINATION = "kmeans"
ENV_PREFIX = "KPAR_"


# ---------------------------------------------------------------------------
# Errors
class KMeansError(Exception):
    """Base class for errors raised while configuring or training."""


class ConfigurationError(KMeansError, ValueError):
    """The training configuration (or the frame it names) is unusable."""


# ---------------------------------------------------------------------------
# Data structures
class Initialization(enum.Enum):
    """How the first centroids are chosen."""

    NONE = "none"            # k random rows
    PLUS_PLUS = "plus_plus"  # K-Means|| oversampling then weighted K-Means++
    FURTHEST = "furthest"    # K-Means|| oversampling then Furthest-First

    @classmethod
    def parse(cls, value: Union["Initialization", str, None]) -> "Initialization":
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_")
        aliases = {"plusplus": "plus_plus", "kmeans++": "plus_plus", "furthest_first": "furthest"}
        key = aliases.get(key, key)
        for member in cls:
            if member.value == key:
                return member
        raise ConfigurationError(
            f"Unknown initialization {value!r}, expected one of {[m.value for m in cls]}."
        )


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class KMeansConfig:
    """Configuration for ``train``.

    * ``k`` - number of clusters, ``2 <= k <= 100000``.
    * ``max_iter`` - Lloyd iterations, ``1 <= max_iter <= 100000``.
    * ``initialization`` - ``none``, ``plus_plus`` or ``furthest``.
    * ``normalize`` - train on per-column standardized values.
    * ``seed`` - signed 64-bit seed, drawn from the OS when omitted.
    * ``cols`` - feature column indices (all columns when omitted).
    * ``destination`` - key under which model snapshots are written.
    * ``workers`` - threads processing chunks in parallel.
    """

    k: int
    max_iter: int = DEFAULT_MAX_ITER
    initialization: Initialization = Initialization.NONE
    normalize: bool = False
    seed: int = field(default_factory=os_seed)
    cols: Optional[List[int]] = None
    destination: str = DEFAULT_DESTINATION
    workers: int = field(default_factory=lambda: os.cpu_count() or 1)

    def __post_init__(self):
        self.initialization = Initialization.parse(self.initialization)
        if self.cols is not None:
            self.cols = [int(c) for c in self.cols]

    # Build a configuration whose unspecified options come from
    # KPAR_* environment variables (explicit arguments take priority).
    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "KMeansConfig":
        environ = os.environ if environ is None else environ
        readers = {
            "k": int,
            "max_iter": int,
            "workers": int,
            "seed": int,
            "normalize": _env_flag,
            "initialization": Initialization.parse,
            "destination": str,
        }
        kwargs: Dict[str, Any] = {}
        for name, read in readers.items():
            value = environ.get(ENV_PREFIX + name.upper())
            if value is not None:
                try:
                    kwargs[name] = read(value)
                except ValueError as exc:
                    raise ConfigurationError(f"Bad value for {ENV_PREFIX + name.upper()}: {value!r}") from exc
        kwargs.update(overrides)
        if "k" not in kwargs:
            raise ConfigurationError("The number of clusters 'k' is required.")
        return cls(**kwargs)

    # Reject configurations that can not be trained on "frame".
    #
    # Raises:
    #   ConfigurationError: When any option is out of range.
    #
    def validate(self, frame=None) -> None:
        if not isinstance(self.k, (int, np.integer)) or not (K_MIN <= self.k <= K_MAX):
            raise ConfigurationError(f"k must be an integer in [{K_MIN}, {K_MAX}], received {self.k!r}.")
        if not isinstance(self.max_iter, (int, np.integer)) or not (MAX_ITER_MIN <= self.max_iter <= MAX_ITER_MAX):
            raise ConfigurationError(
                f"max_iter must be an integer in [{MAX_ITER_MIN}, {MAX_ITER_MAX}], received {self.max_iter!r}."
            )
        if not (INT64_MIN <= int(self.seed) <= INT64_MAX):
            raise ConfigurationError(f"seed must be a signed 64-bit integer, received {self.seed!r}.")
        if self.workers < 1:
            raise ConfigurationError(f"workers must be at least 1, received {self.workers!r}.")
        if self.cols is not None and len(self.cols) == 0:
            raise ConfigurationError("At least one feature column is required.")
        if frame is None:
            return
        if frame.column_count() == 0:
            raise ConfigurationError("The frame has no columns.")
        if frame.row_count() == 0:
            raise ConfigurationError("The frame has no rows.")
        for c in (self.cols or []):
            if not (0 <= c < frame.column_count()):
                raise ConfigurationError(f"Column {c} out of range [0, {frame.column_count()}).")
        for c in (self.cols if self.cols is not None else range(frame.column_count())):
            if math.isnan(frame.column_mean(c)):
                raise ConfigurationError(f"Column {c} ({frame.names[c]!r}) has no observed values.")


# Snapshots are plain JSON, missing values (NaN) are stored as null.
def _to_float(value: float) -> Optional[float]:
    value = float(value)
    return None if math.isnan(value) else value


def _from_float(value: Optional[float]) -> float:
    return math.nan if value is None else float(value)


def _to_list(array: Optional[np.ndarray]) -> Optional[List[List[Optional[float]]]]:
    if array is None:
        return None
    return [[_to_float(v) for v in row] for row in np.asarray(array, dtype=np.float64)]


def _to_array(values: Optional[Sequence]) -> Optional[np.ndarray]:
    if values is None:
        return None
    return np.array([[_from_float(v) for v in row] for row in values], dtype=np.float64)


@dataclass
class KMeansModel:
    """Result of training, updated by the driver after every finished pass.

    ``clusters`` are always reported in the original (denormalized) units.
    ``variances`` hold the per cluster, per column sample variance from the
    last Lloyd pass, NaN for clusters with fewer than two rows.
    """

    names: List[str]
    max_iter: int = DEFAULT_MAX_ITER
    normalized: bool = False
    clusters: Optional[np.ndarray] = None
    variances: Optional[np.ndarray] = None
    error: float = math.nan
    iterations: int = 0  # Lloyd iterations
    rounds: int = 0  # oversampling rounds
    domain: List[str] = field(default_factory=list)

    def progress(self) -> float:
        return min(1.0, self.iterations / float(self.max_iter))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "names": list(self.names),
            "domain": list(self.domain),
            "max_iter": int(self.max_iter),
            "normalized": bool(self.normalized),
            "clusters": _to_list(self.clusters),
            "variances": _to_list(self.variances),
            "error": _to_float(self.error),
            "iterations": int(self.iterations),
            "rounds": int(self.rounds),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KMeansModel":
        return cls(
            names=list(data["names"]),
            domain=list(data.get("domain", [])),
            max_iter=int(data["max_iter"]),
            normalized=bool(data["normalized"]),
            clusters=_to_array(data.get("clusters")),
            variances=_to_array(data.get("variances")),
            error=_from_float(data.get("error")),
            iterations=int(data["iterations"]),
            rounds=int(data.get("rounds", 0)),
        )

    # Plain text table of the centroids (one row per cluster).
    def summary(self, precision: int = 4) -> str:
        lines = [f"Error: {self.error:.{precision}g}  Iterations: {self.iterations}/{self.max_iter}"]
        if self.clusters is None:
            return "\n".join(lines)
        header = ["Clusters"] + list(self.names)
        rows = [[str(r)] + [f"{v:.{precision}g}" for v in centroid]
                for r, centroid in enumerate(self.clusters)]
        widths = [max(len(row[i]) for row in [header] + rows) for i in range(len(header))]
        for row in [header] + rows:
            lines.append("  ".join(cell.rjust(w) for cell, w in zip(row, widths)))
        return "\n".join(lines)
