"""Scalable K-Means (K-Means||) over chunked frames."""

from .distance import ClusterDistance, closest, closest_rows, min_sqr
from .driver import KMeans, train
from .recluster import recluster
from .rows import Normalization, denormalize, normalize
from .schema import (
    ConfigurationError,
    Initialization,
    KMeansConfig,
    KMeansError,
    KMeansModel,
)
from .tasks import Lloyds, MapReduceTask, Sampler, SumSqr, run_task

__all__ = [
    "ClusterDistance",
    "ConfigurationError",
    "Initialization",
    "KMeans",
    "KMeansConfig",
    "KMeansError",
    "KMeansModel",
    "Lloyds",
    "MapReduceTask",
    "Normalization",
    "Sampler",
    "SumSqr",
    "closest",
    "closest_rows",
    "denormalize",
    "min_sqr",
    "normalize",
    "recluster",
    "run_task",
    "train",
]
