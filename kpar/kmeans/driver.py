"""Training orchestrator: K-Means|| initialization followed by Lloyd iterations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import numpy as np

from ..frame import Frame
from ..random import make_rng
from ..storage import ModelStore
from ..system import Timer
from .recluster import recluster
from .rows import IDENTITY, Normalization, column_fill, denormalize, fill_missing
from .schema import (
    Initialization,
    KMeansConfig,
    KMeansModel,
    OVERSAMPLE_FACTOR,
    OVERSAMPLE_ROUNDS,
)
from .tasks import Lloyds, Sampler, SumSqr

logger = logging.getLogger(__name__)

Cancellation = Union[Callable[[], bool], Any]


def _cancel_check(cancelled: Optional[Cancellation]) -> Callable[[], bool]:
    if cancelled is None:
        return lambda: False
    if hasattr(cancelled, "is_set"):  # threading.Event and friends
        return cancelled.is_set
    return cancelled


@dataclass
class KMeans:
    """Train one model on *frame* according to *config*.

    The driver exclusively owns the centroids and the model; every pass
    receives them read-only and returns fresh reduced state. After each
    oversampling round and each Lloyd iteration the model is written to
    *store* (when given) under ``config.destination`` and *cancelled* is
    consulted; a cancelled run returns the model as of its last snapshot.
    """

    config: KMeansConfig
    frame: Frame
    store: Optional[ModelStore] = None
    cancelled: Optional[Cancellation] = None

    def _snapshot(self, model: KMeansModel) -> None:
        if self.store is not None:
            self.store.snapshot(self.config.destination, model)

    def _random_row(self, frame: Frame, rand, norm: Normalization, fill: np.ndarray) -> np.ndarray:
        row = max(0, int(rand.next_double() * frame.row_count()) - 1)
        values = frame.at(row)
        if norm.active:
            values = (values - norm.subs) * norm.muls
        return fill_missing(values, fill)

    def _report(self, clusters: np.ndarray, frame: Frame) -> np.ndarray:
        return denormalize(clusters, frame) if self.config.normalize else clusters.copy()

    def run(self) -> KMeansModel:
        config = self.config
        config.validate(self.frame)
        frame = self.frame if config.cols is None else self.frame.select(config.cols)
        is_cancelled = _cancel_check(self.cancelled)
        k, workers = config.k, config.workers
        model = KMeansModel(
            names=list(frame.names),
            max_iter=config.max_iter,
            normalized=config.normalize,
            domain=[f"Cluster {i}" for i in range(k)],
        )
        logger.info(
            "Training k-means with k=%d on %d rows x %d columns in %d chunks (initialization=%s, normalize=%s).",
            k, frame.row_count(), frame.column_count(), len(frame.chunks),
            config.initialization.value, config.normalize,
        )

        norm = Normalization.from_frame(frame) if config.normalize else IDENTITY
        fill = column_fill(frame, norm)
        # Offset from the seed so driver draws differ from every chunk sampler.
        rand = make_rng(config.seed - 1)

        if config.initialization is Initialization.NONE:
            clusters = np.array([self._random_row(frame, rand, norm, fill) for _ in range(k)])
        else:
            clusters = self._random_row(frame, rand, norm, fill).reshape((1, -1))
            while model.rounds < OVERSAMPLE_ROUNDS:
                timer = Timer()
                sqr = SumSqr(clusters, norm).do_all(frame, workers).sqr
                sampler = Sampler(
                    clusters, sqr, probability=k * OVERSAMPLE_FACTOR,
                    seed=config.seed, norm=norm, fill=fill,
                ).do_all(frame, workers)
                clusters = np.concatenate((clusters, sampler.sampled), axis=0)
                model.clusters = self._report(clusters, frame)
                model.error = sqr
                model.rounds += 1
                self._snapshot(model)
                logger.info(
                    "Oversampling round %d: %d candidates, error %.6g (%s).",
                    model.rounds, clusters.shape[0], sqr, timer,
                )
                if is_cancelled():
                    logger.info("Training cancelled after oversampling round %d.", model.rounds)
                    return model
            candidates = clusters.shape[0]
            clusters = recluster(clusters, k, rand, config.initialization)
            model.clusters = self._report(clusters, frame)
            logger.info("Reclustered %d candidates to %d centroids (%s).",
                        candidates, k, config.initialization.value)

        while True:
            timer = Timer()
            task = Lloyds(clusters, norm).do_all(frame, workers)
            empty = np.flatnonzero(task.rows == 0)
            if empty.size:
                logger.debug("Clusters without rows keep their centroids: %s", empty.tolist())
            # Coordinates without observations keep their previous value.
            clusters = np.where(task.counts > 0, task.means, clusters)
            model.clusters = self._report(clusters, frame)
            model.variances = task.variances()
            model.error = task.sqr
            model.iterations += 1
            self._snapshot(model)
            logger.info("Lloyd iteration %d/%d: error %.6g (%s).",
                        model.iterations, config.max_iter, task.sqr, timer)
            if model.iterations >= config.max_iter:
                break
            if is_cancelled():
                logger.info("Training cancelled after iteration %d.", model.iterations)
                break
        logger.info("Finished k-means after %d iterations with error %.6g.", model.iterations, model.error)
        return model


def train(
    frame: Frame,
    config: Optional[KMeansConfig] = None,
    store: Optional[ModelStore] = None,
    cancelled: Optional[Cancellation] = None,
    **options: Any,
) -> KMeansModel:
    """Train a k-means model on *frame*.

    Either pass a ``KMeansConfig`` or its options as keyword arguments,
    e.g. ``train(frame, k=3, initialization="plus_plus", seed=7)``.
    """
    if config is None:
        config = KMeansConfig(**options)
    elif options:
        raise TypeError("Pass either a KMeansConfig or keyword options, not both.")
    return KMeans(config, frame, store=store, cancelled=cancelled).run()


__all__ = ["KMeans", "train"]
