"""End-to-end training tests."""

import threading
from pathlib import Path

import numpy as np
import pytest

from kpar import FileSystem, Frame, ModelStore, train
from kpar.kmeans import ConfigurationError, Initialization, KMeansConfig, KMeansModel


# Store stand-in that keeps every snapshot in memory.
class _Recorder:
    def __init__(self): self.snapshots = []
    def snapshot(self, destination, model): self.snapshots.append((destination, model.to_dict()))

    # Errors reported after every Lloyd iteration, in order.
    def lloyd_errors(self):
        return [m["error"] for (_, m) in self.snapshots if m["iterations"] > 0]


# Callable that reports cancellation on its "after"-th call.
class _CancelAfter:
    def __init__(self, after): self.after, self.calls = after, 0
    def __call__(self):
        self.calls += 1
        return self.calls >= self.after


def _sorted(clusters):
    return clusters[np.lexsort(clusters.T[::-1])]


def _blobs(seed=0, n=600, d=4, centers=3, scale=1.0):
    rng = np.random.default_rng(seed)
    labels = rng.integers(0, centers, size=n)
    return rng.normal(size=(n, d)) * scale + labels[:, None] * 3.0


def test_two_obvious_clusters() -> None:
    rng = np.random.default_rng(0)
    values = np.concatenate([
        rng.normal(0.0, 0.1, size=(100, 2)),
        rng.normal(10.0, 0.1, size=(100, 2)),
    ])
    frame = Frame.from_array(values, chunk_rows=32)
    model = train(frame, k=2, seed=42, initialization="none", max_iter=20)
    clusters = _sorted(model.clusters)
    assert clusters.shape == (2, 2)
    assert np.allclose(clusters[0], [0.0, 0.0], atol=0.1)
    assert np.allclose(clusters[1], [10.0, 10.0], atol=0.1)
    assert model.error / frame.row_count() < 0.05
    assert model.iterations == 20
    assert model.progress() == 1.0
    assert model.domain == ["Cluster 0", "Cluster 1"]


def test_three_collinear_clusters_plus_plus() -> None:
    values = np.array([[x, 0.0] for x in (0.0, 5.0, 10.0) for _ in range(100)])
    frame = Frame.from_array(values, chunk_rows=64)
    model = train(frame, k=3, seed=7, initialization=Initialization.PLUS_PLUS, max_iter=5)
    clusters = _sorted(model.clusters)
    assert np.allclose(clusters, [[0.0, 0.0], [5.0, 0.0], [10.0, 0.0]])
    assert model.error == pytest.approx(0.0, abs=1e-9)
    assert model.rounds == 5


@pytest.mark.parametrize("initialization", ["furthest", "plus_plus"])
def test_square_corners(initialization) -> None:
    corners = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    values = np.tile(corners, (25, 1))
    frame = Frame.from_array(values, chunk_rows=16)
    model = train(frame, k=4, seed=3, initialization=initialization, max_iter=3)
    assert np.allclose(_sorted(model.clusters), _sorted(corners))
    assert model.error == pytest.approx(0.0, abs=1e-12)
    assert np.allclose(model.variances, 0.0)


def test_missing_values() -> None:
    values = np.array([[1.0, np.nan]] * 50 + [[np.nan, 1.0]] * 50)
    frame = Frame.from_array(values, chunk_rows=30)
    model = train(frame, k=2, seed=1, max_iter=1)
    assert model.iterations == 1
    assert not np.isnan(model.clusters).any()
    assert np.allclose(model.clusters, 1.0)
    assert model.error == pytest.approx(0.0)


def test_broken_rows_are_ignored() -> None:
    values = np.array([[0.0, 0.0]] * 10 + [[np.nan, np.nan]] * 5 + [[4.0, 4.0]] * 10)
    frame = Frame.from_array(values, chunk_rows=8)
    model = train(frame, k=2, seed=5, initialization="furthest", max_iter=3)
    assert np.allclose(_sorted(model.clusters), [[0.0, 0.0], [4.0, 4.0]])
    assert model.error == pytest.approx(0.0)


def test_normalization_separates_small_scale_column() -> None:
    rng = np.random.default_rng(2)
    small = np.column_stack([rng.normal(0.0, 1.0, 50), np.zeros(50)])
    large = np.column_stack([rng.normal(1000.0, 1.0, 50), np.full(50, 0.001)])
    frame = Frame.from_array(np.concatenate([small, large]), chunk_rows=20)
    model = train(frame, k=2, seed=11, initialization="furthest", normalize=True, max_iter=10)
    assert model.normalized
    clusters = _sorted(model.clusters)
    assert np.allclose(clusters[0], [small[:, 0].mean(), 0.0], rtol=1e-9, atol=1e-9)
    assert np.allclose(clusters[1], [large[:, 0].mean(), 0.001], rtol=1e-9, atol=1e-9)
    # Variances are reported for the normalized values the model trained on.
    assert (model.variances >= 0).all()


def test_normalization_decides_which_columns_separate() -> None:
    # Groups differ only in six small-scale columns, a large-scale column is noise.
    rng = np.random.default_rng(12)
    groups = np.arange(200) % 2
    noise = rng.uniform(-1000.0, 1000.0, size=200)
    values = np.column_stack([noise] + [groups * 0.001] * 6)
    frame = Frame.from_array(values, chunk_rows=50)
    options = dict(k=2, seed=21, initialization="furthest", max_iter=10)
    # Raw distances only see the noise, so both clusters mix the groups.
    raw = train(frame, normalize=False, **options)
    assert ((raw.clusters[:, 1:] > 1e-4) & (raw.clusters[:, 1:] < 9e-4)).all()
    scaled = train(frame, normalize=True, **options)
    clusters = scaled.clusters[np.argsort(scaled.clusters[:, 1])]
    assert np.allclose(clusters[:, 1:], [[0.0] * 6, [0.001] * 6], rtol=0.0, atol=1e-9)
    assert np.allclose(clusters[:, 0], [noise[groups == 0].mean(), noise[groups == 1].mean()])


def test_cancellation_mid_loop(tmp_path: Path) -> None:
    store = ModelStore(FileSystem(root=str(tmp_path)))
    frame = Frame.from_array(_blobs(seed=4), chunk_rows=100)
    cancelled = _CancelAfter(3)
    model = train(frame, k=3, seed=9, max_iter=1000, destination="job", store=store, cancelled=cancelled)
    assert model.iterations == 3
    assert model.clusters.shape == (3, 4)
    assert not np.isnan(model.clusters).any()
    stored = KMeansModel.from_dict(store["job"])
    assert stored.iterations == 3
    assert np.array_equal(stored.clusters, model.clusters)
    assert stored.progress() == pytest.approx(3 / 1000)


def test_cancellation_with_event_during_oversampling() -> None:
    event = threading.Event()
    event.set()
    recorder = _Recorder()
    frame = Frame.from_array(_blobs(seed=5), chunk_rows=100)
    model = train(frame, k=3, seed=9, initialization="plus_plus", store=recorder, cancelled=event)
    # The first round is still reported before the cancellation is seen.
    assert model.rounds == 1 and model.iterations == 0
    assert [m["rounds"] for (_, m) in recorder.snapshots] == [1]
    assert model.clusters.shape[0] >= 1
    assert not np.isnan(model.clusters).any()


def test_invariants_and_monotone_error() -> None:
    values = _blobs(seed=6, scale=1.5)
    frame = Frame.from_array(values, chunk_rows=50)
    recorder = _Recorder()
    model = train(frame, k=4, seed=-17, initialization="plus_plus", max_iter=15,
                  store=recorder, destination="mono")
    assert model.iterations <= 15
    assert model.clusters.shape == (4, 4)
    assert not np.isnan(model.clusters).any()
    assert (model.clusters >= values.min(axis=0)).all()
    assert (model.clusters <= values.max(axis=0)).all()
    assert model.error >= 0
    assert not (model.variances < 0).any()
    errors = recorder.lloyd_errors()
    assert len(errors) == 15
    for before, after in zip(errors, errors[1:]):
        assert after <= before + 1e-9 * abs(before)
    assert {d for (d, _) in recorder.snapshots} == {"mono"}
    # Oversampling snapshots come first, one per round.
    assert [m["rounds"] for (_, m) in recorder.snapshots[:5]] == [1, 2, 3, 4, 5]


@pytest.mark.parametrize("seed", [1, 4, 15, 22, 37])
def test_monotone_error_with_missing_values(seed) -> None:
    rng = np.random.default_rng(seed)
    values = _blobs(seed=seed, n=300, d=3, scale=1.5)
    values[rng.random(values.shape) < 0.3] = np.nan
    frame = Frame.from_array(values, chunk_rows=45)
    recorder = _Recorder()
    model = train(frame, k=4, seed=seed, initialization="plus_plus", max_iter=15, store=recorder)
    assert not np.isnan(model.clusters).any()
    errors = recorder.lloyd_errors()
    assert len(errors) == 15
    for before, after in zip(errors, errors[1:]):
        assert after <= before + 1e-9 * abs(before)


def test_determinism_across_workers() -> None:
    frame = Frame.from_array(_blobs(seed=7), chunk_rows=37)
    runs = [train(frame, k=3, seed=123, initialization=init, max_iter=6, workers=workers)
            for init in ("plus_plus", "furthest") for workers in (1, 4)]
    for a, b in (runs[0:2], runs[2:4]):
        assert np.array_equal(a.clusters, b.clusters)
        assert a.error == b.error


def test_selected_columns() -> None:
    values = np.column_stack([np.repeat([0.0, 8.0], 20), np.arange(40.0), np.repeat([1.0, 3.0], 20)])
    frame = Frame.from_array(values, chunk_rows=16, names=["a", "noise", "b"])
    model = train(frame, k=2, seed=1, initialization="furthest", cols=[0, 2], max_iter=4)
    assert model.names == ["a", "b"]
    assert np.allclose(_sorted(model.clusters), [[0.0, 1.0], [8.0, 3.0]])
    assert "Clusters" in model.summary()


def test_model_store_round_trip(tmp_path: Path) -> None:
    store = ModelStore(FileSystem(root=str(tmp_path)), directory="snapshots")
    frame = Frame.from_array(_blobs(seed=8, n=120, d=2), chunk_rows=40)
    config = KMeansConfig(k=2, max_iter=4, seed=5, destination="blobs", normalize=True)
    model = train(frame, config, store=store)
    assert store.keys() == ["blobs"]
    stored = KMeansModel.from_dict(store["blobs"])
    assert stored.normalized
    assert stored.iterations == model.iterations == 4
    assert np.array_equal(stored.clusters, model.clusters)
    assert stored.error == model.error


@pytest.mark.parametrize("options", [
    dict(k=1),
    dict(k=100_001),
    dict(k=2, max_iter=0),
    dict(k=2, max_iter=100_001),
    dict(k=2, cols=[5]),
    dict(k=2, cols=[]),
    dict(k=2, workers=0),
    dict(k=2, seed=2**63),
])
def test_invalid_configuration(options) -> None:
    frame = Frame.from_array(np.arange(20.0).reshape((10, 2)))
    with pytest.raises(ConfigurationError):
        train(frame, **options)


def test_invalid_frames() -> None:
    with pytest.raises(ConfigurationError):
        train(Frame.from_array(np.zeros((0, 2))), k=2)
    with pytest.raises(ConfigurationError):
        train(Frame.from_array(np.zeros((5, 0))), k=2)
    with pytest.raises(ConfigurationError):
        train(Frame.from_array([[1.0, np.nan], [2.0, np.nan]]), k=2)
    with pytest.raises(ConfigurationError):
        KMeansConfig(k=2, initialization="bogus")
    with pytest.raises(TypeError):
        train(Frame.from_array(np.zeros((4, 1))), KMeansConfig(k=2), k=3)


def test_config_from_environment() -> None:
    environ = {
        "KPAR_MAX_ITER": "7",
        "KPAR_NORMALIZE": "yes",
        "KPAR_INITIALIZATION": "PlusPlus",
        "KPAR_SEED": "-5",
        "KPAR_WORKERS": "2",
    }
    config = KMeansConfig.from_env(environ, k=4, max_iter=9)
    assert (config.k, config.max_iter, config.normalize, config.seed, config.workers) == (4, 9, True, -5, 2)
    assert config.initialization is Initialization.PLUS_PLUS
    with pytest.raises(ConfigurationError):
        KMeansConfig.from_env({"KPAR_MAX_ITER": "many"}, k=2)
    with pytest.raises(ConfigurationError):
        KMeansConfig.from_env({})
    assert KMeansConfig.from_env({"KPAR_K": "3"}).k == 3
