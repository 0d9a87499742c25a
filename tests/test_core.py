from pathlib import Path

import numpy as np
import pytest

from config import Config, EstimatorConfig, RunConfig, StreamConfig, load_config
from env import LinearStream, SwitchingLinearStream
from learners.rls import InvalidSample, NumericDegeneracy, RLSEstimator
from plots.metrics import generate_plots
from runner.loop import StreamError, run_from_config, run_stream
from telemetry.writer import read_history, write_history


def _degenerate_estimator() -> RLSEstimator:
    return RLSEstimator.from_dict(
        {
            "dimension": 2,
            "forgetting_factor": 1.0,
            "delta": 1.0,
            "weights": [0.0, 0.0],
            "inverse_covariance": (-1000.0 * np.eye(2)).tolist(),
        }
    )


def test_linear_stream_is_reproducible():
    weights = np.array([0.5, -0.25])
    a = LinearStream(weights=weights, rng=np.random.default_rng(1))
    b = LinearStream(weights=weights, rng=np.random.default_rng(1))
    for t in range(5):
        xa, da = a.sample(t)
        xb, db = b.sample(t)
        np.testing.assert_array_equal(xa, xb)
        assert da == pytest.approx(float(weights @ xa))
        assert da == db


def test_switching_stream_changes_weights():
    stream = SwitchingLinearStream(
        weights=np.array([1.0, 0.0]),
        weights_after=np.array([0.0, 1.0]),
        switch_at=10,
        rng=np.random.default_rng(0),
    )
    np.testing.assert_array_equal(stream.true_weights(9), [1.0, 0.0])
    np.testing.assert_array_equal(stream.true_weights(10), [0.0, 1.0])
    x, d = stream.sample(12)
    assert d == pytest.approx(x[1])

    with pytest.raises(ValueError):
        SwitchingLinearStream(weights=np.ones(2), weights_after=np.ones(3))
    with pytest.raises(ValueError):
        SwitchingLinearStream(weights=np.ones(2))


def test_run_stream_recovers_linear_weights():
    weights = np.array([0.6, 0.4, -0.3])
    stream = LinearStream(weights=weights, rng=np.random.default_rng(4))
    est = RLSEstimator(3, forgetting_factor=0.99, delta=1e-3)

    history = run_stream(est, stream, 60)

    assert len(history) == 60
    assert [rec.t for rec in history] == list(range(60))
    np.testing.assert_allclose(history[-1].weights, weights, atol=1e-3)
    first = history[0]
    assert first.prediction == 0.0
    assert first.err == pytest.approx(first.target)
    assert not any(rec.reset for rec in history)


def test_run_stream_history_is_detached_from_estimator():
    stream = LinearStream(weights=np.array([1.0, 2.0]), rng=np.random.default_rng(0))
    est = RLSEstimator(2, delta=1.0)
    history = run_stream(est, stream, 5)
    saved = history[0].weights.copy()
    run_stream(est, stream, 5)
    np.testing.assert_array_equal(history[0].weights, saved)
    history[0].weights[0] = 99.0
    assert est.weights[0] != 99.0


def test_run_stream_stops_early_on_small_error():
    stream = LinearStream(weights=np.array([2.0, -1.0]), rng=np.random.default_rng(9))
    est = RLSEstimator(2, forgetting_factor=1.0, delta=1e-6)
    history = run_stream(est, stream, 500, tol_err=1e-4)
    assert len(history) < 500
    assert all(abs(rec.err) < 1e-4 for rec in history[-2:])


def test_run_stream_rejects_mismatched_stream():
    stream = LinearStream(weights=np.ones(3))
    with pytest.raises(ValueError):
        run_stream(RLSEstimator(2), stream, 10)


def test_run_stream_wraps_degeneracy():
    stream = LinearStream(weights=np.array([1.0, 1.0]), rng=np.random.default_rng(0))
    with pytest.raises(StreamError) as excinfo:
        run_stream(_degenerate_estimator(), stream, 10)
    assert excinfo.value.t == 0
    assert isinstance(excinfo.value.__cause__, NumericDegeneracy)


def test_run_stream_resets_on_degeneracy():
    stream = LinearStream(weights=np.array([1.0, 1.0]), rng=np.random.default_rng(0))
    est = _degenerate_estimator()
    history = run_stream(est, stream, 200, reset_on_degeneracy=True)
    assert history[0].reset
    assert not any(rec.reset for rec in history[1:])
    assert est.diagnostics().positive_definite
    np.testing.assert_allclose(est.weights, [1.0, 1.0], atol=1e-2)


def _write_config(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(body, encoding="utf-8")
    return path


def test_load_config_reads_sections(tmp_path):
    np.savetxt(tmp_path / "weights.csv", np.array([[0.5, -1.0, 2.0]]), delimiter=",")
    path = _write_config(
        tmp_path,
        """
estimator:
  dimension: 3
  lambda: 0.97
  delta: 0.01
  dtype: float32
stream:
  kind: switching
  weights: weights.csv
  weights_after: [1.0, 1.0, 1.0]
  switch_at: 50
  noise_std: 0.02
run:
  steps: 120
  seed: 3
  tol_err: 0.001
  logging: false
""",
    )
    cfg = load_config(path)

    assert cfg.estimator.forgetting_factor == pytest.approx(0.97)
    assert cfg.estimator.symmetrize
    np.testing.assert_allclose(cfg.stream.weights, [0.5, -1.0, 2.0])
    assert cfg.stream.switch_at == 50
    assert cfg.run.tol_err == pytest.approx(0.001)
    assert cfg.base_path == tmp_path.resolve()

    est = cfg.build_estimator()
    assert est.dtype == np.float32
    np.testing.assert_allclose(est.inverse_covariance, 100.0 * np.eye(3))
    stream = cfg.build_stream()
    assert isinstance(stream, SwitchingLinearStream)


@pytest.mark.parametrize(
    "body",
    [
        "estimator: {lambda: 0.9}\n",
        "estimator: {dimension: 2, dtype: float16}\nstream: {weights: [1, 2]}\n",
        "estimator: {dimension: 2}\nstream: {kind: chirp, weights: [1, 2]}\n",
        "estimator: {dimension: 2}\nstream: {weights: [1, 2, 3]}\n",
        "estimator: {dimension: 2}\nrun: {steps: 0}\n",
    ],
)
def test_load_config_rejects_invalid_values(tmp_path, body):
    with pytest.raises(ValueError):
        load_config(_write_config(tmp_path, body))


def test_load_config_missing_array_file(tmp_path):
    path = _write_config(tmp_path, "estimator: {dimension: 2}\nstream: {weights: missing.npy}\n")
    with pytest.raises(FileNotFoundError):
        load_config(path)


def test_run_from_config_with_initial_weights(tmp_path):
    np.save(tmp_path / "init.npy", np.array([0.9, 0.1]))
    cfg = load_config(
        _write_config(
            tmp_path,
            """
estimator:
  initial_weights: init.npy
  forgetting_factor: 1.0
  delta: 0.001
stream:
  weights: [1.0, 0.0]
run:
  steps: 30
  logging: false
""",
        )
    )
    assert cfg.estimator.dimension == 2
    history = run_from_config(cfg)
    assert len(history) == 30
    assert history[0].prediction == pytest.approx(0.9 * history[0].x[0] + 0.1 * history[0].x[1])
    np.testing.assert_allclose(history[-1].weights, [1.0, 0.0], atol=1e-3)


def test_config_requires_stream_weights():
    cfg = Config(
        estimator=EstimatorConfig(dimension=2),
        stream=StreamConfig(),
        run=RunConfig(logging=False),
        base_path=Path("."),
    )
    with pytest.raises(ValueError):
        cfg.build_stream()


def test_history_round_trip(tmp_path):
    stream = LinearStream(weights=np.array([1.0, -1.0]), rng=np.random.default_rng(2))
    history = run_stream(RLSEstimator(2, delta=1.0), stream, 8)

    target = tmp_path / "out" / "history.jsonl"
    count = write_history(target, (rec.to_dict() for rec in history))
    assert count == 8

    loaded = read_history(target)
    assert len(loaded) == 8
    assert loaded[3]["t"] == 3
    np.testing.assert_allclose(loaded[-1]["weights"], history[-1].weights)
    assert loaded[0]["reset"] is False


def test_generate_plots_writes_figures(tmp_path):
    stream = SwitchingLinearStream(
        weights=np.array([1.0, 0.0]),
        weights_after=np.array([0.0, 1.0]),
        switch_at=20,
        rng=np.random.default_rng(8),
    )
    history = run_stream(RLSEstimator(2, forgetting_factor=0.9, delta=1.0), stream, 40)
    truth = np.array([stream.true_weights(rec.t) for rec in history])

    paths = generate_plots(history, tmp_path / "plots", true_weights=truth)

    assert [p.name for p in paths] == ["error_curve.png", "weights.png", "covariance_trace.png"]
    assert all(p.exists() and p.stat().st_size > 0 for p in paths)
    assert generate_plots([], tmp_path / "empty") == []


def test_generate_plots_accepts_constant_true_weights(tmp_path):
    weights = np.array([0.5, -0.5])
    stream = LinearStream(weights=weights, rng=np.random.default_rng(6))
    history = run_stream(RLSEstimator(2, delta=1.0), stream, 15)

    paths = generate_plots(history, tmp_path / "plots", true_weights=weights)
    assert len(paths) == 3

    with pytest.raises(ValueError):
        generate_plots(history, tmp_path / "bad", true_weights=np.ones(3))


class _CorruptedStream(LinearStream):
    """Linear stream that emits a NaN target at one step."""

    bad_step: int = 3

    def sample(self, t):
        x, d = super().sample(t)
        return x, (float("nan") if t == self.bad_step else d)


def test_run_stream_rejects_nan_target_without_reset():
    stream = _CorruptedStream(weights=np.array([1.0, -1.0]), rng=np.random.default_rng(0))
    est = RLSEstimator(2, forgetting_factor=1.0, delta=0.01)

    with pytest.raises(StreamError) as excinfo:
        run_stream(est, stream, 10, reset_on_degeneracy=True)

    assert excinfo.value.t == 3
    assert isinstance(excinfo.value.__cause__, InvalidSample)
    assert est.n_updates == 3
    # the covariance learned from the first three samples is kept
    assert est.diagnostics().trace < 200.0
    assert not np.allclose(est.inverse_covariance, 100.0 * np.eye(2))


def test_build_stream_uses_run_seed():
    cfg = Config(
        estimator=EstimatorConfig(dimension=2),
        stream=StreamConfig(weights=np.array([1.0, 2.0])),
        run=RunConfig(seed=17, logging=False),
        base_path=Path("."),
    )
    x, _ = cfg.build_stream().sample(0)
    expected = np.random.default_rng(17).standard_normal(2)
    np.testing.assert_array_equal(x, expected)


def test_load_config_symmetrize_flag(tmp_path):
    cfg = load_config(
        _write_config(
            tmp_path,
            "estimator: {dimension: 2, symmetrize: false}\nstream: {weights: [1, 2]}\nrun: {logging: false}\n",
        )
    )
    assert cfg.estimator.symmetrize is False
    est = cfg.build_estimator()
    assert not est.symmetrize
    history = run_from_config(cfg)
    np.testing.assert_allclose(history[-1].weights, [1.0, 2.0], atol=1e-2)
