"""Streaming loop feeding samples to the RLS estimator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from config import Config, configure_logging
from env import SampleStream
from learners.rls import InvalidSample, NumericDegeneracy, RLSEstimator

_LOG = logging.getLogger(__name__)


class StreamError(RuntimeError):
    """Raised when the estimator cannot continue on the sample stream."""

    def __init__(self, t: int, message: str) -> None:
        super().__init__(f"step {t}: {message}")
        self.t = t


@dataclass
class StepRecord:
    t: int
    x: np.ndarray
    target: float
    prediction: float
    err: float
    weights: np.ndarray
    trace_P: float
    reset: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "t": self.t,
            "x": self.x.tolist(),
            "target": self.target,
            "prediction": self.prediction,
            "err": self.err,
            "weights": self.weights.tolist(),
            "trace_P": self.trace_P,
            "reset": self.reset,
        }


def run_stream(
    estimator: RLSEstimator,
    stream: SampleStream,
    steps: int,
    *,
    tol_err: Optional[float] = None,
    reset_on_degeneracy: bool = False,
) -> list[StepRecord]:
    """Feed ``steps`` samples from ``stream`` into ``estimator``.

    Stops early once ``|err| < tol_err`` held for ``estimator.dimension``
    consecutive steps. A degenerate update either aborts the run with
    :class:`StreamError` or, with ``reset_on_degeneracy``, resets the inverse
    covariance and retries the sample once. Samples with NaN or inf values
    abort the run without touching the estimator.
    """
    if stream.dimension != estimator.dimension:
        raise ValueError(
            f"stream dimension {stream.dimension} does not match estimator "
            f"dimension {estimator.dimension}"
        )
    history: list[StepRecord] = []
    window = estimator.dimension
    small_streak = 0

    for t in range(steps):
        x, d = stream.sample(t)
        prediction = estimator.predict(x)
        reset = False
        try:
            err = estimator.update(x, d)
        except InvalidSample as exc:
            raise StreamError(t, f"invalid sample: {exc}") from exc
        except NumericDegeneracy as exc:
            if not reset_on_degeneracy:
                raise StreamError(t, f"degenerate RLS update: {exc}") from exc
            estimator.reset_covariance()
            reset = True
            try:
                err = estimator.update(x, d)
            except NumericDegeneracy as retry_exc:
                raise StreamError(t, f"degenerate RLS update after reset: {retry_exc}") from retry_exc

        history.append(
            StepRecord(
                t=t,
                x=np.array(x, dtype=float),
                target=float(d),
                prediction=prediction,
                err=err,
                weights=np.array(estimator.weights, dtype=float),
                trace_P=float(np.trace(estimator.inverse_covariance)),
                reset=reset,
            )
        )

        if tol_err is not None:
            small_streak = small_streak + 1 if abs(err) < tol_err else 0
            if small_streak >= window:
                _LOG.debug("error below %g for %d steps, stopping at step %d", tol_err, window, t)
                break

    return history


def run_from_config(cfg: Config) -> list[StepRecord]:
    configure_logging(cfg.run)
    estimator = cfg.build_estimator()
    stream = cfg.build_stream()
    _LOG.info(
        "running %d steps: dimension=%d lambda=%g delta=%g stream=%s",
        cfg.run.steps,
        estimator.dimension,
        estimator.forgetting_factor,
        estimator.delta,
        cfg.stream.kind,
    )
    history = run_stream(
        estimator,
        stream,
        cfg.run.steps,
        tol_err=cfg.run.tol_err,
        reset_on_degeneracy=cfg.run.reset_on_degeneracy,
    )
    if history:
        _LOG.info("finished after %d steps, last |err|=%g", len(history), abs(history[-1].err))
    return history
