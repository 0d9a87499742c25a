"""Recursive least squares estimation with exponential forgetting."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Optional

import numpy as np

from learners.diagnostics import CovarianceDiagnostics, covariance_diagnostics

_LOG = logging.getLogger(__name__)

_SUPPORTED_DTYPES = (np.float64, np.float32)


class RLSError(Exception):
    """Base class for estimator failures."""


class InvalidParameter(RLSError, ValueError):
    """Raised when a construction argument is outside its valid domain."""

    def __init__(self, name: str, value: Any, reason: str) -> None:
        super().__init__(f"invalid {name}={value!r}: {reason}")
        self.name = name
        self.value = value


class DimensionMismatch(RLSError, ValueError):
    """Raised when an input vector does not match the estimator dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"input has length {actual}, expected {expected}")
        self.expected = expected
        self.actual = actual


class InvalidSample(RLSError, ValueError):
    """Raised when an input vector or target contains NaN or inf."""


class NumericDegeneracy(RLSError, ArithmeticError):
    """Raised when the inverse covariance no longer yields a usable gain."""


@dataclass
class RLSState:
    theta: np.ndarray
    P: np.ndarray


@dataclass(frozen=True)
class RLSStep:
    """Result of one recursion step, computed without touching the old state."""

    state: RLSState
    gain: np.ndarray
    prediction: float
    error: float


def rls_update(
    state: RLSState,
    features: np.ndarray,
    feedback: float,
    *,
    lam: float,
    symmetrize: bool = True,
) -> RLSStep:
    """Perform a recursive least squares update.

    The a-priori prediction and error use ``state.theta`` before it is
    updated. ``state`` is left untouched; the new weights and inverse
    covariance are returned in a fresh :class:`RLSState`.
    """
    phi = features.reshape(-1)
    yhat = float(state.theta @ phi)
    error = feedback - yhat
    P_phi = state.P @ phi
    denom = lam + float(phi @ P_phi)
    if not np.isfinite(denom) or denom <= 0:
        raise NumericDegeneracy(
            f"RLS denominator is {denom!r}; the inverse covariance has lost "
            "positive definiteness"
        )
    gain = P_phi / denom
    theta = state.theta + gain * error
    # phi^T P, which equals P_phi only while P is exactly symmetric
    phi_P = phi @ state.P
    P = (state.P - np.outer(gain, phi_P)) / lam
    if symmetrize:
        P = 0.5 * (P + P.T)
    if not (np.all(np.isfinite(theta)) and np.all(np.isfinite(P))):
        raise NumericDegeneracy("RLS update produced non-finite weights or covariance")
    dtype = state.theta.dtype
    return RLSStep(
        state=RLSState(theta.astype(dtype, copy=False), P.astype(dtype, copy=False)),
        gain=gain.astype(dtype, copy=False),
        prediction=yhat,
        error=float(error),
    )


def _read_only(arr: np.ndarray) -> np.ndarray:
    # views of a locked buffer cannot be flipped back to writeable
    view = arr.view()
    view.flags.writeable = False
    return view


@contextmanager
def _unlocked(*buffers: np.ndarray) -> Iterator[None]:
    for buf in buffers:
        buf.flags.writeable = True
    try:
        yield
    finally:
        for buf in buffers:
            buf.flags.writeable = False


class RLSEstimator:
    """Online linear estimator ``d ~ w^T x`` tracked with exponential forgetting.

    The estimator owns its weight vector and inverse covariance matrix; the
    ``weights``, ``inverse_covariance`` and ``gain`` properties only hand out
    read-only views. It is not synchronized, so concurrent ``update`` calls
    must be serialized by the caller.
    """

    def __init__(
        self,
        dimension: int,
        forgetting_factor: float = 1.0,
        delta: float = 1.0,
        *,
        symmetrize: bool = True,
        dtype: Any = np.float64,
    ) -> None:
        self._lam, self._delta = self._validate(dimension, forgetting_factor, delta, dtype)
        self._dtype = np.dtype(dtype)
        self._dimension = int(dimension)
        self._symmetrize = bool(symmetrize)

        self._weights = np.zeros(self._dimension, dtype=self._dtype)
        self._P = np.eye(self._dimension, dtype=self._dtype) / self._delta
        self._gain = np.zeros(self._dimension, dtype=self._dtype)
        # buffers stay locked outside of the methods that commit new state
        for buf in (self._weights, self._P, self._gain):
            buf.flags.writeable = False
        self._prior_error = 0.0
        self._n_updates = 0

    @classmethod
    def with_weights(
        cls,
        initial_weights: Any,
        forgetting_factor: float = 1.0,
        delta: float = 1.0,
        **kwargs: Any,
    ) -> "RLSEstimator":
        """Construct an estimator starting from ``initial_weights`` instead of zeros."""
        weights = np.asarray(initial_weights, dtype=float).reshape(-1)
        estimator = cls(weights.size, forgetting_factor, delta, **kwargs)
        if not np.all(np.isfinite(weights)):
            raise InvalidParameter("initial_weights", initial_weights, "must be finite")
        with _unlocked(estimator._weights):
            estimator._weights[:] = weights
        return estimator

    @staticmethod
    def _as_real(name: str, value: Any) -> float:
        if isinstance(value, (str, bytes, bool)):
            raise InvalidParameter(name, value, "must be a real number")
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise InvalidParameter(name, value, "must be a real number") from exc

    @classmethod
    def _validate(
        cls, dimension: Any, forgetting_factor: Any, delta: Any, dtype: Any
    ) -> tuple[float, float]:
        if isinstance(dimension, bool) or not isinstance(dimension, (int, np.integer)):
            raise InvalidParameter("dimension", dimension, "must be an integer")
        if dimension <= 0:
            raise InvalidParameter("dimension", dimension, "must be positive")
        lam = cls._as_real("forgetting_factor", forgetting_factor)
        if not np.isfinite(lam) or not (0 < lam <= 1):
            raise InvalidParameter("forgetting_factor", forgetting_factor, "must lie in (0, 1]")
        delta_value = cls._as_real("delta", delta)
        if not np.isfinite(delta_value) or delta_value <= 0:
            raise InvalidParameter("delta", delta, "must be positive")
        try:
            resolved = np.dtype(dtype)
        except TypeError as exc:
            raise InvalidParameter("dtype", dtype, "not a numpy dtype") from exc
        if resolved.type not in _SUPPORTED_DTYPES:
            raise InvalidParameter("dtype", dtype, "must be float64 or float32")
        return lam, delta_value

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def forgetting_factor(self) -> float:
        return self._lam

    @property
    def inverse_forgetting_factor(self) -> float:
        return 1.0 / self._lam

    @property
    def delta(self) -> float:
        return self._delta

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def symmetrize(self) -> bool:
        return self._symmetrize

    @property
    def weights(self) -> np.ndarray:
        return _read_only(self._weights)

    @property
    def inverse_covariance(self) -> np.ndarray:
        return _read_only(self._P)

    @property
    def gain(self) -> np.ndarray:
        """Gain vector from the most recent update (zeros before the first)."""
        return _read_only(self._gain)

    @property
    def prior_error(self) -> float:
        """A-priori error of the most recent update."""
        return self._prior_error

    @property
    def n_updates(self) -> int:
        return self._n_updates

    def _as_input(self, x: Any) -> np.ndarray:
        arr = np.asarray(x, dtype=self._dtype)
        if arr.ndim == 0:
            raise DimensionMismatch(self._dimension, 0)
        if arr.ndim > 1 and arr.size == max(arr.shape):
            # row or column vector
            arr = arr.reshape(-1)
        if arr.ndim != 1 or arr.size != self._dimension:
            raise DimensionMismatch(self._dimension, int(arr.size))
        return arr

    def predict(self, x: Any) -> float:
        """Return ``w^T x`` with the current weights."""
        phi = self._as_input(x)
        return float(self._weights @ phi)

    def update(self, x: Any, target: float) -> float:
        """Consume one sample and return the a-priori error ``d - w^T x``.

        Raises :class:`DimensionMismatch`, :class:`InvalidSample` or
        :class:`NumericDegeneracy` without modifying any state.
        """
        phi = self._as_input(x)
        d = float(target)
        if not (np.all(np.isfinite(phi)) and np.isfinite(d)):
            raise InvalidSample(f"sample contains non-finite values (target={d!r})")
        try:
            step = rls_update(
                RLSState(self._weights, self._P),
                phi,
                d,
                lam=self._lam,
                symmetrize=self._symmetrize,
            )
        except NumericDegeneracy:
            _LOG.warning(
                "degenerate RLS update after %d samples (trace(P)=%g)",
                self._n_updates,
                float(np.trace(self._P)),
            )
            raise

        with _unlocked(self._weights, self._P, self._gain):
            np.copyto(self._weights, step.state.theta)
            np.copyto(self._P, step.state.P)
            np.copyto(self._gain, step.gain)
        self._prior_error = step.error
        self._n_updates += 1
        return step.error

    def reset_covariance(self, delta: Optional[float] = None) -> None:
        """Re-initialize the inverse covariance to ``I / delta``, keeping the weights."""
        if delta is None:
            delta = self._delta
        value = self._as_real("delta", delta)
        if not np.isfinite(value) or value <= 0:
            raise InvalidParameter("delta", delta, "must be positive")
        _LOG.info("resetting inverse covariance with delta=%g after %d samples", value, self._n_updates)
        with _unlocked(self._P):
            self._P[:] = np.eye(self._dimension, dtype=self._dtype) / value

    def diagnostics(self) -> CovarianceDiagnostics:
        return covariance_diagnostics(self._P)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self._dimension,
            "forgetting_factor": self._lam,
            "delta": self._delta,
            "symmetrize": self._symmetrize,
            "dtype": self._dtype.name,
            "weights": self._weights.tolist(),
            "inverse_covariance": self._P.tolist(),
            "gain": self._gain.tolist(),
            "prior_error": self._prior_error,
            "n_updates": self._n_updates,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RLSEstimator":
        """Rebuild an estimator from a :meth:`to_dict` snapshot."""
        estimator = cls(
            int(data["dimension"]),
            float(data["forgetting_factor"]),
            float(data["delta"]),
            symmetrize=bool(data.get("symmetrize", True)),
            dtype=data.get("dtype", "float64"),
        )
        n = estimator.dimension
        weights = np.asarray(data["weights"], dtype=estimator.dtype).reshape(-1)
        P = np.asarray(data["inverse_covariance"], dtype=estimator.dtype)
        if weights.size != n:
            raise DimensionMismatch(n, weights.size)
        if P.shape != (n, n):
            raise ValueError(f"inverse_covariance must be ({n},{n}), got {P.shape}")
        gain = np.asarray(data.get("gain", np.zeros(n)), dtype=estimator.dtype).reshape(-1)
        if gain.size != n:
            raise DimensionMismatch(n, gain.size)
        with _unlocked(estimator._weights, estimator._P, estimator._gain):
            estimator._weights[:] = weights
            estimator._P[:] = P
            estimator._gain[:] = gain
        estimator._prior_error = float(data.get("prior_error", 0.0))
        estimator._n_updates = int(data.get("n_updates", 0))
        return estimator

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(dimension={self._dimension}, "
            f"forgetting_factor={self._lam}, delta={self._delta}, "
            f"n_updates={self._n_updates})"
        )
