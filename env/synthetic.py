"""Synthetic linear streams for exercising the estimator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .base import SampleStream


@dataclass
class LinearStream(SampleStream):
    """Gaussian inputs with a fixed latent linear target ``d = w^T x + noise``."""

    weights: np.ndarray
    noise_std: float = 0.0
    input_scale: float = 1.0
    rng: Optional[np.random.Generator] = None

    def __post_init__(self) -> None:
        self.weights = np.asarray(self.weights, dtype=float).reshape(-1)
        self.dimension = self.weights.size
        if self.dimension == 0:
            raise ValueError("weights must not be empty")
        if self.noise_std < 0:
            raise ValueError("noise_std must be non-negative")
        if self.input_scale <= 0:
            raise ValueError("input_scale must be positive")
        if self.rng is None:
            self.rng = np.random.default_rng()

    def true_weights(self, t: int) -> np.ndarray:
        return self.weights

    def sample(self, t: int) -> Tuple[np.ndarray, float]:
        x = self.input_scale * self.rng.standard_normal(self.dimension)
        noise = 0.0 if self.noise_std <= 0 else self.rng.normal(0.0, self.noise_std)
        return x, float(self.true_weights(t) @ x + noise)


@dataclass
class SwitchingLinearStream(LinearStream):
    """Linear stream whose latent weights jump to ``weights_after`` at ``switch_at``."""

    weights_after: Optional[np.ndarray] = None
    switch_at: int = 0

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.weights_after is None:
            raise ValueError("weights_after is required for a switching stream")
        self.weights_after = np.asarray(self.weights_after, dtype=float).reshape(-1)
        if self.weights_after.size != self.dimension:
            raise ValueError(
                f"weights_after has size {self.weights_after.size}, expected {self.dimension}"
            )
        if self.switch_at < 0:
            raise ValueError("switch_at must be non-negative")

    def true_weights(self, t: int) -> np.ndarray:
        return self.weights if t < self.switch_at else self.weights_after
