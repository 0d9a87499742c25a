"""Base types for sample streams feeding the estimator."""

from __future__ import annotations

from typing import Protocol, Tuple

import numpy as np


class SampleStream(Protocol):
    """Source of ``(x, d)`` training samples indexed by step."""

    dimension: int

    def sample(self, t: int) -> Tuple[np.ndarray, float]:
        """Return the input vector and scalar target for step ``t``."""

    def true_weights(self, t: int) -> np.ndarray:
        """Return the weights generating the target at step ``t``."""
