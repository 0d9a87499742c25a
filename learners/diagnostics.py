"""Health checks for the inverse covariance matrix."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.linalg import eigvalsh


@dataclass(frozen=True)
class CovarianceDiagnostics:
    trace: float
    min_eigenvalue: float
    asymmetry: float
    positive_definite: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "trace": self.trace,
            "min_eigenvalue": self.min_eigenvalue,
            "asymmetry": self.asymmetry,
            "positive_definite": self.positive_definite,
        }


def covariance_diagnostics(P: np.ndarray) -> CovarianceDiagnostics:
    """Summarize ``P``: trace, smallest eigenvalue and max |P - P^T|.

    Eigenvalues are taken from the symmetric part of ``P`` so that small
    floating-point asymmetry does not produce complex values.
    """
    P = np.asarray(P, dtype=float)
    if P.ndim != 2 or P.shape[0] != P.shape[1]:
        raise ValueError(f"expected a square matrix, got shape {P.shape}")
    if not np.all(np.isfinite(P)):
        return CovarianceDiagnostics(
            trace=float("nan"),
            min_eigenvalue=float("nan"),
            asymmetry=float("nan"),
            positive_definite=False,
        )
    sym = 0.5 * (P + P.T)
    min_eig = float(eigvalsh(sym)[0])
    return CovarianceDiagnostics(
        trace=float(np.trace(P)),
        min_eigenvalue=min_eig,
        asymmetry=float(np.max(np.abs(P - P.T))),
        positive_definite=min_eig > 0,
    )
