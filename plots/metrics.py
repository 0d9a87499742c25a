"""Plotting utilities for monitoring estimator runs."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

import matplotlib.pyplot as plt
import numpy as np

from runner.loop import StepRecord


def generate_plots(
    history: Iterable[StepRecord],
    out_dir: str | Path,
    *,
    true_weights: Optional[np.ndarray] = None,
) -> list[Path]:
    """Write error, weight and covariance-trace figures; return the file paths.

    ``true_weights`` may be a ``(steps, n)`` array aligned with ``history``, or a
    single ``(n,)`` vector held constant; it is drawn as dashed reference lines.
    """
    records = list(history)
    if not records:
        return []
    out_path = Path(out_dir)
    out_path.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    t = np.array([rec.t for rec in records], dtype=float)
    errors = np.array([abs(rec.err) for rec in records], dtype=float)
    weights = np.array([rec.weights for rec in records], dtype=float)
    traces = np.array([rec.trace_P for rec in records], dtype=float)

    ema = _ema(errors, span=max(5, int(len(records) * 0.1)))
    plt.figure(figsize=(6, 4))
    plt.semilogy(t, np.maximum(errors, 1e-16), label="|d - w^T x|")
    plt.semilogy(t, np.maximum(ema, 1e-16), label="EMA", linestyle="--")
    plt.xlabel("step")
    plt.ylabel("a-priori error")
    plt.legend()
    plt.tight_layout()
    written.append(_save(out_path / "error_curve.png"))

    reference = None
    if true_weights is not None:
        reference = np.asarray(true_weights, dtype=float)
        if reference.ndim == 1:
            reference = np.broadcast_to(reference, weights.shape)
        if reference.ndim != 2 or reference.shape[0] < len(t) or reference.shape[1] != weights.shape[1]:
            raise ValueError(
                f"true_weights must have shape ({weights.shape[1]},) or "
                f"(>= {len(t)}, {weights.shape[1]}), got {np.shape(true_weights)}"
            )

    plt.figure(figsize=(6, 4))
    for j in range(weights.shape[1]):
        (line,) = plt.plot(t, weights[:, j], label=f"w{j+1}")
        if reference is not None:
            plt.plot(t, reference[: len(t), j], linestyle="--", color=line.get_color())
    plt.xlabel("step")
    plt.ylabel("weight value")
    plt.legend()
    plt.tight_layout()
    written.append(_save(out_path / "weights.png"))

    plt.figure(figsize=(6, 4))
    plt.semilogy(t, np.abs(traces), label="trace(P)")
    resets = [rec.t for rec in records if rec.reset]
    for step in resets:
        plt.axvline(step, color="red", linestyle=":")
    plt.xlabel("step")
    plt.ylabel("trace of inverse covariance")
    plt.tight_layout()
    written.append(_save(out_path / "covariance_trace.png"))

    return written


def _save(path: Path) -> Path:
    plt.savefig(path, dpi=150)
    plt.close()
    return path


def _ema(values: np.ndarray, span: int) -> np.ndarray:
    alpha = 2.0 / (span + 1.0)
    ema = np.zeros_like(values)
    current = 0.0
    for idx, val in enumerate(values):
        if idx == 0:
            current = val
        else:
            current = alpha * val + (1 - alpha) * current
        ema[idx] = current
    return ema
