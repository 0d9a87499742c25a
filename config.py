"""Configuration loading for the RLS estimator and its sample streams."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Optional

import numpy as np
import yaml

from env import LinearStream, SampleStream, SwitchingLinearStream
from learners.rls import RLSEstimator


@dataclass
class EstimatorConfig:
    dimension: int
    forgetting_factor: float = 1.0
    delta: float = 1.0
    symmetrize: bool = True
    dtype: Literal["float64", "float32"] = "float64"
    initial_weights: Optional[np.ndarray] = None


@dataclass
class StreamConfig:
    kind: Literal["linear", "switching"] = "linear"
    weights: Optional[np.ndarray] = None
    weights_after: Optional[np.ndarray] = None
    switch_at: int = 0
    noise_std: float = 0.0
    input_scale: float = 1.0


@dataclass
class RunConfig:
    steps: int = 500
    seed: int = 0
    tol_err: Optional[float] = None
    logging: bool = True
    log_level: str = "INFO"
    reset_on_degeneracy: bool = False


@dataclass
class Config:
    estimator: EstimatorConfig
    stream: StreamConfig
    run: RunConfig
    base_path: Path

    def build_estimator(self) -> RLSEstimator:
        est = self.estimator
        kwargs = {"symmetrize": est.symmetrize, "dtype": est.dtype}
        if est.initial_weights is not None:
            return RLSEstimator.with_weights(
                est.initial_weights,
                est.forgetting_factor,
                est.delta,
                **kwargs,
            )
        return RLSEstimator(est.dimension, est.forgetting_factor, est.delta, **kwargs)

    def build_stream(self, rng: Optional[np.random.Generator] = None) -> SampleStream:
        stream = self.stream
        if rng is None:
            rng = np.random.default_rng(self.run.seed)
        if stream.weights is None:
            raise ValueError("stream.weights is required")
        if stream.kind == "linear":
            return LinearStream(
                weights=stream.weights,
                noise_std=stream.noise_std,
                input_scale=stream.input_scale,
                rng=rng,
            )
        if stream.kind == "switching":
            return SwitchingLinearStream(
                weights=stream.weights,
                noise_std=stream.noise_std,
                input_scale=stream.input_scale,
                rng=rng,
                weights_after=stream.weights_after,
                switch_at=stream.switch_at,
            )
        raise ValueError(f"unsupported stream kind: {stream.kind}")


def configure_logging(run: RunConfig) -> None:
    if not run.logging:
        return
    level = logging.getLevelName(run.log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level: {run.log_level}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_array(path: Path) -> np.ndarray:
    if not path.exists():
        raise FileNotFoundError(path)
    if path.suffix == ".npy":
        return np.load(path)
    if path.suffix in {".csv", ".txt"}:
        return np.loadtxt(path, delimiter=",")
    raise ValueError(f"unsupported array file type: {path}")


def _init_vector(source: Any, base: Path, size: Optional[int] = None) -> Optional[np.ndarray]:
    if source is None:
        return None
    if isinstance(source, str):
        arr = _load_array(base / source)
    else:
        arr = np.asarray(source, dtype=float)
    arr = np.asarray(arr, dtype=float).reshape(-1)
    if size is not None and arr.size != size:
        raise ValueError(f"vector has size {arr.size}, expected {size}")
    return arr


def load_config(path: str | Path) -> Config:
    cfg_path = Path(path).expanduser().resolve()
    with cfg_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    base = cfg_path.parent

    estimator_raw = raw.get("estimator") or {}
    stream_raw = raw.get("stream") or {}
    run_raw = raw.get("run") or {}

    if "dimension" not in estimator_raw and "initial_weights" not in estimator_raw:
        raise ValueError("estimator.dimension is required")

    initial_weights = _init_vector(estimator_raw.get("initial_weights"), base)
    dimension = int(
        estimator_raw.get(
            "dimension",
            initial_weights.size if initial_weights is not None else 0,
        )
    )
    if initial_weights is not None and initial_weights.size != dimension:
        raise ValueError(
            f"initial_weights has size {initial_weights.size}, expected {dimension}"
        )

    estimator = EstimatorConfig(
        dimension=dimension,
        forgetting_factor=float(
            estimator_raw.get("lambda", estimator_raw.get("forgetting_factor", 1.0))
        ),
        delta=float(estimator_raw.get("delta", 1.0)),
        symmetrize=bool(estimator_raw.get("symmetrize", True)),
        dtype=str(estimator_raw.get("dtype", "float64")),
        initial_weights=initial_weights,
    )
    if estimator.dtype not in {"float64", "float32"}:
        raise ValueError(f"unsupported dtype: {estimator.dtype}")

    stream = StreamConfig(
        kind=str(stream_raw.get("kind", "linear")),
        weights=_init_vector(stream_raw.get("weights"), base, dimension),
        weights_after=_init_vector(stream_raw.get("weights_after"), base, dimension),
        switch_at=int(stream_raw.get("switch_at", 0)),
        noise_std=float(stream_raw.get("noise_std", 0.0)),
        input_scale=float(stream_raw.get("input_scale", 1.0)),
    )
    if stream.kind not in {"linear", "switching"}:
        raise ValueError(f"unsupported stream kind: {stream.kind}")

    tol_err = run_raw.get("tol_err")
    run = RunConfig(
        steps=int(run_raw.get("steps", 500)),
        seed=int(run_raw.get("seed", 0)),
        tol_err=None if tol_err is None else float(tol_err),
        logging=bool(run_raw.get("logging", True)),
        log_level=str(run_raw.get("log_level", "INFO")),
        reset_on_degeneracy=bool(run_raw.get("reset_on_degeneracy", False)),
    )
    if run.steps <= 0:
        raise ValueError("run.steps must be positive")

    return Config(
        estimator=estimator,
        stream=stream,
        run=run,
        base_path=base,
    )
