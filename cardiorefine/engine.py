"""The shared per-step loop used by training, prediction and evaluation.

``propagate`` is written once against :class:`~cardiorefine.backend.Backend`.
For each step it simulates the link network, predicts measurements and, when
measured data is given, computes residuals, the maximum regularization, the
gradient contributions and the per-step metrics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import torch

from .backend import Backend
from .config import RefinementConfig
from .data import MeasurementData
from .derivation import DerivativeAccumulator, Gradients
from .errors import ConfigurationError
from .measurement import predict_measurements
from .metrics import MetricsAggregator, StepMetrics
from .model import StateSpaceModel
from .regularization import calculate_maximum_regularization
from .residual import calculate_mapped_residuals, calculate_residuals
from .simulation import VoxelStateSimulator

logger = logging.getLogger(__name__)


@dataclass
class BeatAccumulation:
    """What one pass over a group of beats produced."""

    predictions: torch.Tensor  # [B, T, M]
    states: Optional[torch.Tensor] = None  # [B, T, S]
    gradients: Optional[Gradients] = None
    steps: Optional[StepMetrics] = None

    @staticmethod
    def combine(parts: Sequence["BeatAccumulation"]) -> "BeatAccumulation":
        """Merge partial results; ``parts`` must be in beat order."""
        if len(parts) == 1:
            return parts[0]
        first = parts[0]
        gradients = None
        if first.gradients is not None:
            gradients = first.gradients
            for p in parts[1:]:
                gradients = gradients + p.gradients
        return BeatAccumulation(
            predictions=torch.cat([p.predictions for p in parts]),
            states=None
            if first.states is None
            else torch.cat([p.states for p in parts]),
            gradients=gradients,
            steps=None
            if first.steps is None
            else StepMetrics.concat([p.steps for p in parts]),
        )


def validate_inputs(
    model: StateSpaceModel,
    data: MeasurementData,
    beats: Optional[Sequence[int]] = None,
) -> List[int]:
    """Check that ``model`` and ``data`` agree; return the beat list to use."""
    if data.num_sensors != model.num_sensors:
        raise ConfigurationError(
            f"data has {data.num_sensors} sensors, measurement matrix has "
            f"{model.num_sensors}"
        )
    if model.num_measurement_beats not in (1, data.num_beats):
        raise ConfigurationError(
            f"{model.num_measurement_beats} measurement matrices for "
            f"{data.num_beats} beats"
        )
    if data.num_steps < 1:
        raise ConfigurationError("data must contain at least one step")
    if (
        model.control_function is not None
        and model.control_function.numel() < data.num_steps
    ):
        raise ConfigurationError(
            f"control function has {model.control_function.numel()} samples, "
            f"data has {data.num_steps} steps"
        )
    beats = list(range(data.num_beats)) if beats is None else [int(b) for b in beats]
    if not beats:
        raise ConfigurationError("no beats selected")
    bad = [b for b in beats if not 0 <= b < data.num_beats]
    if bad:
        raise ConfigurationError(
            f"beat indices {bad} out of range for {data.num_beats} beats"
        )
    return beats


def propagate(
    model: StateSpaceModel,
    data: MeasurementData,
    beats: Sequence[int],
    backend: Backend,
    *,
    config: Optional[RefinementConfig] = None,
    with_residuals: bool = True,
    return_states: bool = False,
) -> BeatAccumulation:
    """Run every step of ``beats`` on ``backend``.

    With ``with_residuals`` the measured data drives residuals, gradients and
    metrics; otherwise only predictions (and optionally states) are produced.
    Inputs must already have passed :func:`validate_inputs`.
    """
    config = config or RefinementConfig()
    num_steps = data.num_steps
    sim = VoxelStateSimulator(model, backend)
    device = backend.device
    mse_scale = config.mse_strength / model.num_sensors
    reg_scale = config.maximum_regularization_strength
    threshold = config.maximum_regularization_threshold

    def run(group: List[int]) -> BeatAccumulation:
        B = len(group)
        H = model.measurement_matrices_for(group).to(device)
        buffers = sim.new_buffers(B, num_steps)
        predictions = torch.zeros(
            B, num_steps, model.num_sensors, dtype=sim.dtype, device=device
        )
        if with_residuals:
            actual = data.at_beats(group, device=device, dtype=sim.dtype)
            acc = DerivativeAccumulator(
                sim,
                B,
                mse_scale=mse_scale,
                reg_scale=reg_scale,
                freeze_gains=config.freeze_gains,
                freeze_delays=config.freeze_delays,
            )
            metrics = MetricsAggregator(
                B, num_steps, reg_scale, dtype=sim.dtype, device=device
            )

        for t in range(num_steps):
            inputs = sim.step(buffers, t)
            state = buffers.states[:, t]
            predicted = predict_measurements(H, state)
            predictions[:, t] = predicted
            if with_residuals:
                residuals = calculate_residuals(predicted, actual[:, t])
                reg = calculate_maximum_regularization(state, threshold)
                if acc.needs_mapped_residuals:
                    mapped = calculate_mapped_residuals(H, residuals)
                    acc.accumulate(inputs, buffers, mapped, reg.source)
                metrics.record_step(t, residuals, reg.loss)
            buffers.rotate()

        if not with_residuals:
            return BeatAccumulation(
                predictions, buffers.states if return_states else None
            )
        return BeatAccumulation(
            predictions,
            buffers.states if return_states else None,
            acc.gradients(),
            metrics.result(),
        )

    logger.debug(
        "propagating %d beat(s) x %d step(s) on %s", len(beats), num_steps, backend.name
    )
    return BeatAccumulation.combine(backend.map_beats(run, beats))
