"""Prediction, evaluation and synthetic ground-truth helpers."""

from typing import Dict, Optional, Tuple, Union

import torch

from .backend import Backend, SequentialBackend
from .config import RefinementConfig
from .data import MeasurementData
from .engine import propagate, validate_inputs
from .errors import ConfigurationError
from .metrics import BatchMetrics
from .model import LinkParameters, StateSpaceModel
from .wiring import coef_to_samples


@torch.no_grad()
def predict_only(
    model: StateSpaceModel,
    data: MeasurementData,
    *,
    backend: Optional[Backend] = None,
    return_states: bool = False,
) -> Union[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
    """Predicted measurements ``[beats, steps, sensors]`` for every beat of ``data``.

    Only the shape of ``data`` is used. With ``return_states`` the system
    states ``[beats, steps, states]`` are returned as well.
    """
    beats = validate_inputs(model, data)
    backend = backend or SequentialBackend()
    result = propagate(
        model,
        data,
        beats,
        backend,
        with_residuals=False,
        return_states=return_states,
    )
    predictions = result.predictions.cpu()
    if return_states:
        return predictions, result.states.cpu()
    return predictions


@torch.no_grad()
def evaluate(
    model: StateSpaceModel,
    data: MeasurementData,
    config: Optional[RefinementConfig] = None,
    *,
    backend: Optional[Backend] = None,
) -> BatchMetrics:
    """Loss of ``model`` on all beats of ``data`` without updating it."""
    beats = validate_inputs(model, data)
    backend = backend or SequentialBackend()
    result = propagate(model, data, beats, backend, config=config)
    return BatchMetrics.from_steps(result.steps, beats)


@torch.no_grad()
def simulate_measurements(
    model: StateSpaceModel,
    num_beats: int,
    num_steps: int,
    noise_std: float = 0.0,
    generator: Optional[torch.Generator] = None,
    *,
    backend: Optional[Backend] = None,
) -> MeasurementData:
    """Synthesise measurements from ``model``, optionally with Gaussian noise."""
    if num_beats < 1 or num_steps < 1:
        raise ConfigurationError("num_beats and num_steps must be positive")
    if noise_std < 0:
        raise ConfigurationError(f"noise_std must be >= 0, got {noise_std}")
    shape = MeasurementData(
        torch.zeros(num_beats, num_steps, model.num_sensors, dtype=model.dtype)
    )
    predictions = predict_only(model, shape, backend=backend)
    if noise_std > 0:
        noise = torch.randn(
            predictions.shape, generator=generator, dtype=predictions.dtype
        )
        predictions = predictions + noise_std * noise
    return MeasurementData(predictions)


def effective_delays(parameters: LinkParameters) -> torch.Tensor:
    """Fractional delay in samples per coefficient group."""
    return parameters.delays.to(parameters.coefs.dtype) + coef_to_samples(
        parameters.coefs
    )


def parameter_deltas(
    estimated: LinkParameters, actual: LinkParameters
) -> Dict[str, float]:
    """Mean and maximum absolute deviation of gains and effective delays."""
    if (
        estimated.gains.shape != actual.gains.shape
        or estimated.coefs.shape != actual.coefs.shape
    ):
        raise ConfigurationError("parameter sets describe different topologies")
    gains = (estimated.gains - actual.gains.to(estimated.gains.dtype)).abs()
    delays = (
        effective_delays(estimated) - effective_delays(actual).to(estimated.coefs.dtype)
    ).abs()
    return {
        "gains_mean": float(gains.mean().item()) if gains.numel() else 0.0,
        "gains_max": float(gains.max().item()) if gains.numel() else 0.0,
        "delays_mean": float(delays.mean().item()) if delays.numel() else 0.0,
        "delays_max": float(delays.max().item()) if delays.numel() else 0.0,
    }
