"""Batch, epoch and multi-epoch refinement drivers."""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import torch

from .backend import Backend, select_backend
from .config import RefinementConfig
from .data import MeasurementData
from .engine import propagate, validate_inputs
from .errors import NumericalWarning
from .metrics import BatchMetrics
from .model import StateSpaceModel
from .update import ParameterUpdater

logger = logging.getLogger(__name__)


@dataclass
class RefinementProgress:
    """Mutable bookkeeping carried between batches.

    Holds the optimizer moments and the per-group counters of consecutive
    clamped updates, so that nothing about a refinement run lives in global
    state.
    """

    epoch: int = 0
    batch_index: int = 0
    update_step: int = 0
    optimizer_state: Dict[str, Dict[str, torch.Tensor]] = field(default_factory=dict)
    bound_hits: Optional[torch.Tensor] = None


@torch.no_grad()
def run_batch(
    model: StateSpaceModel,
    data: MeasurementData,
    config: RefinementConfig,
    *,
    beats: Optional[Sequence[int]] = None,
    backend: Optional[Backend] = None,
    progress: Optional[RefinementProgress] = None,
) -> Tuple[StateSpaceModel, BatchMetrics]:
    """Simulate ``beats``, accumulate gradients and apply one parameter update.

    Returns the model with new link parameters together with the batch
    metrics. ``model`` itself is left untouched, also when an error is raised.
    """
    beats = validate_inputs(model, data, beats)
    backend = backend or select_backend(config)
    progress = progress if progress is not None else RefinementProgress()

    result = propagate(model, data, beats, backend, config=config)
    metrics = BatchMetrics.from_steps(result.steps, beats)
    parameters = ParameterUpdater(config).apply(
        model.parameters, result.gradients, metrics.num_samples, progress
    )
    progress.batch_index += 1
    logger.debug(
        "epoch %d batch %d: loss=%.6g mse=%.6g reg=%.6g",
        progress.epoch,
        progress.batch_index,
        metrics.loss,
        metrics.loss_mse,
        metrics.loss_maximum_regularization,
    )
    return model.with_parameters(parameters), metrics


def run_epoch(
    model: StateSpaceModel,
    data: MeasurementData,
    config: RefinementConfig,
    *,
    backend: Optional[Backend] = None,
    progress: Optional[RefinementProgress] = None,
    generator: Optional[torch.Generator] = None,
) -> Tuple[StateSpaceModel, List[BatchMetrics]]:
    """One pass over all beats in shuffled batches of ``config.batch_size``."""
    validate_inputs(model, data)
    backend = backend or select_backend(config)
    progress = progress if progress is not None else RefinementProgress()

    order = torch.randperm(data.num_beats, generator=generator).tolist()
    size = config.batch_size or data.num_beats
    progress.batch_index = 0
    history: List[BatchMetrics] = []
    for start in range(0, len(order), size):
        # beats inside a batch are processed in index order
        batch = sorted(order[start : start + size])
        model, metrics = run_batch(
            model, data, config, beats=batch, backend=backend, progress=progress
        )
        history.append(metrics)
    progress.epoch += 1
    return model, history


def epoch_summary(batches: Sequence[BatchMetrics]) -> Dict[str, float]:
    """Sample-weighted mean of the batch metrics of one epoch."""
    total = sum(m.num_samples for m in batches)
    out = {"loss": 0.0, "loss_mse": 0.0, "loss_maximum_regularization": 0.0}
    for m in batches:
        w = m.num_samples / total
        out["loss"] += w * m.loss
        out["loss_mse"] += w * m.loss_mse
        out["loss_maximum_regularization"] += w * m.loss_maximum_regularization
    return out


def fit(
    model: StateSpaceModel,
    data: MeasurementData,
    config: RefinementConfig,
    epochs: int,
    *,
    backend: Optional[Backend] = None,
    progress: Optional[RefinementProgress] = None,
    generator: Optional[torch.Generator] = None,
    callback: Optional[Callable[[int, StateSpaceModel, Dict[str, float]], None]] = None,
) -> Tuple[StateSpaceModel, List[Dict[str, float]]]:
    """Run ``epochs`` epochs with the configured learning-rate schedule.

    Every ``learning_rate_reduction_interval`` epochs (not counting the first)
    the learning rate is multiplied by ``learning_rate_reduction_factor``.
    Training stops early when an epoch ends with a non-finite loss.
    ``callback(epoch, model, summary)`` is called after each epoch.
    """
    backend = backend or select_backend(config)
    progress = progress if progress is not None else RefinementProgress()
    learning_rate = config.learning_rate
    history: List[Dict[str, float]] = []

    for epoch in range(epochs):
        if (
            epoch != 0
            and config.learning_rate_reduction_interval > 0
            and config.learning_rate_reduction_factor > 0
            and epoch % config.learning_rate_reduction_interval == 0
        ):
            learning_rate *= config.learning_rate_reduction_factor
            logger.info("epoch %d: learning rate reduced to %.3g", epoch, learning_rate)
        epoch_config = replace(config, learning_rate=learning_rate)

        model, batches = run_epoch(
            model,
            data,
            epoch_config,
            backend=backend,
            progress=progress,
            generator=generator,
        )
        summary = epoch_summary(batches)
        summary["epoch"] = float(epoch)
        summary["learning_rate"] = learning_rate
        history.append(summary)
        logger.info(
            "epoch %d: loss=%.6g mse=%.6g", epoch, summary["loss"], summary["loss_mse"]
        )
        if callback is not None:
            callback(epoch, model, summary)
        if not math.isfinite(summary["loss"]):
            msg = f"non-finite loss after epoch {epoch}, stopping"
            logger.warning(msg)
            warnings.warn(msg, NumericalWarning, stacklevel=2)
            break

    return model, history
