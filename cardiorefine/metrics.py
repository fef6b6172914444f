"""Per-step and per-batch loss bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import torch


@dataclass
class StepMetrics:
    """Per-step values of a group of beats, each ``[beats, steps]``."""

    mse: torch.Tensor
    maximum_regularization: torch.Tensor
    loss: torch.Tensor

    @staticmethod
    def concat(parts: Sequence["StepMetrics"]) -> "StepMetrics":
        """Stack the parts along the beat axis in the given order."""
        return StepMetrics(
            torch.cat([p.mse for p in parts]),
            torch.cat([p.maximum_regularization for p in parts]),
            torch.cat([p.loss for p in parts]),
        )

    def to(self, device: torch.device | str) -> "StepMetrics":
        return StepMetrics(
            self.mse.to(device),
            self.maximum_regularization.to(device),
            self.loss.to(device),
        )


class MetricsAggregator:
    def __init__(
        self,
        num_beats: int,
        num_steps: int,
        reg_strength: float,
        *,
        dtype: torch.dtype = torch.float32,
        device: torch.device | str = "cpu",
    ):
        self.reg_strength = reg_strength
        kw = dict(dtype=dtype, device=device)
        self.mse = torch.zeros(num_beats, num_steps, **kw)
        self.reg = torch.zeros(num_beats, num_steps, **kw)

    def record_step(
        self, step: int, residuals: torch.Tensor, regularization_loss: torch.Tensor
    ) -> None:
        """``residuals`` is ``[B, sensors]``, ``regularization_loss`` ``[B]``."""
        self.mse[:, step] = residuals.pow(2).mean(dim=-1)
        self.reg[:, step] = regularization_loss

    def result(self) -> StepMetrics:
        return StepMetrics(
            self.mse, self.reg, self.reg_strength * self.reg + self.mse
        )


@dataclass
class BatchMetrics:
    """Loss summary of one batch. Scalars are means over all steps of all beats."""

    loss: float
    loss_mse: float
    loss_maximum_regularization: float
    num_samples: int
    beats: List[int] = field(default_factory=list)
    per_step: StepMetrics | None = None

    @classmethod
    def from_steps(cls, steps: StepMetrics, beats: Sequence[int]) -> "BatchMetrics":
        steps = steps.to("cpu")
        return cls(
            loss=float(steps.loss.mean().item()),
            loss_mse=float(steps.mse.mean().item()),
            loss_maximum_regularization=float(
                steps.maximum_regularization.mean().item()
            ),
            num_samples=steps.mse.numel(),
            beats=list(beats),
            per_step=steps,
        )

    def as_dict(self) -> Dict[str, float]:
        return {
            "loss": self.loss,
            "loss_mse": self.loss_mse,
            "loss_maximum_regularization": self.loss_maximum_regularization,
            "num_samples": float(self.num_samples),
        }
