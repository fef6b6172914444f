"""Measured sensor data handed to the engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import torch

from .errors import ConfigurationError


@dataclass
class MeasurementData:
    """Ground-truth sensor readings, ``[beats, steps, sensors]``."""

    measurements: torch.Tensor

    def __post_init__(self) -> None:
        self.measurements = torch.as_tensor(self.measurements)
        if not self.measurements.is_floating_point():
            self.measurements = self.measurements.to(torch.float32)
        if self.measurements.dim() != 3:
            raise ConfigurationError(
                "measurements must be [beats, steps, sensors], got shape "
                f"{tuple(self.measurements.shape)}"
            )

    @property
    def num_beats(self) -> int:
        return self.measurements.shape[0]

    @property
    def num_steps(self) -> int:
        return self.measurements.shape[1]

    @property
    def num_sensors(self) -> int:
        return self.measurements.shape[2]

    def at_beats(
        self,
        beats: Sequence[int],
        device: torch.device | str | None = None,
        dtype: torch.dtype | None = None,
    ) -> torch.Tensor:
        """Return ``[len(beats), steps, sensors]`` readings for ``beats``."""
        index = torch.as_tensor(list(beats), dtype=torch.long)
        out = self.measurements.index_select(0, index.to(self.measurements.device))
        return out.to(device=device, dtype=dtype)
