"""Maximum regularization: penalise voxel current magnitudes above a threshold."""

from typing import NamedTuple

import torch


class RegularizationResult(NamedTuple):
    loss: torch.Tensor  # [B] sum of squared excess over voxels
    source: torch.Tensor  # [B, S] per-component gradient source


def calculate_maximum_regularization(
    states: torch.Tensor, threshold: float
) -> RegularizationResult:
    """Regularization loss and source for one step of ``[B, S]`` states.

    The magnitude of a voxel is ``|x| + |y| + |z|``. Voxels at or below
    ``threshold`` contribute nothing; above it the excess ``e`` adds ``e**2`` to
    the loss and ``e * sign(component)`` to the source of each component.
    """
    B, S = states.shape
    components = states.reshape(B, S // 3, 3)
    magnitude = components.abs().sum(dim=-1)
    excess = torch.where(
        magnitude > threshold, magnitude - threshold, torch.zeros_like(magnitude)
    )
    source = excess.unsqueeze(-1) * torch.sign(components)
    return RegularizationResult(excess.pow(2).sum(dim=-1), source.reshape(B, S))
