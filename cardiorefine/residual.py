"""Sensor residuals and their adjoint projection into state space."""

import torch


def calculate_residuals(predicted: torch.Tensor, actual: torch.Tensor) -> torch.Tensor:
    """``predicted - actual`` for one step, ``[B, M]``."""
    return predicted - actual


def calculate_mapped_residuals(
    measurement_matrices: torch.Tensor, residuals: torch.Tensor
) -> torch.Tensor:
    """Adjoint projection ``H^T r``: ``[B, M, S]`` and ``[B, M]`` -> ``[B, S]``.

    Avoids materialising the Jacobian of the measurements w.r.t. the states.
    """
    return torch.bmm(measurement_matrices.transpose(1, 2), residuals.unsqueeze(-1)).squeeze(-1)
