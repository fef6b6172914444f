"""Linear measurement model: predicted sensor readings from system states."""

from __future__ import annotations

import math

import torch

from .constants import PICO, VACUUM_PERMEABILITY
from .errors import ConfigurationError


def predict_measurements(
    measurement_matrices: torch.Tensor, states: torch.Tensor
) -> torch.Tensor:
    """``[B, M, S] @ [B, S] -> [B, M]`` predicted readings for one step."""
    return torch.bmm(measurement_matrices, states.unsqueeze(-1)).squeeze(-1)


def biot_savart_measurement_matrix(
    voxel_positions_mm: torch.Tensor,
    sensor_positions_mm: torch.Tensor,
    sensor_orientations: torch.Tensor,
    voxel_size_mm: float,
) -> torch.Tensor:
    """Dipole lead field of voxel current densities seen by oriented sensors.

    Returns a ``[sensors, 3 * voxels]`` matrix in picotesla per unit current
    density. Each voxel contributes ``mu0 * V / (4 pi) * (d x o) / |d|^3`` where
    ``d`` is the voxel-to-sensor distance and ``o`` the sensor orientation.
    """

    voxels = torch.as_tensor(voxel_positions_mm, dtype=torch.float32)
    sensors = torch.as_tensor(sensor_positions_mm, dtype=torch.float32)
    orientations = torch.as_tensor(sensor_orientations, dtype=torch.float32)
    if voxels.dim() != 2 or voxels.shape[1] != 3:
        raise ConfigurationError("voxel positions must be [voxels, 3]")
    if sensors.shape != orientations.shape or sensors.shape[-1] != 3:
        raise ConfigurationError(
            "sensor positions and orientations must both be [sensors, 3]"
        )

    volume_m3 = (voxel_size_mm / 1000.0) ** 3
    factor = VACUUM_PERMEABILITY * volume_m3 / (4.0 * math.pi) * PICO

    distance_m = (sensors[:, None, :] - voxels[None, :, :]) / 1000.0  # [M, V, 3]
    norm_cubed = distance_m.norm(dim=-1, keepdim=True).pow(3)
    o = orientations[:, None, :].expand_as(distance_m)
    lead = factor * torch.linalg.cross(distance_m, o, dim=-1) / norm_cubed
    return lead.reshape(sensors.shape[0], -1)
