"""Voxel-neighbourhood wiring helpers.

Each voxel listens to the 26 voxels of its 3x3x3 neighbourhood. For one
destination state (voxel component) this yields 78 incoming links: 26 offsets
times the 3 components of the source voxel. Offsets are enumerated with ``x``
slowest and ``z`` fastest, skipping the centre, which fixes the link and group
indices used throughout the package.
"""

from typing import List, Mapping, Optional, Tuple

import torch

from .constants import COEF_MARGIN, LINKS_PER_STATE
from .errors import ConfigurationError
from .model import LinkParameters, LinkTopology, VoxelGrid, VoxelType


def neighbor_offsets() -> List[Tuple[int, int, int]]:
    """Return the 26 ``(dx, dy, dz)`` offsets in group-index order."""
    return [
        (dx, dy, dz)
        for dx in (-1, 0, 1)
        for dy in (-1, 0, 1)
        for dz in (-1, 0, 1)
        if (dx, dy, dz) != (0, 0, 0)
    ]


def offset_to_group_index(dx: int, dy: int, dz: int) -> Optional[int]:
    if (dx, dy, dz) == (0, 0, 0):
        return None
    index = (dz + 1) + (dy + 1) * 3 + (dx + 1) * 9
    if index > 13:  # skip the centre voxel
        index -= 1
    return index


def offset_to_link_index(dx: int, dy: int, dz: int, axis: int) -> Optional[int]:
    """Index in ``[0, 78)`` of the link from source component ``axis`` at offset."""
    group = offset_to_group_index(dx, dy, dz)
    if group is None or not 0 <= axis < 3:
        return None
    return group * 3 + axis


def link_index_to_offset(index: int) -> Optional[Tuple[int, int, int, int]]:
    """Inverse of :func:`offset_to_link_index`: ``(dx, dy, dz, axis)``."""
    if not 0 <= index < LINKS_PER_STATE:
        return None
    dx, dy, dz = neighbor_offsets()[index // 3]
    return dx, dy, dz, index % 3


def grid_topology(grid: VoxelGrid, *, share_coefficients: bool = True) -> LinkTopology:
    """Build the all-pass link list for every active voxel of ``grid``.

    The destination voxel at grid index ``p`` reads from the source voxel at
    ``p + offset``. With ``share_coefficients`` the nine component pairs of one
    (destination voxel, offset) share a coefficient/delay group, otherwise
    every link gets its own group.
    """

    numbers = grid.numbers()
    shape = torch.tensor(numbers.shape)
    dst = grid.grid_indices()  # [V, 3]
    offsets = torch.tensor(neighbor_offsets(), dtype=torch.long)  # [26, 3]

    cand = dst[:, None, :] + offsets[None, :, :]  # [V, 26, 3]
    inside = ((cand >= 0) & (cand < shape)).all(dim=-1)
    cand = torch.minimum(cand.clamp_min(0), shape - 1)
    src_numbers = numbers[cand[..., 0], cand[..., 1], cand[..., 2]]
    valid = inside & (src_numbers >= 0)

    dst_voxel, offset_idx = valid.nonzero(as_tuple=True)
    src_voxel = src_numbers[dst_voxel, offset_idx]
    P = dst_voxel.numel()

    out_axis = torch.arange(3).view(1, 3, 1)
    in_axis = torch.arange(3).view(1, 1, 3)
    target = ((3 * dst_voxel).view(P, 1, 1) + out_axis).expand(P, 3, 3)
    source = ((3 * src_voxel).view(P, 1, 1) + in_axis).expand(P, 3, 3)
    if share_coefficients:
        group = torch.arange(P).view(P, 1, 1).expand(P, 3, 3)
        num_groups = P
    else:
        group = torch.arange(P * 9).view(P, 3, 3)
        num_groups = P * 9
    return LinkTopology(
        source.reshape(-1),
        target.reshape(-1),
        group.reshape(-1),
        num_states=grid.num_states,
        num_groups=num_groups,
    )


# ==========================================================
# Delay <-> all-pass coefficient conversions
# ==========================================================


def samples_to_coef(samples, margin: float = COEF_MARGIN) -> torch.Tensor:
    """All-pass coefficient realising the fractional part of ``samples``.

    A first-order all-pass with coefficient ``c`` has a low-frequency group
    delay of ``(1 - c) / (1 + c)`` samples.
    """
    samples = torch.as_tensor(samples, dtype=torch.float32)
    fractional = torch.remainder(samples, 1.0)
    coef = (1.0 - fractional) / (1.0 + fractional)
    return coef.clamp(margin, 1.0 - margin)


def coef_to_samples(coef) -> torch.Tensor:
    coef = torch.as_tensor(coef)
    return (1.0 - coef) / (1.0 + coef)


def samples_to_delay(samples) -> torch.Tensor:
    """Integer part of ``samples`` as a long tensor."""
    return torch.floor(torch.as_tensor(samples, dtype=torch.float32)).to(torch.long)


def parameters_from_velocities(
    grid: VoxelGrid,
    topology: LinkTopology,
    velocities_m_per_s: Mapping[VoxelType, float],
    sample_rate_hz: float,
    *,
    gain: float = 0.0,
    margin: float = COEF_MARGIN,
    dtype: torch.dtype = torch.float32,
) -> LinkParameters:
    """Initial delays/coefficients from voxel distances and propagation speed.

    The speed is looked up by the tissue type of the destination voxel of each
    group; the delay in samples is ``distance / speed * sample_rate_hz``.
    """

    positions = grid.positions_mm()
    types = grid.voxel_types()
    dst_voxel = topology.target // 3
    src_voxel = topology.source // 3
    distance_m = (positions[dst_voxel] - positions[src_voxel]).norm(dim=-1) / 1000.0

    speed_table = torch.zeros(max(int(t) for t in VoxelType) + 1)
    known = torch.zeros_like(speed_table, dtype=torch.bool)
    for voxel_type, speed in velocities_m_per_s.items():
        if speed <= 0:
            raise ConfigurationError(
                f"propagation velocity for {VoxelType(voxel_type).name} must be positive"
            )
        speed_table[int(voxel_type)] = float(speed)
        known[int(voxel_type)] = True
    link_types = types[dst_voxel]
    missing = ~known[link_types]
    if bool(missing.any()):
        names = sorted({VoxelType(int(t)).name for t in link_types[missing].tolist()})
        raise ConfigurationError(f"no propagation velocity for voxel types {names}")

    link_samples = distance_m / speed_table[link_types] * sample_rate_hz
    group_samples = torch.zeros(topology.num_groups).scatter_(
        0, topology.group, link_samples
    )
    return LinkParameters(
        torch.full((topology.num_links,), gain, dtype=dtype),
        samples_to_coef(group_samples, margin).to(dtype),
        samples_to_delay(group_samples),
    )
