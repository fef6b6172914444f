"""Voxel grid, link topology and the state-space model consumed by the engine.

The model is a network of first-order all-pass sections. Every link carries a
``gain`` of its own and reads its ``coefficient``/``delay`` pair from a
coefficient group, so several links can share one propagation path. The
topology is fixed at construction; only :class:`LinkParameters` change during
refinement and they are replaced as a whole once per batch.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Optional, Sequence, Tuple

import torch

from .errors import ConfigurationError


class VoxelType(enum.IntEnum):
    NONE = 0
    SINOATRIAL = 1
    ATRIUM = 2
    ATRIOVENTRICULAR = 3
    HPS = 4
    VENTRICLE = 5
    PATHOLOGICAL = 6


@dataclass
class VoxelGrid:
    """Regular voxel grid.

    Parameters
    ----------
    types:
        ``[X, Y, Z]`` integer tensor of :class:`VoxelType` values. Voxels of
        type ``NONE`` carry no state and take no part in the network.
    size_mm:
        Edge length of one voxel.
    origin_mm:
        Position of voxel ``(0, 0, 0)``.
    """

    types: torch.Tensor
    size_mm: float = 1.0
    origin_mm: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    def __post_init__(self) -> None:
        self.types = torch.as_tensor(self.types, dtype=torch.long)
        if self.types.dim() != 3:
            raise ConfigurationError(
                f"voxel types must be a 3-D grid, got shape {tuple(self.types.shape)}"
            )
        if self.size_mm <= 0:
            raise ConfigurationError(f"size_mm must be positive, got {self.size_mm}")

    @property
    def active(self) -> torch.Tensor:
        return self.types != VoxelType.NONE

    @property
    def num_voxels(self) -> int:
        return int(self.active.sum().item())

    @property
    def num_states(self) -> int:
        return 3 * self.num_voxels

    def numbers(self) -> torch.Tensor:
        """Voxel number per grid cell in C order, ``-1`` for empty cells."""
        active = self.active.flatten()
        numbers = torch.full(active.shape, -1, dtype=torch.long)
        numbers[active] = torch.arange(int(active.sum().item()))
        return numbers.view(self.types.shape)

    def grid_indices(self) -> torch.Tensor:
        """``[V, 3]`` grid index of every voxel, ordered by voxel number."""
        return self.active.nonzero(as_tuple=False)

    def positions_mm(self) -> torch.Tensor:
        origin = torch.tensor(self.origin_mm, dtype=torch.float32)
        return origin + self.grid_indices().to(torch.float32) * self.size_mm

    def voxel_types(self) -> torch.Tensor:
        return self.types[self.active]


@dataclass
class LinkTopology:
    """Flat edge list of the all-pass network.

    ``source[l]`` and ``target[l]`` are state indices, ``group[l]`` selects the
    coefficient/delay pair used by link ``l``.
    """

    source: torch.Tensor
    target: torch.Tensor
    group: torch.Tensor
    num_states: int
    num_groups: Optional[int] = None

    def __post_init__(self) -> None:
        self.source = torch.as_tensor(self.source, dtype=torch.long).flatten()
        self.target = torch.as_tensor(self.target, dtype=torch.long).flatten()
        self.group = torch.as_tensor(self.group, dtype=torch.long).flatten()
        n = self.source.numel()
        if self.target.numel() != n or self.group.numel() != n:
            raise ConfigurationError(
                "source, target and group must have the same number of links, got "
                f"{n}, {self.target.numel()}, {self.group.numel()}"
            )
        if self.num_groups is None:
            self.num_groups = int(self.group.max().item()) + 1 if n else 0
        if n:
            for name, idx, bound in (
                ("source", self.source, self.num_states),
                ("target", self.target, self.num_states),
                ("group", self.group, self.num_groups),
            ):
                if int(idx.min().item()) < 0 or int(idx.max().item()) >= bound:
                    raise ConfigurationError(
                        f"link {name} indices must lie in [0, {bound})"
                    )

    @property
    def num_links(self) -> int:
        return self.source.numel()

    def to(self, device: torch.device | str) -> "LinkTopology":
        return LinkTopology(
            self.source.to(device),
            self.target.to(device),
            self.group.to(device),
            self.num_states,
            self.num_groups,
        )


@dataclass
class LinkParameters:
    """Trainable parameters: per-link gains, per-group coefficients and delays."""

    gains: torch.Tensor
    coefs: torch.Tensor
    delays: torch.Tensor

    def __post_init__(self) -> None:
        self.gains = torch.as_tensor(self.gains)
        if not self.gains.is_floating_point():
            self.gains = self.gains.to(torch.float32)
        self.coefs = torch.as_tensor(self.coefs, dtype=self.gains.dtype)
        self.delays = torch.as_tensor(self.delays, dtype=torch.long)
        if self.coefs.shape != self.delays.shape:
            raise ConfigurationError(
                f"coefs {tuple(self.coefs.shape)} and delays "
                f"{tuple(self.delays.shape)} must have the same shape"
            )
        if self.delays.numel() and int(self.delays.min().item()) < 0:
            raise ConfigurationError("delays must be non-negative")

    @classmethod
    def initial(
        cls,
        topology: LinkTopology,
        *,
        gain: float = 0.0,
        coef: float = 0.5,
        delay: int = 1,
        dtype: torch.dtype = torch.float32,
    ) -> "LinkParameters":
        return cls(
            torch.full((topology.num_links,), gain, dtype=dtype),
            torch.full((topology.num_groups,), coef, dtype=dtype),
            torch.full((topology.num_groups,), delay, dtype=torch.long),
        )

    def clone(self) -> "LinkParameters":
        return LinkParameters(
            self.gains.clone(), self.coefs.clone(), self.delays.clone()
        )

    def to(self, device: torch.device | str) -> "LinkParameters":
        return LinkParameters(
            self.gains.to(device), self.coefs.to(device), self.delays.to(device)
        )


@dataclass
class StateSpaceModel:
    """Everything the engine needs from the model collaborator.

    ``measurement_matrices`` is ``[beats, sensors, states]``; a single matrix
    (first dimension 1, or a 2-D tensor) is shared by all beats. The optional
    control input adds ``control_matrix * control_function[t]`` to the state
    at every step and is what excites the network.
    """

    topology: LinkTopology
    parameters: LinkParameters
    measurement_matrices: torch.Tensor
    control_matrix: Optional[torch.Tensor] = None
    control_function: Optional[torch.Tensor] = None

    def __post_init__(self) -> None:
        dtype = self.parameters.gains.dtype
        H = torch.as_tensor(self.measurement_matrices, dtype=dtype)
        if H.dim() == 2:
            H = H.unsqueeze(0)
        if H.dim() != 3:
            raise ConfigurationError(
                "measurement_matrices must be [beats, sensors, states], got shape "
                f"{tuple(H.shape)}"
            )
        self.measurement_matrices = H
        topo, params = self.topology, self.parameters
        if params.gains.shape != (topo.num_links,):
            raise ConfigurationError(
                f"expected {topo.num_links} gains, got {tuple(params.gains.shape)}"
            )
        if params.coefs.shape != (topo.num_groups,):
            raise ConfigurationError(
                f"expected {topo.num_groups} coefficient groups, got "
                f"{tuple(params.coefs.shape)}"
            )
        if H.shape[2] != topo.num_states:
            raise ConfigurationError(
                f"measurement matrix covers {H.shape[2]} states, topology has "
                f"{topo.num_states}"
            )
        if (self.control_matrix is None) != (self.control_function is None):
            raise ConfigurationError(
                "control_matrix and control_function must be given together"
            )
        if self.control_matrix is not None:
            self.control_matrix = torch.as_tensor(
                self.control_matrix, dtype=dtype
            ).flatten()
            self.control_function = torch.as_tensor(
                self.control_function, dtype=dtype
            ).flatten()
            if self.control_matrix.numel() != topo.num_states:
                raise ConfigurationError(
                    f"control_matrix has {self.control_matrix.numel()} entries, "
                    f"expected {topo.num_states}"
                )

    @property
    def num_states(self) -> int:
        return self.topology.num_states

    @property
    def num_voxels(self) -> int:
        return self.topology.num_states // 3

    @property
    def num_sensors(self) -> int:
        return self.measurement_matrices.shape[1]

    @property
    def num_measurement_beats(self) -> int:
        return self.measurement_matrices.shape[0]

    @property
    def dtype(self) -> torch.dtype:
        return self.parameters.gains.dtype

    def measurement_matrices_for(self, beats: Sequence[int]) -> torch.Tensor:
        """Return ``[len(beats), sensors, states]`` matrices for ``beats``."""
        H = self.measurement_matrices
        if H.shape[0] == 1:
            return H.expand(len(beats), -1, -1)
        index = torch.as_tensor(list(beats), dtype=torch.long, device=H.device)
        return H.index_select(0, index)

    def with_parameters(self, parameters: LinkParameters) -> "StateSpaceModel":
        return replace(self, parameters=parameters)

    def to(self, device: torch.device | str) -> "StateSpaceModel":
        return StateSpaceModel(
            self.topology.to(device),
            self.parameters.to(device),
            self.measurement_matrices.to(device),
            None if self.control_matrix is None else self.control_matrix.to(device),
            None if self.control_function is None else self.control_function.to(device),
        )
