"""Pytest configuration for cardiorefine tests.

This file guarantees that the repository root is present on ``sys.path`` so
that ``import cardiorefine`` works regardless of the working directory from
which tests are invoked. It also provides the small networks shared by several
test modules.
"""

import sys
from pathlib import Path

import pytest
import torch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cardiorefine import (  # noqa: E402
    LinkParameters,
    LinkTopology,
    MeasurementData,
    StateSpaceModel,
    VoxelGrid,
    grid_topology,
)


def make_chain_model(
    coef=0.5, delay=1, gain=1.0, num_steps=5, dtype=torch.float64
):
    """Two voxels, one link from state 0 (x of voxel 0) to state 3 (x of voxel 1).

    A unit impulse is injected into state 0 at step 0 and a single sensor reads
    state 3.
    """
    topology = LinkTopology(source=[0], target=[3], group=[0], num_states=6)
    parameters = LinkParameters(
        torch.tensor([gain], dtype=dtype),
        torch.tensor([coef], dtype=dtype),
        torch.tensor([delay]),
    )
    H = torch.zeros(1, 6, dtype=dtype)
    H[0, 3] = 1.0
    control = torch.zeros(6, dtype=dtype)
    control[0] = 1.0
    impulse = torch.zeros(num_steps, dtype=dtype)
    impulse[0] = 1.0
    return StateSpaceModel(topology, parameters, H, control, impulse)


@pytest.fixture
def chain_model():
    return make_chain_model()


@pytest.fixture
def chain_data():
    return MeasurementData(torch.zeros(1, 5, 1, dtype=torch.float64))


def make_grid_model(
    shape=(3, 2, 2),
    num_sensors=4,
    num_steps=12,
    seed=0,
    dtype=torch.float64,
):
    """Small fully populated grid with random gains, coefficients and sensors."""
    gen = torch.Generator().manual_seed(seed)
    grid = VoxelGrid(torch.full(shape, 5, dtype=torch.long))
    topology = grid_topology(grid)
    parameters = LinkParameters(
        0.05 * torch.randn(topology.num_links, generator=gen, dtype=dtype),
        0.2 + 0.6 * torch.rand(topology.num_groups, generator=gen, dtype=dtype),
        torch.randint(1, 4, (topology.num_groups,), generator=gen),
    )
    H = torch.randn(num_sensors, topology.num_states, generator=gen, dtype=dtype)
    control = torch.zeros(topology.num_states, dtype=dtype)
    control[:3] = 1.0
    pulse = torch.zeros(num_steps, dtype=dtype)
    pulse[:3] = torch.tensor([1.0, 0.5, 0.25], dtype=dtype)
    return StateSpaceModel(topology, parameters, H, control, pulse)


@pytest.fixture
def grid_model():
    return make_grid_model()


@pytest.fixture
def grid_data(grid_model):
    gen = torch.Generator().manual_seed(1)
    return MeasurementData(
        torch.randn(3, 12, grid_model.num_sensors, generator=gen, dtype=torch.float64)
    )
