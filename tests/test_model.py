import pytest
import torch

from cardiorefine import (
    ConfigurationError,
    LinkParameters,
    LinkTopology,
    RefinementConfig,
    StateSpaceModel,
    VoxelGrid,
    VoxelType,
)


def test_voxel_grid_numbering():
    types = torch.zeros(2, 2, 1, dtype=torch.long)
    types[0, 1, 0] = int(VoxelType.ATRIUM)
    types[1, 0, 0] = int(VoxelType.VENTRICLE)
    grid = VoxelGrid(types, size_mm=2.0, origin_mm=(1.0, 0.0, 0.0))
    assert grid.num_voxels == 2
    assert grid.num_states == 6
    assert grid.numbers().tolist() == [[[-1], [0]], [[1], [-1]]]
    assert torch.equal(grid.grid_indices(), torch.tensor([[0, 1, 0], [1, 0, 0]]))
    assert torch.allclose(
        grid.positions_mm(), torch.tensor([[1.0, 2.0, 0.0], [3.0, 0.0, 0.0]])
    )
    assert grid.voxel_types().tolist() == [VoxelType.ATRIUM, VoxelType.VENTRICLE]


def test_voxel_grid_rejects_bad_shape():
    with pytest.raises(ConfigurationError):
        VoxelGrid(torch.ones(2, 2, dtype=torch.long))


def test_topology_validation():
    with pytest.raises(ConfigurationError):
        LinkTopology(source=[0, 1], target=[1], group=[0, 0], num_states=3)
    with pytest.raises(ConfigurationError):
        LinkTopology(source=[0], target=[3], group=[0], num_states=3)
    topo = LinkTopology(source=[0, 1], target=[1, 2], group=[0, 1], num_states=3)
    assert topo.num_groups == 2
    assert topo.num_links == 2


def test_parameters_validation_and_clone():
    with pytest.raises(ConfigurationError):
        LinkParameters([1.0], [0.5, 0.5], [1])
    with pytest.raises(ConfigurationError):
        LinkParameters([1.0], [0.5], [-1])
    params = LinkParameters([1.0], [0.5], [2])
    copy = params.clone()
    copy.gains += 1
    assert params.gains.item() == 1.0
    assert params.delays.dtype == torch.long


def test_model_validation(chain_model):
    topo, params = chain_model.topology, chain_model.parameters
    with pytest.raises(ConfigurationError):
        StateSpaceModel(topo, params, torch.zeros(1, 5))
    with pytest.raises(ConfigurationError):
        StateSpaceModel(topo, params, torch.zeros(1, 6), control_matrix=torch.ones(6))
    with pytest.raises(ConfigurationError):
        StateSpaceModel(
            topo, params, torch.zeros(1, 6), torch.ones(5), torch.ones(4)
        )
    bad = LinkParameters([1.0, 1.0], [0.5], [1])
    with pytest.raises(ConfigurationError):
        StateSpaceModel(topo, bad, torch.zeros(1, 6))


def test_measurement_matrices_for_shared_and_per_beat(chain_model):
    H = chain_model.measurement_matrices_for([0, 2, 5])
    assert H.shape == (3, 1, 6)
    per_beat = torch.arange(3 * 6, dtype=torch.float64).view(3, 1, 6)
    model = StateSpaceModel(chain_model.topology, chain_model.parameters, per_beat)
    assert model.num_measurement_beats == 3
    assert torch.equal(model.measurement_matrices_for([2, 0]), per_beat[[2, 0]])


def test_config_validation():
    with pytest.raises(ConfigurationError):
        RefinementConfig(learning_rate=0.0)
    with pytest.raises(ConfigurationError):
        RefinementConfig(batch_size=-1)
    with pytest.raises(ConfigurationError):
        RefinementConfig(coefficient_margin=0.5)
    with pytest.raises(ConfigurationError):
        RefinementConfig(optimizer="rmsprop")
    with pytest.raises(ConfigurationError):
        RefinementConfig(delay_max=0)
    cfg = RefinementConfig(optimizer="ADAM", num_threads=0, bound_warning_patience=0)
    assert cfg.optimizer == "adam"
    assert cfg.num_threads == 1
    assert cfg.bound_warning_patience == 1
