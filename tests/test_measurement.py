import pytest
import torch

from cardiorefine import ConfigurationError, biot_savart_measurement_matrix
from cardiorefine.measurement import predict_measurements
from cardiorefine.regularization import calculate_maximum_regularization
from cardiorefine.residual import calculate_mapped_residuals, calculate_residuals


def test_predict_measurements_per_beat_matrices():
    H = torch.tensor([[[1.0, 0.0, 2.0]], [[0.0, 1.0, 0.0]]])
    states = torch.tensor([[1.0, 5.0, 3.0], [1.0, 5.0, 3.0]])
    assert torch.equal(predict_measurements(H, states), torch.tensor([[7.0], [5.0]]))


def test_residual_and_adjoint_projection():
    H = torch.tensor([[[1.0, 0.0, 2.0], [0.0, 1.0, 0.0]]])
    predicted = torch.tensor([[3.0, 1.0]])
    actual = torch.tensor([[1.0, 1.5]])
    r = calculate_residuals(predicted, actual)
    assert torch.equal(r, torch.tensor([[2.0, -0.5]]))
    mapped = calculate_mapped_residuals(H, r)
    assert torch.equal(mapped, torch.tensor([[2.0, -0.5, 4.0]]))


def test_maximum_regularization_excess():
    states = torch.tensor([[0.5, -0.5, 0.5, 0.1, 0.2, 0.3]])
    result = calculate_maximum_regularization(states, threshold=1.0)
    assert torch.allclose(result.loss, torch.tensor([0.25]))
    assert torch.allclose(
        result.source, torch.tensor([[0.5, -0.5, 0.5, 0.0, 0.0, 0.0]])
    )


def test_maximum_regularization_at_threshold_is_zero():
    states = torch.tensor([[1.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
    result = calculate_maximum_regularization(states, threshold=1.0)
    assert torch.count_nonzero(result.loss) == 0
    assert torch.count_nonzero(result.source) == 0


def test_biot_savart_single_dipole():
    H = biot_savart_measurement_matrix(
        voxel_positions_mm=torch.zeros(1, 3),
        sensor_positions_mm=torch.tensor([[0.0, 0.0, 10.0]]),
        sensor_orientations=torch.tensor([[1.0, 0.0, 0.0]]),
        voxel_size_mm=1.0,
    )
    assert H.shape == (1, 3)
    # mu0 / (4 pi) * 1 mm^3 * 1e12 * 0.01 m / (0.01 m)^3 = 1 pT
    assert torch.allclose(H, torch.tensor([[0.0, 1.0, 0.0]]), rtol=1e-4, atol=1e-6)


def test_biot_savart_rejects_mismatched_sensors():
    with pytest.raises(ConfigurationError):
        biot_savart_measurement_matrix(
            torch.zeros(1, 3), torch.ones(2, 3), torch.ones(1, 3), 1.0
        )
