import pytest
import torch

from cardiorefine import (
    AcceleratorBackend,
    AcceleratorError,
    LinkParameters,
    RefinementConfig,
    SequentialBackend,
    StateSpaceModel,
    run_batch,
    select_backend,
)
from cardiorefine.backend import ReductionPlan
from cardiorefine.engine import propagate


def test_reduction_plan_layout():
    plan = ReductionPlan(torch.tensor([2, 0, 2, 1]), size=4)
    assert plan.padded_index.tolist() == [[1, 4], [3, 4], [0, 2], [4, 4]]


@pytest.mark.parametrize(
    "backend", [SequentialBackend(), AcceleratorBackend("cpu")], ids=["seq", "acc"]
)
def test_segment_sum_matches_index_add(backend):
    gen = torch.Generator().manual_seed(0)
    index = torch.randint(0, 7, (40,), generator=gen)
    values = torch.randn(3, 40, generator=gen, dtype=torch.float64)
    expected = torch.zeros(3, 9, dtype=torch.float64).index_add_(1, index, values)
    out = backend.segment_sum(values, ReductionPlan(index, 9))
    assert torch.allclose(out, expected)


def _run(model, data, backend):
    cfg = RefinementConfig(maximum_regularization_threshold=0.05)
    return propagate(model, data, [0, 1, 2], backend, config=cfg)


def test_accelerator_parity_with_sequential(grid_model, grid_data):
    seq = _run(grid_model, grid_data, SequentialBackend())
    acc = _run(grid_model, grid_data, AcceleratorBackend("cpu"))
    assert torch.allclose(acc.predictions, seq.predictions, rtol=1e-4, atol=1e-10)
    assert torch.allclose(acc.gradients.gains, seq.gradients.gains, rtol=1e-4, atol=1e-10)
    assert torch.allclose(acc.gradients.coefs, seq.gradients.coefs, rtol=1e-4, atol=1e-10)
    assert torch.allclose(acc.steps.loss, seq.steps.loss, rtol=1e-4, atol=1e-10)
    # the regularization is actually exercised
    assert seq.steps.maximum_regularization.sum() > 0


def test_sequential_is_deterministic(grid_model, grid_data):
    first = _run(grid_model, grid_data, SequentialBackend())
    second = _run(grid_model, grid_data, SequentialBackend())
    threaded = _run(grid_model, grid_data, SequentialBackend(num_threads=3))
    for other in (second, threaded):
        assert torch.equal(first.gradients.gains, other.gradients.gains)
        assert torch.equal(first.gradients.coefs, other.gradients.coefs)
        assert torch.equal(first.steps.loss, other.steps.loss)


def test_map_beats_returns_beat_order():
    backend = SequentialBackend(num_threads=4)
    assert backend.map_beats(lambda group: group[0] * 10, [3, 1, 2]) == [30, 10, 20]


def test_accelerator_wraps_device_failures():
    backend = AcceleratorBackend("cpu")

    def failing(group):
        raise RuntimeError("out of memory")

    with pytest.raises(AcceleratorError):
        backend.map_beats(failing, [0, 1])


@pytest.mark.skipif(torch.cuda.is_available(), reason="CUDA is available")
def test_missing_cuda_raises():
    with pytest.raises(AcceleratorError):
        AcceleratorBackend("cuda")
    with pytest.raises(AcceleratorError):
        select_backend(RefinementConfig(use_accelerator=True))


def test_select_backend():
    assert isinstance(select_backend(RefinementConfig()), SequentialBackend)
    backend = select_backend(
        RefinementConfig(use_accelerator=True, accelerator_device="cpu")
    )
    assert isinstance(backend, AcceleratorBackend)


@pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")
def test_cuda_parity(grid_model, grid_data):
    seq = _run(grid_model, grid_data, SequentialBackend())
    acc = _run(grid_model, grid_data, AcceleratorBackend("cuda"))
    assert torch.allclose(acc.gradients.gains.cpu(), seq.gradients.gains, rtol=1e-4, atol=1e-10)
    assert torch.allclose(acc.gradients.coefs.cpu(), seq.gradients.coefs, rtol=1e-4, atol=1e-10)


def _per_beat_model(model, num_beats=3):
    gen = torch.Generator().manual_seed(2)
    H = torch.randn(
        num_beats, model.num_sensors, model.num_states, generator=gen, dtype=torch.float64
    )
    delays = model.parameters.delays.clone()
    delays[::5] = 0
    params = LinkParameters(model.parameters.gains, model.parameters.coefs, delays)
    return StateSpaceModel(
        model.topology, params, H, model.control_matrix, model.control_function
    )


def test_per_beat_matrices_parity(grid_model, grid_data):
    model = _per_beat_model(grid_model)
    cfg = RefinementConfig(maximum_regularization_threshold=0.05)
    seq = propagate(
        model, grid_data, [0, 1, 2], SequentialBackend(num_threads=3),
        config=cfg, return_states=True,
    )
    acc = propagate(model, grid_data, [0, 1, 2], AcceleratorBackend("cpu"), config=cfg)
    # each beat is read through its own matrix
    for b in range(3):
        expected = seq.states[b] @ model.measurement_matrices[b].T
        assert torch.allclose(seq.predictions[b], expected)
    assert torch.allclose(acc.predictions, seq.predictions, rtol=1e-4, atol=1e-10)
    assert torch.allclose(acc.gradients.gains, seq.gradients.gains, rtol=1e-4, atol=1e-10)
    assert torch.allclose(acc.gradients.coefs, seq.gradients.coefs, rtol=1e-4, atol=1e-10)
    assert torch.allclose(acc.steps.loss, seq.steps.loss, rtol=1e-4, atol=1e-10)


def test_per_beat_matrices_run_batch_is_deterministic(grid_model, grid_data):
    model = _per_beat_model(grid_model)
    cfg = RefinementConfig(learning_rate=1e-3, num_threads=3)
    first, m1 = run_batch(model, grid_data, cfg)
    second, m2 = run_batch(model, grid_data, cfg)
    assert torch.equal(first.parameters.gains, second.parameters.gains)
    assert torch.equal(first.parameters.coefs, second.parameters.coefs)
    assert torch.equal(first.parameters.delays, second.parameters.delays)
    assert m1.loss == m2.loss
