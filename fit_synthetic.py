import argparse
import logging
from dataclasses import dataclass

import torch

from cardiorefine import (
    AcceleratorError,
    LinkParameters,
    MeasurementData,
    RefinementConfig,
    SequentialBackend,
    StateSpaceModel,
    VoxelGrid,
    VoxelType,
    biot_savart_measurement_matrix,
    evaluate,
    fit,
    grid_topology,
    parameter_deltas,
    parameters_from_velocities,
    select_backend,
    simulate_measurements,
)


@dataclass
class FitHyperParams:
    """Knobs controlling the synthetic refinement demo."""

    grid: tuple = (4, 4, 2)
    sensors_per_axis: int = 4
    sample_rate_hz: float = 2000.0
    velocity_m_per_s: float = 0.4
    num_beats: int = 4
    num_steps: int = 60
    noise_std: float = 0.0
    epochs: int = 20
    gain: float = 0.02
    gain_perturbation: float = 0.5
    seed: int | None = None


def build_model(hparams: FitHyperParams) -> StateSpaceModel:
    types = torch.full(hparams.grid, int(VoxelType.VENTRICLE), dtype=torch.long)
    grid = VoxelGrid(types, size_mm=2.0)
    topology = grid_topology(grid)
    parameters = parameters_from_velocities(
        grid,
        topology,
        {VoxelType.VENTRICLE: hparams.velocity_m_per_s},
        hparams.sample_rate_hz,
        gain=hparams.gain,
    )

    # planar sensor array 20 mm above the grid, reading the x field component
    n = hparams.sensors_per_axis
    xs = torch.linspace(0.0, 2.0 * hparams.grid[0], n)
    ys = torch.linspace(0.0, 2.0 * hparams.grid[1], n)
    sx, sy = torch.meshgrid(xs, ys, indexing="ij")
    sensors = torch.stack([sx.flatten(), sy.flatten(), torch.full((n * n,), 20.0)], -1)
    orientations = torch.zeros_like(sensors)
    orientations[:, 0] = 1.0
    H = biot_savart_measurement_matrix(
        grid.positions_mm(), sensors, orientations, grid.size_mm
    )

    control = torch.zeros(topology.num_states)
    control[:3] = 1.0
    pulse = torch.zeros(hparams.num_steps)
    pulse[:5] = torch.hann_window(7)[1:6]
    return StateSpaceModel(topology, parameters, H, control, pulse)


def perturbed(model: StateSpaceModel, scale: float, gen: torch.Generator) -> StateSpaceModel:
    p = model.parameters
    noise = 1.0 + scale * (2.0 * torch.rand(p.gains.shape, generator=gen) - 1.0)
    return model.with_parameters(LinkParameters(p.gains * noise, p.coefs, p.delays))


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed (default: random)",
    )
    parser.add_argument("--epochs", type=int, default=20, help="Training epochs")
    parser.add_argument(
        "--learning-rate", type=float, default=1.0, help="Initial learning rate"
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=0,
        help="Beats per parameter update (0 uses all beats)",
    )
    parser.add_argument(
        "--optimizer", choices=["sgd", "adam"], default="adam", help="Update rule"
    )
    parser.add_argument(
        "--noise-std",
        type=float,
        default=0.0,
        help="Gaussian noise added to the synthetic measurements",
    )
    parser.add_argument(
        "--accelerator",
        action="store_true",
        help="Run the passes on the accelerator backend",
    )
    parser.add_argument(
        "--device",
        type=str,
        default="cuda",
        help="Accelerator device (cuda, mps or cpu)",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=1,
        help="Beat-level worker threads on the sequential backend",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Log progress at debug level"
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    hparams = FitHyperParams(
        epochs=args.epochs, noise_std=args.noise_std, seed=args.seed
    )
    gen = torch.Generator()
    if hparams.seed is not None:
        gen.manual_seed(hparams.seed)
    else:
        gen.seed()

    truth = build_model(hparams)
    data: MeasurementData = simulate_measurements(
        truth, hparams.num_beats, hparams.num_steps, hparams.noise_std, gen
    )
    start = perturbed(truth, hparams.gain_perturbation, gen)

    cfg = RefinementConfig(
        learning_rate=args.learning_rate,
        batch_size=args.batch_size,
        optimizer=args.optimizer,
        freeze_delays=True,
        maximum_regularization_threshold=10.0,
        use_accelerator=args.accelerator,
        accelerator_device=args.device,
        num_threads=args.threads,
    )
    try:
        backend = select_backend(cfg)
    except AcceleratorError as e:
        logging.warning("accelerator unavailable, using the sequential backend: %s", e)
        backend = SequentialBackend(cfg.num_threads)

    print("epoch,loss,loss_mse,loss_reg,learning_rate")

    def report(epoch, model, summary):
        print(
            f"{epoch},{summary['loss']:.6g},{summary['loss_mse']:.6g},"
            f"{summary['loss_maximum_regularization']:.6g},{summary['learning_rate']:.3g}"
        )

    model, _ = fit(
        start, data, cfg, hparams.epochs, backend=backend, generator=gen, callback=report
    )
    final = evaluate(model, data, cfg, backend=backend)
    deltas = parameter_deltas(model.parameters, truth.parameters)
    print(f"final loss {final.loss:.6g}")
    print(
        f"gain delta mean {deltas['gains_mean']:.3g} max {deltas['gains_max']:.3g}"
    )


if __name__ == "__main__":
    main()
