"""Backward derivative accumulation for gains and all-pass coefficients.

Instead of back-propagating through the full time history, the derivative of
each link output w.r.t. its coefficient is carried forward with two
first-order recursions that mirror the filter itself::

    fir = -c * fir_prev + input          (only once t >= delay)
    iir = -c * iir_prev + output_prev    (only once t >= delay)
    d output / d c = fir - iir

Per step the gradients are accumulated additively::

    driver        = mapped_residual[target] * mse_scale + reg_source[target] * reg_scale
    grad_gain    += output * driver
    grad_coef[g] += sum over links of g of (fir - iir) * gain * mapped_residual[target] * mse_scale

The regularization source only drives the gains.
"""

from __future__ import annotations

from dataclasses import dataclass

import torch

from .simulation import LinkInputs, PropagationBuffers, VoxelStateSimulator


@dataclass
class Gradients:
    """Accumulated gradients of one batch (or of a subset of its beats)."""

    gains: torch.Tensor  # [L]
    coefs: torch.Tensor  # [G]

    @classmethod
    def zeros(
        cls,
        num_links: int,
        num_groups: int,
        *,
        dtype: torch.dtype = torch.float32,
        device: torch.device | str = "cpu",
    ) -> "Gradients":
        return cls(
            torch.zeros(num_links, dtype=dtype, device=device),
            torch.zeros(num_groups, dtype=dtype, device=device),
        )

    def __add__(self, other: "Gradients") -> "Gradients":
        return Gradients(self.gains + other.gains, self.coefs + other.coefs)

    def to(self, device: torch.device | str) -> "Gradients":
        return Gradients(self.gains.to(device), self.coefs.to(device))


class DerivativeAccumulator:
    def __init__(
        self,
        simulator: VoxelStateSimulator,
        num_beats: int,
        *,
        mse_scale: float,
        reg_scale: float,
        freeze_gains: bool = False,
        freeze_delays: bool = False,
    ):
        self.sim = simulator
        self.backend = simulator.backend
        self.mse_scale = mse_scale
        self.reg_scale = reg_scale
        self.freeze_gains = freeze_gains
        self.freeze_delays = freeze_delays
        L = simulator.source.numel()
        kw = dict(dtype=simulator.dtype, device=self.backend.device)
        self.fir = torch.zeros(num_beats, L, **kw)
        self.iir = torch.zeros(num_beats, L, **kw)
        self.grad = Gradients.zeros(L, simulator.num_groups, **kw)

    @property
    def needs_mapped_residuals(self) -> bool:
        return not (self.freeze_gains and self.freeze_delays)

    def accumulate(
        self,
        inputs: LinkInputs,
        buffers: PropagationBuffers,
        mapped_residuals: torch.Tensor,
        regularization_source: torch.Tensor,
    ) -> None:
        """Fold one step into the running gradients.

        Must run after :meth:`VoxelStateSimulator.step` and before the output
        buffers are rotated.
        """
        sim = self.sim
        mapped = mapped_residuals[:, sim.target]
        if not self.freeze_gains:
            driver = (
                mapped * self.mse_scale
                + regularization_source[:, sim.target] * self.reg_scale
            )
            self.grad.gains += (buffers.outputs_now * driver).sum(dim=0)

        if not self.freeze_delays:
            coef = sim.link_coefs
            fir = -coef * self.fir + inputs.current
            iir = -coef * self.iir + buffers.outputs_last
            self.fir = torch.where(inputs.active, fir, self.fir)
            self.iir = torch.where(inputs.active, iir, self.iir)
            per_link = (self.fir - self.iir) * sim.gains * mapped * self.mse_scale
            self.grad.coefs += self.backend.segment_sum(
                per_link.sum(dim=0, keepdim=True), sim.group_plan
            )[0]

    def gradients(self) -> Gradients:
        return self.grad
