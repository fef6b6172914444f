"""Forward propagation through the all-pass link network.

For step ``t`` and link ``l`` (delay ``d``, coefficient ``c``, gain ``g``)::

    input          = state[t - d, source]        (0 if t < d)
    input_delayed  = state[t - d - 1, source]    (0 if t <= d)
    output         = c * (input - output_prev) + input_delayed
    state[t, target] += g * output

All links of a step read the state as it was before step ``t`` is written, so
a link with ``d == 0`` sees zeros at its own step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

import torch

from .backend import Backend, ReductionPlan
from .model import StateSpaceModel


class LinkInputs(NamedTuple):
    current: torch.Tensor  # [B, L] state[t - d, source], zero where inactive
    active: torch.Tensor  # [L] bool, t >= d


@dataclass
class PropagationBuffers:
    """Transient per-beat buffers.

    ``outputs_now`` and ``outputs_last`` are two separately owned tensors; they
    trade places at every step boundary via :meth:`rotate`.
    """

    states: torch.Tensor  # [B, T, S]
    outputs_now: torch.Tensor  # [B, L]
    outputs_last: torch.Tensor  # [B, L]

    def rotate(self) -> None:
        self.outputs_now, self.outputs_last = self.outputs_last, self.outputs_now


class VoxelStateSimulator:
    """Advances the link network one step at a time for a group of beats."""

    def __init__(self, model: StateSpaceModel, backend: Backend):
        device = backend.device
        topo = model.topology.to(device)
        params = model.parameters.to(device)
        self.backend = backend
        self.num_states = topo.num_states
        self.source = topo.source
        self.target = topo.target
        self.group = topo.group
        self.gains = params.gains
        self.link_coefs = params.coefs[topo.group]
        self.link_delays = params.delays[topo.group]
        self.num_groups = topo.num_groups
        self.target_plan = ReductionPlan(topo.target, topo.num_states)
        self.group_plan = ReductionPlan(topo.group, topo.num_groups)
        self.dtype = params.gains.dtype
        self.control_matrix = None
        self.control_function = None
        if model.control_matrix is not None:
            self.control_matrix = model.control_matrix.to(device)
            self.control_function = model.control_function.to(device)

    def new_buffers(self, num_beats: int, num_steps: int) -> PropagationBuffers:
        L = self.source.numel()
        kw = dict(dtype=self.dtype, device=self.backend.device)
        return PropagationBuffers(
            states=torch.zeros(num_beats, num_steps, self.num_states, **kw),
            outputs_now=torch.zeros(num_beats, L, **kw),
            outputs_last=torch.zeros(num_beats, L, **kw),
        )

    def gather_delayed(
        self, states: torch.Tensor, step: int, delays: torch.Tensor
    ) -> LinkInputs:
        """Read ``state[step - delays, source]`` with zeros before step 0."""
        time_index = step - delays
        active = time_index >= 0
        values = states[:, time_index.clamp_min(0), self.source]
        return LinkInputs(torch.where(active, values, torch.zeros_like(values)), active)

    def step(self, buffers: PropagationBuffers, step: int) -> LinkInputs:
        """Compute link outputs and the system state for ``step``.

        ``buffers.outputs_last`` must hold the outputs of ``step - 1``; the new
        outputs are written into ``buffers.outputs_now``.
        """
        states = buffers.states
        inputs = self.gather_delayed(states, step, self.link_delays)
        delayed = self.gather_delayed(states, step, self.link_delays + 1).current
        output = self.link_coefs * (inputs.current - buffers.outputs_last) + delayed
        buffers.outputs_now.copy_(output)

        state = self.backend.segment_sum(self.gains * output, self.target_plan)
        if self.control_matrix is not None:
            state = state + self.control_matrix * self.control_function[step]
        states[:, step] = state
        return inputs
