"""Execution backends for the refinement passes.

The passes in :mod:`cardiorefine.engine` are written once against the small
:class:`Backend` interface: a parallel-for over beats (:meth:`Backend.map_beats`)
and an associative reduction of per-link values into destination cells
(:meth:`Backend.segment_sum`).

* :class:`SequentialBackend` runs one beat at a time on the CPU, optionally
  spreading beats over a thread pool, and reduces with ``index_add_``.
* :class:`AcceleratorBackend` runs every beat of a batch in one data-parallel
  pass on a device and reduces through a destination-sorted padded layout, so
  each cell is written exactly once per step without atomics.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence, TypeVar

import torch

from .config import RefinementConfig
from .errors import AcceleratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReductionPlan:
    """Destination-sorted layout for summing link values into cells.

    ``padded_index[n]`` lists the links feeding cell ``n``; unused slots point
    at an extra zero column appended to the values.
    """

    def __init__(self, index: torch.Tensor, size: int):
        index = index.to(torch.long).flatten()
        self.index = index
        self.size = size
        n = index.numel()
        host_index = index.cpu()
        counts = torch.bincount(host_index, minlength=size)
        width = max(1, int(counts.max().item())) if size else 1
        order = torch.argsort(host_index, stable=True)
        sorted_index = host_index[order]
        starts = torch.cumsum(counts, 0) - counts
        slot = torch.arange(n) - starts[sorted_index]
        padded = torch.full((size, width), n, dtype=torch.long)
        padded[sorted_index, slot] = order
        self.padded_index = padded.to(index.device)

    def to(self, device: torch.device | str) -> "ReductionPlan":
        plan = ReductionPlan.__new__(ReductionPlan)
        plan.index = self.index.to(device)
        plan.size = self.size
        plan.padded_index = self.padded_index.to(device)
        return plan


class Backend:
    name = "base"

    def __init__(self, device: torch.device | str):
        self.device = torch.device(device)

    def segment_sum(self, values: torch.Tensor, plan: ReductionPlan) -> torch.Tensor:
        """Reduce ``[B, L]`` link values into ``[B, plan.size]`` cells."""
        raise NotImplementedError

    def map_beats(
        self, fn: Callable[[List[int]], T], beats: Sequence[int]
    ) -> List[T]:
        """Apply ``fn`` to groups of beats; results are returned in beat order."""
        raise NotImplementedError

    def synchronize(self) -> None:
        pass


class SequentialBackend(Backend):
    """CPU backend processing beats one at a time.

    With ``num_threads > 1`` beats are spread over a thread pool. Partial
    results still come back in beat order so the combined sums do not depend
    on scheduling.
    """

    name = "sequential"

    def __init__(self, num_threads: int = 1):
        super().__init__("cpu")
        self.num_threads = max(1, int(num_threads))

    def segment_sum(self, values: torch.Tensor, plan: ReductionPlan) -> torch.Tensor:
        out = values.new_zeros(values.shape[0], plan.size)
        return out.index_add_(1, plan.index, values)

    def map_beats(
        self, fn: Callable[[List[int]], T], beats: Sequence[int]
    ) -> List[T]:
        beats = list(beats)
        if self.num_threads == 1 or len(beats) < 2:
            return [fn([b]) for b in beats]
        with ThreadPoolExecutor(max_workers=self.num_threads) as pool:
            return list(pool.map(lambda b: fn([b]), beats))


class AcceleratorBackend(Backend):
    """Data-parallel backend running all beats of a batch at once.

    ``device`` is usually ``"cuda"``; ``"cpu"`` runs the same data-parallel
    layout on the host, which is how parity with the sequential backend is
    tested without a GPU.
    """

    name = "accelerator"

    def __init__(self, device: torch.device | str = "cuda"):
        super().__init__(device)
        if self.device.type == "cuda" and not torch.cuda.is_available():
            raise AcceleratorError("CUDA device requested but CUDA is not available")
        if self.device.type == "mps" and not torch.backends.mps.is_available():
            raise AcceleratorError("MPS device requested but MPS is not available")
        try:
            torch.zeros(1, device=self.device)
        except RuntimeError as exc:
            raise AcceleratorError(
                f"failed to initialise device {self.device}: {exc}"
            ) from exc

    def segment_sum(self, values: torch.Tensor, plan: ReductionPlan) -> torch.Tensor:
        padded = torch.cat([values, values.new_zeros(values.shape[0], 1)], dim=1)
        return padded[:, plan.padded_index].sum(dim=-1)

    def map_beats(
        self, fn: Callable[[List[int]], T], beats: Sequence[int]
    ) -> List[T]:
        beats = list(beats)
        if not beats:
            return []
        try:
            result = fn(beats)
            self.synchronize()
        except AcceleratorError:
            raise
        except RuntimeError as exc:
            logger.error("device pass failed on %s: %s", self.device, exc)
            raise AcceleratorError(f"device pass failed on {self.device}: {exc}") from exc
        return [result]

    def synchronize(self) -> None:
        if self.device.type == "cuda":
            torch.cuda.synchronize(self.device)


def select_backend(config: RefinementConfig) -> Backend:
    """Backend requested by ``config``.

    Raises :class:`AcceleratorError` when the accelerator is requested but not
    usable; falling back to the sequential backend is the caller's decision.
    """
    if config.use_accelerator:
        backend: Backend = AcceleratorBackend(config.accelerator_device)
    else:
        backend = SequentialBackend(config.num_threads)
    logger.debug("using %s backend on %s", backend.name, backend.device)
    return backend
