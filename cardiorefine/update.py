"""Parameter updates and the coefficient/delay roll."""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING, Dict, NamedTuple, Optional

import torch

from .config import RefinementConfig
from .constants import ADAM_BETA1, ADAM_BETA2, ADAM_EPS, DELAY_MIN
from .derivation import Gradients
from .errors import ConfigurationError, NumericalWarning
from .model import LinkParameters

if TYPE_CHECKING:
    from .training import RefinementProgress

logger = logging.getLogger(__name__)


class RollResult(NamedTuple):
    coefs: torch.Tensor
    delays: torch.Tensor
    clamped: torch.Tensor  # [G] bool, pinned at a delay bound this update


def roll_delays(
    coefs: torch.Tensor,
    delays: torch.Tensor,
    margin: float,
    delay_max: int,
) -> RollResult:
    """Move coefficients that left ``[margin, 1 - margin]`` into the next delay.

    * ``coef > 1 - margin``: one sample less delay, coefficient restarts at
      ``2 * margin``; at the minimum delay it is clamped to ``1 - margin``.
    * ``coef < margin``: one sample more delay, coefficient restarts at
      ``1 - 2 * margin``; at ``delay_max`` it is clamped to ``margin``.

    The upper check wins if both would apply.
    """
    high = coefs > 1.0 - margin
    low = (coefs < margin) & ~high
    can_shorten = delays > DELAY_MIN
    can_lengthen = delays < delay_max

    shorten = high & can_shorten
    lengthen = low & can_lengthen
    clamp_high = high & ~can_shorten
    clamp_low = low & ~can_lengthen

    new_coefs = coefs
    new_coefs = torch.where(shorten, torch.full_like(coefs, 2.0 * margin), new_coefs)
    new_coefs = torch.where(clamp_high, torch.full_like(coefs, 1.0 - margin), new_coefs)
    new_coefs = torch.where(
        lengthen, torch.full_like(coefs, 1.0 - 2.0 * margin), new_coefs
    )
    new_coefs = torch.where(clamp_low, torch.full_like(coefs, margin), new_coefs)
    new_delays = delays - shorten.to(delays.dtype) + lengthen.to(delays.dtype)
    return RollResult(new_coefs, new_delays, clamp_high | clamp_low)


def sgd_step(value: torch.Tensor, grad: torch.Tensor, lr: float, n: int) -> torch.Tensor:
    return value - lr / n * grad


def adam_step(
    value: torch.Tensor,
    grad: torch.Tensor,
    lr: float,
    n: int,
    state: Dict[str, torch.Tensor],
    step: int,
) -> torch.Tensor:
    """One bias-corrected Adam step; ``state`` holds ``m``/``v`` and is updated.

    The moments are built from the raw batch gradient and the step is scaled by
    ``lr / n`` like the plain gradient step.
    """
    g = grad
    m = state.get("m")
    v = state.get("v")
    if m is None or m.shape != g.shape:
        m = torch.zeros_like(g)
        v = torch.zeros_like(g)
    m = ADAM_BETA1 * m + (1.0 - ADAM_BETA1) * g
    v = ADAM_BETA2 * v + (1.0 - ADAM_BETA2) * g * g
    state["m"], state["v"] = m, v
    m_hat = m / (1.0 - ADAM_BETA1**step)
    v_hat = v / (1.0 - ADAM_BETA2**step)
    return value - lr / n * m_hat / (v_hat.sqrt() + ADAM_EPS)


class ParameterUpdater:
    """Applies one batch worth of gradients to a parameter set.

    The input parameters are never modified; a new :class:`LinkParameters` is
    returned.
    """

    def __init__(self, config: RefinementConfig):
        self.config = config

    def _step(
        self,
        name: str,
        value: torch.Tensor,
        grad: torch.Tensor,
        n: int,
        progress: Optional["RefinementProgress"],
    ) -> torch.Tensor:
        cfg = self.config
        if cfg.optimizer == "adam":
            if progress is None:
                raise ConfigurationError("the adam optimizer needs a RefinementProgress")
            state = progress.optimizer_state.setdefault(name, {})
            return adam_step(value, grad, cfg.learning_rate, n, state, progress.update_step)
        return sgd_step(value, grad, cfg.learning_rate, n)

    def apply(
        self,
        parameters: LinkParameters,
        gradients: Gradients,
        num_samples: int,
        progress: Optional["RefinementProgress"] = None,
    ) -> LinkParameters:
        """Return updated parameters.

        ``num_samples`` is ``steps * beats`` of the batch the gradients were
        accumulated over.
        """
        cfg = self.config
        if num_samples <= 0:
            return parameters.clone()
        device = parameters.gains.device
        gradients = gradients.to(device)
        if progress is not None:
            progress.update_step += 1

        gains = parameters.gains.clone()
        if not cfg.freeze_gains:
            gains = self._step("gains", gains, gradients.gains, num_samples, progress)

        coefs, delays = parameters.coefs.clone(), parameters.delays.clone()
        if not cfg.freeze_delays:
            coefs = self._step("coefs", coefs, gradients.coefs, num_samples, progress)
            coefs, delays, clamped = roll_delays(
                coefs, delays, cfg.coefficient_margin, cfg.delay_max
            )
            if progress is not None:
                self._track_bounds(clamped, progress)

        return LinkParameters(gains, coefs, delays)

    def _track_bounds(
        self, clamped: torch.Tensor, progress: "RefinementProgress"
    ) -> None:
        hits = progress.bound_hits
        if hits is None or hits.shape != clamped.shape:
            hits = torch.zeros(clamped.shape, dtype=torch.long)
        hits = torch.where(clamped.cpu(), hits + 1, torch.zeros_like(hits))
        progress.bound_hits = hits
        stuck = int((hits == self.config.bound_warning_patience).sum().item())
        if stuck:
            msg = (
                f"{stuck} coefficient group(s) clamped at a delay bound for "
                f"{self.config.bound_warning_patience} consecutive updates"
            )
            logger.warning(msg)
            warnings.warn(msg, NumericalWarning, stacklevel=3)
