from dataclasses import dataclass

from .constants import COEF_MARGIN, DELAY_MAX
from .errors import ConfigurationError

OPTIMIZERS = ("sgd", "adam")


@dataclass
class RefinementConfig:
    """Refinement hyper-parameters.

    Invalid values raise :class:`ConfigurationError`, except ``num_threads`` and
    ``bound_warning_patience``, which are raised to 1 when smaller.
    """

    learning_rate: float = 1e-3
    batch_size: int = 0  # beats per parameter update; 0 -> all beats
    mse_strength: float = 1.0
    maximum_regularization_threshold: float = 1.0
    maximum_regularization_strength: float = 1.0
    # Coefficient wrap controls
    coefficient_margin: float = COEF_MARGIN
    delay_max: int = DELAY_MAX
    optimizer: str = "sgd"
    freeze_gains: bool = False
    freeze_delays: bool = False
    # Backend selection; the accelerator is never substituted silently
    use_accelerator: bool = False
    accelerator_device: str = "cuda"
    num_threads: int = 1  # beat-level workers on the sequential backend
    # Learning-rate schedule used by ``fit``
    learning_rate_reduction_factor: float = 0.0
    learning_rate_reduction_interval: int = 0
    # Consecutive clamped updates before a NumericalWarning is issued
    bound_warning_patience: int = 3

    def __post_init__(self) -> None:
        if not self.learning_rate > 0:
            raise ConfigurationError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if self.batch_size < 0:
            raise ConfigurationError(
                f"batch_size must be >= 0, got {self.batch_size}"
            )
        if not 0.0 < self.coefficient_margin < 0.25:
            raise ConfigurationError(
                "coefficient_margin must lie in (0, 0.25), "
                f"got {self.coefficient_margin}"
            )
        if self.delay_max < 1:
            raise ConfigurationError(f"delay_max must be >= 1, got {self.delay_max}")
        if self.maximum_regularization_threshold < 0:
            raise ConfigurationError(
                "maximum_regularization_threshold must be >= 0, "
                f"got {self.maximum_regularization_threshold}"
            )
        self.optimizer = self.optimizer.lower()
        if self.optimizer not in OPTIMIZERS:
            raise ConfigurationError(
                f"optimizer must be one of {OPTIMIZERS}, got {self.optimizer!r}"
            )
        if self.num_threads < 1:
            self.num_threads = 1
        if self.bound_warning_patience < 1:
            self.bound_warning_patience = 1
