"""Error taxonomy for the refinement engine."""


class RefinementError(Exception):
    """Base class for errors raised by :mod:`cardiorefine`."""


class ConfigurationError(RefinementError, ValueError):
    """Model, data and configuration do not agree.

    Raised before any step is simulated, so no partial state is left behind.
    """


class AcceleratorError(RefinementError, RuntimeError):
    """Device initialisation or a device pass failed.

    Callers decide whether to retry on the sequential backend; the engine never
    substitutes one backend for another on its own.
    """


class NumericalWarning(RuntimeWarning):
    """Non-fatal numerical condition, e.g. a coefficient pinned at a delay bound."""
