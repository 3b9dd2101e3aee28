"""Exception types raised by mpopf."""


class MPOPFError(Exception):
    """Base class for all mpopf errors."""


class DataFormatError(MPOPFError, ValueError):
    """Raised when a case file or data mapping cannot be interpreted."""


class ModelConfigurationError(MPOPFError, ValueError):
    """Raised when model construction arguments are inconsistent."""


class SolverUnavailableError(MPOPFError, RuntimeError):
    """Raised when the requested solver cannot be found."""
