"""Exception types raised by pseudotime-mini."""


class PseudotimeError(Exception):
    """Base class for errors raised by the pipeline itself."""


class ConfigError(PseudotimeError):
    """Configuration file is missing, unparsable or fails validation."""


class InputDataError(PseudotimeError, ValueError):
    """Input matrix or annotation is unusable."""


class DataAlignmentError(InputDataError):
    """Count matrix and cell annotation do not describe the same cells."""


class TrajectoryError(PseudotimeError):
    """Lineage inference cannot proceed on the given embedding/clusters."""
