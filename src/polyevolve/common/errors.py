"""
Exception hierarchy for polyevolve.

Simulation code does not raise in normal operation; these exceptions mark
caller errors such as an unusable configuration or an operator applied to
a population it cannot work with.
"""


class PolyevolveError(Exception):
    """Base class for all polyevolve errors."""


class ConfigurationError(PolyevolveError, ValueError):
    """Raised when inputs or settings cannot be used as given."""


class SelectionError(ConfigurationError):
    """Raised when a selection operator has no evaluated individuals to choose from."""
