"""Define the exceptions raised for fatal runner configuration problems."""

from __future__ import annotations


class ConfigurationError(RuntimeError):
    """Raised when the run cannot start (or continue) because of bad configuration.

    Args:
        message: Human-readable description.
        error_type: Stable machine-readable category (see `constants.ERROR_TYPE_*`).
    """

    def __init__(self, message: str, *, error_type: str) -> None:
        super().__init__(message)
        self.error_type = error_type
