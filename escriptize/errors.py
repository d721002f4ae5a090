"""Shared exception types."""


class BuildError(RuntimeError):
    """Raised when building an escript fails."""
