"""
Error taxonomy for the memory index.

Configuration problems fail fast. Provider and store problems are absorbed by
the components that own them (retry, demotion, degraded mode) and only surface
through status reporting or an explicit sync call.
"""


class MemoryIndexError(Exception):
    """Base class for memory index failures."""


class ConfigurationError(MemoryIndexError, ValueError):
    """Invalid settings detected while building a manager."""


class EmbeddingProviderError(MemoryIndexError):
    """A single embedding provider call failed (HTTP error, bad payload, timeout)."""

    def __init__(self, message: str, *, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class EmbeddingBatchError(MemoryIndexError):
    """A batch gave up after exhausting its retries."""

    def __init__(self, message: str, *, provider: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.provider = provider
        self.attempts = attempts


class PathNotPermittedError(MemoryIndexError, PermissionError):
    """Read request outside the permitted roots or for a non-indexable file."""

    def __init__(self) -> None:
        super().__init__("path not permitted")


class ManagerClosedError(MemoryIndexError):
    """Operation attempted on a manager that has been closed."""
