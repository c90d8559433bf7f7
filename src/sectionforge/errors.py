"""
Exception taxonomy shared by the ingestion, storage and quiz layers.

Not-found is never raised: stores return ``None`` or an empty list instead.
"""
from __future__ import annotations


class SectionForgeError(Exception):
    """Base class for every error raised on purpose by this package."""

    retryable = False


class InputValidationError(SectionForgeError, ValueError):
    """Caller input rejected before any storage mutation."""


class CapabilityError(SectionForgeError):
    """An external capability (LLM extractor/generator) failed or returned an invalid shape."""


class StorageError(SectionForgeError):
    """The structured store was unreachable or rejected a write."""

    retryable = True


class InsufficientContentError(SectionForgeError):
    """Even after every fallback the request could not be satisfied."""

    def __init__(self, message: str, *, requested: int, available: int):
        super().__init__(message)
        self.requested = int(requested)
        self.available = int(available)

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.available)
