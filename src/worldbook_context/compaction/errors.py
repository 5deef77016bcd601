"""
Error taxonomy for the context compaction engine.

Every error carries enough detail (kind + affected keys) for the caller to
decide whether to retry. None of them leave the engine in a structurally
invalid state.
"""

from typing import Iterable, Optional


class ContextEngineError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False


class ValidationError(ContextEngineError, ValueError):
    """Bad input. Raised before any tier computation or store I/O."""

    def __init__(self, field: str, value, message: Optional[str] = None):
        self.field = field
        self.value = value
        super().__init__(message or f"Invalid value for {field}: {value!r}")


class SummarizationError(ContextEngineError):
    """The summarizer failed. Local tiers are left unchanged."""

    def __init__(self, reason: str, retryable: bool = False):
        self.reason = reason
        self.retryable = retryable
        super().__init__(reason)


class StoreError(ContextEngineError):
    """
    World book reconciliation failed.

    Local tiers were already updated. ``partial`` holds the keys whose
    write/delete did succeed, ``failed`` the keys that still diverge.
    Recover with ``regenerate_segments()`` or ``refresh()``.
    """

    def __init__(
        self,
        reason: str,
        retryable: bool = True,
        failed: Iterable[str] = (),
        partial: Iterable[str] = (),
    ):
        self.reason = reason
        self.retryable = retryable
        self.failed = frozenset(failed)
        self.partial = frozenset(partial)
        super().__init__(reason)

    def __str__(self) -> str:
        if not self.failed and not self.partial:
            return self.reason
        return (
            f"{self.reason} (failed={sorted(self.failed)}, "
            f"succeeded={sorted(self.partial)})"
        )


class ConcurrencyRejected(ContextEngineError):
    """A mutation was refused because another one was in flight."""

    retryable = True
