"""Error taxonomy shared by the pipeline stages."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from prospector.audit import AuditTrail


class ProspectorError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(ProspectorError):
    """Invalid weights, missing credentials, or an unusable provider setup."""


class TransientSourceError(ProspectorError):
    """A single external call failed; callers omit the result and carry on."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class ParseError(ProspectorError):
    """A generative-text response did not match the expected shape."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class AvailabilityError(ProspectorError):
    """The generative-text service could not be reached for any step.

    Carries the partial audit trail (and whatever research was gathered)
    so the caller can diagnose the run.
    """

    def __init__(self, message: str, audit: AuditTrail | None = None, research: Any = None):
        super().__init__(message)
        self.audit = audit
        self.research = research
