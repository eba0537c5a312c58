"""Failure taxonomy for a chat turn.

Everything except ``FatalGenerationFailure`` is absorbed by the orchestrator
and surfaced as an ``error`` thought; the turn then continues on a degraded
path.
"""
from __future__ import annotations


class EvolveError(Exception):
    """Base class for pipeline errors."""


class UpstreamUnavailable(EvolveError):
    """Generation or search backend unreachable or answered non-2xx."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service} unavailable: {message}")
        self.service = service


class UpstreamTimeout(UpstreamUnavailable):
    """A bounded backend call exceeded its deadline."""

    def __init__(self, service: str, timeout: float):
        EvolveError.__init__(self, f"{service} request timed out after {timeout:g}s")
        self.service = service
        self.timeout = timeout


class ParseFailure(EvolveError):
    """Backend text could not be parsed into the expected shape."""


class EmbeddingFailure(EvolveError):
    """Embedding generation failed or returned an unusable payload."""


class FatalGenerationFailure(EvolveError):
    """The answer-producing generation call failed; the turn is aborted."""


class InvalidSessionId(EvolveError, ValueError):
    """Session id outside ``[A-Za-z0-9_-]{1,64}``; never used to build a path."""
