"""Maturador exception taxonomy."""

from __future__ import annotations

from typing import Any, Optional


class MaturadorError(Exception):
    """Base exception for the maturation scheduler."""

    kind = "error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(MaturadorError):
    """A pair cannot proceed until an operator fixes its configuration."""

    kind = "configuration"


class IdentityUnresolvable(ConfigurationError):
    """Identity missing, or lacking an address or channel instance."""


class MissingBehavior(ConfigurationError):
    """Speaker has no prompt (generated mode) or no usable script (scripted mode)."""


class GenerationFailed(MaturadorError):
    """Completion service timed out or errored. Recoverable with a fallback phrase."""

    kind = "generation"


class ScriptExhausted(MaturadorError):
    """Non-looping script has no entries left."""

    kind = "exhausted"


class ChannelError(MaturadorError):
    kind = "channel"

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class ChannelTransientError(ChannelError):
    """Connection closed, rate-limited, gateway unavailable. Retryable."""

    kind = "transient"


class ChannelFatalError(ChannelError):
    """Invalid credentials or unknown instance. Not auto-retried at full speed."""

    kind = "fatal"


class PairNotFound(MaturadorError):
    kind = "not_found"


class InvalidTransition(MaturadorError):
    kind = "invalid_transition"
