"""Error taxonomy shared by the generation services.

Three families matter to callers: configuration problems (missing
credentials, unknown engines), transport problems (network failures and
non-success responses) and malformed output (nothing usable in a success
response). None of them is retried inside this package.
"""
from __future__ import annotations

from typing import Optional


class GenerationError(RuntimeError):
    """Base class for every failure raised by the generation layer."""


# ---------------- configuration ----------------
class ConfigurationError(GenerationError):
    """The request cannot be served with the current configuration."""


class UnknownEngine(ConfigurationError):
    def __init__(self, engine_id: object) -> None:
        self.engine_id = engine_id
        super().__init__(f"Unknown engine id: {engine_id!r}")


class CapabilityNotConfigured(ConfigurationError):
    def __init__(self, engine_id: str, capability: str) -> None:
        self.engine_id = engine_id
        self.capability = capability
        super().__init__(f"Engine {engine_id} is not configured for {capability} generation.")


class EngineNotTextCapable(CapabilityNotConfigured):
    def __init__(self, engine_id: str) -> None:
        super().__init__(engine_id, "text")


class AuthMissing(ConfigurationError):
    def __init__(self, provider: str, env_names: str) -> None:
        self.provider = provider
        super().__init__(f"No credential configured for {provider} ({env_names} is not set).")


# ---------------- transport ----------------
class TransportError(GenerationError):
    """The provider could not be reached or refused the request."""


class ProviderTimeout(TransportError):
    """The provider did not answer within the configured timeout."""


class ProviderRejected(TransportError):
    def __init__(self, provider: str, status: int, detail: Optional[str] = None) -> None:
        self.provider = provider
        self.status = status
        self.detail = detail
        message = f"{provider} request failed with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


# ---------------- malformed output ----------------
class MalformedOutputError(GenerationError):
    """A success response did not contain usable output."""


class MalformedResponse(MalformedOutputError):
    pass


class NoImageData(MalformedOutputError):
    pass


class InvalidStructuredOutput(MalformedOutputError):
    """Model text could not be parsed into the requested structure.

    ``cleaned_text`` keeps what the parser saw after fence and preamble
    stripping so it can be logged or shown for diagnostics.
    """

    def __init__(self, message: str, cleaned_text: str = "") -> None:
        self.cleaned_text = cleaned_text
        super().__init__(message)


class GenerationCancelled(GenerationError):
    """The caller cancelled the request before a result was delivered."""


__all__ = [
    "AuthMissing",
    "CapabilityNotConfigured",
    "ConfigurationError",
    "EngineNotTextCapable",
    "GenerationCancelled",
    "GenerationError",
    "InvalidStructuredOutput",
    "MalformedOutputError",
    "MalformedResponse",
    "NoImageData",
    "ProviderRejected",
    "ProviderTimeout",
    "TransportError",
    "UnknownEngine",
]
