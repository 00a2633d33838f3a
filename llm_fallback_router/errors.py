from __future__ import annotations

from fastapi import status


class ProxyError(Exception):
    """Base class for errors raised by the fallback proxy core."""


class ConfigurationError(ProxyError):
    pass


class RequestMalformed(ProxyError):
    """The inbound request cannot be forwarded at all; no attempt is made."""

    def __init__(
        self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PayloadUnrepresentable(ProxyError):
    """The payload could not be re-serialized with a substituted model."""


class UpstreamTimeout(ProxyError):
    def __init__(self, phase: str, timeout_seconds: float) -> None:
        super().__init__(f"upstream {phase} exceeded {timeout_seconds:g}s")
        self.phase = phase
        self.timeout_seconds = timeout_seconds


class AttemptCancelled(ProxyError):
    """The caller went away while an attempt was in flight."""
