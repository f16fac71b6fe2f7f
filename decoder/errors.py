"""
Error taxonomy for the decoder pipeline.

Every error carries the HTTP status the router should answer with, an
optional machine-readable ``code`` and free-form ``details``.
Malformed model output is NOT an error: it is recovered by the salvage
path (see decoder.salvage.ParseResult).
"""

from typing import Any, Optional


class DecoderError(Exception):
    status_code: int = 500
    code: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details

    def to_payload(self) -> dict:
        payload: dict = {"error": self.message}
        if self.code:
            payload["code"] = self.code
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(DecoderError):
    """Bad or missing input. Terminal, never retried."""
    status_code = 400


class ConfigurationError(DecoderError):
    """Missing provider endpoint / key / deployment."""
    status_code = 500


class ProviderError(DecoderError):
    """Non-2xx (or unreachable) generative service."""
    status_code = 502


class ProviderTimeout(ProviderError):
    """Call exceeded its stage timeout and was cancelled."""
    status_code = 504


class EmptyContentError(DecoderError):
    """2xx responses with no usable content after the full fallback chain."""
    status_code = 502
