from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for every error raised by the gateway."""


class ProvisioningFailed(GatewayError):
    def __init__(self, resource: str, reason: str):
        super().__init__(f"Provisioning of {resource} failed: {reason}")
        self.resource = resource


class ProvisioningTimeout(GatewayError):
    def __init__(self, resource: str, timeout_seconds: float):
        super().__init__(f"Timed out after {timeout_seconds:g}s waiting for {resource} to become ready")
        self.resource = resource
        self.timeout_seconds = timeout_seconds


class RemoteAPIError(GatewayError):
    """Completion API returned a non-success status or the transport failed.

    ``payload`` holds the decoded remote error body when one was returned.
    The underlying httpx error, if any, is chained as ``__cause__``.
    """

    def __init__(self, message: str, *, status_code: int | None = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class CompletionTimeout(GatewayError, TimeoutError):
    def __init__(self, timeout_seconds: float, *, streaming: bool = False):
        kind = "streaming completion" if streaming else "completion"
        super().__init__(f"{kind} request timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds
        self.streaming = streaming


class MalformedEvent(GatewayError):
    def __init__(self, line: str, reason: str):
        super().__init__(f"Malformed stream event ({reason}): {line[:200]}")
        self.line = line


class UnsupportedModel(GatewayError):
    def __init__(self, model: str):
        super().__init__(f"No context window size known for model {model!r}")
        self.model = model
