"""Error taxonomy shared by providers, transport and the multi-step orchestrator."""

from __future__ import annotations


class IndexBridgeError(RuntimeError):
    """Base class for every error raised by this package."""


class ConfigurationError(IndexBridgeError):
    """Missing or invalid provider selector, credentials or pipeline settings."""


class ProviderConnectionError(IndexBridgeError):
    """The provider could not be reached or refused the operation."""


class ProviderAccessError(ProviderConnectionError):
    """The provider rejected the credentials or denied access to a resource."""


class PayloadValidationError(IndexBridgeError):
    """A provider payload did not match its expected shape."""


class TransportError(IndexBridgeError):
    """Transient network failure or timeout; retried by the transport."""


class StepFailure(IndexBridgeError):
    """A pipeline step raised or produced unusable output."""

    code = "STEP_ERROR"


class StepTimeoutError(StepFailure):
    code = "STEP_TIMEOUT"


class PipelineFailure(IndexBridgeError):
    """The multi-step run failed and no fallback answer was available."""

    def __init__(self, message: str, step_trace: list | None = None) -> None:
        super().__init__(message)
        self.step_trace = step_trace or []
