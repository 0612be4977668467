"""Error taxonomy for the orchestration core.

Three kinds reach the caller:

- ConfigurationError: unknown provider/model, disabled model, missing
  credential. Raised before any network call; never retried.
- ProviderTransportError: network failure or non-2xx from a provider.
  The caller may retry.
- MalformedResponseError: the backend answered, but not in a shape the
  adapter understands (protocol drift).

Soft failures (tool discovery, a single tool call, a prefetch slot,
summarization) never become exceptions at this layer; they are logged and
the request continues with less context.
"""

from typing import Any, Optional


class ThreadloomError(Exception):
    """Base exception for all Threadloom errors.

    Attributes:
        message: Human-readable error message
        recoverable: Whether retrying (or fixing input) can succeed
        context: Additional key-value pairs for debugging
    """

    kind: str = "internal"
    recoverable: bool = False

    def __init__(self, message: str, recoverable: Optional[bool] = None, **context: Any):
        self.message = message
        self.context = context or None
        if recoverable is not None:
            self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to a dict suitable for an error payload."""
        return {
            "kind": self.kind,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ConfigurationError(ThreadloomError):
    """Unknown/unsupported provider or model, or a missing credential."""

    kind = "configuration"
    recoverable = False


class ProviderTransportError(ThreadloomError):
    """Network failure or non-2xx response from a provider."""

    kind = "transport"
    recoverable = True

    def __init__(self, message: str, status_code: Optional[int] = None, **context: Any):
        self.status_code = status_code
        super().__init__(message, status_code=status_code, **context)


class MalformedResponseError(ThreadloomError):
    """The backend returned a shape the adapter cannot parse."""

    kind = "malformed_response"
    recoverable = False


class ThreadNotFoundError(ThreadloomError):
    kind = "not_found"
    recoverable = False


class GenerationAborted(ThreadloomError):
    """The caller aborted the generation before it finished."""

    kind = "aborted"
    recoverable = True
