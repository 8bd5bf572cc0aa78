# tdcloud_client/exceptions.py
from __future__ import annotations


class TDClientError(Exception):
    """Base class for every error raised by the client.

    Carries enough context to diagnose a failure from the message alone:
    the logical operation, the resource it targeted, the classified kind and
    (for HTTP failures) the status code.
    """

    kind = "client_error"
    retryable = False

    def __init__(
        self,
        detail: str,
        *,
        operation: str | None = None,
        resource: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.operation = operation
        self.resource = resource
        self.status_code = status_code

    def __str__(self) -> str:
        parts = [f"[{self.kind}]"]
        if self.operation:
            parts.append(self.operation)
        if self.resource:
            parts.append(f"({self.resource})")
        if self.status_code is not None:
            parts.append(f"HTTP {self.status_code}")
        return " ".join(parts) + f": {self.detail}"


class TransportError(TDClientError):
    kind = "transport"
    retryable = True

    def __init__(self, detail: str, *, request_sent: bool = True, **ctx):
        super().__init__(detail, **ctx)
        # False only when the failure provably happened before the request left
        self.request_sent = request_sent


class ServerError(TDClientError):
    kind = "server"

    def __init__(self, detail: str, *, retryable: bool = True, **ctx):
        super().__init__(detail, **ctx)
        self.retryable = retryable


class RateLimitedError(TDClientError):
    kind = "rate_limited"
    retryable = True

    def __init__(self, detail: str, *, retry_after: float | None = None, **ctx):
        super().__init__(detail, **ctx)
        self.retry_after = retry_after


class AuthError(TDClientError):
    kind = "auth"


class NotFoundError(TDClientError):
    kind = "not_found"


class ValidationError(TDClientError):
    kind = "validation"


class AlreadyExistsError(ValidationError):
    kind = "already_exists"


class SchemaParseError(ValidationError):
    kind = "schema_parse"

    def __init__(self, detail: str, *, text: str, position: int | None = None, **ctx):
        super().__init__(detail, **ctx)
        self.text = text
        self.position = position


class ClientRequestError(TDClientError):
    kind = "client_request"


class MalformedResponseError(TDClientError):
    kind = "malformed_response"


class InvalidConfigurationError(TDClientError):
    kind = "invalid_configuration"


class ClientClosedError(TDClientError):
    kind = "closed"


class OperationCancelledError(TDClientError):
    kind = "cancelled"


class StreamConsumedError(TDClientError):
    """A result stream was iterated a second time; payloads are single-pass."""

    kind = "stream_consumed"


class AmbiguousOutcomeError(TDClientError):
    """A non-idempotent request failed in flight; its server-side effect is unknown."""

    kind = "ambiguous_outcome"

    def __init__(self, detail: str, *, domain_key: str | None = None, **ctx):
        super().__init__(detail, **ctx)
        self.domain_key = domain_key


class RetriesExhaustedError(TDClientError):
    kind = "retries_exhausted"

    def __init__(self, last_error: TDClientError, *, attempts: int, **ctx):
        ctx.setdefault("operation", last_error.operation)
        ctx.setdefault("resource", last_error.resource)
        ctx.setdefault("status_code", last_error.status_code)
        super().__init__(
            f"gave up after {attempts} attempts; last error: {last_error}",
            **ctx,
        )
        self.last_error = last_error
        self.attempts = attempts
