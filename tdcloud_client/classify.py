# tdcloud_client/classify.py
"""Map one attempt's outcome (httpx exception or response) to a typed error.

Status policy:
  * transport failures             -> TransportError (retryable)
  * 500 / 502 / 503 / 504          -> ServerError (retryable)
  * 429                            -> RateLimitedError (retryable, Retry-After hint)
  * 401 / 403                      -> AuthError
  * 404                            -> NotFoundError
  * 400 / 422                      -> ValidationError
  * 409                            -> AlreadyExistsError
  * any other status               -> fatal
"""
from __future__ import annotations
import json
import math
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .exceptions import (
    AlreadyExistsError,
    AuthError,
    ClientRequestError,
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    TDClientError,
    TransportError,
    ValidationError,
)

RETRYABLE_SERVER_STATUSES = frozenset({500, 502, 503, 504})
MAX_DETAIL_CHARS = 512

T = TypeVar("T", bound=BaseModel)

# Failures raised before any byte of the request reached the server
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def classify_transport(
    exc: httpx.TransportError,
    *,
    operation: str | None = None,
    resource: str | None = None,
) -> TransportError:
    request_sent = not isinstance(exc, _NOT_SENT)
    detail = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    return TransportError(detail, request_sent=request_sent, operation=operation, resource=resource)


def classify_response(
    response: httpx.Response,
    *,
    operation: str | None = None,
    resource: str | None = None,
    detail: str | None = None,
) -> TDClientError:
    """Classify a non-2xx response. Without `detail` the body must already have been read."""
    status = response.status_code
    if detail is None:
        detail = _error_detail(response)
    ctx = {"operation": operation, "resource": resource, "status_code": status}

    if status in RETRYABLE_SERVER_STATUSES:
        return ServerError(detail, **ctx)
    if status == 429:
        return RateLimitedError(detail, retry_after=parse_retry_after(response), **ctx)
    if status in (401, 403):
        return AuthError(detail, **ctx)
    if status == 404:
        return NotFoundError(detail, **ctx)
    if status in (400, 422):
        return ValidationError(detail, **ctx)
    if status == 409:
        return AlreadyExistsError(detail, **ctx)
    if status >= 500:
        return ServerError(detail, retryable=False, **ctx)
    return ClientRequestError(detail, **ctx)


def parse_retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        # HTTP-date form is not used by the service
        return None
    return value if math.isfinite(value) and value >= 0 else None


def decode_json(
    response: httpx.Response,
    *,
    operation: str | None = None,
    resource: str | None = None,
) -> Any:
    """Decode a successful response body; unparseable bodies are fatal."""
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedResponseError(
            f"response body is not valid JSON: {e}",
            operation=operation,
            resource=resource,
            status_code=response.status_code,
        ) from e


def _error_detail(response: httpx.Response) -> str:
    text = response.text or ""
    try:
        body = json.loads(text) if text else None
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if body.get(key):
                return str(body[key])[:MAX_DETAIL_CHARS]
    return text[:MAX_DETAIL_CHARS] or response.reason_phrase or "no response body"


def parse_model(
    model: type[T],
    data: Any,
    *,
    operation: str | None = None,
    resource: str | None = None,
) -> T:
    """Validate decoded JSON into a pydantic model; shape drift is fatal."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedResponseError(
            f"unexpected {model.__name__} payload: {e.error_count()} validation errors",
            operation=operation,
            resource=resource,
        ) from e
