"""
Custom exception types for the Zendesk API client.

Every failure raised by the client derives from :class:`ZendeskError`.
Callers that need to decide whether to retry at a higher level can
inspect :attr:`ZendeskError.kind`, which is one of the members of the
closed :class:`ErrorKind` enumeration, or simply catch the concrete
subclasses.

The helpers at the bottom of this module turn a raw ``requests``
failure or a non-2xx ``requests.Response`` into one of the two
classified error types.
"""

from __future__ import annotations

import enum
import json
from typing import Any, Dict, List, Mapping, Optional

import requests
from requests.structures import CaseInsensitiveDict


class ErrorKind(enum.Enum):
    """The closed set of error categories produced by the client."""

    NETWORK = "network"
    API = "api"
    AUTH = "auth"
    DECODE = "decode"
    CANCELLED = "cancelled"


class ZendeskError(Exception):
    """Base exception for all Zendesk client errors."""

    kind: ErrorKind


class ZendeskNetworkError(ZendeskError):
    """Raised when the request never produced an HTTP response.

    Parameters
    ----------
    message : str
        Human readable summary of the failure.
    transient : bool
        ``True`` when the failure is conventionally retryable at the
        socket layer (connection refused or reset, timeouts).
    cause : Exception, optional
        The underlying ``requests`` exception.
    """

    kind = ErrorKind.NETWORK

    def __init__(self, message: str, *, transient: bool, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.cause = cause


class ZendeskAPIError(ZendeskError):
    """Raised when the server answered with a status code of 400 or above."""

    kind = ErrorKind.API

    def __init__(
        self,
        status_code: int,
        *,
        message: str = "",
        description: str = "",
        details: Optional[Dict[str, List["ErrorDetail"]]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.description = description
        self.details = details or {}
        self.headers = CaseInsensitiveDict(headers or {})
        super().__init__(str(self))

    def __str__(self) -> str:
        if not self.message:
            return f"Zendesk API Error, Status Code: {self.status_code}"
        return self.message

    def is_immutable_record(self) -> bool:
        """Whether the server refused the write because the record is locked or gone."""
        return self.message.startswith("RecordInvalid") or self.message.startswith("RecordNotFound")

    @property
    def retry_after(self) -> Optional[str]:
        """Raw value of the ``Retry-After`` response header, if any."""
        return self.headers.get("Retry-After")


class ZendeskAuthError(ZendeskError):
    """Raised when no usable credentials or bearer token are available."""

    kind = ErrorKind.AUTH


class ZendeskDecodeError(ZendeskError, ValueError):
    """Raised when a successful response or event payload cannot be decoded."""

    kind = ErrorKind.DECODE


class ZendeskCancelledError(ZendeskError):
    """Raised when the caller's cancel event is set during a request loop."""

    kind = ErrorKind.CANCELLED


class ErrorDetail:
    """A single field-level entry from the ``details`` object of an error body."""

    __slots__ = ("error", "description")

    def __init__(self, error: str = "", description: str = "") -> None:
        self.error = error
        self.description = description

    def __repr__(self) -> str:
        return f"ErrorDetail(error={self.error!r}, description={self.description!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ErrorDetail):
            return NotImplemented
        return (self.error, self.description) == (other.error, other.description)


# ----------------------------------------------------------------------
# Classification
# ----------------------------------------------------------------------
_TRANSIENT_EXCEPTIONS = (
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
    requests.exceptions.ChunkedEncodingError,
)

_FATAL_EXCEPTIONS = (
    requests.exceptions.SSLError,
    requests.exceptions.ProxyError,
)


def classify_transport_error(exc: requests.exceptions.RequestException, url: str) -> ZendeskNetworkError:
    """Wrap a ``requests`` exception in a :class:`ZendeskNetworkError`.

    TLS and proxy failures are subclasses of ``ConnectionError`` in
    ``requests`` but are never fixed by trying again, so they are
    checked first.
    """
    if isinstance(exc, _FATAL_EXCEPTIONS):
        transient = False
    else:
        transient = isinstance(exc, _TRANSIENT_EXCEPTIONS)
    return ZendeskNetworkError(f"Failed to connect to {url}: {exc}", transient=transient, cause=exc)


def error_from_response(response: requests.Response) -> ZendeskAPIError:
    """Build a :class:`ZendeskAPIError` from an error response.

    Zendesk sometimes reports an error without a JSON body.  In that
    case the raw body is kept as the message and the description notes
    the content type that was actually received.  JSON bodies are tried
    against the two known error shapes in order.
    """
    content_type = response.headers.get("Content-Type", "")
    if "application/json" not in content_type:
        return ZendeskAPIError(
            response.status_code,
            message=response.text,
            description=f"encountered error - response content is '{content_type}', not JSON",
            headers=response.headers,
        )

    try:
        body = json.loads(response.content)
    except ValueError:
        body = None

    message, description, details = _parse_error_body(body)
    return ZendeskAPIError(
        response.status_code,
        message=message,
        description=description,
        details=details,
        headers=response.headers,
    )


def _parse_error_body(body: Any):
    if not isinstance(body, dict):
        return "", "", {}

    # Shape 1: {"error": {"title": ..., "message": ...}}
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error.get("title") or ""), str(error["message"]), {}

    # Shape 2: {"error": "...", "description": "...", "details": {...}}
    if not isinstance(error, str) or not error:
        return "", "", {}

    message = error
    description = str(body.get("description") or "")
    details: Dict[str, List[ErrorDetail]] = {}
    raw_details = body.get("details")
    if isinstance(raw_details, dict):
        for field_name, entries in raw_details.items():
            if not isinstance(entries, list):
                continue
            details[field_name] = [
                ErrorDetail(str(entry.get("error") or ""), str(entry.get("description") or ""))
                for entry in entries
                if isinstance(entry, dict)
            ]

    flattened = [
        f"[{field_name}: {detail.error} - {detail.description}]"
        for field_name, entries in details.items()
        for detail in entries
    ]
    if flattened:
        message = f"{message}. Error details: {', '.join(flattened)}"
    return message, description, details
