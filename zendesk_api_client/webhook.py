"""
Webhook signature verification and event dispatch.

Zendesk signs every webhook request with
``base64(HMAC-SHA256(secret, timestamp + body))`` and sends the result
in the ``X-Zendesk-Webhook-Signature`` header, along with the timestamp
in ``X-Zendesk-Webhook-Signature-Timestamp``.  Requests are verified
before anything in the body is looked at.

Event webhooks are routed by their ``type`` to handlers registered at
runtime:

.. code-block:: python

    dispatcher = WebhookDispatcher(signing_secret)
    dispatcher.register("zen:event-type:user.created", on_user_created)
    app = dispatcher.wsgi_app()

Trigger and automation webhooks have no envelope; use
:class:`WebhookTriggerHandler` for those.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import http
import io
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from requests.structures import CaseInsensitiveDict

from .exceptions import ZendeskDecodeError
from .timeutil import parse_timestamp

logger = logging.getLogger(__name__)

WEBHOOK_HEADER_SIGNATURE = "X-Zendesk-Webhook-Signature"
WEBHOOK_HEADER_SIGNATURE_TIMESTAMP = "X-Zendesk-Webhook-Signature-Timestamp"

WebhookHandler = Callable[[Any], None]
WebhookDecoder = Callable[[bytes], Any]


def webhook_signing_secret_from_env(environ: Optional[Mapping[str, str]] = None) -> str:
    """Return ``ZENDESK_WEBHOOK_SIGNING_SECRET`` from the environment."""
    env = os.environ if environ is None else environ
    secret = env.get("ZENDESK_WEBHOOK_SIGNING_SECRET", "")
    if not secret:
        raise ValueError("ZENDESK_WEBHOOK_SIGNING_SECRET is not set")
    return secret


# ------------------------------------------------------------------
# Signature
# ------------------------------------------------------------------
def build_signature(timestamp: str, body: bytes, signing_secret: str) -> str:
    """Compute the signature Zendesk sends for ``body`` at ``timestamp``."""
    digest = hmac.new(signing_secret.encode(), timestamp.encode() + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: Optional[str], timestamp: Optional[str], signing_secret: str) -> bool:
    """Whether ``signature`` matches ``body`` and ``timestamp``.

    A missing signature or timestamp never verifies.
    """
    if not signature or not timestamp:
        return False
    expected = build_signature(timestamp, body, signing_secret)
    return hmac.compare_digest(expected.encode(), signature.encode())


# ------------------------------------------------------------------
# Event envelope
# ------------------------------------------------------------------
@dataclass
class WebhookEvent:
    """The envelope shared by all event webhooks.

    ``event`` and ``detail`` are kept as the raw decoded JSON; handlers
    that need typed payloads register their own decoder.
    """

    type: str
    account_id: Optional[int] = None
    id: str = ""
    time: Optional[datetime] = None
    zendesk_event_version: str = ""
    subject: str = ""
    event: Any = None
    detail: Any = None

    @classmethod
    def from_dict(cls, data: Any) -> "WebhookEvent":
        if not isinstance(data, dict):
            raise ZendeskDecodeError("webhook body is not a JSON object")
        try:
            time = parse_timestamp(data["time"]) if data.get("time") else None
        except ValueError as exc:
            raise ZendeskDecodeError(f"invalid webhook time: {data.get('time')!r}") from exc
        return cls(
            type=str(data.get("type") or ""),
            account_id=data.get("account_id"),
            id=str(data.get("id") or ""),
            time=time,
            zendesk_event_version=str(data.get("zendesk_event_version") or ""),
            subject=str(data.get("subject") or ""),
            event=data.get("event"),
            detail=data.get("detail"),
        )

    @classmethod
    def from_json(cls, body: bytes) -> "WebhookEvent":
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise ZendeskDecodeError(f"webhook body is not valid JSON: {exc}") from exc
        return cls.from_dict(data)


@dataclass(frozen=True)
class WebhookResponse:
    """The outcome of handling one webhook request."""

    status: int
    message: str

    @property
    def body(self) -> bytes:
        return (json.dumps(self.message) + "\n").encode()


@dataclass
class WebhookRoute:
    """A handler and the decoder that builds its argument from the raw body."""

    handler: Optional[WebhookHandler]
    decoder: WebhookDecoder = field(default=WebhookEvent.from_json)


BAD_REQUEST = "Bad Request"
UNKNOWN_EVENT_TYPE = "Unknown webhook event type"
HANDLER_FAILED = "Server failed to process Webhook Request correctly"
SUCCESS = "Success"


class _SignedWebhook:
    def __init__(self, signing_secret: str) -> None:
        if not signing_secret:
            raise ValueError("signing_secret must be provided")
        self.signing_secret = signing_secret

    def handle(self, body: bytes, headers: Mapping[str, str]) -> WebhookResponse:
        raise NotImplementedError

    def _verified(self, body: bytes, headers: Mapping[str, str]) -> bool:
        headers = CaseInsensitiveDict(headers)
        valid = verify_signature(
            body,
            headers.get(WEBHOOK_HEADER_SIGNATURE),
            headers.get(WEBHOOK_HEADER_SIGNATURE_TIMESTAMP),
            self.signing_secret,
        )
        if not valid:
            logger.warning("Rejected webhook request with a missing or invalid signature")
        return valid

    def _run(self, handler: WebhookHandler, argument: Any) -> WebhookResponse:
        try:
            handler(argument)
        except Exception:
            logger.exception("Webhook handler failed")
            return WebhookResponse(500, HANDLER_FAILED)
        return WebhookResponse(200, SUCCESS)

    def wsgi_app(self) -> Callable[[Dict[str, Any], Callable], Iterable[bytes]]:
        """Return a WSGI application that serves this webhook.

        The request body is read once and put back on ``wsgi.input`` so
        that middleware further down the stack can read it again.
        """

        def app(environ: Dict[str, Any], start_response: Callable) -> Iterable[bytes]:
            body = _read_wsgi_body(environ)
            result = self.handle(body, _wsgi_headers(environ))
            payload = result.body
            status = f"{result.status} {http.HTTPStatus(result.status).phrase}"
            start_response(status, [("Content-Type", "application/json"), ("Content-Length", str(len(payload)))])
            return [payload]

        return app


class WebhookDispatcher(_SignedWebhook):
    """Verifies event webhooks and routes them by event type.

    Parameters
    ----------
    signing_secret : str
        The webhook's signing secret.
    routes : mapping, optional
        Initial routes keyed by event type.  Values may be a
        :class:`WebhookRoute`, a bare handler (decoded with
        :meth:`WebhookEvent.from_json`) or ``None`` to accept and ignore
        the event type.
    """

    def __init__(
        self,
        signing_secret: str,
        routes: Optional[Mapping[str, Union[WebhookRoute, WebhookHandler, None]]] = None,
    ) -> None:
        super().__init__(signing_secret)
        self.routes: Dict[str, WebhookRoute] = {}
        for event_type, route in (routes or {}).items():
            if isinstance(route, WebhookRoute):
                self.routes[event_type] = route
            else:
                self.register(event_type, route)

    def register(
        self,
        event_type: str,
        handler: Optional[WebhookHandler],
        decoder: Optional[WebhookDecoder] = None,
    ) -> None:
        self.routes[event_type] = WebhookRoute(handler, decoder or WebhookEvent.from_json)

    def handle(self, body: bytes, headers: Mapping[str, str]) -> WebhookResponse:
        """Verify, decode and dispatch one webhook request."""
        if not self._verified(body, headers):
            return WebhookResponse(400, BAD_REQUEST)

        try:
            envelope = WebhookEvent.from_json(body)
        except ZendeskDecodeError as exc:
            return WebhookResponse(400, str(exc))
        if not envelope.type:
            return WebhookResponse(400, BAD_REQUEST)

        route = self.routes.get(envelope.type)
        if route is None:
            logger.info("No route for webhook event type %s", envelope.type)
            return WebhookResponse(400, UNKNOWN_EVENT_TYPE)
        if route.handler is None:
            return WebhookResponse(200, SUCCESS)

        try:
            payload = route.decoder(body)
        except (ZendeskDecodeError, ValueError, KeyError, TypeError) as exc:
            return WebhookResponse(400, str(exc))

        return self._run(route.handler, payload)


class WebhookTriggerHandler(_SignedWebhook):
    """Verifies trigger or automation webhooks and passes the raw body on."""

    def __init__(self, signing_secret: str, handler: Optional[Callable[[bytes], None]]) -> None:
        super().__init__(signing_secret)
        self.handler = handler

    def handle(self, body: bytes, headers: Mapping[str, str]) -> WebhookResponse:
        if not self._verified(body, headers):
            return WebhookResponse(400, BAD_REQUEST)
        if self.handler is None:
            return WebhookResponse(200, SUCCESS)
        return self._run(self.handler, body)


# ------------------------------------------------------------------
# WSGI helpers
# ------------------------------------------------------------------
def _read_wsgi_body(environ: Dict[str, Any]) -> bytes:
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    stream = environ.get("wsgi.input")
    body = stream.read(length) if stream is not None and length > 0 else b""
    environ["wsgi.input"] = io.BytesIO(body)
    return body


def _wsgi_headers(environ: Mapping[str, Any]) -> CaseInsensitiveDict:
    headers = CaseInsensitiveDict()
    for key, value in environ.items():
        if key.startswith("HTTP_"):
            headers[key[5:].replace("_", "-")] = value
    if environ.get("CONTENT_TYPE"):
        headers["Content-Type"] = environ["CONTENT_TYPE"]
    return headers
