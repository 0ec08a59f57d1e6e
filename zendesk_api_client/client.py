"""
Client implementation for the Zendesk REST APIs.

This module defines the :class:`ZendeskClient` class which performs
authenticated HTTP requests against the Zendesk Support API (basic
auth) and the Zendesk Chat and Real Time Chat APIs (OAuth bearer
token obtained with the client credentials grant).

Usage
-----

.. code-block:: python

    from zendesk_api_client import APITokenAuth, ChatCredentials, ZendeskClient

    client = ZendeskClient(
        subdomain="mycompany",
        auth=APITokenAuth("agent@example.com", "api-token"),
        chat_credentials=ChatCredentials("chat-client-id", "chat-secret"),
    )

    ticket = client.get("/api/v2/tickets/123.json")

    def handle(page):
        for user in page.body["users"]:
            print(user["email"])

    client.users_incremental_export(0, handle)

Read requests against the main API are retried on transient network
failures and on ``429 Too Many Requests`` (see
:class:`~zendesk_api_client.retry.RetryPolicy`).  Chat requests
re-acquire the bearer token once when the server answers ``401``.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import requests
from requests.auth import AuthBase
from requests.structures import CaseInsensitiveDict

from .agent_events import AgentStateAggregator
from .auth import APITokenAuth, ChatCredentials, PasswordAuth, TokenManager, TokenStore
from .exceptions import (
    ZendeskAPIError,
    ZendeskAuthError,
    ZendeskCancelledError,
    ZendeskDecodeError,
    classify_transport_error,
    error_from_response,
)
from .pagination import (
    CursorPagination,
    LimitBasedIncrementalExport,
    OffsetPagination,
    PageIterator,
    PaginationStrategy,
    TimeBasedIncrementalExport,
)
from .retry import RetryPolicy
from .timeutil import to_unix

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_USER_AGENT = "zendesk-api-client-python"

CHAT_HOST = "https://www.zopim.com"
REAL_TIME_CHAT_HOST = "https://rtm.zopim.com"

# Chat auth failures are retried once with a fresh token; they are not
# rate-limit style transient failures.
CHAT_AUTH_MAX_ATTEMPTS = 2

CHAT_EXPORT_LIMIT = 1000

RequestPreProcessor = Callable[[requests.PreparedRequest], None]
Decoder = Callable[[Any], Any]


def log_requests(target: Optional[logging.Logger] = None, level: int = logging.DEBUG) -> RequestPreProcessor:
    """Return a request pre-processor that logs every outgoing request."""
    target = target or logger

    def _log(request: requests.PreparedRequest) -> None:
        target.log(level, "Request: %s %s", request.method, request.url)

    return _log


class ZendeskClient:
    """A client for the Zendesk Support and Chat REST APIs.

    Parameters
    ----------
    subdomain : str
        The account subdomain, e.g. ``"mycompany"`` for
        ``mycompany.zendesk.com``.
    auth : PasswordAuth or APITokenAuth
        Credentials for the main API.  Any ``requests`` auth object is
        accepted.
    chat_credentials : ChatCredentials, optional
        OAuth client credentials for the Chat APIs.  Chat calls raise
        :class:`ZendeskAuthError` when these are missing.
    timeout : float, optional
        Timeout in seconds for every HTTP request.  Defaults to 15.
    user_agent : str, optional
        ``User-Agent`` header sent when the caller did not set one.
    request_preprocessors : sequence of callables, optional
        Called in order with each prepared request before it is sent.
        An exception raised by a pre-processor aborts the request.
    session : requests.Session, optional
        Session used to send requests.  A new one is created if omitted.
    retry_policy : RetryPolicy, optional
        Policy applied to main API reads.
    token_store : TokenStore, optional
        Backing store for the chat bearer token.
    base_url : str, optional
        Override the main API base URL derived from ``subdomain``.
    """

    def __init__(
        self,
        *,
        subdomain: str,
        auth: AuthBase,
        chat_credentials: Optional[ChatCredentials] = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        request_preprocessors: Optional[Sequence[RequestPreProcessor]] = None,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        token_store: Optional[TokenStore] = None,
        base_url: Optional[str] = None,
    ) -> None:
        if not subdomain:
            raise ValueError("subdomain must be provided")
        if auth is None:
            raise ValueError("auth must be provided")
        if timeout <= 0:
            raise ValueError("timeout must be positive, got %r" % timeout)

        self.subdomain = subdomain
        self.auth = auth
        self.timeout = timeout
        self.user_agent = user_agent
        self.base_url = (base_url or f"https://{subdomain}.zendesk.com").rstrip("/")
        self.request_preprocessors: List[RequestPreProcessor] = list(request_preprocessors or [])
        self.session = session if session is not None else requests.Session()
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self.tokens = TokenManager(self, chat_credentials, store=token_store)
        self.agent_events = AgentStateAggregator(self)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "ZendeskClient":
        """Build a client from ``ZENDESK_*`` environment variables.

        Recognised variables are ``ZENDESK_SUBDOMAIN``, ``ZENDESK_EMAIL``,
        ``ZENDESK_API_TOKEN`` (or ``ZENDESK_PASSWORD``),
        ``ZENDESK_CHAT_CLIENT_ID``, ``ZENDESK_CHAT_CLIENT_SECRET``,
        ``ZENDESK_TIMEOUT`` and ``ZENDESK_USER_AGENT``.  Keyword
        arguments take precedence over the environment.
        """
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {"subdomain": env.get("ZENDESK_SUBDOMAIN", "")}

        email = env.get("ZENDESK_EMAIL", "")
        if env.get("ZENDESK_API_TOKEN"):
            kwargs["auth"] = APITokenAuth(email, env["ZENDESK_API_TOKEN"])
        elif env.get("ZENDESK_PASSWORD"):
            kwargs["auth"] = PasswordAuth(email, env["ZENDESK_PASSWORD"])
        elif "auth" not in overrides:
            raise ZendeskAuthError("Set ZENDESK_API_TOKEN or ZENDESK_PASSWORD to authenticate")

        if env.get("ZENDESK_CHAT_CLIENT_ID") and env.get("ZENDESK_CHAT_CLIENT_SECRET"):
            kwargs["chat_credentials"] = ChatCredentials(
                env["ZENDESK_CHAT_CLIENT_ID"], env["ZENDESK_CHAT_CLIENT_SECRET"]
            )
        if env.get("ZENDESK_TIMEOUT"):
            kwargs["timeout"] = float(env["ZENDESK_TIMEOUT"])
        if env.get("ZENDESK_USER_AGENT"):
            kwargs["user_agent"] = env["ZENDESK_USER_AGENT"]

        kwargs.update(overrides)
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Request executor
    # ------------------------------------------------------------------
    def _prepare_url(self, url: str, host: Optional[str] = None) -> str:
        """Resolve a relative path against the product host.

        Absolute URLs (for example pagination links returned by the
        server) are used as-is.
        """
        if url.startswith("http://") or url.startswith("https://"):
            return url
        base = (host or self.base_url).rstrip("/")
        return f"{base}/{url.lstrip('/')}"

    def execute(
        self,
        request: requests.Request,
        *,
        decode: Optional[Decoder] = None,
        host: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Perform exactly one HTTP round trip.

        Parameters
        ----------
        request : requests.Request
            The request to send.  A relative URL is resolved against
            ``host`` (or the main API base URL).
        decode : callable, optional
            Applied to the parsed JSON body of a successful response.
        host : str, optional
            Product host for relative URLs.
        cancel_event : threading.Event, optional
            If already set, the request is not sent.

        Returns
        -------
        Any
            The parsed (and decoded) JSON body, or ``None`` when the
            response has no content.  Without ``decode``, a body that is
            not declared as JSON is returned as text.

        Raises
        ------
        ZendeskNetworkError
            If no response was received.
        ZendeskAPIError
            If the response status is 400 or above.
        ZendeskDecodeError
            If a successful body cannot be parsed or decoded.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise ZendeskCancelledError("request cancelled by caller")

        request.url = self._prepare_url(request.url, host)
        headers = CaseInsensitiveDict(request.headers or {})
        headers.setdefault("Accept", "application/json")
        headers.setdefault("User-Agent", self.user_agent)
        headers.setdefault("Content-Type", "application/json")
        request.headers = headers

        prepared = self.session.prepare_request(request)
        for preprocessor in self.request_preprocessors:
            preprocessor(prepared)

        settings = self.session.merge_environment_settings(prepared.url, {}, None, None, None)
        try:
            response = self.session.send(prepared, timeout=self.timeout, **settings)
        except requests.exceptions.RequestException as exc:
            raise classify_transport_error(exc, prepared.url) from exc

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.debug("%s %s failed with status %d: %s", prepared.method, prepared.url, response.status_code, error)
            raise error

        return self._decode(response, decode)

    @staticmethod
    def _decode(response: requests.Response, decode: Optional[Decoder]) -> Any:
        if not response.content:
            return None
        if decode is None and "application/json" not in response.headers.get("Content-Type", ""):
            return response.text
        try:
            data = json.loads(response.content)
        except ValueError as exc:
            raise ZendeskDecodeError(f"Response from {response.url} is not valid JSON: {exc}") from exc
        if decode is None:
            return data
        try:
            return decode(data)
        except ZendeskDecodeError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise ZendeskDecodeError(f"Could not decode response from {response.url}: {exc}") from exc

    # ------------------------------------------------------------------
    # Product specific request wrappers
    # ------------------------------------------------------------------
    def zendesk_request(
        self,
        request: requests.Request,
        *,
        decode: Optional[Decoder] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Send a basic-auth request to the main API.

        ``GET`` requests go through the retry policy; writes are sent once.
        """
        request.auth = self.auth
        if request.method.upper() == "GET":
            return self.retry_policy.call(
                lambda r: self.execute(r, decode=decode, cancel_event=cancel_event),
                request,
                cancel_event=cancel_event,
            )
        return self.execute(request, decode=decode, cancel_event=cancel_event)

    def chat_request(
        self,
        request: requests.Request,
        *,
        decode: Optional[Decoder] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Send a bearer-authenticated request to the Chat API."""
        return self._bearer_request(request, CHAT_HOST, decode, cancel_event)

    def real_time_chat_request(
        self,
        request: requests.Request,
        *,
        decode: Optional[Decoder] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Send a bearer-authenticated request to the Real Time Chat API."""
        return self._bearer_request(request, REAL_TIME_CHAT_HOST, decode, cancel_event)

    def _bearer_request(
        self,
        request: requests.Request,
        host: str,
        decode: Optional[Decoder],
        cancel_event: Optional[threading.Event],
    ) -> Any:
        last_error: Optional[ZendeskAPIError] = None

        for _ in range(CHAT_AUTH_MAX_ATTEMPTS):
            token = self.tokens.ensure_token(cancel_event=cancel_event)
            if token is None:
                raise ZendeskAuthError("no token")
            if not token.access_token:
                raise ZendeskAuthError("blank token")

            request.headers = CaseInsensitiveDict(request.headers or {})
            request.headers["Authorization"] = f"Bearer {token.access_token}"
            try:
                return self.execute(request, decode=decode, host=host, cancel_event=cancel_event)
            except ZendeskAPIError as exc:
                if exc.status_code != 401:
                    raise
                last_error = exc
                self.tokens.invalidate()

        assert last_error is not None
        raise last_error

    # ------------------------------------------------------------------
    # Public convenience methods
    # ------------------------------------------------------------------
    def get(self, path: str, *, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        """Perform a GET request against the main API (retried)."""
        return self.zendesk_request(requests.Request("GET", path, params=params), **kwargs)

    def post(self, path: str, *, json: Optional[Any] = None, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        """Perform a POST request against the main API."""
        return self.zendesk_request(requests.Request("POST", path, params=params, json=json), **kwargs)

    def put(self, path: str, *, json: Optional[Any] = None, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        """Perform a PUT request against the main API."""
        return self.zendesk_request(requests.Request("PUT", path, params=params, json=json), **kwargs)

    def delete(self, path: str, *, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        """Perform a DELETE request against the main API."""
        return self.zendesk_request(requests.Request("DELETE", path, params=params), **kwargs)

    def chat_get(self, path: str, *, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        """Perform a GET request against the Chat API."""
        return self.chat_request(requests.Request("GET", path, params=params), **kwargs)

    def chat_post(self, path: str, *, json: Optional[Any] = None, **kwargs: Any) -> Any:
        """Perform a POST request against the Chat API."""
        return self.chat_request(requests.Request("POST", path, json=json), **kwargs)

    def raw_get(self, url: str) -> requests.Response:
        """Authenticated GET returning the raw response, e.g. for attachment downloads.

        No status classification or retry is applied.
        """
        try:
            return self.session.get(self._prepare_url(url), auth=self.auth, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise classify_transport_error(exc, url) from exc

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------
    def paginate(
        self,
        request: requests.Request,
        strategy: PaginationStrategy,
        *,
        chat: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> PageIterator:
        """Return a :class:`PageIterator` for ``request`` using ``strategy``."""
        if chat:
            fetch = lambda r: self.chat_request(r, cancel_event=cancel_event)  # noqa: E731
        else:
            fetch = lambda r: self.zendesk_request(r, cancel_event=cancel_event)  # noqa: E731
        return PageIterator(fetch, request, strategy, cancel_event=cancel_event)

    def list_cursor(self, path: str, page_handler: Callable, *, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
        """Drive a cursor paginated listing on the main API."""
        request = requests.Request("GET", path, params=params)
        self.paginate(request, CursorPagination(), **kwargs).run(page_handler)

    def list_offset(
        self,
        path: str,
        page_handler: Callable,
        *,
        params: Optional[Dict[str, Any]] = None,
        next_key: str = "next_page",
        **kwargs: Any,
    ) -> None:
        """Drive an offset paginated listing."""
        request = requests.Request("GET", path, params=params)
        self.paginate(request, OffsetPagination(next_key), **kwargs).run(page_handler)

    def incremental_export(
        self,
        path: str,
        start_time: Union[datetime, int],
        page_handler: Callable,
        *,
        params: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        """Drive a time based incremental export until ``end_of_stream``."""
        query = dict(params or {})
        query["start_time"] = str(to_unix(start_time))
        request = requests.Request("GET", path, params=query)
        self.paginate(request, TimeBasedIncrementalExport(), **kwargs).run(page_handler)

    # ------------------------------------------------------------------
    # Resource listings
    # ------------------------------------------------------------------
    def tickets_incremental_export(self, start_time: Union[datetime, int], page_handler: Callable, **kwargs: Any) -> None:
        self.incremental_export("/api/v2/incremental/tickets.json", start_time, page_handler, **kwargs)

    def users_incremental_export(self, start_time: Union[datetime, int], page_handler: Callable, **kwargs: Any) -> None:
        self.incremental_export("/api/v2/incremental/users.json", start_time, page_handler, **kwargs)

    def organizations_incremental_export(self, start_time: Union[datetime, int], page_handler: Callable, **kwargs: Any) -> None:
        self.incremental_export("/api/v2/incremental/organizations.json", start_time, page_handler, **kwargs)

    def problem_ticket_incidents(self, ticket_id: int, page_handler: Callable, **kwargs: Any) -> None:
        self.list_cursor(
            f"/api/v2/tickets/{ticket_id}/incidents.json", page_handler, params={"page[size]": "100"}, **kwargs
        )

    def search_users(self, query: str, page_handler: Callable, **kwargs: Any) -> None:
        """Search users.  The search endpoint does not support cursor pagination."""
        self.list_offset("/api/v2/users/search", page_handler, params={"query": query}, **kwargs)

    def list_chats(self, page_handler: Callable, **kwargs: Any) -> None:
        self.list_offset("/api/v2/chats", page_handler, next_key="next_url", chat=True, **kwargs)

    def search_chats(self, query: str, page_handler: Callable, **kwargs: Any) -> None:
        self.list_offset("/api/v2/chats/search", page_handler, params={"q": query}, next_key="next_url", chat=True, **kwargs)

    def chats_incremental_export(
        self,
        start_time: Union[datetime, int],
        page_handler: Callable,
        *,
        limit: int = CHAT_EXPORT_LIMIT,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Incremental chat export, watermarked by ``start_time`` and ``start_id``."""
        request = requests.Request(
            "GET",
            "/api/v2/incremental/chats",
            params={"start_time": str(to_unix(start_time)), "limit": str(limit), "fields": "chats(*)"},
        )
        strategy = LimitBasedIncrementalExport(limit, use_start_id=True)
        self.paginate(request, strategy, chat=True, cancel_event=cancel_event).run(page_handler)

    def agent_events_incremental_export(
        self,
        start_time: Union[datetime, int],
        page_handler: Callable,
        *,
        limit: int = CHAT_EXPORT_LIMIT,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Incremental agent events export; a page shorter than ``limit`` is the last."""
        request = requests.Request(
            "GET",
            "/api/v2/incremental/agent_events",
            params={"start_time": str(to_unix(start_time)), "limit": str(limit)},
        )
        strategy = LimitBasedIncrementalExport(limit, follow_next_page=True)
        self.paginate(request, strategy, chat=True, cancel_event=cancel_event).run(page_handler)

    def chat_metrics(
        self,
        metric: Optional[str] = None,
        *,
        department_id: Optional[int] = None,
        window: Optional[int] = None,
        **kwargs: Any,
    ) -> Any:
        """Fetch real time chat metrics, optionally a single metric, department or window."""
        path = "/stream/chats" if metric is None else f"/stream/chats/{metric}"
        params: Dict[str, str] = {}
        if department_id is not None:
            params["department_id"] = str(department_id)
        if window is not None:
            params["window"] = str(window)
        return self.real_time_chat_request(requests.Request("GET", path, params=params or None), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        """Close the underlying session and release pooled connections."""
        self.session.close()

    def __enter__(self) -> "ZendeskClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
