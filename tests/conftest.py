"""Shared fixtures: a fake requests session that replays canned responses."""

import json
import threading
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from zendesk_api_client import APITokenAuth, ChatCredentials, RetryPolicy, ZendeskClient


def make_response(status_code=200, json_body=None, *, content=None, headers=None, content_type=None):
    """Build a real ``requests.Response`` without touching the network."""
    response = requests.Response()
    response.status_code = status_code
    response.encoding = "utf-8"
    if json_body is not None:
        response._content = json.dumps(json_body).encode()
        response.headers["Content-Type"] = content_type or "application/json; charset=utf-8"
    else:
        response._content = content if content is not None else b""
        if content_type:
            response.headers["Content-Type"] = content_type
    response.headers.update(headers or {})
    return response


def query_of(prepared):
    """Return the query string of a sent request as a flat dict."""
    return {key: values[0] for key, values in parse_qs(urlsplit(prepared.url).query).items()}


class FakeSession(requests.Session):
    """Session whose ``send`` pops the next scripted outcome.

    Queue items may be a ``requests.Response``, an exception instance to
    raise, or a callable ``item(prepared_request)`` returning either.
    """

    def __init__(self, *outcomes):
        super().__init__()
        self.trust_env = False
        self.outcomes = list(outcomes)
        self.sent = []
        self._lock = threading.Lock()

    def queue(self, *outcomes):
        self.outcomes.extend(outcomes)

    def send(self, request, **kwargs):
        with self._lock:
            self.sent.append(request)
            if not self.outcomes:
                raise AssertionError(f"unexpected request: {request.method} {request.url}")
            outcome = self.outcomes.pop(0)
        if callable(outcome) and not isinstance(outcome, requests.Response):
            outcome = outcome(request)
        if isinstance(outcome, BaseException):
            raise outcome
        outcome.request = request
        outcome.url = request.url
        return outcome


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(session, sleeps):
    return ZendeskClient(
        subdomain="example",
        auth=APITokenAuth("agent@example.com", "api-token"),
        chat_credentials=ChatCredentials("chat-client", "chat-secret"),
        session=session,
        retry_policy=RetryPolicy(sleep=sleeps.append),
    )


@pytest.fixture
def token_response():
    return make_response(200, {"access_token": "chat-token", "token_type": "Bearer", "scope": "read write"})
