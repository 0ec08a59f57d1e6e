import base64
import logging
import threading

import pytest
import requests

from zendesk_api_client import (
    REQUEST_HEADER_RETRY_ATTEMPTS,
    APITokenAuth,
    ChatCredentials,
    PasswordAuth,
    RetryPolicy,
    ZendeskAPIError,
    ZendeskAuthError,
    ZendeskCancelledError,
    ZendeskClient,
    ZendeskDecodeError,
    ZendeskNetworkError,
    log_requests,
)

from .conftest import FakeSession, make_response


def _basic(username, password):
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


class TestExecutor:
    def test_relative_path_resolves_to_subdomain_with_default_headers(self, client, session):
        session.queue(make_response(200, {"ticket": {"id": 1}}))

        result = client.get("/api/v2/tickets/1.json")

        assert result == {"ticket": {"id": 1}}
        sent = session.sent[0]
        assert sent.url == "https://example.zendesk.com/api/v2/tickets/1.json"
        assert sent.headers["Accept"] == "application/json"
        assert sent.headers["Content-Type"] == "application/json"
        assert sent.headers["User-Agent"] == "zendesk-api-client-python"
        assert sent.headers["Authorization"] == _basic("agent@example.com/token", "api-token")

    def test_password_auth(self, session):
        client = ZendeskClient(subdomain="example", auth=PasswordAuth("agent@example.com", "hunter2"), session=session)
        session.queue(make_response(200, {}))

        client.get("/api/v2/users/me.json")

        assert session.sent[0].headers["Authorization"] == _basic("agent@example.com", "hunter2")

    def test_caller_headers_are_not_overwritten(self, client, session):
        session.queue(make_response(200, {"ok": True}))
        request = requests.Request(
            "GET",
            "/api/v2/tickets.json",
            headers={"content-type": "text/plain", "User-Agent": "my-integration/1.0"},
        )

        client.execute(request)

        sent = session.sent[0]
        assert sent.headers["Content-Type"] == "text/plain"
        assert sent.headers["User-Agent"] == "my-integration/1.0"

    def test_absolute_url_is_used_as_given(self, client, session):
        session.queue(make_response(200, {}))

        client.get("https://other.zendesk.com/api/v2/tickets.json?page[after]=abc")

        assert session.sent[0].url.startswith("https://other.zendesk.com/api/v2/tickets.json")

    def test_preprocessors_run_in_order(self, session):
        seen = []
        client = ZendeskClient(
            subdomain="example",
            auth=APITokenAuth("agent@example.com", "api-token"),
            session=session,
            request_preprocessors=[lambda r: seen.append(("first", r.url)), lambda r: seen.append(("second", r.url))],
        )
        session.queue(make_response(200, {}))

        client.get("/api/v2/groups.json")

        assert seen == [
            ("first", "https://example.zendesk.com/api/v2/groups.json"),
            ("second", "https://example.zendesk.com/api/v2/groups.json"),
        ]

    def test_preprocessor_error_aborts_before_sending(self, session):
        class Refused(Exception):
            pass

        def refuse(request):
            raise Refused("blocked")

        client = ZendeskClient(
            subdomain="example",
            auth=APITokenAuth("agent@example.com", "api-token"),
            session=session,
            request_preprocessors=[refuse],
        )

        with pytest.raises(Refused):
            client.get("/api/v2/groups.json")
        assert session.sent == []

    def test_log_requests(self, session, caplog):
        client = ZendeskClient(
            subdomain="example",
            auth=APITokenAuth("agent@example.com", "api-token"),
            session=session,
            request_preprocessors=[log_requests(level=logging.INFO)],
        )
        session.queue(make_response(200, {}))

        with caplog.at_level(logging.INFO, logger="zendesk_api_client.client"):
            client.get("/api/v2/groups.json")

        assert "Request: GET https://example.zendesk.com/api/v2/groups.json" in caplog.text

    def test_empty_body_returns_none(self, client, session):
        session.queue(make_response(204))

        assert client.delete("/api/v2/tickets/5.json") is None

    def test_decode_is_applied(self, client, session):
        session.queue(make_response(200, {"user": {"id": 7}}))

        assert client.get("/api/v2/users/7.json", decode=lambda body: body["user"]["id"]) == 7

    def test_decode_failure_is_fatal_and_not_retried(self, client, session):
        session.queue(make_response(200, {"unexpected": True}))

        with pytest.raises(ZendeskDecodeError):
            client.get("/api/v2/users/7.json", decode=lambda body: body["user"])
        assert len(session.sent) == 1

    def test_invalid_json_success_body_is_a_decode_error(self, client, session):
        session.queue(make_response(200, content=b"<html></html>", content_type="text/html"))

        with pytest.raises(ZendeskDecodeError):
            client.get("/api/v2/users/7.json", decode=lambda body: body["user"])

    def test_malformed_json_body_is_a_decode_error(self, client, session):
        session.queue(make_response(200, content=b"{broken", content_type="application/json"))

        with pytest.raises(ZendeskDecodeError):
            client.get("/api/v2/users/7.json")

    def test_non_json_body_is_returned_as_text_without_decoder(self, client, session):
        session.queue(make_response(200, content=b"OK", content_type="text/plain"))

        result = client.post("/api/v2/tickets/1/tags.json", json={"tags": ["vip"]})

        assert result == "OK"

    def test_error_status_raises_classified_error(self, client, session):
        session.queue(make_response(422, {"error": "RecordInvalid", "description": "Record validation errors"}))

        with pytest.raises(ZendeskAPIError) as info:
            client.put("/api/v2/tickets/1000.json", json={"ticket": {"comment": {"body": "hi"}}})

        assert info.value.status_code == 422
        assert info.value.is_immutable_record()

    def test_cancelled_before_sending(self, client, session):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(ZendeskCancelledError):
            client.get("/api/v2/tickets.json", cancel_event=cancel)
        assert session.sent == []


class TestRetryPolicy:
    def test_two_transient_errors_then_success(self, client, session):
        session.queue(
            requests.exceptions.ConnectionError("connection reset by peer"),
            requests.exceptions.ReadTimeout("timed out"),
            make_response(200, {"count": 1}),
        )

        assert client.get("/api/v2/tickets/count.json") == {"count": 1}
        assert len(session.sent) == 3
        assert [r.headers[REQUEST_HEADER_RETRY_ATTEMPTS] for r in session.sent] == ["1", "2", "3"]

    def test_three_transient_errors_return_the_last(self, client, session):
        last = requests.exceptions.ConnectionError("third")
        session.queue(
            requests.exceptions.ConnectionError("first"),
            requests.exceptions.ConnectionError("second"),
            last,
        )

        with pytest.raises(ZendeskNetworkError) as info:
            client.get("/api/v2/tickets.json")

        assert info.value.transient
        assert info.value.cause is last
        assert len(session.sent) == 3

    def test_fatal_network_error_is_not_retried(self, client, session):
        session.queue(requests.exceptions.SSLError("certificate verify failed"))

        with pytest.raises(ZendeskNetworkError) as info:
            client.get("/api/v2/tickets.json")

        assert not info.value.transient
        assert len(session.sent) == 1

    def test_rate_limit_with_zero_retry_after(self, client, session, sleeps):
        session.queue(
            make_response(429, {"error": "TooManyRequests"}, headers={"Retry-After": "0"}),
            make_response(200, {"tickets": []}),
        )

        assert client.get("/api/v2/tickets.json") == {"tickets": []}
        assert len(session.sent) == 2
        assert sleeps == []

    def test_rate_limit_sleeps_for_retry_after(self, client, session, sleeps):
        session.queue(
            make_response(429, {"error": "TooManyRequests"}, headers={"Retry-After": "7"}),
            make_response(200, {"tickets": []}),
        )

        client.get("/api/v2/tickets.json")

        assert sleeps == [7]

    def test_retry_after_carries_over_to_later_attempts(self, client, session, sleeps):
        session.queue(
            make_response(429, {"error": "TooManyRequests"}, headers={"Retry-After": "2"}),
            requests.exceptions.ConnectionError("reset"),
            make_response(200, {}),
        )

        client.get("/api/v2/tickets.json")

        assert sleeps == [2, 2]

    def test_rate_limit_exhaustion_returns_the_api_error(self, client, session):
        session.queue(*[make_response(429, {"error": "TooManyRequests"}, headers={"Retry-After": "0"}) for _ in range(3)])

        with pytest.raises(ZendeskAPIError) as info:
            client.get("/api/v2/tickets.json")

        assert info.value.status_code == 429
        assert len(session.sent) == 3

    def test_non_integer_retry_after_is_fatal(self, client, session):
        session.queue(make_response(429, {"error": "TooManyRequests"}, headers={"Retry-After": "soon"}))

        with pytest.raises(ZendeskAPIError):
            client.get("/api/v2/tickets.json")
        assert len(session.sent) == 1

    @pytest.mark.parametrize("status", [400, 401, 404, 500, 503])
    def test_other_statuses_are_not_retried(self, client, session, status):
        session.queue(make_response(status, {"error": "Nope"}))

        with pytest.raises(ZendeskAPIError):
            client.get("/api/v2/tickets.json")
        assert len(session.sent) == 1

    def test_writes_are_not_retried(self, client, session):
        session.queue(make_response(429, {"error": "TooManyRequests"}, headers={"Retry-After": "0"}))

        with pytest.raises(ZendeskAPIError):
            client.post("/api/v2/tickets.json", json={"ticket": {}})
        assert len(session.sent) == 1
        assert REQUEST_HEADER_RETRY_ATTEMPTS not in session.sent[0].headers

    def test_cancel_during_backoff(self, session):
        cancel = threading.Event()
        policy = RetryPolicy()
        client = ZendeskClient(
            subdomain="example",
            auth=APITokenAuth("agent@example.com", "api-token"),
            session=session,
            retry_policy=policy,
        )

        def rate_limited(request):
            cancel.set()
            return make_response(429, {"error": "TooManyRequests"}, headers={"Retry-After": "30"})

        session.queue(rate_limited)

        with pytest.raises(ZendeskCancelledError):
            client.get("/api/v2/tickets.json", cancel_event=cancel)
        assert len(session.sent) == 1

    def test_non_integer_retry_after_does_not_sleep(self, client, session, sleeps):
        session.queue(make_response(429, {"error": "TooManyRequests"}, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}))

        with pytest.raises(ZendeskAPIError) as info:
            client.get("/api/v2/tickets.json")

        assert info.value.status_code == 429
        assert sleeps == []

    def test_custom_attempt_budget(self, session, sleeps):
        client = ZendeskClient(
            subdomain="example",
            auth=APITokenAuth("agent@example.com", "api-token"),
            session=session,
            retry_policy=RetryPolicy(max_attempts=5, sleep=sleeps.append),
        )
        session.queue(
            *[requests.exceptions.ConnectionError("reset") for _ in range(4)],
            make_response(200, {"ok": True}),
        )

        assert client.get("/api/v2/tickets.json") == {"ok": True}
        assert [r.headers[REQUEST_HEADER_RETRY_ATTEMPTS] for r in session.sent] == ["1", "2", "3", "4", "5"]
        assert sleeps == []

    def test_retries_are_logged(self, client, session, caplog):
        session.queue(requests.exceptions.ConnectionError("reset"), make_response(200, {}))

        with caplog.at_level(logging.WARNING, logger="zendesk_api_client.retry"):
            client.get("/api/v2/tickets.json")

        assert "Attempt 1/3 of GET https://example.zendesk.com/api/v2/tickets.json failed" in caplog.text

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestConfiguration:
    def test_from_env_with_api_token(self):
        env = {
            "ZENDESK_SUBDOMAIN": "acme",
            "ZENDESK_EMAIL": "agent@acme.com",
            "ZENDESK_API_TOKEN": "tok",
            "ZENDESK_CHAT_CLIENT_ID": "cid",
            "ZENDESK_CHAT_CLIENT_SECRET": "csecret",
            "ZENDESK_TIMEOUT": "30",
            "ZENDESK_USER_AGENT": "acme-sync/2.0",
        }

        client = ZendeskClient.from_env(env)

        assert client.base_url == "https://acme.zendesk.com"
        assert isinstance(client.auth, APITokenAuth)
        assert client.auth.username == "agent@acme.com/token"
        assert client.tokens.credentials == ChatCredentials("cid", "csecret")
        assert client.timeout == 30.0
        assert client.user_agent == "acme-sync/2.0"

    def test_from_env_with_password_and_override(self, monkeypatch):
        monkeypatch.setenv("ZENDESK_SUBDOMAIN", "acme")
        monkeypatch.setenv("ZENDESK_EMAIL", "agent@acme.com")
        monkeypatch.setenv("ZENDESK_PASSWORD", "pw")
        monkeypatch.delenv("ZENDESK_API_TOKEN", raising=False)

        client = ZendeskClient.from_env(timeout=5)

        assert isinstance(client.auth, PasswordAuth)
        assert client.timeout == 5

    def test_from_env_without_credentials(self):
        with pytest.raises(ZendeskAuthError):
            ZendeskClient.from_env({"ZENDESK_SUBDOMAIN": "acme"})

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"subdomain": "", "auth": APITokenAuth("a@b.c", "t")},
            {"subdomain": "acme", "auth": None},
            {"subdomain": "acme", "auth": APITokenAuth("a@b.c", "t"), "timeout": 0},
        ],
    )
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            ZendeskClient(**kwargs)

    def test_context_manager_closes_session(self):
        session = FakeSession()
        closed = []
        session.close = lambda: closed.append(True)

        with ZendeskClient(subdomain="acme", auth=APITokenAuth("a@b.c", "t"), session=session):
            pass

        assert closed == [True]
