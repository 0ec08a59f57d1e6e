"""
Authentication for the Zendesk API client.

The main (Support, Guide, account configuration) API is authenticated
with HTTP basic auth, either with an agent's email and password or
with an email and API token.  Both are ordinary ``requests`` auth
objects that are attached to every main API request.

The Chat and Real Time Chat APIs use an OAuth bearer token minted with
the client credentials grant.  Chat tokens carry no expiry, so a token
is cached until the server rejects it with a 401.  The
:class:`TokenManager` owns that cache and guarantees that concurrent
callers trigger at most one token request at a time.

.. note::

   The OAuth client must be configured in Zendesk Chat with
   ``"client_type": "confidential"``.  Zendesk reverts the client to
   ``"public"`` whenever it is edited in the Chat web UI.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

import requests
from requests.auth import HTTPBasicAuth

from .exceptions import ZendeskAuthError, ZendeskDecodeError

if TYPE_CHECKING:
    from .client import ZendeskClient

logger = logging.getLogger(__name__)

CHAT_TOKEN_URL = "https://www.zopim.com/oauth2/token"


# ------------------------------------------------------------------
# Main API credentials
# ------------------------------------------------------------------
class PasswordAuth(HTTPBasicAuth):
    """Basic auth with an agent's email address and password."""

    def __init__(self, email: str, password: str) -> None:
        if not email:
            raise ValueError("email must be provided")
        super().__init__(email, password)


class APITokenAuth(HTTPBasicAuth):
    """Basic auth with an email address and an API token.

    Zendesk expects the username ``<email>/token`` for token auth.
    """

    def __init__(self, email: str, token: str) -> None:
        if not email:
            raise ValueError("email must be provided")
        if not token:
            raise ValueError("token must be provided")
        super().__init__(f"{email}/token", token)
        self.email = email


@dataclass(frozen=True)
class ChatCredentials:
    """OAuth client credentials used only to mint chat bearer tokens."""

    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return f"ChatCredentials(client_id={self.client_id!r}, client_secret='***')"


@dataclass(frozen=True)
class BearerToken:
    """An OAuth access token issued by the chat token endpoint."""

    access_token: str
    token_type: str = ""
    scope: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "BearerToken":
        if not isinstance(data, dict):
            raise ZendeskDecodeError(f"unexpected token response: {data!r}")
        return cls(
            access_token=str(data.get("access_token") or ""),
            token_type=str(data.get("token_type") or ""),
            scope=str(data.get("scope") or ""),
        )

    def __repr__(self) -> str:
        return f"BearerToken(token_type={self.token_type!r}, scope={self.scope!r})"


# ------------------------------------------------------------------
# Token storage
# ------------------------------------------------------------------
class TokenStore:
    """Backing store for the cached chat bearer token.

    Subclass this to share a token between processes (for example in a
    cache server).  Implementations only need to be as thread safe as a
    plain attribute assignment; the :class:`TokenManager` serialises
    token acquisition itself.
    """

    def get(self) -> Optional[BearerToken]:
        raise NotImplementedError

    def set(self, token: BearerToken) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class InMemoryTokenStore(TokenStore):
    """Keeps the token in process memory for the life of the client."""

    def __init__(self) -> None:
        self._token: Optional[BearerToken] = None

    def get(self) -> Optional[BearerToken]:
        return self._token

    def set(self, token: BearerToken) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


# ------------------------------------------------------------------
# Token lifecycle
# ------------------------------------------------------------------
class TokenManager:
    """Lazily acquires and caches the chat bearer token.

    Parameters
    ----------
    client : ZendeskClient
        The client whose executor performs the token request.
    credentials : ChatCredentials
        The chat OAuth client id and secret.
    store : TokenStore, optional
        Where the token is cached.  Defaults to :class:`InMemoryTokenStore`.
    token_url : str, optional
        Override the token endpoint.
    """

    def __init__(
        self,
        client: "ZendeskClient",
        credentials: Optional[ChatCredentials],
        *,
        store: Optional[TokenStore] = None,
        token_url: str = CHAT_TOKEN_URL,
    ) -> None:
        self._client = client
        self.credentials = credentials
        self.store = store if store is not None else InMemoryTokenStore()
        self.token_url = token_url
        self._lock = threading.Lock()

    def ensure_token(self, *, cancel_event: Optional[threading.Event] = None) -> BearerToken:
        """Return the cached token, requesting a new one if none is cached.

        The cache is checked once without the lock and again after the
        lock is acquired, so only the first of several concurrent
        callers performs the network request.
        """
        token = self.store.get()
        if token is not None:
            return token

        with self._lock:
            token = self.store.get()
            if token is not None:
                return token
            token = self._request_token(cancel_event)
            # A blank token is handed back for the caller to reject, never cached.
            if token.access_token:
                self.store.set(token)
            return token

    def invalidate(self) -> None:
        """Discard the cached token so the next call requests a fresh one.

        The lock is not taken here.  A caller racing with this clear at
        worst performs one redundant token request.
        """
        logger.info("Discarding cached chat access token")
        self.store.clear()

    def _request_token(self, cancel_event: Optional[threading.Event]) -> BearerToken:
        if self.credentials is None:
            raise ZendeskAuthError("chat_credentials must be configured to call the Chat API")

        payload: Dict[str, str] = {
            "grant_type": "client_credentials",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
        }
        request = requests.Request(
            "POST",
            self.token_url,
            data=payload,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        logger.info("Requesting chat access token from %s", self.token_url)
        return self._client.execute(request, decode=BearerToken.from_dict, cancel_event=cancel_event)
