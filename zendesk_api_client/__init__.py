"""
Python client for the Zendesk Support, Chat and webhook APIs.

This package provides a :class:`ZendeskClient` that authenticates
against the Zendesk Support API with basic auth and against the
Zendesk Chat APIs with an OAuth client-credentials bearer token, and
that drives the cursor, offset and incremental-export pagination
schemes used by Zendesk listing endpoints.

Examples
--------

```python
from zendesk_api_client import APITokenAuth, ZendeskClient

client = ZendeskClient(
    subdomain="mycompany",
    auth=APITokenAuth("agent@example.com", "YOUR_API_TOKEN"),
)

def handle(page):
    for ticket in page.body["tickets"]:
        print(ticket["id"], ticket["subject"])

client.tickets_incremental_export(0, handle)
```

Inbound webhooks are verified and routed with
:class:`WebhookDispatcher`, which can be mounted in any WSGI server.
"""

from .agent_events import AgentEvent, AgentState, AgentStateAggregator
from .auth import (
    APITokenAuth,
    BearerToken,
    ChatCredentials,
    InMemoryTokenStore,
    PasswordAuth,
    TokenManager,
    TokenStore,
)
from .client import ZendeskClient, log_requests
from .exceptions import (
    ErrorDetail,
    ErrorKind,
    ZendeskAPIError,
    ZendeskAuthError,
    ZendeskCancelledError,
    ZendeskDecodeError,
    ZendeskError,
    ZendeskNetworkError,
)
from .pagination import (
    CursorPage,
    CursorPagination,
    IncrementalExportPage,
    LimitBasedIncrementalExport,
    OffsetPage,
    OffsetPagination,
    PageIterator,
    TimeBasedIncrementalExport,
)
from .retry import REQUEST_HEADER_RETRY_ATTEMPTS, RetryPolicy
from .webhook import (
    WEBHOOK_HEADER_SIGNATURE,
    WEBHOOK_HEADER_SIGNATURE_TIMESTAMP,
    WebhookDispatcher,
    WebhookEvent,
    WebhookResponse,
    WebhookRoute,
    WebhookTriggerHandler,
    verify_signature,
    webhook_signing_secret_from_env,
)

__all__ = [
    "ZendeskClient",
    "log_requests",
    "PasswordAuth",
    "APITokenAuth",
    "ChatCredentials",
    "BearerToken",
    "TokenStore",
    "InMemoryTokenStore",
    "TokenManager",
    "RetryPolicy",
    "REQUEST_HEADER_RETRY_ATTEMPTS",
    "CursorPage",
    "OffsetPage",
    "IncrementalExportPage",
    "CursorPagination",
    "OffsetPagination",
    "TimeBasedIncrementalExport",
    "LimitBasedIncrementalExport",
    "PageIterator",
    "AgentEvent",
    "AgentState",
    "AgentStateAggregator",
    "WEBHOOK_HEADER_SIGNATURE",
    "WEBHOOK_HEADER_SIGNATURE_TIMESTAMP",
    "WebhookDispatcher",
    "WebhookTriggerHandler",
    "WebhookEvent",
    "WebhookResponse",
    "WebhookRoute",
    "verify_signature",
    "webhook_signing_secret_from_env",
    "ErrorKind",
    "ErrorDetail",
    "ZendeskError",
    "ZendeskNetworkError",
    "ZendeskAPIError",
    "ZendeskAuthError",
    "ZendeskDecodeError",
    "ZendeskCancelledError",
]
