"""
Pagination drivers.

Zendesk listing endpoints use three incompatible continuation schemes:

* **cursor pagination** - ``meta.has_more`` tells whether another page
  exists and ``links.next`` is the absolute URL of that page;
* **offset pagination** - a pre-built ``next_page`` URL, or ``null`` on
  the last page;
* **incremental export** - a time (or id) watermark.  Time based
  exports report ``end_of_stream``; the limit based chat exports end on
  the first page holding fewer than ``limit`` records.

All of them are driven by a single :class:`PageIterator`.  A strategy
object decodes each response body into a page and derives the request
for the following page, or returns ``None`` when the listing is
exhausted.

Example
-------

.. code-block:: python

    def handle(page):
        for ticket in page.body["tickets"]:
            print(ticket["id"])

    client.list_cursor("/api/v2/tickets", handle, params={"page[size]": 100})
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Iterator, Optional, TypeVar

import requests

from .exceptions import ZendeskCancelledError, ZendeskDecodeError
from .retry import REQUEST_HEADER_RETRY_ATTEMPTS
from .timeutil import from_unix

P = TypeVar("P")


# ------------------------------------------------------------------
# Page types
# ------------------------------------------------------------------
@dataclass
class CursorPage:
    """One page of a cursor paginated listing."""

    has_more: bool
    after_cursor: Optional[str] = None
    before_cursor: Optional[str] = None
    next_link: Optional[str] = None
    body: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CursorPage":
        meta = data.get("meta") or {}
        links = data.get("links") or {}
        return cls(
            has_more=bool(meta.get("has_more")),
            after_cursor=meta.get("after_cursor"),
            before_cursor=meta.get("before_cursor"),
            next_link=links.get("next"),
            body=data,
        )


@dataclass
class OffsetPage:
    """One page of an offset paginated listing."""

    next_page: Optional[str] = None
    previous_page: Optional[str] = None
    count: int = 0
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IncrementalExportPage:
    """One page of an incremental export."""

    end_time_unix: int = 0
    end_of_stream: bool = False
    count: int = 0
    end_id: Optional[str] = None
    next_page: Optional[str] = None
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def end_time(self) -> datetime:
        return from_unix(self.end_time_unix)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IncrementalExportPage":
        end_id = data.get("end_id")
        return cls(
            end_time_unix=int(data.get("end_time") or 0),
            end_of_stream=bool(data.get("end_of_stream")),
            count=int(data.get("count") or 0),
            end_id=str(end_id) if end_id is not None else None,
            next_page=data.get("next_page"),
            body=data,
        )


# ------------------------------------------------------------------
# Strategies
# ------------------------------------------------------------------
def _follow(request: requests.Request, *, url: Optional[str] = None, params: Optional[Dict[str, Any]] = None) -> requests.Request:
    """Copy ``request`` for the next page, replacing its URL or query."""
    headers = {k: v for k, v in request.headers.items() if k != REQUEST_HEADER_RETRY_ATTEMPTS}
    if url is not None:
        return requests.Request(request.method, url, headers=headers)
    return requests.Request(request.method, request.url, headers=headers, params=params)


class PaginationStrategy(Generic[P]):
    """Decodes a page and derives the request for the following one."""

    def decode(self, body: Any) -> P:
        raise NotImplementedError

    def next_request(self, page: P, request: requests.Request) -> Optional[requests.Request]:
        raise NotImplementedError

    def _require_dict(self, body: Any) -> Dict[str, Any]:
        if not isinstance(body, dict):
            raise ZendeskDecodeError(f"expected a JSON object page, got {type(body).__name__}")
        return body


class CursorPagination(PaginationStrategy[CursorPage]):
    """Continue while ``meta.has_more``, always following ``links.next`` verbatim."""

    def decode(self, body: Any) -> CursorPage:
        return CursorPage.from_dict(self._require_dict(body))

    def next_request(self, page: CursorPage, request: requests.Request) -> Optional[requests.Request]:
        if not page.has_more:
            return None
        if not page.next_link:
            raise ZendeskDecodeError("cursor page reports has_more without a next link")
        return _follow(request, url=page.next_link)


class OffsetPagination(PaginationStrategy[OffsetPage]):
    """Continue exactly while the server supplies a next page URL.

    Parameters
    ----------
    next_key : str, optional
        Name of the field holding the next page URL.  Support endpoints
        use ``next_page``; the Chat API uses ``next_url``.
    """

    def __init__(self, next_key: str = "next_page") -> None:
        self.next_key = next_key

    def decode(self, body: Any) -> OffsetPage:
        data = self._require_dict(body)
        return OffsetPage(
            next_page=data.get(self.next_key) or None,
            previous_page=data.get("previous_page"),
            count=int(data.get("count") or 0),
            body=data,
        )

    def next_request(self, page: OffsetPage, request: requests.Request) -> Optional[requests.Request]:
        if page.next_page is None:
            return None
        return _follow(request, url=page.next_page)


class TimeBasedIncrementalExport(PaginationStrategy[IncrementalExportPage]):
    """Continue until ``end_of_stream``, moving ``start_time`` to each page's ``end_time``."""

    def decode(self, body: Any) -> IncrementalExportPage:
        return IncrementalExportPage.from_dict(self._require_dict(body))

    def next_request(self, page: IncrementalExportPage, request: requests.Request) -> Optional[requests.Request]:
        if page.end_of_stream:
            return None
        params = dict(request.params or {})
        params["start_time"] = str(page.end_time_unix)
        return _follow(request, params=params)


class LimitBasedIncrementalExport(PaginationStrategy[IncrementalExportPage]):
    """Chat exports: a page with fewer than ``limit`` records is the last one.

    Parameters
    ----------
    limit : int
        The page size that was requested.
    use_start_id : bool, optional
        Also carry ``end_id`` forward as ``start_id`` (chat export).
    follow_next_page : bool, optional
        Request the server supplied ``next_page`` URL instead of
        rebuilding the query (agent events export).
    """

    def __init__(self, limit: int, *, use_start_id: bool = False, follow_next_page: bool = False) -> None:
        if limit < 1:
            raise ValueError("limit must be positive, got %r" % limit)
        self.limit = limit
        self.use_start_id = use_start_id
        self.follow_next_page = follow_next_page

    def decode(self, body: Any) -> IncrementalExportPage:
        return IncrementalExportPage.from_dict(self._require_dict(body))

    def next_request(self, page: IncrementalExportPage, request: requests.Request) -> Optional[requests.Request]:
        if page.count < self.limit:
            return None
        if self.follow_next_page and page.next_page:
            return _follow(request, url=page.next_page)
        params = dict(request.params or {})
        params["start_time"] = str(page.end_time_unix)
        if self.use_start_id and page.end_id is not None:
            params["start_id"] = page.end_id
        return _follow(request, params=params)


# ------------------------------------------------------------------
# Driver
# ------------------------------------------------------------------
class PageIterator(Generic[P]):
    """Repeatedly fetches pages until the strategy reports exhaustion.

    Parameters
    ----------
    fetch : callable
        ``fetch(request)`` performs the request (with whatever retry or
        authentication the endpoint needs) and returns the decoded JSON
        body.
    request : requests.Request
        The request for the first page.
    strategy : PaginationStrategy
        The continuation scheme of the endpoint.
    cancel_event : threading.Event, optional
        Stops iteration before the next request once set.
    """

    def __init__(
        self,
        fetch: Callable[[requests.Request], Any],
        request: requests.Request,
        strategy: PaginationStrategy[P],
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._fetch = fetch
        self._request = request
        self.strategy = strategy
        self._cancel_event = cancel_event

    def __iter__(self) -> Iterator[P]:
        request: Optional[requests.Request] = self._request
        while request is not None:
            if self._cancel_event is not None and self._cancel_event.is_set():
                raise ZendeskCancelledError("pagination cancelled by caller")
            page = self.strategy.decode(self._fetch(request))
            yield page
            request = self.strategy.next_request(page, request)

    def run(self, page_handler: Callable[[P], None]) -> None:
        """Call ``page_handler`` once per page.

        An exception raised by the handler stops iteration and is
        propagated as is.
        """
        for page in self:
            page_handler(page)
