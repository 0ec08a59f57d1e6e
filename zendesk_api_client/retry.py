"""
Retry policy for idempotent requests.

Only reads are retried.  A request is attempted at most
``max_attempts`` times.  Transient network failures and
``429 Too Many Requests`` responses are retried; once a 429 has named a
``Retry-After`` delay, every later attempt of the call waits that
long.  Every other failure is raised to the caller on the first
occurrence.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from .exceptions import ZendeskAPIError, ZendeskCancelledError, ZendeskNetworkError

logger = logging.getLogger(__name__)

REQUEST_HEADER_RETRY_ATTEMPTS = "X-Attempt-Count"
DEFAULT_MAX_ATTEMPTS = 3

T = TypeVar("T")


class RetryPolicy:
    """Bounded retry loop around a single-shot request function.

    Parameters
    ----------
    max_attempts : int, optional
        Total number of attempts, including the first one.  Defaults to 3.
    sleep : callable, optional
        ``sleep(seconds)`` used between attempts when no cancel event
        is supplied.  Defaults to :func:`time.sleep`.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS, sleep: Callable[[float], None] = time.sleep) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1, got %r" % max_attempts)
        self.max_attempts = max_attempts
        self._sleep = sleep

    def call(
        self,
        send: Callable[[requests.Request], T],
        request: requests.Request,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        """Run ``send(request)`` until it succeeds or the attempts run out.

        The 1-based attempt number is written to the
        ``X-Attempt-Count`` request header before every attempt so
        that request pre-processors and servers can spot retries.

        Raises
        ------
        ZendeskNetworkError
            Immediately when the failure is not transient, or after the
            last attempt failed with a transient error.
        ZendeskAPIError
            Immediately for any status other than 429 or a 429 whose
            ``Retry-After`` is not an integer, or after the last attempt
            was rate limited.
        ZendeskCancelledError
            If ``cancel_event`` is set before or during a wait.
        """
        # The Retry-After of the latest 429 applies to every later attempt.
        retry_after = 0

        def should_retry(exc: BaseException) -> bool:
            nonlocal retry_after
            if isinstance(exc, ZendeskNetworkError):
                return exc.transient
            if not isinstance(exc, ZendeskAPIError) or exc.status_code != 429:
                return False
            if exc.retry_after:
                try:
                    retry_after = int(exc.retry_after)
                except ValueError:
                    return False
            return True

        def mark_attempt(retry_state: RetryCallState) -> None:
            request.headers[REQUEST_HEADER_RETRY_ATTEMPTS] = str(retry_state.attempt_number)

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Attempt %d/%d of %s %s failed, retrying in %ds: %s",
                retry_state.attempt_number, self.max_attempts, request.method, request.url,
                retry_after, retry_state.outcome.exception(),
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception(should_retry),
            wait=lambda retry_state: retry_after,
            before=mark_attempt,
            before_sleep=log_retry,
            sleep=lambda seconds: self._wait(seconds, cancel_event),
            reraise=True,
        )
        return retrying(send, request)

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            if seconds > 0:
                self._sleep(seconds)
            return
        if cancel_event.is_set() or (seconds > 0 and cancel_event.wait(seconds)):
            raise ZendeskCancelledError("request cancelled by caller")
