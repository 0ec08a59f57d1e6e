"""
Incremental agent events and current agent state.

The Chat API exposes an incremental export of agent events (status
changes, engagement counts, ...).  :class:`AgentStateAggregator` folds
that stream into a map of the current state of every online agent and
remembers how far it has read, so each call to
:meth:`AgentStateAggregator.update_agent_states` only fetches the
events that arrived since the previous call.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .exceptions import ZendeskDecodeError
from .pagination import IncrementalExportPage
from .timeutil import parse_timestamp, to_utc

if TYPE_CHECKING:
    from .client import ZendeskClient

logger = logging.getLogger(__name__)

OFFLINE_STATUSES = frozenset({"offline", "invisible"})
UNKNOWN_STATUS = "unknown"

_UNSIGNED_INT = re.compile(r"[0-9]+")


def _agent_id(value: Any) -> int:
    # Agent ids arrive either as numbers or as numeric strings.
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except ValueError:
        return 0


def _event_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise ZendeskDecodeError(f"invalid agent event value: {value!r}")
    if isinstance(value, (int, str)):
        return str(value)
    raise ZendeskDecodeError(f"invalid agent event value: {value!r}")


@dataclass(frozen=True)
class AgentEvent:
    """A single entry of the incremental agent events export."""

    id: str
    agent_id: int
    field_name: str
    value: str
    previous_value: str
    timestamp: datetime
    account_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentEvent":
        try:
            timestamp = parse_timestamp(data.get("timestamp"))
        except ValueError as exc:
            raise ZendeskDecodeError(f"invalid agent event timestamp: {data.get('timestamp')!r}") from exc
        return cls(
            id=str(data.get("id") or ""),
            agent_id=_agent_id(data.get("agent_id")),
            field_name=str(data.get("field_name") or ""),
            value=_event_value(data.get("value")),
            previous_value=_event_value(data.get("previous_value")),
            timestamp=timestamp,
            account_id=data.get("account_id"),
        )


@dataclass
class AgentState:
    """The folded state of one agent."""

    agent_id: int
    engagement_count: int = 0
    status: str = ""
    status_since: Optional[datetime] = None
    timestamp: Optional[datetime] = None


def agent_events_from_page(page: IncrementalExportPage) -> List[AgentEvent]:
    return [AgentEvent.from_dict(event) for event in page.body.get("agent_events") or []]


class AgentStateAggregator:
    """Maintains the current state of every online chat agent.

    Offline and invisible agents are dropped from the map entirely.

    Parameters
    ----------
    client : ZendeskClient
        Client used to read the agent events export.
    """

    def __init__(self, client: "ZendeskClient") -> None:
        self._client = client
        self._lock = threading.Lock()
        self._states: Dict[int, AgentState] = {}
        self._start_time: Optional[datetime] = None

    @property
    def start_time(self) -> Optional[datetime]:
        """The watermark the next update will read from."""
        with self._lock:
            return self._start_time

    def get_agent_states(self) -> Dict[int, AgentState]:
        """Return a deep copy of the current agent states."""
        with self._lock:
            return copy.deepcopy(self._states)

    def update_agent_states(
        self,
        default_start_time: datetime,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Read all agent events since the stored watermark and fold them in.

        ``default_start_time`` is only used on the first call, before a
        watermark has been stored.

        Raises
        ------
        ZendeskDecodeError
            If an ``engagements`` event carries a non numeric value.  The
            page holding that event is discarded; states and watermark
            keep their values from the previous page.
        """
        with self._lock:
            if self._start_time is None:
                self._start_time = to_utc(default_start_time)
            start_time = self._start_time

        self._client.agent_events_incremental_export(start_time, self._apply_page, cancel_event=cancel_event)

    def _apply_page(self, page: IncrementalExportPage) -> None:
        events = agent_events_from_page(page)

        with self._lock:
            states = dict(self._states)
            for event in events:
                self._apply_event(states, event)
            self._states = states
            self._start_time = page.end_time

        logger.debug("Applied %d agent events, watermark now %s", len(events), page.end_time.isoformat())

    @staticmethod
    def _apply_event(states: Dict[int, AgentState], event: AgentEvent) -> None:
        previous = states.get(event.agent_id)
        state = copy.copy(previous) if previous is not None else AgentState(agent_id=event.agent_id)
        state.agent_id = event.agent_id
        state.timestamp = event.timestamp

        # Agents whose last status change predates the window still
        # produce engagement events; give them a usable status.
        if state.status_since is None:
            state.status_since = event.timestamp
        if not state.status:
            state.status = UNKNOWN_STATUS

        if event.field_name == "engagements":
            if not _UNSIGNED_INT.fullmatch(event.value):
                raise ZendeskDecodeError(f"invalid engagement count for agent {event.agent_id}: {event.value!r}")
            state.engagement_count = int(event.value)
        elif event.field_name == "status":
            if event.value in OFFLINE_STATUSES:
                states.pop(event.agent_id, None)
                return
            state.status = event.value
            state.status_since = event.timestamp

        states[event.agent_id] = state
