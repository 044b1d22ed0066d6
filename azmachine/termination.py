"""Watch the cloud scheduled-events endpoint and mark the node when it is preempted."""

from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

AZURE_TERMINATION_ENDPOINT_URL = (
    "http://169.254.169.254/metadata/scheduledevents?api-version=2019-08-01"
)
TERMINATING_CONDITION_TYPE = "Terminating"
TERMINATION_REQUESTED_REASON = "TerminationRequested"
PREEMPT_EVENT_TYPE = "Preempt"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

_logger = logging.getLogger(__name__)


class TerminationError(Exception):
    """Raised when the termination handler fails."""


@dataclass
class NodeCondition:
    """A condition in a node's status."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_heartbeat_time: datetime | None = None
    last_transition_time: datetime | None = None


@dataclass
class Node:
    """The parts of a cluster node the handler works with."""

    name: str
    conditions: list[NodeCondition] = field(default_factory=list)


class NodeClient(Protocol):
    def get_node(self, name: str) -> Node: ...

    def update_node_status(self, node: Node) -> None: ...


def _field(document: dict[str, Any], name: str) -> Any:
    if name in document:
        return document[name]
    lowered = name.lower()
    for key, value in document.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


@dataclass(frozen=True)
class ScheduledEvent:
    """One entry of the scheduled-events document."""

    event_type: str


@dataclass(frozen=True)
class ScheduledEvents:
    """The scheduled-events document returned by the metadata service."""

    events: list[ScheduledEvent] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: str | bytes) -> ScheduledEvents:
        """Parse a scheduled-events JSON document; raises ``ValueError`` if malformed."""
        document = json.loads(data)
        if not isinstance(document, dict):
            raise ValueError("scheduled events document must be a JSON object")
        raw_events = _field(document, "Events")
        if raw_events is None:
            raw_events = []
        if not isinstance(raw_events, list):
            raise ValueError("Events must be a JSON array")
        events = []
        for entry in raw_events:
            if not isinstance(entry, dict):
                raise ValueError("each event must be a JSON object")
            event_type = _field(entry, "EventType")
            if event_type is None:
                event_type = ""
            if not isinstance(event_type, str):
                raise ValueError("EventType must be a string")
            events.append(ScheduledEvent(event_type))
        return cls(events)

    def has_preempt(self) -> bool:
        """Whether any event announces preemption of the instance."""
        return any(event.event_type == PREEMPT_EVENT_TYPE for event in self.events)


def node_has_termination_condition(node: Node) -> bool:
    """Whether the node already has a terminating condition."""
    return any(c.type == TERMINATING_CONDITION_TYPE for c in node.conditions)


def add_node_termination_condition(node: Node) -> None:
    """Ensure the node carries a terminating condition with status True."""
    now = datetime.now(timezone.utc)
    terminating = NodeCondition(
        type=TERMINATING_CONDITION_TYPE,
        status=CONDITION_TRUE,
        reason=TERMINATION_REQUESTED_REASON,
        message="The cloud provider has marked this instance for termination",
        last_heartbeat_time=now,
        last_transition_time=now,
    )

    if not node_has_termination_condition(node):
        node.conditions.append(terminating)
        return

    node.conditions = [
        condition
        if condition.type != TERMINATING_CONDITION_TYPE or condition.status == CONDITION_TRUE
        else terminating
        for condition in node.conditions
    ]


class Handler:
    """Polls the termination endpoint and marks the node once termination is announced."""

    def __init__(
        self,
        client: NodeClient,
        node_name: str,
        poll_interval: float,
        namespace: str = "",
        poll_url: str = AZURE_TERMINATION_ENDPOINT_URL,
        opener: urllib.request.OpenerDirector | None = None,
    ) -> None:
        self.client = client
        self.node_name = node_name
        self.poll_interval = poll_interval
        self.namespace = namespace
        self.poll_url = poll_url
        self.opener = opener or urllib.request.build_opener()
        self._log = logging.LoggerAdapter(
            _logger, {"node": node_name, "namespace": namespace}
        )

    def run(self, stop: threading.Event) -> None:
        """Poll until termination is announced or ``stop`` is set."""
        self._log.debug("Monitoring node termination")
        try:
            while True:
                if stop.is_set():
                    return
                if self._instance_marked_for_termination():
                    break
                self._log.debug("Instance not marked for termination")
                if stop.wait(self.poll_interval):
                    return
        except TerminationError as exc:
            raise TerminationError(f"error polling termination endpoint: {exc}") from exc

        self._log.debug("Instance marked for termination, marking Node for deletion")
        try:
            self._mark_node_for_deletion()
        except TerminationError as exc:
            raise TerminationError(f"error marking node: {exc}") from exc

    def _instance_marked_for_termination(self) -> bool:
        url = self.poll_url
        try:
            request = urllib.request.Request(url, headers={"Metadata": "true"}, method="GET")
            response = self.opener.open(request)
        except urllib.error.HTTPError as exc:
            response = exc
        except (OSError, ValueError) as exc:
            raise TerminationError(f'could not get URL "{url}": {exc}') from exc

        with response:
            try:
                body = response.read()
            except OSError as exc:
                raise TerminationError(f"failed to read responce body: {exc}") from exc

        try:
            events = ScheduledEvents.from_json(body)
        except ValueError as exc:
            raise TerminationError(f"failed to unmarshal responce body: {exc}") from exc
        return events.has_preempt()

    def _mark_node_for_deletion(self) -> None:
        try:
            node = self.client.get_node(self.node_name)
        except Exception as exc:
            raise TerminationError(f"error fetching node: {exc}") from exc

        add_node_termination_condition(node)
        try:
            self.client.update_node_status(node)
        except Exception as exc:
            raise TerminationError("error updating node status") from exc