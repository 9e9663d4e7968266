"""
Operator-facing rollout events and the sinks that deliver them.
"""
import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import requests

from .kube_types import RolloutStatus

logger = logging.getLogger(__name__)


@dataclass
class RolloutEvent:
    """A status transition of one workload."""
    workload_id: str
    from_status: RolloutStatus
    to_status: RolloutStatus
    plan_id: Optional[str] = None
    from_digest: Optional[str] = None
    to_digest: Optional[str] = None
    message: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def terminal_failure(self) -> bool:
        return self.to_status is RolloutStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["from_status"] = self.from_status.value
        data["to_status"] = self.to_status.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class EventSink:
    """Receives rollout events. Implementations must not raise into the engine."""

    async def emit(self, event: RolloutEvent) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    async def emit(self, event: RolloutEvent) -> None:
        line = (f"[{event.workload_id}] {event.from_status.value} -> {event.to_status.value} "
                f"plan={event.plan_id} digest={event.from_digest} -> {event.to_digest}")
        if event.message:
            line += f" ({event.message})"
        if event.terminal_failure:
            logger.error(f"❌ {line}")
        elif event.to_status is RolloutStatus.FAILING:
            logger.warning(line)
        else:
            logger.info(line)


class MemoryEventSink(EventSink):
    """Keeps the most recent events for the HTTP API."""

    def __init__(self, maxlen: int = 500):
        self._events: Deque[RolloutEvent] = deque(maxlen=maxlen)

    async def emit(self, event: RolloutEvent) -> None:
        self._events.append(event)

    def history(self, workload_id: Optional[str] = None) -> List[RolloutEvent]:
        return [e for e in self._events if workload_id is None or e.workload_id == workload_id]


class WebhookEventSink(EventSink):
    """POSTs each event as JSON. Delivery failures are logged and dropped."""

    def __init__(self, url: str, timeout: float = 5, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, payload: Dict[str, Any]) -> None:
        response = self.session.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()

    async def emit(self, event: RolloutEvent) -> None:
        try:
            await asyncio.to_thread(self._post, event.to_dict())
        except requests.RequestException as e:
            logger.warning(f"Failed to deliver rollout event for {event.workload_id} to {self.url}: {e}")


class CompositeEventSink(EventSink):
    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    async def emit(self, event: RolloutEvent) -> None:
        for sink in self.sinks:
            await sink.emit(event)
