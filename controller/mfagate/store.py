"""Single-writer state cell holding the current immutable Session."""
from __future__ import annotations

import asyncio
import logging
import time
from asyncio import QueueEmpty
from typing import Any, List, Optional

from .state import Session, SessionEvent, session_payload

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Owns the Session value and publishes every replacement.

    Mutations never edit the current Session in place: each call builds a new
    value with ``Session.copy`` and swaps it in, so readers only ever see a
    complete snapshot. All calls are expected on the controller's event loop.
    """

    def __init__(
        self,
        initial: Optional[Session] = None,
        *,
        log_capacity: int = 8,
        queue_size: int = 4,
    ) -> None:
        self._session = initial or Session()
        self._log_capacity = log_capacity
        self._queue_size = queue_size
        self._subscribers: List[asyncio.Queue[SessionEvent]] = []

    @property
    def session(self) -> Session:
        return self._session

    def update(self, **changes: Any) -> Session:
        self._session = self._session.copy(**changes)
        self._publish("state")
        return self._session

    def append_log(self, entry: str) -> Session:
        """Append a timestamped entry, evicting the oldest past capacity."""
        stamped = f"{int(time.time() * 1000)}: {entry}"
        log = (self._session.log + (stamped,))[-self._log_capacity:]
        logger.info("session: %s", entry)
        return self.update(log=log)

    def reset(self, session: Session) -> Session:
        self._session = session
        self._publish("state")
        return self._session

    def subscribe(self) -> asyncio.Queue[SessionEvent]:
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def heartbeat(self) -> None:
        self._publish("heartbeat")

    def _publish(self, event_type: str) -> None:
        if not self._subscribers:
            return
        session = self._session
        data = session_payload(session) if event_type == "state" else {}
        event = SessionEvent(type=event_type, stage=session.stage, data=data)
        for queue in list(self._subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to publish event to subscriber: %s", e)


__all__ = ["SessionStore"]
