"""
Run event stream.

Every job and step transition is published as a ``RunEvent``. The stream keeps
the full history (so late subscribers and status tools can replay it) and fans
events out to live subscribers through per-subscriber queues.

Messages are masked on publish, so no event ever carries a secret value.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from .secrets import SecretMasker

logger = logging.getLogger(__name__)


class RunEvent(BaseModel):
    """One status transition within a run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    job_id: str | None = None
    step_id: str | None = Field(default=None, description="Step id, or its index if undeclared")
    status: str = Field(description="New state (job state, step outcome or run status)")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    message: str | None = None

    def describe(self) -> str:
        where = self.job_id or "run"
        if self.step_id is not None:
            where += f"/{self.step_id}"
        suffix = f": {self.message}" if self.message else ""
        return f"[{self.run_id}] {where} -> {self.status}{suffix}"


class EventStream:
    """
    History plus async fan-out of run events.

    Usage:
        stream = EventStream("run-1", masker)
        stream.publish(job_id="build", status="running")

        async for event in stream.subscribe():
            print(event.describe())
    """

    def __init__(self, run_id: str, masker: SecretMasker | None = None):
        self.run_id = run_id
        self._masker = masker
        self._history: list[RunEvent] = []
        self._subscribers: list[asyncio.Queue[RunEvent | None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> list[RunEvent]:
        return list(self._history)

    def publish(
        self,
        status: str,
        job_id: str | None = None,
        step_id: str | None = None,
        message: str | None = None,
    ) -> RunEvent:
        """Record an event and deliver it to current subscribers."""
        if message is not None and self._masker is not None:
            message = self._masker.mask(message)

        event = RunEvent(
            run_id=self.run_id,
            job_id=job_id,
            step_id=step_id,
            status=status,
            message=message,
        )
        self._history.append(event)
        logger.debug(event.describe())

        if self._closed:
            logger.warning(f"Event published after stream closed: {event.describe()}")
            return event

        for queue in self._subscribers:
            queue.put_nowait(event)
        return event

    async def subscribe(self, replay: bool = True) -> AsyncIterator[RunEvent]:
        """
        Iterate over events until the stream is closed.

        Args:
            replay: Yield the history recorded so far before live events
        """
        queue: asyncio.Queue[RunEvent | None] = asyncio.Queue()
        if replay:
            for event in self._history:
                queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)

        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def close(self) -> None:
        """End every subscription once queued events are consumed."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)
