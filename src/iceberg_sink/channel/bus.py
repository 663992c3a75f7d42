"""Abstract control bus protocol.

The control bus is a partitioned, append-only, at-least-once log.  Workers
and the coordinator only ever talk to each other through it.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from iceberg_sink.channel.events import Event


@dataclass(frozen=True)
class ReceivedEvent:
    """An event together with its position on the control bus."""

    event: Event
    partition: int
    offset: int


@runtime_checkable
class ControlBus(Protocol):
    """Protocol every control bus adapter must satisfy."""

    async def send(self, events: Sequence[Event]) -> None:
        """Durably append *events*; returns once the log has accepted them."""
        ...

    async def poll(self, timeout: float) -> list[ReceivedEvent]:
        """Return the next batch of decodable events for this deployment."""
        ...

    def ack(self, received: ReceivedEvent) -> None:
        """Mark everything up to and including *received* as processed."""
        ...

    async def close(self) -> None:
        ...
