"""
Abstract base class for event sources
"""

from abc import ABC, abstractmethod
from typing import List
import logging

from schemas.events import Event

logger = logging.getLogger(__name__)


class EventSource(ABC):
    """
    Abstract base class for all event sources.

    Responsibilities:
    - Poll events strictly after a checkpoint, in ascending id order
    - Report the current max id so a fresh worker does not replay history
    - Acknowledge events once the worker has dispatched them

    Concrete sources validate their configuration in __init__ and raise a
    ConfigurationError naming the missing or invalid field.
    """

    name: str = "source"

    @abstractmethod
    async def poll(self, checkpoint: int, batch_size: int) -> List[Event]:
        """
        Fetch up to batch_size events with id greater than checkpoint.

        Args:
            checkpoint: Last dispatched event id
            batch_size: Maximum events to return

        Returns:
            Events in ascending id order
        """
        pass

    @abstractmethod
    async def get_initial_checkpoint(self) -> int:
        """Current max event id, used to seed a worker's first checkpoint"""
        pass

    async def ack(self, event: Event) -> None:
        """Mark an event as dispatched"""
        return None

    async def nack(self, event: Event) -> None:
        """Mark an event as failed; sources that cannot redeliver treat this as ack"""
        await self.ack(event)

    async def close(self) -> None:
        return None
