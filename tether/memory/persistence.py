"""Persistence contract + in-memory reference backend."""

from __future__ import annotations

import abc

from tether.memory.models import Checkpoint, Message


class Persistence(abc.ABC):
    """Durable storage for one conversation's messages and latest checkpoint.

    Implementations raise ``PersistenceError`` on failure; callers decide
    whether to degrade.
    """

    @abc.abstractmethod
    async def save_message(self, message: Message) -> None: ...

    @abc.abstractmethod
    async def load_messages(self) -> list[Message]: ...

    @abc.abstractmethod
    async def clear_messages(self) -> None: ...

    @abc.abstractmethod
    async def delete_old_messages(self, limit: int) -> None:
        """Keep only the newest ``limit`` non-summary messages."""

    @abc.abstractmethod
    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Overwrite the stored checkpoint."""

    @abc.abstractmethod
    async def load_checkpoint(self) -> Checkpoint | None: ...

    async def clear_checkpoint(self) -> None:
        return None


class InMemoryPersistence(Persistence):
    """Process-local backend (tests, ephemeral agents)."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.checkpoint: Checkpoint | None = None

    async def save_message(self, message: Message) -> None:
        self.messages.append(message)

    async def load_messages(self) -> list[Message]:
        return list(self.messages)

    async def clear_messages(self) -> None:
        self.messages.clear()

    async def delete_old_messages(self, limit: int) -> None:
        regular = [m for m in self.messages if not m.is_summary]
        drop = {id(m) for m in regular[: max(0, len(regular) - limit)]}
        self.messages = [m for m in self.messages if id(m) not in drop]

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.checkpoint = Checkpoint.from_json(checkpoint.to_json())

    async def load_checkpoint(self) -> Checkpoint | None:
        return self.checkpoint

    async def clear_checkpoint(self) -> None:
        self.checkpoint = None
