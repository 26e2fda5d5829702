from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Coroutine, Iterable, Iterator, Optional, Sequence

from roleplay_core.schemas.chat import Character, MemoryStore, Message, MessageSender, Scenario

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"


class CompressionState(str, Enum):
    IDLE = "idle"
    COMPRESSING = "compressing"


class ImageState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"


class MessageLogError(RuntimeError):
    """Raised when a message-list mutation would break an invariant."""


class MessageLog:
    """Insertion-ordered messages keyed by id.

    Append, replace-by-id, and remove-by-id are the only mutations, so
    pipelines writing distinct ids never clobber each other.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        for message in messages:
            self.append(message)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def snapshot(self) -> list[Message]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        index = self._index_of(message_id)
        return self._messages[index] if index is not None else None

    def append(self, message: Message) -> Message:
        if self._index_of(message.id) is not None:
            raise MessageLogError(f"Duplicate message id: {message.id}")
        self._messages.append(message)
        return message

    def replace(self, message_id: str, message: Message) -> Optional[Message]:
        """Swap the message in place; returns the previous entry or None if missing."""

        if message.id != message_id:
            raise MessageLogError("Replacement must keep the original message id.")
        index = self._index_of(message_id)
        if index is None:
            return None
        previous = self._messages[index]
        self._messages[index] = message
        return previous

    def remove(self, message_id: str) -> Optional[Message]:
        index = self._index_of(message_id)
        if index is None:
            return None
        return self._messages.pop(index)

    def raw_messages(self) -> list[Message]:
        return [message for message in self._messages if message.is_raw]

    def _index_of(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None


class ChatSession:
    """Mutable state of one active scenario conversation.

    Each pipeline owns exactly one state field: the turn orchestrator owns
    ``turn_state``, the compression engine ``compression_state``, and the
    visual trigger ``image_state`` plus the image cadence counters.
    """

    def __init__(
        self,
        scenario: Scenario,
        characters: Sequence[Character],
        messages: Iterable[Message] = (),
    ) -> None:
        self.scenario = scenario
        self.characters = list(characters)
        self.log = MessageLog(messages)
        self.turn_state = TurnState.IDLE
        self.compression_state = CompressionState.IDLE
        self.image_state = ImageState.IDLE
        self.turn_index = 0
        self.messages_since_last_image = 0
        self.next_image_threshold = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def scenario_id(self) -> str:
        return self.scenario.id

    @property
    def is_idle(self) -> bool:
        return (
            self.turn_state is TurnState.IDLE
            and self.compression_state is CompressionState.IDLE
            and self.image_state is ImageState.IDLE
            and not any(not task.done() for task in self._tasks)
        )

    @property
    def memory(self) -> MemoryStore:
        return self.scenario.memory

    @property
    def messages(self) -> list[Message]:
        return self.log.snapshot()

    def append_message(self, message: Message) -> Message:
        self.log.append(message)
        if message.is_raw:
            self.memory.raw_counter += 1
        return message

    def replace_message(self, message_id: str, message: Message) -> Optional[Message]:
        previous = self.log.replace(message_id, message)
        if previous is not None and message.is_raw and not previous.is_raw:
            self.memory.raw_counter += 1
        return previous

    def remove_message(self, message_id: str) -> Optional[Message]:
        # raw_counter never decreases; removed raw messages shift window offsets instead.
        return self.log.remove(message_id)

    def raw_window(self, start: int, size: int) -> list[Message]:
        """Return raw messages at counter positions ``[start, start + size)``.

        The log may hold fewer raw messages than were ever counted (older
        history trimmed or removed), so positions are mapped from the end.
        """

        raw = self.log.raw_messages()
        offset = len(raw) - self.memory.raw_counter
        begin = max(0, start + offset)
        end = max(0, start + size + offset)
        return raw[begin:end]

    def current_speaker(self) -> Optional[Character]:
        if not self.characters:
            return None
        return self.characters[self.turn_index % len(self.characters)]

    def advance_turn(self) -> None:
        if self.characters:
            self.turn_index = (self.turn_index + 1) % len(self.characters)

    def character_by_id(self, character_id: Optional[str]) -> Optional[Character]:
        for character in self.characters:
            if character.id == character_id:
                return character
        return None

    def speaker_label(self, message: Message) -> str:
        if message.sender is MessageSender.USER:
            return "User"
        if message.sender is MessageSender.SYSTEM:
            return "System"
        character = self.character_by_id(message.character_id)
        return character.name if character else "Character"

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Run a background pipeline step tracked by this session."""

        task = asyncio.create_task(coro, name=f"{name}:{self.scenario_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    async def wait_idle(self) -> None:
        """Wait until all background pipeline steps (and any they spawn) finish."""

        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed", task.get_name(), exc_info=(type(exc), exc, exc.__traceback__)
            )
