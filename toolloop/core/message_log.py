from __future__ import annotations

from typing import Iterable, Iterator, List, Tuple

from .models import Message, Role


class MessageLog:
    """Ordered conversation for one run. Turns can be appended, never edited."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: List[Message] = [_coerce(message) for message in messages]

    def append(self, message: Message) -> None:
        self._messages.append(_coerce(message))

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def append_assistant(self, content: str) -> None:
        self.append(Message(role=Role.assistant, content=content))

    def append_user(self, content: str) -> None:
        self.append(Message(role=Role.user, content=content))

    def snapshot(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))


def _coerce(message: Message | dict) -> Message:
    if isinstance(message, Message):
        return message
    return Message.model_validate(message)
