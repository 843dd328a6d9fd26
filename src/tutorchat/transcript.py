import logging
import uuid

from tutorchat.errors import NoOpenTurnError, TurnInProgressError
from tutorchat.message import Message, MessageRole

logger = logging.getLogger(__name__)


class TranscriptStore:
    """Ordered, append-only record of one conversation.

    At most one message, always the last, is open for deltas.  Readers
    call ``snapshot()`` and get an immutable tuple; nothing they hold
    changes when later deltas arrive.

    Args:
        greeting: Optional assistant message to seed the transcript.
        session_id: Identifier for logs; a random one by default.
    """

    def __init__(self, greeting: str | None = None, session_id: str | None = None):
        self.session_id = session_id or uuid.uuid4().hex
        self._messages: list[Message] = []
        self._open = False
        if greeting:
            self._messages.append(Message(role=MessageRole.ASSISTANT, text=greeting))

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def open_message(self) -> Message | None:
        return self._messages[-1] if self._open else None

    def open_turn(self, role: MessageRole) -> Message:
        if self._open:
            raise TurnInProgressError("a turn is already open")
        message = Message(role=role, text="")
        self._messages.append(message)
        self._open = True
        logger.debug(f"[{self.session_id}] opened {role.value} turn #{len(self._messages)}")
        return message

    def append_delta(self, text: str) -> Message:
        if not self._open:
            raise NoOpenTurnError("no open turn to append to")
        current = self._messages[-1]
        updated = current.model_copy(update={"text": current.text + text})
        self._messages[-1] = updated
        return updated

    def close_turn(self) -> None:
        if not self._open:
            return
        self._open = False
        logger.debug(
            f"[{self.session_id}] closed turn #{len(self._messages)} "
            f"({len(self._messages[-1].text)} chars)"
        )

    def append(self, message: Message) -> None:
        """Append a complete message; it is closed on arrival."""
        if self._open:
            raise TurnInProgressError("cannot append while a turn is open")
        self._messages.append(message)

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def history(self) -> list[dict]:
        """Closed messages in wire form, oldest first."""
        closed = self._messages[:-1] if self._open else self._messages
        return [m.to_wire() for m in closed]
