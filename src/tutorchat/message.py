from enum import Enum
from pydantic import BaseModel, ConfigDict, field_serializer


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """One entry of the conversation.

    Messages are frozen.  The transcript swaps in a new value when a
    delta lands on the open turn, so a snapshot never changes under
    the reader.
    """

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    text: str = ""

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    def to_wire(self) -> dict:
        return {"role": self.role.value, "text": self.text}
