from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from errors import ProtocolViolation


class JoinFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["init"] = "init"
    room: str
    display_name: str = Field(default="", alias="nick")


class ChatMessageFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["msg"] = "msg"
    text: str = Field(alias="msg")


class TypingFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["typing"] = "typing"
    is_typing: bool = Field(default=True, alias="typing")


InboundFrame = Annotated[Union[JoinFrame, ChatMessageFrame, TypingFrame], Field(discriminator="type")]

_frame_adapter = TypeAdapter(InboundFrame)


def decode_frame(text: str) -> Union[JoinFrame, ChatMessageFrame, TypingFrame]:
    """Decode one JSON text frame, e.g. ``{"type": "msg", "msg": "hi"}``."""
    try:
        return _frame_adapter.validate_json(text)
    except ValidationError as e:
        errors = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'frame'}: {err['msg']}" for err in e.errors())
        raise ProtocolViolation(f"invalid frame: {errors}") from e
