"""Messages exchanged over the interactive /ws/run channel."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class CodeMessage(BaseModel):
    type: Literal["code"]
    code: str


class InputMessage(BaseModel):
    # "stdin" is what the browser editor sends
    type: Literal["input", "stdin"]
    data: str


ClientMessage = Annotated[Union[CodeMessage, InputMessage], Field(discriminator="type")]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse one inbound frame; raises pydantic.ValidationError if malformed."""
    return _client_message_adapter.validate_json(raw)


class _ServerMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class OutputMessage(_ServerMessage):
    type: Literal["output"] = "output"
    data: str


class CompileErrorMessage(_ServerMessage):
    type: Literal["compileError"] = "compileError"
    data: str


class ExitMessage(_ServerMessage):
    type: Literal["exit"] = "exit"
    exit_code: int
    timed_out: bool = False


class ErrorMessage(_ServerMessage):
    type: Literal["error"] = "error"
    detail: str


ServerMessage = Union[OutputMessage, CompileErrorMessage, ExitMessage, ErrorMessage]
