"""
Sharing channel wire messages.

Every frame on the agent WebSocket is one JSON object whose ``type``
selects exactly one of the models below. Field names on the wire are
camelCase (``keyId``, ``agentName``); Python code uses snake_case.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError


class MessageError(ValueError):
    """Raised when a frame is not valid JSON or not a known message."""


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


# ── Peer → vault ─────────────────────────────────────────────────────


class AuthMessage(_Message):
    type: Literal["auth"] = "auth"
    token: str


class GetKeyMessage(_Message):
    type: Literal["get_key"] = "get_key"
    key_id: str = Field(alias="keyId")


class KeyReceivedMessage(_Message):
    type: Literal["key_received"] = "key_received"
    key_id: Optional[str] = Field(default=None, alias="keyId")
    key_name: Optional[str] = Field(default=None, alias="keyName")
    agent_name: Optional[str] = Field(default=None, alias="agentName")


# ── Vault → peer ─────────────────────────────────────────────────────


class AuthSuccessMessage(_Message):
    type: Literal["auth_success"] = "auth_success"


class AuthFailedMessage(_Message):
    type: Literal["auth_failed"] = "auth_failed"
    error: str = "Invalid token"


class KeyDataMessage(_Message):
    type: Literal["key_data"] = "key_data"
    key_id: str = Field(alias="keyId")
    data: Dict[str, Any]


class SharedSecretMessage(_Message):
    type: Literal["shared_secret"] = "shared_secret"
    key_id: str = Field(alias="keyId")
    timestamp: str
    data: Dict[str, Any]


class ErrorMessage(_Message):
    type: Literal["error"] = "error"
    message: str


ChannelMessage = Annotated[
    Union[
        AuthMessage,
        AuthSuccessMessage,
        AuthFailedMessage,
        GetKeyMessage,
        KeyDataMessage,
        KeyReceivedMessage,
        SharedSecretMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter = TypeAdapter(ChannelMessage)


def parse_message(raw: Union[str, bytes]) -> ChannelMessage:
    """Decode one frame into its message model.

    Raises:
        MessageError: malformed JSON, unknown ``type`` or missing fields.
    """
    try:
        return _adapter.validate_json(raw)
    except PydanticValidationError as e:
        errors = e.errors()
        detail = errors[0]["msg"] if errors else str(e)
        raise MessageError(detail) from e


def encode_message(message: _Message) -> str:
    return message.model_dump_json(by_alias=True)
