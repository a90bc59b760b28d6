"""Typed signaling messages exchanged over the relay websocket.

Every message on the wire is a JSON object with a ``type`` discriminator. The
models below form a closed union; anything that does not validate against one
of them is rejected at the boundary with :class:`ProtocolError`.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from signaling.errors import ProtocolError


class WireModel(BaseModel):
    """Base model using camelCase aliases on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class IceCandidate(WireModel):
    sdp_mid: str | None = None
    sdp_m_line_index: int = Field(default=0, alias="sdpMLineIndex")
    candidate: str


class QualityDistribution(WireModel):
    good: int = Field(default=0, ge=0)
    moderate: int = Field(default=0, ge=0)
    poor: int = Field(default=0, ge=0)


class JoinMessage(WireModel):
    type: Literal["join"] = "join"
    user_id: str = Field(min_length=1)


class GetUsersMessage(WireModel):
    type: Literal["getUsers"] = "getUsers"
    sender: str | None = Field(default=None, alias="from")


class UserListMessage(WireModel):
    type: Literal["userList"] = "userList"
    users: list[str]


class CheckUserMessage(WireModel):
    type: Literal["checkUser"] = "checkUser"
    user_id: str = Field(min_length=1)


class UserStatusMessage(WireModel):
    type: Literal["userStatus"] = "userStatus"
    user_id: str
    online: bool


class OfferMessage(WireModel):
    type: Literal["offer"] = "offer"
    sender: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    sdp: str
    is_video_call: bool = True
    call_id: str | None = None


class AnswerMessage(WireModel):
    type: Literal["answer"] = "answer"
    sender: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    sdp: str
    call_id: str | None = None


class CandidateMessage(WireModel):
    type: Literal["candidate"] = "candidate"
    sender: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    candidate: IceCandidate
    call_id: str | None = None


class RejectMessage(WireModel):
    type: Literal["reject"] = "reject"
    sender: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    call_id: str | None = None


class HangupMessage(WireModel):
    type: Literal["hangup"] = "hangup"
    sender: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    call_id: str | None = None


class EmojiMessage(WireModel):
    type: Literal["emoji"] = "emoji"
    sender: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    emoji: str = Field(min_length=1)
    call_id: str | None = None


class CallStatsMessage(WireModel):
    type: Literal["callStats"] = "callStats"
    call_id: str
    caller: str
    callee: str
    is_video: bool
    duration: float = Field(ge=0)
    total_samples: int = Field(ge=0)
    avg_send_bitrate_kbps: float
    avg_receive_bitrate_kbps: float
    avg_packet_loss_percent: float
    avg_rtt_ms: float
    total_data_used_bytes: int = Field(ge=0)
    quality_distribution: QualityDistribution
    samples: list[dict[str, Any]] = Field(default_factory=list)
    rating: int | None = Field(default=None, ge=1, le=5)


SignalingMessage = Annotated[
    Union[
        JoinMessage,
        GetUsersMessage,
        UserListMessage,
        CheckUserMessage,
        UserStatusMessage,
        OfferMessage,
        AnswerMessage,
        CandidateMessage,
        RejectMessage,
        HangupMessage,
        EmojiMessage,
        CallStatsMessage,
    ],
    Field(discriminator="type"),
]

# Messages that travel peer to peer through the relay.
PeerMessage = Union[
    OfferMessage,
    AnswerMessage,
    CandidateMessage,
    RejectMessage,
    HangupMessage,
    EmojiMessage,
]

_ADAPTER: TypeAdapter[SignalingMessage] = TypeAdapter(SignalingMessage)


def decode_message(raw: str | bytes | dict[str, Any]) -> SignalingMessage:
    """Parse and validate one inbound message.

    Raises:
        ProtocolError: if the payload is not JSON, has an unknown ``type`` or
            misses a required field.
    """

    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolError(f"Invalid JSON: {exc}") from exc
    else:
        payload = raw

    if not isinstance(payload, dict):
        raise ProtocolError("Signaling message must be a JSON object.")
    if "type" not in payload:
        raise ProtocolError("Signaling message is missing 'type'.")

    try:
        return _ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ProtocolError(
            f"Invalid '{payload.get('type')}' message: {exc.error_count()} error(s)"
        ) from exc


def encode_message(message: WireModel) -> str:
    return json.dumps(message.to_wire())
