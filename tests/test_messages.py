from __future__ import annotations

import json

import pytest

from signaling.errors import ProtocolError
from signaling.messages import (
    CandidateMessage,
    IceCandidate,
    OfferMessage,
    UserListMessage,
    decode_message,
    encode_message,
)


def test_offer_decodes_with_wire_field_names():
    message = decode_message(
        json.dumps({"type": "offer", "from": "alice", "to": "bob", "sdp": "v=0", "isVideoCall": False})
    )

    assert isinstance(message, OfferMessage)
    assert message.sender == "alice"
    assert message.is_video_call is False
    assert message.call_id is None


def test_candidate_encodes_with_camel_case_keys():
    message = CandidateMessage(
        sender="alice",
        to="bob",
        candidate=IceCandidate(sdp_mid="0", sdp_m_line_index=1, candidate="candidate:1 1 udp"),
        call_id="abc",
    )

    payload = json.loads(encode_message(message))

    assert payload == {
        "type": "candidate",
        "from": "alice",
        "to": "bob",
        "callId": "abc",
        "candidate": {"sdpMid": "0", "sdpMLineIndex": 1, "candidate": "candidate:1 1 udp"},
    }


def test_optional_fields_are_omitted_on_the_wire():
    payload = json.loads(encode_message(OfferMessage(sender="a", to="b", sdp="x")))
    assert "callId" not in payload
    assert payload["isVideoCall"] is True


def test_user_list_accepts_dict_payload():
    message = decode_message({"type": "userList", "users": ["a", "b"]})
    assert isinstance(message, UserListMessage)
    assert message.users == ["a", "b"]


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps({"from": "a", "to": "b"}),
        json.dumps({"type": "teleport", "from": "a"}),
        json.dumps({"type": "offer", "from": "a", "to": "b"}),
        json.dumps({"type": "join", "userId": ""}),
        json.dumps({"type": "candidate", "from": "a", "to": "b", "candidate": {"sdpMid": "0"}}),
    ],
)
def test_malformed_messages_raise_protocol_error(raw):
    with pytest.raises(ProtocolError):
        decode_message(raw)
