import msgpack
import pytest

from luminum.common.exceptions import ProtocolError
from luminum.common.models import ClientMessage, MessageData, ServerMessage
from luminum.common.protocol import (
    ACTION_HEARTBEAT,
    ACTION_REGISTER,
    MODULE_CORE,
    STATUS_OK,
    STATUS_REQUEST,
    FrameDecoder,
    client_message,
    decode,
    encode,
    server_message,
)


def test_client_message_defaults() -> None:
    message = client_message(ACTION_REGISTER, MessageData(hostname="host-1"))

    assert message.uid == ""
    assert message.product == "Luminum Client"
    assert message.version == "0.0.1"
    assert message.content.module == MODULE_CORE
    assert message.content.status == STATUS_REQUEST


def test_encode_uses_named_fields_and_omits_unset() -> None:
    raw = msgpack.unpackb(encode(server_message(ACTION_HEARTBEAT, STATUS_OK)), raw=False)

    assert raw == {
        "version": "0.0.1",
        "content": {"module": "core", "status": "OK", "action": "heartbeat"},
    }


def test_decode_ignores_unknown_fields() -> None:
    payload = msgpack.packb({
        "version": "9.9.9",
        "extra": True,
        "content": {
            "module": "core",
            "status": "OK",
            "action": "register",
            "data": {"uid": "abc", "future": 1},
        },
    })
    message = decode(payload, ServerMessage)

    assert message.version == "9.9.9"
    assert message.content.data.uid == "abc"


@pytest.mark.parametrize(
    "payload",
    [
        msgpack.packb([1, 2, 3]),
        msgpack.packb({"content": {"module": "core"}}),
        b"\xc1",
        encode(server_message(ACTION_REGISTER, STATUS_OK)) + b"\x00",
    ],
)
def test_decode_rejects_bad_frames(payload: bytes) -> None:
    with pytest.raises(ProtocolError):
        decode(payload, ServerMessage)


def test_frame_decoder_reassembles_split_frames() -> None:
    first = client_message(ACTION_REGISTER, MessageData(hostname="a"))
    second = client_message(ACTION_HEARTBEAT, uid="uid-1")
    stream = encode(first) + encode(second)
    decoder = FrameDecoder(ClientMessage)

    received = []
    for i in range(len(stream)):
        decoder.feed(stream[i : i + 1])
        received.extend(decoder)

    assert [m.content.action for m in received] == [ACTION_REGISTER, ACTION_HEARTBEAT]
    assert received[0].content.data.hostname == "a"
    assert received[1].uid == "uid-1"


def test_frame_decoder_skips_invalid_shape() -> None:
    decoder = FrameDecoder(ClientMessage)
    decoder.feed(msgpack.packb({"unexpected": 1}) + encode(client_message(ACTION_HEARTBEAT)))

    with pytest.raises(ProtocolError):
        decoder.next_message()
    assert decoder.next_message().content.action == ACTION_HEARTBEAT
    assert decoder.next_message() is None


def test_frame_decoder_recovers_from_garbage() -> None:
    decoder = FrameDecoder(ClientMessage)
    decoder.feed(b"\xc1\xc1")

    with pytest.raises(ProtocolError):
        decoder.next_message()

    decoder.feed(encode(client_message(ACTION_HEARTBEAT)))
    assert decoder.next_message().content.action == ACTION_HEARTBEAT


def test_frame_decoder_limits_frame_size() -> None:
    decoder = FrameDecoder(ClientMessage, max_frame_size=32)
    with pytest.raises(ProtocolError, match="maximum size"):
        decoder.feed(b"\x00" * 64)

    decoder.feed(msgpack.packb({"content": None}))
    with pytest.raises(ProtocolError):
        decoder.next_message()
