"""
Wire codec for message envelopes.

Each envelope is a msgpack map with named fields. Frames are written back
to back; the receiver uses a streaming unpacker to find message
boundaries.
"""

from __future__ import annotations

from typing import Any, Iterator, TypeVar

import msgpack
from pydantic import BaseModel, ValidationError

from luminum.common.config import Config
from luminum.common.exceptions import ProtocolError
from luminum.common.models import (
    ClientMessage,
    MessageContent,
    MessageData,
    ServerMessage,
)

MODULE_CORE = "core"

ACTION_REGISTER = "register"
ACTION_HEARTBEAT = "heartbeat"

STATUS_REQUEST = "REQUEST"
STATUS_OK = "OK"
STATUS_DENIED = "DENIED"
STATUS_INVALID = "INVALID"
STATUS_ERROR = "ERROR"
STATUS_UNKNOWN = "UNKNOWN"
STATUS_UNSUPPORTED = "UNSUPPORTED"

MAX_FRAME_SIZE = 64 * 1024

EnvelopeT = TypeVar("EnvelopeT", bound=BaseModel)


def encode(message: BaseModel) -> bytes:
    """Serialize an envelope, dropping unset optional fields."""
    return msgpack.packb(message.model_dump(exclude_none=True), use_bin_type=True)


def decode(payload: bytes, model: type[EnvelopeT]) -> EnvelopeT:
    """Deserialize a single complete frame."""
    try:
        obj = msgpack.unpackb(payload, raw=False)
    except (msgpack.ExtraData, ValueError, msgpack.UnpackException) as err:
        msg = f"undecodable frame: {err}"
        raise ProtocolError(msg) from err
    return validate(obj, model)


def validate(obj: Any, model: type[EnvelopeT]) -> EnvelopeT:
    if not isinstance(obj, dict):
        msg = f"expected a map, got {type(obj).__name__}"
        raise ProtocolError(msg)
    try:
        return model.model_validate(obj)
    except ValidationError as err:
        msg = f"invalid {model.__name__}: {err.error_count()} error(s)"
        raise ProtocolError(msg) from err


class FrameDecoder:
    """Incremental decoder for a stream of envelopes of one type."""

    def __init__(self, model: type[EnvelopeT], max_frame_size: int = MAX_FRAME_SIZE):
        self.model = model
        self.max_frame_size = max_frame_size
        self._unpacker = self._new_unpacker()

    def _new_unpacker(self) -> msgpack.Unpacker:
        return msgpack.Unpacker(raw=False, max_buffer_size=self.max_frame_size)

    def feed(self, data: bytes) -> None:
        try:
            self._unpacker.feed(data)
        except msgpack.BufferFull as err:
            self._unpacker = self._new_unpacker()
            msg = "frame exceeds maximum size"
            raise ProtocolError(msg) from err

    def next_message(self) -> Any | None:
        """Return the next complete envelope, or None if more bytes are needed.

        A garbled stream discards the buffered bytes; a well-formed frame
        with an invalid shape is skipped. Both raise :class:`ProtocolError`
        and leave the decoder usable.
        """
        try:
            obj = next(self._unpacker)
        except StopIteration:
            return None
        except (ValueError, msgpack.UnpackException) as err:
            self._unpacker = self._new_unpacker()
            msg = f"garbled frame: {err}"
            raise ProtocolError(msg) from err
        return validate(obj, self.model)

    def __iter__(self) -> Iterator[Any]:
        while (message := self.next_message()) is not None:
            yield message


def client_message(
    action: str,
    data: MessageData | None = None,
    uid: str = "",
    status: str = STATUS_REQUEST,
) -> ClientMessage:
    return ClientMessage(
        uid=uid,
        product=Config.PRODUCT,
        version=Config.VERSION,
        content=MessageContent(
            module=MODULE_CORE, status=status, action=action, data=data
        ),
    )


def server_message(
    action: str, status: str, data: MessageData | None = None
) -> ServerMessage:
    return ServerMessage(
        version=Config.VERSION,
        content=MessageContent(
            module=MODULE_CORE, status=status, action=action, data=data
        ),
    )
