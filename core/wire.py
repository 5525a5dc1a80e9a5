"""
Binary Frame Protocol
=====================

[WIRE] Фрейм для Message / Request / SpawnRequest на транспортном канале.

Спецификация заголовка (Fixed Header: 8 bytes):
===============================================

Format String: `>2sBBI` (Big-Endian)

| Field     | Type | Size | Description                           |
|-----------|------|------|---------------------------------------|
| Magic     | 2s   | 2    | b'JM' - идентификатор                 |
| Version   | B    | 1    | 1 - версия фрейма                     |
| FrameType | B    | 1    | FrameType enum value                  |
| Length    | I    | 4    | Размер payload                        |
|-----------|------|------|---------------------------------------|
| TOTAL     |      | 8    |                                       |

Payload: UTF-8 JSON от `to_dict()` значения (bytes полей в base64).

[BOUNDARY] Envelope не покидает систему: ответ клиенту строится через
strip_envelope(message) -> Request.
"""

import json
import struct
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple, Union

from config import config
from messaging.models import Message, Request, SpawnRequest

logger = logging.getLogger(__name__)


# ============================================================================
# Protocol Constants
# ============================================================================

MAGIC = b'JM'
FRAME_VERSION = 1
HEADER_FORMAT = '>2sBBI'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


class FrameType(IntEnum):
    """
    [WIRE] Значения стабильны между версиями.
    """
    MESSAGE = 1     # Envelope + Request, pod to pod
    REQUEST = 2     # bare Request, client boundary (stream and unary calls)
    SPAWN = 3       # SpawnRequest, worker lifecycle channel


class WireError(Exception):
    """Ошибки wire протокола."""
    pass


class InvalidMagicError(WireError):
    """Неверный Magic - не наш протокол."""
    pass


class InvalidVersionError(WireError):
    """Неподдерживаемая версия фрейма."""
    pass


class PayloadTooLargeError(WireError):
    """Payload превышает лимит."""
    pass


WireValue = Union[Message, Request, SpawnRequest]

_VALUE_TYPES = {
    FrameType.MESSAGE: Message,
    FrameType.REQUEST: Request,
    FrameType.SPAWN: SpawnRequest,
}


def _max_payload(max_payload: Optional[int]) -> int:
    return config.wire.max_payload_size if max_payload is None else max_payload


# ============================================================================
# Frame Header
# ============================================================================

@dataclass
class FrameHeader:
    magic: bytes = MAGIC
    version: int = FRAME_VERSION
    frame_type: int = FrameType.MESSAGE
    length: int = 0

    def pack(self) -> bytes:
        return struct.pack(
            HEADER_FORMAT,
            self.magic,
            self.version,
            int(self.frame_type),
            self.length,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "FrameHeader":
        """
        Raises:
            WireError: header shorter than HEADER_SIZE or unknown frame type
            InvalidMagicError: Неверный Magic
            InvalidVersionError: Неподдерживаемая версия
        """
        if len(data) < HEADER_SIZE:
            raise WireError(f"Header too short: {len(data)} < {HEADER_SIZE}")

        magic, version, frame_type, length = struct.unpack(
            HEADER_FORMAT, data[:HEADER_SIZE]
        )

        if magic != MAGIC:
            raise InvalidMagicError(f"Invalid magic: {magic!r} != {MAGIC!r}")
        if version != FRAME_VERSION:
            raise InvalidVersionError(f"Unsupported version: {version}")
        if frame_type not in _VALUE_TYPES:
            raise WireError(f"Unknown frame type: {frame_type}")

        return cls(magic=magic, version=version, frame_type=frame_type, length=length)


# ============================================================================
# Frames
# ============================================================================

def pack_frame(
    frame_type: FrameType,
    payload: bytes,
    max_payload: Optional[int] = None,
) -> bytes:
    limit = _max_payload(max_payload)
    if len(payload) > limit:
        raise PayloadTooLargeError(f"Payload too large: {len(payload)} > {limit}")
    header = FrameHeader(frame_type=frame_type, length=len(payload))
    return header.pack() + payload


def unpack_frame(
    data: bytes,
    max_payload: Optional[int] = None,
) -> Tuple[FrameType, bytes]:
    """
    Returns:
        (frame_type, payload)

    Raises:
        WireError: если формат неверный
    """
    header = FrameHeader.unpack(data)
    limit = _max_payload(max_payload)
    if header.length > limit:
        raise PayloadTooLargeError(f"Payload too large: {header.length} > {limit}")

    end = HEADER_SIZE + header.length
    if len(data) < end:
        raise WireError(f"Incomplete payload: {len(data) - HEADER_SIZE} < {header.length}")

    return FrameType(header.frame_type), data[HEADER_SIZE:end]


def encode_value(value: WireValue, max_payload: Optional[int] = None) -> bytes:
    for frame_type, cls in _VALUE_TYPES.items():
        if isinstance(value, cls):
            payload = json.dumps(value.to_dict(), separators=(",", ":")).encode("utf-8")
            return pack_frame(frame_type, payload, max_payload)
    raise TypeError(f"Cannot frame {type(value).__name__}")


def decode_value(data: bytes, max_payload: Optional[int] = None) -> WireValue:
    frame_type, payload = unpack_frame(data, max_payload)
    try:
        parsed: Dict[str, Any] = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise WireError(f"Invalid {frame_type.name} payload: {e}") from e
    return _VALUE_TYPES[frame_type].from_dict(parsed)


def _decode_expected(data: bytes, expected: FrameType, max_payload: Optional[int]) -> WireValue:
    value = decode_value(data, max_payload)
    if not isinstance(value, _VALUE_TYPES[expected]):
        raise WireError(f"Expected {expected.name} frame, got {type(value).__name__}")
    return value


def encode_message(message: Message, max_payload: Optional[int] = None) -> bytes:
    return encode_value(message, max_payload)


def decode_message(data: bytes, max_payload: Optional[int] = None) -> Message:
    return _decode_expected(data, FrameType.MESSAGE, max_payload)


def encode_request(request: Request, max_payload: Optional[int] = None) -> bytes:
    return encode_value(request, max_payload)


def decode_request(data: bytes, max_payload: Optional[int] = None) -> Request:
    return _decode_expected(data, FrameType.REQUEST, max_payload)


def encode_spawn(spawn: SpawnRequest, max_payload: Optional[int] = None) -> bytes:
    return encode_value(spawn, max_payload)


def decode_spawn(data: bytes, max_payload: Optional[int] = None) -> SpawnRequest:
    return _decode_expected(data, FrameType.SPAWN, max_payload)


def strip_envelope(message: Message) -> Request:
    """Drop the transport-internal Envelope before replying to a client."""
    return message.request


# ============================================================================
# Stream helpers
# ============================================================================

async def read_value(reader, max_payload: Optional[int] = None) -> WireValue:
    """
    Прочитать один фрейм из asyncio.StreamReader.

    [SECURITY] При InvalidMagicError вызывающий код должен закрыть соединение.
    """
    header_bytes = await reader.readexactly(HEADER_SIZE)
    header = FrameHeader.unpack(header_bytes)

    limit = _max_payload(max_payload)
    if header.length > limit:
        raise PayloadTooLargeError(f"Payload too large: {header.length} > {limit}")

    payload = await reader.readexactly(header.length)
    return decode_value(header_bytes + payload, max_payload)


async def write_value(writer, value: WireValue, max_payload: Optional[int] = None) -> int:
    """
    Записать фрейм в asyncio.StreamWriter.

    Returns:
        Количество записанных байт
    """
    data = encode_value(value, max_payload)
    writer.write(data)
    await writer.drain()
    logger.debug(f"[WIRE] Sent {type(value).__name__} frame, {len(data)} bytes")
    return len(data)
