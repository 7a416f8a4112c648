"""
Binary Wire Protocol
====================

Бинарный протокол на базе struct, все поля Big-Endian.

Передача (Transmission), заголовок 6 байт, формат `>HI`:
=========================================================

| Field          | Bits | Description                          |
|----------------|------|--------------------------------------|
| Reserved       | 13   | Должны быть нулями                   |
| Compression    | 3    | ID кодека (см. compression.py)       |
| Length         | 32   | Длина сжатого payload передачи       |

После распаковки payload передачи - это конкатенация сообщений
без разделителей (каждое несёт собственную длину).

Сообщение (Message), заголовок 134 байта при β = 256:
=====================================================

| Field          | Bits | Description                          |
|----------------|------|--------------------------------------|
| Signature      | 512  | Ed25519 подпись всего, что после неё |
| Length         | 32   | Длина payload сообщения              |
| Opcode         | 4    | OpCode                               |
| Reserved       | 11   |                                      |
| Encrypted      | 1    | Payload зашифрован для получателя    |
| From           | β    | Адрес отправителя                    |
| To             | β    | Адрес получателя                     |

[SECURITY] Декодирование НЕ проверяет подписи и НЕ дешифрует.
Это делает identity.py, чтобы мусорные сообщения отбрасывались
дёшево, до дорогой криптографии.
"""

import struct
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Iterable, Iterator, List, Optional, TYPE_CHECKING

from .compression import CompressionRegistry, default_registry, MAX_COMPRESSION_ID
from .exceptions import (
    TruncatedTransmission,
    TruncatedMessage,
    PayloadTooLargeError,
)
from .serialization import encode_payload

if TYPE_CHECKING:
    from .identity import Identity

logger = logging.getLogger(__name__)


# ============================================================================
# Protocol Constants
# ============================================================================

TRANSMISSION_HEADER_FORMAT = '>HI'
TRANSMISSION_HEADER_SIZE = 6

MESSAGE_FIELDS_FORMAT = '>IH'     # length + opcode/flags
MESSAGE_FIELDS_SIZE = 6

SIGNATURE_SIZE = 64               # Ed25519
ADDRESS_SIZE = 32                 # β = 256 бит

MAX_LENGTH = 0xFFFFFFFF           # 32-битное поле длины

FLAG_ENCRYPTED = 0x0001
OPCODE_SHIFT = 12

BROADCAST_ADDRESS = b'\x00' * ADDRESS_SIZE


class OpCode(IntEnum):
    """
    Коды операций (4 бита).

    [WIRE] Значения стабильны; 12-14 зарезервированы.
    """

    ACK = 0
    NACK = 1
    PING = 2
    SET_CONNECTION_OPT = 3
    ANNOUNCE = 4
    CHANGE_KEY = 5
    SHOUT = 6
    SPEAK = 7
    WHISPER = 8
    FIND_NODE = 9
    FIND_VALUE = 10
    STORE = 11
    CUSTOM = 15


BROADCAST_OPCODES = frozenset({OpCode.SHOUT, OpCode.ANNOUNCE, OpCode.CHANGE_KEY})


@dataclass(frozen=True)
class MessageLayout:
    """
    Геометрия заголовка сообщения.

    Размер заголовка зависит от ширины подписи и β.
    """

    signature_size: int = SIGNATURE_SIZE
    address_size: int = ADDRESS_SIZE

    @property
    def header_size(self) -> int:
        return self.signature_size + MESSAGE_FIELDS_SIZE + 2 * self.address_size

    @property
    def broadcast_address(self) -> bytes:
        return b'\x00' * self.address_size


DEFAULT_LAYOUT = MessageLayout()


# ============================================================================
# Parsed Units
# ============================================================================

@dataclass(frozen=True)
class RawMessage:
    """
    Сообщение, вырезанное из передачи, но ещё не аутентифицированное.

    data хранит оригинальные байты целиком: подписанная область
    берётся из них, а не пересобирается, поэтому зарезервированные
    биты не влияют на проверку, а ретрансляция отправляет ровно
    то, что было подписано источником.
    """

    signature: bytes
    opcode: int
    encrypted: bool
    sender: bytes
    recipient: bytes
    payload: bytes
    data: bytes

    @property
    def signed_region(self) -> bytes:
        return self.data[len(self.signature):]

    @property
    def is_broadcast(self) -> bool:
        return self.opcode in BROADCAST_OPCODES

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class Message:
    """
    Аутентифицированное сообщение с декодированным payload.

    Создаётся identity.authenticate().
    """

    opcode: int
    sender: bytes
    recipient: bytes
    payload: Any
    encrypted: bool
    raw: RawMessage

    @property
    def signature(self) -> bytes:
        return self.raw.signature


# ============================================================================
# Encoding
# ============================================================================

def encode_message(
    to: bytes,
    op: int,
    payload: Any,
    signer: "Identity",
    encrypted: bool = False,
    layout: MessageLayout = DEFAULT_LAYOUT,
) -> bytes:
    """
    Закодировать сообщение.

    Процесс:
    1. Сериализуем payload
    2. Шифруем для `to`, если encrypted
    3. Собираем length + opcode/flags + from + to
    4. Подписываем всё, начиная с length
    5. Ставим подпись в начало

    Raises:
        PayloadTooLargeError: payload не помещается в 32-битную длину
        ValueError: Неверная ширина адреса или opcode
    """
    if len(to) != layout.address_size:
        raise ValueError(f"Recipient address must be {layout.address_size} bytes, got {len(to)}")
    if not 0 <= int(op) <= 0xF:
        raise ValueError(f"Opcode must fit in 4 bits: {op}")

    body = encode_payload(payload)
    if encrypted:
        body = signer.encrypt_for(to, body)

    if len(body) > MAX_LENGTH:
        raise PayloadTooLargeError(f"Payload too large: {len(body)} > {MAX_LENGTH}")

    flags = (int(op) << OPCODE_SHIFT) | (FLAG_ENCRYPTED if encrypted else 0)
    region = struct.pack(MESSAGE_FIELDS_FORMAT, len(body), flags) + signer.address + to + body

    signature = signer.sign(region)
    if len(signature) != layout.signature_size:
        raise ValueError(
            f"Signer produced {len(signature)}-byte signature, layout expects {layout.signature_size}"
        )

    return signature + region


def encode_transmission(
    compression_id: int,
    messages: Iterable[bytes],
    registry: CompressionRegistry = default_registry,
) -> bytes:
    """
    Упаковать закодированные сообщения в передачу.

    Raises:
        UnsupportedCompression: Для compression_id нет кодека
        PayloadTooLargeError: Сжатые данные не помещаются в 32 бита
    """
    if not 0 <= int(compression_id) <= MAX_COMPRESSION_ID:
        raise ValueError(f"Compression id must fit in 3 bits: {compression_id}")

    body = registry.compress(compression_id, b''.join(messages))

    if len(body) > MAX_LENGTH:
        raise PayloadTooLargeError(f"Transmission too large: {len(body)} > {MAX_LENGTH}")

    header = struct.pack(TRANSMISSION_HEADER_FORMAT, int(compression_id) & MAX_COMPRESSION_ID, len(body))
    return header + body


# ============================================================================
# Decoding
# ============================================================================

def parse_transmission_header(header: bytes) -> tuple:
    """
    Разобрать 6-байтный заголовок передачи.

    Returns:
        (compression_id, length)
    """
    if len(header) < TRANSMISSION_HEADER_SIZE:
        raise TruncatedTransmission(
            f"Transmission header too short: {len(header)} < {TRANSMISSION_HEADER_SIZE}"
        )
    flags, length = struct.unpack(TRANSMISSION_HEADER_FORMAT, header[:TRANSMISSION_HEADER_SIZE])
    return flags & MAX_COMPRESSION_ID, length


def parse_message(buffer: bytes, offset: int, layout: MessageLayout = DEFAULT_LAYOUT) -> RawMessage:
    """
    Вырезать одно сообщение из буфера, начиная с offset.

    Raises:
        TruncatedMessage: Не хватает байт на заголовок или payload
    """
    header_end = offset + layout.header_size
    if header_end > len(buffer):
        raise TruncatedMessage(
            f"Message header truncated at offset {offset}: "
            f"need {layout.header_size} bytes, have {len(buffer) - offset}"
        )

    pos = offset
    signature = buffer[pos:pos + layout.signature_size]
    pos += layout.signature_size

    length, flags = struct.unpack(MESSAGE_FIELDS_FORMAT, buffer[pos:pos + MESSAGE_FIELDS_SIZE])
    pos += MESSAGE_FIELDS_SIZE

    sender = buffer[pos:pos + layout.address_size]
    pos += layout.address_size
    recipient = buffer[pos:pos + layout.address_size]
    pos += layout.address_size

    end = pos + length
    if end > len(buffer):
        raise TruncatedMessage(
            f"Message payload truncated at offset {offset}: "
            f"declared {length} bytes, have {len(buffer) - pos}"
        )

    return RawMessage(
        signature=bytes(signature),
        opcode=flags >> OPCODE_SHIFT,
        encrypted=bool(flags & FLAG_ENCRYPTED),
        sender=bytes(sender),
        recipient=bytes(recipient),
        payload=bytes(buffer[pos:end]),
        data=bytes(buffer[offset:end]),
    )


class _MessageIterator:
    """Курсор по распакованному payload передачи."""

    def __init__(self, buffer: bytes, layout: MessageLayout):
        self._buffer = buffer
        self._layout = layout
        self._offset = 0

    def __iter__(self) -> "_MessageIterator":
        return self

    def __next__(self) -> RawMessage:
        if self._offset >= len(self._buffer):
            raise StopIteration
        message = parse_message(self._buffer, self._offset, self._layout)
        self._offset += message.size
        return message


class DecodedTransmission:
    """
    Результат decode_transmission.

    Ленивая, конечная и перезапускаемая последовательность RawMessage:
    каждый вызов iter() начинает разбор с начала буфера.
    TruncatedMessage поднимается при итерации на битом сообщении.
    """

    def __init__(self, compression_id: int, payload: bytes, layout: MessageLayout = DEFAULT_LAYOUT):
        self.compression_id = compression_id
        self.payload = payload
        self.layout = layout

    def __iter__(self) -> Iterator[RawMessage]:
        return _MessageIterator(self.payload, self.layout)

    def messages(self) -> List[RawMessage]:
        """Разобрать все сообщения сразу (битое сообщение -> исключение)."""
        return list(self)

    def __repr__(self) -> str:
        return f"DecodedTransmission(compression_id={self.compression_id}, size={len(self.payload)})"


def decode_transmission(
    data: bytes,
    registry: CompressionRegistry = default_registry,
    layout: MessageLayout = DEFAULT_LAYOUT,
) -> DecodedTransmission:
    """
    Разобрать передачу.

    Байты после объявленной длины игнорируются.

    Raises:
        TruncatedTransmission: Буфер короче заголовка или объявленной длины
        UnsupportedCompression: Неизвестный compression id
        CompressionError: Повреждённые сжатые данные
    """
    compression_id, length = parse_transmission_header(data)

    available = len(data) - TRANSMISSION_HEADER_SIZE
    if length > available:
        raise TruncatedTransmission(
            f"Transmission declares {length} bytes, only {available} available"
        )

    body = data[TRANSMISSION_HEADER_SIZE:TRANSMISSION_HEADER_SIZE + length]
    payload = registry.decompress(compression_id, body)
    return DecodedTransmission(compression_id, payload, layout)


# ============================================================================
# Stream Reader
# ============================================================================

async def read_transmission(reader, max_size: Optional[int] = None) -> bytes:
    """
    Прочитать одну передачу из asyncio.StreamReader.

    Returns:
        Заголовок + тело передачи (готово для decode_transmission)

    Raises:
        asyncio.IncompleteReadError: Соединение закрыто
        PayloadTooLargeError: Объявленная длина больше max_size
    """
    header = await reader.readexactly(TRANSMISSION_HEADER_SIZE)
    _, length = parse_transmission_header(header)

    if max_size is not None and length > max_size:
        raise PayloadTooLargeError(f"Transmission too large: {length} > {max_size}")

    body = await reader.readexactly(length)
    return header + body
