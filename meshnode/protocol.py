"""
Protocol Layer - обработчики сообщений и маршрутизация по opcode
================================================================

[PROTOCOL] Каждый opcode обслуживается одним MessageHandler.
ProtocolRouter выбирает обработчик по таблице opcode -> handler
и превращает ошибки протокола в NACK.

| Opcode             | Ответ                                   |
|--------------------|-----------------------------------------|
| PING               | ACK [2]                                 |
| SET_CONNECTION_OPT | ACK [3, option] / NACK [3, option]      |
| FIND_NODE          | ACK [9, target, contacts]               |
| FIND_VALUE         | ACK [10, key, value, meta] / [9, ...]   |
| STORE              | ACK [11, key]                           |
| SHOUT, ANNOUNCE,   | нет ответа, пересылка через             |
| CHANGE_KEY         | BroadcastEngine                         |
| SPEAK              | ACK [7] по политике                     |
| WHISPER            | нет ответа                              |
| CUSTOM             | ACK [15, sub, reply] / NACK [15, sub]   |
| 12-14              | NACK [op]                               |

NACK повторяет opcode запроса и его ключ, чтобы отправитель
мог сопоставить отказ с ожидающим запросом.

[EXTENSIONS] Подопкоды CUSTOM регистрируются явно через
ProtocolRouter.register_extension(sub_opcode, handler).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union, TYPE_CHECKING

from .exceptions import (
    MeshError,
    PayloadDecodeError,
    SubnetMismatch,
    UnknownOpcode,
)
from .identity import verify_key_change
from .options import ConnectionOption
from .serialization import encode_payload
from .wire import Message, OpCode

if TYPE_CHECKING:
    from .node import Node, Peer

logger = logging.getLogger(__name__)


Reply = Tuple[int, Any]

# (sender, body) -> reply payload
ExtensionHandler = Callable[[bytes, Any], Union[Any, Awaitable[Any]]]

# Позиция ключа запроса в payload
_REQUEST_KEY_INDEX = {
    OpCode.SET_CONNECTION_OPT: 0,
    OpCode.FIND_NODE: 0,
    OpCode.FIND_VALUE: 0,
    OpCode.STORE: 1,
    OpCode.CUSTOM: 0,
}

# На эти opcode NACK не отправляется
_NO_NACK = frozenset({
    OpCode.ACK, OpCode.NACK,
    OpCode.SHOUT, OpCode.SPEAK, OpCode.ANNOUNCE, OpCode.CHANGE_KEY,
    OpCode.WHISPER,
})


def request_key(op: int, payload: Any) -> Any:
    """Ключ запроса для сопоставления с ACK/NACK (None если нет)."""
    index = _REQUEST_KEY_INDEX.get(op)
    if index is None or not isinstance(payload, list) or len(payload) <= index:
        return None
    return payload[index]


def pending_key(op: int, key: Any) -> Tuple[int, Optional[bytes]]:
    """Хэшируемый ключ ожидающего запроса."""
    return (int(op), None if key is None else encode_payload(key))


def nack_payload(op: int, payload: Any) -> list:
    key = request_key(op, payload)
    return [op] if key is None else [op, key]


def opcode_name(op: int) -> str:
    try:
        return OpCode(op).name
    except ValueError:
        return f"RESERVED_{op}"


class MessageHandler(ABC):
    """
    Базовый класс для обработчиков сообщений.

    context содержит:
    - node: Node
    - peer: Peer, от которого пришло сообщение
    """

    @property
    @abstractmethod
    def opcode(self) -> OpCode:
        """Opcode, который обрабатывает этот handler."""
        pass

    @abstractmethod
    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        """
        Обработать входящее сообщение.

        Returns:
            (ACK|NACK, payload) или None

        Raises:
            MeshError: Роутер превратит ошибку в NACK
        """
        pass


# ============================================================================
# Connection handlers
# ============================================================================

class PingHandler(MessageHandler):
    """PING [] -> ACK [2]."""

    @property
    def opcode(self) -> OpCode:
        return OpCode.PING

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        return OpCode.ACK, [OpCode.PING]


class AckHandler(MessageHandler):
    """Разрешает ожидающий запрос."""

    @property
    def opcode(self) -> OpCode:
        return OpCode.ACK

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        peer: "Peer" = context["peer"]
        node.handle_reply(peer, message.payload, rejected=False)
        return None


class NackHandler(AckHandler):
    """Отклоняет ожидающий запрос."""

    @property
    def opcode(self) -> OpCode:
        return OpCode.NACK

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        peer: "Peer" = context["peer"]
        node.handle_reply(peer, message.payload, rejected=True)
        return None


class ConnectionOptionHandler(MessageHandler):
    """
    SET_CONNECTION_OPT [option, setting].

    Несовпадение или некорректная подсеть -> NACK и разрыв соединения
    после отправки.
    Неподдерживаемое сжатие -> только NACK.
    """

    @property
    def opcode(self) -> OpCode:
        return OpCode.SET_CONNECTION_OPT

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        peer: "Peer" = context["peer"]

        payload = message.payload
        if not isinstance(payload, list) or len(payload) != 2 or not isinstance(payload[0], int):
            raise PayloadDecodeError("SET_CONNECTION_OPT payload must be [option, setting]")
        option, setting = payload

        try:
            node.apply_connection_option(peer, option, setting)
        except (SubnetMismatch, PayloadDecodeError) as e:
            if option != ConnectionOption.SUBNET:
                raise
            logger.warning(f"[PEER] {peer}: {e}, disconnecting")
            peer.close_requested = True
            return OpCode.NACK, [OpCode.SET_CONNECTION_OPT, option]

        return OpCode.ACK, [OpCode.SET_CONNECTION_OPT, option]


# ============================================================================
# DHT handlers
# ============================================================================

class FindNodeHandler(MessageHandler):

    @property
    def opcode(self) -> OpCode:
        return OpCode.FIND_NODE

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        return OpCode.ACK, await node.dht.handle_find_node(message.sender, message.payload)


class FindValueHandler(MessageHandler):

    @property
    def opcode(self) -> OpCode:
        return OpCode.FIND_VALUE

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        return OpCode.ACK, await node.dht.handle_find_value(message.sender, message.payload)


class StoreHandler(MessageHandler):

    @property
    def opcode(self) -> OpCode:
        return OpCode.STORE

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        return OpCode.ACK, await node.dht.handle_store(message.sender, message.payload)


# ============================================================================
# Broadcast handlers
# ============================================================================

class FloodHandler(MessageHandler):
    """
    Общая логика SHOUT / ANNOUNCE / CHANGE_KEY / SPEAK.

    1. accept() - проверка payload (отвергнутое не запоминается и не пересылается)
    2. BroadcastEngine решает, новое ли сообщение и кому пересылать
    3. deliver() - локальная доставка нового сообщения
    4. Пересылка исходных байт
    """

    event_name = ""

    def accept(self, message: Message, context: Dict[str, Any]) -> bool:
        payload = message.payload
        return isinstance(payload, list) and len(payload) == 1

    async def deliver(self, message: Message, context: Dict[str, Any]) -> None:
        node: "Node" = context["node"]
        await node.events.broadcast(self.event_name, {
            "sender": message.sender,
            "data": message.payload[0],
        })

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        peer: "Peer" = context["peer"]

        if not self.accept(message, context):
            logger.debug(f"[BROADCAST] Rejected malformed {opcode_name(message.opcode)} from {peer}")
            return None

        decision = node.broadcast_engine.handle(message.raw, peer, node.established_peers())
        if decision.deliver:
            await self.deliver(message, context)
        if decision.relay_to:
            await node.relay(message.raw, decision.relay_to)

        if decision.ack:
            return OpCode.ACK, [message.opcode]
        return None


class ShoutHandler(FloodHandler):
    event_name = "shout"

    @property
    def opcode(self) -> OpCode:
        return OpCode.SHOUT


class SpeakHandler(FloodHandler):
    event_name = "speak"

    @property
    def opcode(self) -> OpCode:
        return OpCode.SPEAK


class AnnounceHandler(FloodHandler):
    """ANNOUNCE [host, port] - узел сообщает, где его слушать."""

    event_name = "announce"

    @property
    def opcode(self) -> OpCode:
        return OpCode.ANNOUNCE

    def accept(self, message: Message, context: Dict[str, Any]) -> bool:
        payload = message.payload
        return (
            isinstance(payload, list) and len(payload) == 2
            and isinstance(payload[0], str)
            and isinstance(payload[1], int) and 0 < payload[1] < 65536
        )

    async def deliver(self, message: Message, context: Dict[str, Any]) -> None:
        node: "Node" = context["node"]
        host, port = message.payload
        contact = node.record_announce(message.sender, host, port, context["peer"])
        await node.events.broadcast(self.event_name, {
            "sender": message.sender,
            "host": contact.host if contact else host,
            "port": port,
        })


class ChangeKeyHandler(FloodHandler):
    """
    CHANGE_KEY [new_address, proof].

    proof - подпись нового ключа над старым адресом (from).
    """

    event_name = "change_key"

    @property
    def opcode(self) -> OpCode:
        return OpCode.CHANGE_KEY

    def accept(self, message: Message, context: Dict[str, Any]) -> bool:
        payload = message.payload
        if not (isinstance(payload, list) and len(payload) == 2):
            return False
        new_address, proof = payload
        if not isinstance(new_address, bytes) or not isinstance(proof, bytes):
            return False
        if len(new_address) != len(message.sender):
            return False
        return verify_key_change(message.sender, new_address, proof)

    async def deliver(self, message: Message, context: Dict[str, Any]) -> None:
        node: "Node" = context["node"]
        new_address = message.payload[0]
        node.rekey_peer(message.sender, new_address)
        await node.events.broadcast(self.event_name, {
            "old_address": message.sender,
            "new_address": new_address,
        })


class WhisperHandler(MessageHandler):
    """
    WHISPER [data], адресованный нам.

    Пересылка чужих WHISPER выполняется Node до дешифровки.
    """

    @property
    def opcode(self) -> OpCode:
        return OpCode.WHISPER

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        payload = message.payload
        if not isinstance(payload, list) or len(payload) != 1:
            raise PayloadDecodeError("WHISPER payload must be [data]")

        await node.events.broadcast("whisper", {
            "sender": message.sender,
            "data": payload[0],
            "encrypted": message.encrypted,
        })
        return None


class CustomHandler(MessageHandler):
    """CUSTOM [sub_opcode, body] -> ACK [15, sub_opcode, reply]."""

    def __init__(self, router: "ProtocolRouter"):
        self.router = router

    @property
    def opcode(self) -> OpCode:
        return OpCode.CUSTOM

    async def handle(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        node: "Node" = context["node"]
        payload = message.payload
        if not isinstance(payload, list) or len(payload) != 2 or not isinstance(payload[0], int):
            raise PayloadDecodeError("CUSTOM payload must be [sub_opcode, body]")
        sub_opcode, body = payload

        extension = self.router.extensions.get(sub_opcode)
        if extension is None:
            raise UnknownOpcode(sub_opcode)

        try:
            result = extension(message.sender, body)
            if asyncio.iscoroutine(result):
                result = await result
        except MeshError:
            raise
        except Exception as e:
            logger.error(f"[RPC] Extension {sub_opcode} failed: {e}", exc_info=True)
            return OpCode.NACK, [OpCode.CUSTOM, sub_opcode]

        await node.events.broadcast("custom", {
            "sender": message.sender,
            "sub_opcode": sub_opcode,
            "body": body,
        })
        return OpCode.ACK, [OpCode.CUSTOM, sub_opcode, result]


# ============================================================================
# Router
# ============================================================================

class ProtocolRouter:
    """
    Маршрутизатор протокола.

    Направляет входящие сообщения обработчикам по opcode.
    """

    def __init__(self):
        self.handlers: Dict[int, MessageHandler] = {}
        self.extensions: Dict[int, ExtensionHandler] = {}

        for handler in (
            PingHandler(),
            AckHandler(),
            NackHandler(),
            ConnectionOptionHandler(),
            FindNodeHandler(),
            FindValueHandler(),
            StoreHandler(),
            ShoutHandler(),
            SpeakHandler(),
            AnnounceHandler(),
            ChangeKeyHandler(),
            WhisperHandler(),
            CustomHandler(self),
        ):
            self.register(handler)

    def register(self, handler: MessageHandler) -> None:
        """Зарегистрировать обработчик."""
        self.handlers[int(handler.opcode)] = handler

    def register_extension(self, sub_opcode: int, handler: ExtensionHandler) -> None:
        """
        Зарегистрировать обработчик подопкода CUSTOM.

        handler(sender, body) возвращает payload ответа (или корутину).
        """
        if not isinstance(sub_opcode, int) or isinstance(sub_opcode, bool):
            raise TypeError(f"Sub-opcode must be an integer, got {sub_opcode!r}")
        if sub_opcode in self.extensions:
            raise ValueError(f"Sub-opcode {sub_opcode} is already registered")
        self.extensions[sub_opcode] = handler

    def unregister_extension(self, sub_opcode: int) -> None:
        self.extensions.pop(sub_opcode, None)

    async def route(self, message: Message, context: Dict[str, Any]) -> Optional[Reply]:
        """
        Маршрутизировать сообщение к обработчику.

        Returns:
            Ответ (ACK/NACK, payload) или None
        """
        handler = self.handlers.get(message.opcode)
        try:
            if handler is None:
                raise UnknownOpcode(message.opcode)
            return await handler.handle(message, context)
        except MeshError as e:
            if message.opcode in _NO_NACK:
                logger.debug(f"[RPC] Dropped {opcode_name(message.opcode)}: {e}")
                return None
            logger.debug(f"[RPC] NACK {opcode_name(message.opcode)}: {e}")
            return OpCode.NACK, nack_payload(message.opcode, message.payload)


__all__ = [
    "MessageHandler",
    "ProtocolRouter",
    "Reply",
    "nack_payload",
    "pending_key",
    "request_key",
]
