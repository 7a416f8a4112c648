"""
Node - главный класс P2P узла
=============================

[DECENTRALIZATION] Каждый Node:
- Имеет криптографическую идентичность (адрес = публичный ключ)
- Одновременно принимает входящие и открывает исходящие соединения
- Держит Kademlia таблицу маршрутизации живых пиров
- Хранит локальную часть DHT
- Участвует в рассылке SHOUT / ANNOUNCE / CHANGE_KEY

[SECURITY] Каждое сообщение подписано. Сообщение с неверной
подписью молча отбрасывается. Прямые запросы принимаются
только от пира, чей адрес совпадает с подписью.

Жизненный цикл соединения:

    CONNECTING -> OPTION_NEGOTIATION -> ESTABLISHED -> DISCONNECTED

Обе стороны сразу после подключения отправляют
SET_CONNECTION_OPT(SUBNET). Соединение установлено, когда каждая
сторона приняла SUBNET другой и получила на свой SUBNET ACK.
До этого обрабатываются только SET_CONNECTION_OPT, ACK и NACK.

[LIMITS] Исходящих постоянных соединений не больше ℓ.
Сверх лимита узел открывает временные соединения только
на время запроса, а контакты складывает в NodeInfoCache.
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, Tuple, Union

from config import config as default_config, Config

from .broadcast import BroadcastEngine
from .compression import Compression, CompressionRegistry, default_registry
from .dht import DHTProtocol, EntryMetadata, NodeInfo, NodeInfoCache, RoutingTable, ValueStore
from .events import EventBus
from .exceptions import (
    CompressionError,
    DecryptionError,
    LookupTimeout,
    MeshError,
    PayloadDecodeError,
    PayloadEncodeError,
    PayloadTooLargeError,
    RequestRejected,
    TruncatedTransmission,
    UnsupportedCompression,
)
from .identity import Identity, open_message, verify
from .options import ConnectionOption, ConnectionOptions, Subnet
from .protocol import ProtocolRouter, nack_payload, opcode_name, pending_key, request_key
from .wire import (
    ADDRESS_SIZE,
    BROADCAST_ADDRESS,
    DEFAULT_LAYOUT,
    OpCode,
    RawMessage,
    decode_transmission,
    encode_message,
    encode_transmission,
    read_transmission,
)

logger = logging.getLogger(__name__)


# Запросы, которые пир отправляет от своего имени
DIRECT_OPCODES = frozenset({
    OpCode.ACK,
    OpCode.NACK,
    OpCode.PING,
    OpCode.SET_CONNECTION_OPT,
    OpCode.FIND_NODE,
    OpCode.FIND_VALUE,
    OpCode.STORE,
    OpCode.CUSTOM,
})

# Что принимается до ESTABLISHED
HANDSHAKE_OPCODES = frozenset({OpCode.SET_CONNECTION_OPT, OpCode.ACK, OpCode.NACK})

WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::"})

WHISPER_STRATEGIES = ("recursive", "iterative")


class PeerState(Enum):
    CONNECTING = "connecting"
    OPTION_NEGOTIATION = "option_negotiation"
    ESTABLISHED = "established"
    DISCONNECTED = "disconnected"


@dataclass(eq=False)
class Peer:
    """
    Соединение с другим узлом.

    [DECENTRALIZATION] Адрес пира узнаётся из подписи первого
    прямого сообщения, а не из того, что он о себе заявляет.

    listen_port известен сразу для исходящих соединений;
    для входящих - из ANNOUNCE пира.
    """

    host: str
    port: int
    reader: Optional[asyncio.StreamReader] = None
    writer: Optional[asyncio.StreamWriter] = None
    is_outbound: bool = False
    transient: bool = False
    reliable: bool = True

    address: Optional[bytes] = None
    listen_port: Optional[int] = None
    state: PeerState = PeerState.CONNECTING
    options: ConnectionOptions = field(default_factory=ConnectionOptions)

    established: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    closed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    close_requested: bool = False

    last_seen: float = field(default_factory=time.time)
    bytes_sent: int = 0
    bytes_received: int = 0

    # (opcode, key) -> очередь ожидающих ответа futures
    _pending: Dict[Tuple[int, Optional[bytes]], Deque[asyncio.Future]] = field(
        default_factory=dict, repr=False
    )
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self):
        if self.listen_port is None and self.is_outbound:
            self.listen_port = self.port

    def __str__(self) -> str:
        if self.address:
            return f"{self.address.hex()[:8]}...@{self.host}:{self.port}"
        return f"{self.host}:{self.port}"

    @property
    def is_connected(self) -> bool:
        return self.writer is not None and not self.writer.is_closing()

    @property
    def contact(self) -> Optional[NodeInfo]:
        """Куда подключаться к этому узлу (None, пока порт неизвестен)."""
        if self.address is None or self.listen_port is None:
            return None
        return NodeInfo(address=self.address, host=self.host, port=self.listen_port)

    async def send_raw(self, data: bytes) -> bool:
        """Записать готовую передачу в поток."""
        if not self.is_connected:
            return False

        try:
            async with self._write_lock:
                self.writer.write(data)
                await self.writer.drain()
            self.bytes_sent += len(data)
            return True
        except (ConnectionError, OSError) as e:
            logger.warning(f"[PEER] Failed to send to {self}: {e}")
            return False

    def expect(self, key: Tuple[int, Optional[bytes]]) -> asyncio.Future:
        """Зарегистрировать ожидание ответа на запрос."""
        future = asyncio.get_running_loop().create_future()
        self._pending.setdefault(key, deque()).append(future)
        return future

    def forget(self, key: Tuple[int, Optional[bytes]], future: asyncio.Future) -> None:
        queue = self._pending.get(key)
        if queue is None:
            return
        with suppress(ValueError):
            queue.remove(future)
        if not queue:
            del self._pending[key]

    def resolve(
        self,
        key: Tuple[int, Optional[bytes]],
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        """
        Разрешить самый старый ожидающий запрос с этим ключом.

        Returns:
            False если такого запроса нет
        """
        queue = self._pending.get(key)
        while queue:
            future = queue.popleft()
            if future.done():
                continue
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)
            return True
        return False

    def fail_pending(self, error: BaseException) -> None:
        """Отклонить все ожидающие запросы этого пира."""
        for queue in self._pending.values():
            for future in queue:
                if not future.done():
                    future.set_exception(error)
        self._pending.clear()

    async def close(self) -> None:
        if self.writer:
            self.writer.close()
            with suppress(ConnectionError, OSError):
                await self.writer.wait_closed()
        self.closed.set()


class PeerManager:
    """
    Менеджер соединений.

    Владеет всеми объектами Peer. Таблица маршрутизации
    хранит лишь ссылки на них.
    """

    def __init__(self):
        self._peers: Set[Peer] = set()
        self._by_address: Dict[bytes, Peer] = {}
        self._lock = asyncio.Lock()

    async def add_peer(self, peer: Peer) -> None:
        async with self._lock:
            self._peers.add(peer)

    def bind(self, peer: Peer) -> None:
        """Проиндексировать пира по адресу."""
        self._by_address[peer.address] = peer

    def rebind(self, peer: Peer, new_address: bytes) -> None:
        if self._by_address.get(peer.address) is peer:
            del self._by_address[peer.address]
        peer.address = new_address
        self._by_address[new_address] = peer

    async def remove_peer(self, peer: Peer) -> bool:
        async with self._lock:
            if peer not in self._peers:
                return False
            self._peers.discard(peer)
            if peer.address is not None and self._by_address.get(peer.address) is peer:
                del self._by_address[peer.address]
            return True

    def get_peer(self, address: bytes) -> Optional[Peer]:
        return self._by_address.get(address)

    def all_peers(self) -> List[Peer]:
        return list(self._peers)

    def get_active_peers(self) -> List[Peer]:
        """Установленные постоянные соединения."""
        return [
            p for p in self._peers
            if p.state == PeerState.ESTABLISHED and not p.transient and p.is_connected
        ]

    def outbound_count(self) -> int:
        """Сколько исходящих постоянных соединений занято из лимита ℓ."""
        return sum(
            1 for p in self._peers
            if p.is_outbound and not p.transient and p.state != PeerState.DISCONNECTED
        )

    @property
    def peer_count(self) -> int:
        return len(self._peers)


class Node:
    """
    Главный класс P2P узла.

    [USAGE]
        node = Node(identity, host="0.0.0.0", port=8468)
        await node.start()
        peer = await node.connect("10.0.0.2", 8468)
        await node.store("key", b"value")
        entry = await node.find_value("key")
        await node.shout("hello")
        await node.stop()
    """

    def __init__(
        self,
        identity: Optional[Identity] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        cfg: Config = default_config,
        registry: CompressionRegistry = default_registry,
        storage: Optional[ValueStore] = None,
    ):
        """
        Args:
            identity: Ключевая пара узла (по умолчанию новая)
            host: Адрес для прослушивания
            port: Порт для прослушивания (0 - выбрать свободный)
            cfg: Конфигурация узла
            registry: Доступные кодеки сжатия
            storage: Хранилище значений (по умолчанию из cfg.storage)
        """
        self.cfg = cfg
        self.identity = identity or Identity()
        self.subnet = Subnet.from_config(cfg.subnet)
        if self.subnet.beta != ADDRESS_SIZE * 8:
            raise ValueError(
                f"Ed25519 addresses are {ADDRESS_SIZE * 8} bits, subnet declares beta={self.subnet.beta}"
            )

        self.host = host if host is not None else cfg.network.host
        self.port = port if port is not None else cfg.network.default_port
        self.registry = registry
        self.layout = DEFAULT_LAYOUT

        self.storage = storage or ValueStore(cfg.storage.database_path, cfg.storage.enforce_owner)
        self.routing_table = RoutingTable(self.address, k=self.subnet.k, tau=self.subnet.tau)
        self.contacts = NodeInfoCache(cfg.network.contact_cache_size)
        self.dht = DHTProtocol(
            self.routing_table,
            self.storage,
            self.contacts,
            self.address,
            k=self.subnet.k,
            alpha=self.subnet.alpha,
            round_timeout=cfg.network.lookup_round_timeout,
            max_rounds=cfg.network.lookup_max_rounds,
        )
        self.broadcast_engine = BroadcastEngine(
            seen_size=cfg.broadcast.seen_set_size,
            relay_speak=cfg.broadcast.relay_speak,
            ack_speak=cfg.broadcast.ack_speak,
        )

        self.events = EventBus()
        self.router = ProtocolRouter()
        self.peer_manager = PeerManager()

        self._server: Optional[asyncio.AbstractServer] = None
        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self._refill_lock = asyncio.Lock()

        # Последний ANNOUNCE, отправляется новым исходящим пирам
        self._announcement: Optional[bytes] = None

        self.stats = {
            "transmissions_received": 0,
            "transmissions_dropped": 0,
            "messages_received": 0,
            "messages_dropped": 0,
            "whispers_forwarded": 0,
        }

        logger.info(f"[NODE] Initialized with address: {self.address.hex()[:16]}...")

    @property
    def address(self) -> bytes:
        return self.identity.address

    @property
    def ell(self) -> int:
        return self.subnet.ell

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Запустить узел.

        1. Открываем хранилище
        2. Начинаем принимать входящие соединения
        3. Запускаем heartbeat и обновление buckets
        4. Подключаемся к bootstrap-узлам, ищем себя, объявляемся
        """
        if self._running:
            return

        self._running = True
        await self.storage.initialize()

        self._server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port,
            reuse_address=True,
        )

        if self._server.sockets:
            addr = self._server.sockets[0].getsockname()
            self.port = addr[1]
            logger.info(f"[NODE] Server listening on {addr[0]}:{addr[1]}")
        else:
            logger.warning("[NODE] Server started without sockets")

        self._spawn(self._heartbeat_loop())
        self._spawn(self._refresh_loop())

        if self.cfg.network.bootstrap_nodes:
            await self._connect_to_bootstrap()

    async def stop(self) -> None:
        """
        Остановить узел.

        Отключаем всех пиров, останавливаем сервер,
        отменяем фоновые задачи и закрываем хранилище.
        """
        if not self._running:
            return

        self._running = False
        logger.info("[NODE] Stopping...")

        for peer in self.peer_manager.all_peers():
            await self._disconnect(peer)

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        for task in list(self._tasks):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        await self.storage.close()
        self.broadcast_engine.seen.clear()

        logger.info("[NODE] Stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _connect_to_bootstrap(self) -> None:
        """
        Подключиться к bootstrap-узлам и заполнить таблицу.

        [DECENTRALIZATION] После первого подключения bootstrap-узлы
        не нужны: остальные пиры находятся через FIND_NODE.
        """
        for host, port in self.cfg.network.bootstrap_nodes:
            peer = await self.connect(host, port)
            if peer is None:
                logger.warning(f"[NODE] Failed to connect to bootstrap {host}:{port}")

        if self.peer_manager.get_active_peers():
            await self.find_node(self.address)
            await self.announce()

    # =========================================================================
    # Connections
    # =========================================================================

    async def connect(self, host: str, port: int, transient: Optional[bool] = None) -> Optional[Peer]:
        """
        Подключиться к узлу и дождаться согласования опций.

        Args:
            transient: Временное соединение; по умолчанию - если
                лимит исходящих ℓ уже исчерпан

        Returns:
            Установленный Peer или None
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.cfg.network.connection_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"[NODE] Connection to {host}:{port} failed: {e}")
            return None

        if transient is None:
            transient = self.peer_manager.outbound_count() >= self.ell

        peer = await self.attach_connection(reader, writer, host, port, outbound=True, transient=transient)
        return await self._await_established(peer)

    async def attach_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        host: str,
        port: int,
        outbound: bool,
        transient: bool = False,
        reliable: bool = True,
    ) -> Peer:
        """
        Начать сессию поверх готовых потоков.

        Отправляет наши опции и запускает цикл чтения.
        """
        peer = Peer(
            host=host,
            port=port,
            reader=reader,
            writer=writer,
            is_outbound=outbound,
            transient=transient,
            reliable=reliable,
        )
        await self.peer_manager.add_peer(peer)
        peer.state = PeerState.OPTION_NEGOTIATION

        self._spawn(self._read_loop(peer))

        messages = [
            self._encode_for(peer, OpCode.SET_CONNECTION_OPT,
                             [ConnectionOption.SUBNET, self.subnet.to_payload()]),
        ]
        preferred = self.cfg.compression.preferred
        if preferred != Compression.NONE and self.registry.supports(preferred):
            messages.append(self._encode_for(
                peer, OpCode.SET_CONNECTION_OPT, [ConnectionOption.PREFERRED_COMPRESSION, preferred]
            ))
        await self._send(peer, messages)

        logger.debug(f"[NODE] Negotiating options with {peer} (outbound={outbound})")
        return peer

    async def _await_established(self, peer: Peer) -> Optional[Peer]:
        waiters = [
            asyncio.ensure_future(peer.established.wait()),
            asyncio.ensure_future(peer.closed.wait()),
        ]
        _, pending = await asyncio.wait(
            waiters,
            timeout=self.cfg.network.handshake_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        for waiter in pending:
            waiter.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if peer.established.is_set() and not peer.closed.is_set():
            return peer

        if not peer.closed.is_set():
            logger.warning(f"[NODE] Option negotiation with {peer} timed out")
            await self._disconnect(peer)

        # Соединение закрыто как дубликат - возвращаем существующее
        if peer.address is not None:
            existing = self.peer_manager.get_peer(peer.address)
            if existing is not None and existing.state == PeerState.ESTABLISHED:
                return existing
        return None

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Обработать входящее соединение."""
        peername = writer.get_extra_info("peername")
        logger.debug(f"[NODE] Incoming connection from {peername}")

        host, port = (peername[0], peername[1]) if peername else ("unknown", 0)
        peer = await self.attach_connection(reader, writer, host, port, outbound=False)
        if await self._await_established(peer) is not None:
            await peer.closed.wait()

    async def _read_loop(self, peer: Peer) -> None:
        """
        Цикл чтения передач от пира.

        Сообщения одной передачи обрабатываются по порядку,
        ответы на них уходят одной передачей.
        """
        try:
            while peer.is_connected and not peer.close_requested:
                data = await read_transmission(peer.reader, self.cfg.network.max_transmission_size)
                peer.bytes_received += len(data)
                peer.last_seen = time.time()

                await self._process_transmission(peer, data)

        except asyncio.IncompleteReadError:
            logger.debug(f"[NODE] Connection closed by {peer}")
        except PayloadTooLargeError as e:
            logger.warning(f"[NODE] {peer} sent oversized transmission: {e}")
        except (ConnectionError, OSError) as e:
            logger.debug(f"[NODE] Read error from {peer}: {e}")
        finally:
            await self._disconnect(peer)

    async def _process_transmission(self, peer: Peer, data: bytes) -> None:
        self.stats["transmissions_received"] += 1

        try:
            raws = decode_transmission(data, self.registry, self.layout).messages()
        except (TruncatedTransmission, UnsupportedCompression, CompressionError) as e:
            self.stats["transmissions_dropped"] += 1
            logger.debug(f"[NODE] Dropped transmission from {peer}: {e}")
            return

        replies: List[bytes] = []
        for raw in raws:
            reply = await self._handle_raw(peer, raw)
            if reply is not None:
                replies.append(reply)
            if peer.close_requested:
                break

        if replies:
            await self._send(peer, replies)

        if (
            peer.state == PeerState.OPTION_NEGOTIATION
            and peer.options.negotiated
            and not peer.close_requested
        ):
            self._establish(peer)

    async def _handle_raw(self, peer: Peer, raw: RawMessage) -> Optional[bytes]:
        """
        Проверить и обработать одно сообщение.

        Returns:
            Закодированный ответ или None
        """
        self.stats["messages_received"] += 1

        if not verify(raw):
            self.stats["messages_dropped"] += 1
            logger.debug(f"[NODE] Bad signature from {raw.sender.hex()[:16]}... via {peer}")
            return None

        if raw.opcode == OpCode.WHISPER and raw.recipient not in (self.address, BROADCAST_ADDRESS):
            if peer.state == PeerState.ESTABLISHED:
                await self._forward_whisper(raw, peer)
            return None

        if raw.recipient not in (self.address, BROADCAST_ADDRESS):
            self.stats["messages_dropped"] += 1
            logger.debug(f"[NODE] Message for {raw.recipient.hex()[:16]}... is not ours")
            return None

        try:
            message = open_message(raw, self.identity)
        except (DecryptionError, PayloadDecodeError) as e:
            self.stats["messages_dropped"] += 1
            logger.debug(f"[NODE] Cannot open {opcode_name(raw.opcode)} from {peer}: {e}")
            return None

        if raw.opcode in DIRECT_OPCODES:
            if peer.address is None:
                if not self._bind_address(peer, raw.sender):
                    return None
            elif raw.sender != peer.address:
                self.stats["messages_dropped"] += 1
                logger.debug(f"[NODE] {opcode_name(raw.opcode)} signed by another node on {peer}")
                return None

        if peer.state != PeerState.ESTABLISHED and raw.opcode not in HANDSHAKE_OPCODES:
            self.stats["messages_dropped"] += 1
            logger.debug(f"[NODE] {opcode_name(raw.opcode)} before negotiation from {peer}")
            return None

        if peer.address is not None and not peer.transient:
            self.routing_table.touch(peer.address)

        reply = await self.router.route(message, {"node": self, "peer": peer})
        if reply is None:
            return None

        op, payload = reply
        try:
            return self._encode_for(peer, op, payload, encrypted=raw.encrypted)
        except (PayloadEncodeError, PayloadTooLargeError) as e:
            logger.warning(f"[RPC] Cannot encode reply to {opcode_name(raw.opcode)}: {e}")
            return self._encode_for(
                peer, OpCode.NACK, nack_payload(raw.opcode, message.payload), encrypted=raw.encrypted
            )

    def _bind_address(self, peer: Peer, address: bytes) -> bool:
        """
        Запомнить адрес пира из подписи его первого прямого сообщения.

        При двух соединениях с одним узлом остаётся то, которое
        открыл узел с меньшим адресом. Обе стороны приходят
        к одному решению.
        """
        peer.address = address

        if address == self.address:
            logger.warning(f"[NODE] Connected to ourselves via {peer.host}:{peer.port}")
            peer.close_requested = True
            return False

        existing = self.peer_manager.get_peer(address)
        if existing is not None and existing is not peer and existing.state != PeerState.DISCONNECTED:
            keep_outbound = self.address < address
            if existing.is_outbound == peer.is_outbound or existing.is_outbound == keep_outbound:
                logger.debug(f"[NODE] Duplicate connection to {peer}, keeping the existing one")
                peer.close_requested = True
                return False
            logger.debug(f"[NODE] Duplicate connection to {peer}, replacing the existing one")
            self._spawn(self._disconnect(existing))

        self.peer_manager.bind(peer)
        return True

    # =========================================================================
    # Option negotiation
    # =========================================================================

    def apply_connection_option(self, peer: Peer, option: int, setting: Any) -> None:
        """
        Принять опцию соединения от пира.

        Raises:
            SubnetMismatch: Параметры подсети не совпали
            UnsupportedCompression: Нет кодека для setting
            PayloadDecodeError: Неизвестная опция или неверный setting
        """
        if option == ConnectionOption.SUBNET:
            theirs = Subnet.from_payload(setting)
            self.subnet.check(theirs)
            peer.options.subnet = theirs
            peer.options.subnet_received = True

        elif option in (ConnectionOption.COMPRESSION, ConnectionOption.PREFERRED_COMPRESSION):
            if not isinstance(setting, int) or isinstance(setting, bool) or not self.registry.supports(setting):
                raise UnsupportedCompression(setting)
            if option == ConnectionOption.COMPRESSION:
                peer.options.compression = setting
            else:
                peer.options.preferred_compression = setting
            logger.debug(f"[PEER] {peer}: {ConnectionOption(option).name} = {setting}")

        else:
            raise PayloadDecodeError(f"Unknown connection option: {option!r}")

    def _on_option_reply(self, peer: Peer, option: Any, accepted: bool) -> None:
        if option == ConnectionOption.SUBNET:
            if accepted:
                peer.options.subnet_acked_by_peer = True
            else:
                logger.warning(f"[PEER] {peer} rejected our subnet, disconnecting")
                peer.close_requested = True
        elif not accepted:
            logger.debug(f"[PEER] {peer} rejected connection option {option!r}")

    def _establish(self, peer: Peer) -> None:
        """
        Перевести сессию в ESTABLISHED.

        Вызывается после отправки ответов передачи, чтобы пир
        получил наш ACK на SUBNET раньше любых других запросов.
        """

        peer.state = PeerState.ESTABLISHED
        peer.established.set()
        logger.info(f"[NODE] Established {'transient ' if peer.transient else ''}session with {peer}")

        if not peer.transient:
            self._spawn(self._on_established(peer))

    async def _on_established(self, peer: Peer) -> None:
        if peer.is_outbound and self._announcement is not None:
            await self._send(peer, [self._announcement])

        if await self.routing_table.insert_or_refresh(peer, self.ping_peer):
            self.contacts.remove(peer.address)

        await self.events.broadcast("peer_connected", {
            "address": peer.address,
            "host": peer.host,
            "port": peer.port,
            "outbound": peer.is_outbound,
        })

    # =========================================================================
    # Disconnect
    # =========================================================================

    async def _disconnect(self, peer: Peer) -> None:
        """
        Закрыть соединение и убрать пира отовсюду.

        Ожидающие запросы этого пира завершаются ошибкой.
        """
        if peer.state == PeerState.DISCONNECTED:
            return

        was_established = peer.state == PeerState.ESTABLISHED
        peer.state = PeerState.DISCONNECTED
        peer.fail_pending(ConnectionError(f"Peer {peer} disconnected"))

        await peer.close()
        await self.peer_manager.remove_peer(peer)

        if peer.address is None or peer.transient or peer.address == self.address:
            return

        if self.routing_table.remove(peer.address, peer):
            logger.info(f"[NODE] Removed {peer} from routing table")

        contact = peer.contact
        if contact is not None:
            self.contacts.put(contact)

        if was_established:
            await self.events.broadcast("peer_disconnected", {
                "address": peer.address,
                "host": peer.host,
                "port": peer.port,
            })

            if self._running and self.peer_manager.outbound_count() < self.ell:
                self._spawn(self._refill(exclude={peer.address}))

    async def _refill(self, exclude: Set[bytes] = frozenset()) -> int:
        """
        Дозаполнить исходящие соединения контактами из кэша.

        Returns:
            Сколько новых соединений открыто
        """
        async with self._refill_lock:
            opened = 0
            candidates = sorted(self.contacts.contacts(), key=lambda c: c.last_seen, reverse=True)

            for contact in candidates:
                if self.peer_manager.outbound_count() >= self.ell:
                    break
                if contact.address in exclude or contact.address == self.address:
                    continue
                if self.peer_manager.get_peer(contact.address) is not None:
                    continue

                peer = await self.connect(contact.host, contact.port, transient=False)
                if peer is not None:
                    opened += 1

            if opened:
                logger.info(f"[NODE] Refilled {opened} outbound connections from cache")
            return opened

    # =========================================================================
    # Sending
    # =========================================================================

    def _encode_for(self, peer: Peer, op: int, payload: Any, encrypted: bool = False) -> bytes:
        to = peer.address if peer.address is not None else BROADCAST_ADDRESS
        return self._encode(to, op, payload, encrypted)

    def _encode(self, to: bytes, op: int, payload: Any, encrypted: bool = False) -> bytes:
        return encode_message(to, op, payload, self.identity, encrypted, self.layout)

    async def _send(self, peer: Peer, messages: List[bytes]) -> bool:
        """Упаковать сообщения в одну передачу и отправить."""
        compression_id = peer.options.preferred_compression
        if sum(len(m) for m in messages) < self.cfg.compression.min_size:
            compression_id = Compression.NONE
        if not self.registry.supports(compression_id):
            compression_id = Compression.NONE

        data = encode_transmission(compression_id, messages, self.registry)
        return await peer.send_raw(data)

    async def _send_all(self, peers: List[Peer], data: bytes) -> int:
        results = await asyncio.gather(*(self._send(p, [data]) for p in peers))
        return sum(1 for sent in results if sent)

    async def relay(self, raw: RawMessage, peers: List[Peer]) -> int:
        """Переслать исходные байты сообщения."""
        return await self._send_all(peers, raw.data)

    def established_peers(self) -> List[Peer]:
        return self.peer_manager.get_active_peers()

    # =========================================================================
    # Request / Response
    # =========================================================================

    async def request(
        self,
        peer: Peer,
        op: int,
        payload: Any,
        encrypted: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Отправить запрос и дождаться ACK.

        Returns:
            Payload ответа ACK

        Raises:
            RequestRejected: Пир ответил NACK
            LookupTimeout: Ответ не пришёл вовремя
            ConnectionError: Соединение не установлено или оборвалось
        """
        if peer.state != PeerState.ESTABLISHED:
            raise ConnectionError(f"Peer {peer} is not established")

        key = pending_key(op, request_key(op, payload))
        future = peer.expect(key)
        try:
            data = self._encode_for(peer, op, payload, encrypted)
            if not await self._send(peer, [data]):
                raise ConnectionError(f"Cannot send to {peer}")
            return await asyncio.wait_for(future, timeout or self.cfg.network.rpc_timeout)
        except asyncio.TimeoutError:
            raise LookupTimeout(f"{opcode_name(op)} to {peer} timed out") from None
        finally:
            peer.forget(key, future)

    def handle_reply(self, peer: Peer, payload: Any, rejected: bool) -> None:
        """
        Сопоставить ACK / NACK с ожидающим запросом.

        Ответ FIND_VALUE без значения приходит с тегом FIND_NODE,
        поэтому для тега 9 проверяются оба opcode.
        """
        if not isinstance(payload, list) or not payload or not isinstance(payload[0], int):
            logger.debug(f"[RPC] Malformed {'NACK' if rejected else 'ACK'} from {peer}: {payload!r}")
            return

        tag = payload[0]
        key = payload[1] if len(payload) > 1 else None

        if tag == OpCode.SET_CONNECTION_OPT:
            self._on_option_reply(peer, key, not rejected)
            return

        candidates = [tag]
        if tag == OpCode.FIND_NODE:
            candidates.append(OpCode.FIND_VALUE)

        for op in candidates:
            if op in (OpCode.PING, OpCode.SPEAK):
                pending = pending_key(op, None)
            else:
                pending = pending_key(op, key)
            error = RequestRejected(op, payload) if rejected else None
            if peer.resolve(pending, result=payload, error=error):
                return

        logger.debug(f"[RPC] Unmatched reply {payload!r} from {peer}")

    async def ping_peer(self, peer: Peer) -> bool:
        """PING пира; True если ответил ACK."""
        try:
            await self.request(peer, OpCode.PING, [])
            return True
        except (MeshError, ConnectionError):
            return False

    async def _dht_send(self, contact: NodeInfo, op: int, payload: List[Any]) -> Any:
        """
        Отправить DHT-запрос контакту.

        Если к узлу нет соединения, открываем его; временное
        соединение закрывается сразу после ответа.
        """
        peer = self.peer_manager.get_peer(contact.address)
        if peer is None or peer.state != PeerState.ESTABLISHED:
            peer = await self.connect(contact.host, contact.port)
            if peer is None:
                raise ConnectionError(f"Cannot reach {contact.host}:{contact.port}")
            if peer.address != contact.address:
                if peer.transient:
                    await self._disconnect(peer)
                raise ConnectionError(f"Node at {contact.host}:{contact.port} has a different address")
            if peer.transient:
                self.contacts.put(contact)

        try:
            return await self.request(peer, op, payload)
        finally:
            if peer.transient:
                await self._disconnect(peer)

    # =========================================================================
    # DHT API
    # =========================================================================

    async def find_node(self, target: bytes) -> List[NodeInfo]:
        """Итеративный поиск k ближайших к target узлов."""
        return await self.dht.iterative_find_node(target, self._dht_send)

    async def find_value(self, key: Any) -> Optional[Tuple[Any, EntryMetadata]]:
        """Найти значение: сначала локально, затем в сети."""
        entry, _ = await self.dht.iterative_find_value(key, self._dht_send)
        return entry

    async def store(self, key: Any, value: Any) -> int:
        """
        Сохранить значение локально и на k ближайших узлах.

        Returns:
            Сколько узлов сохранили значение (включая нас)
        """
        return await self.dht.iterative_store(key, value, self._dht_send)

    # =========================================================================
    # Messaging API
    # =========================================================================

    async def shout(self, data: Any) -> int:
        """Разослать SHOUT всей сети."""
        return await self._originate(OpCode.SHOUT, [data])

    async def speak(self, data: Any) -> int:
        """Отправить SPEAK всем прямым пирам."""
        return await self._originate(OpCode.SPEAK, [data])

    async def announce(self, host: Optional[str] = None, port: Optional[int] = None) -> int:
        """
        Объявить сети, где нас слушать.

        Незаданный или wildcard host получатели заменяют
        на адрес, с которого пришло соединение.
        """
        data = self._encode(BROADCAST_ADDRESS, OpCode.ANNOUNCE, [host or self.host, port or self.port])
        self._announcement = data
        return await self._broadcast_encoded(data)

    async def change_key(self, new_identity: Identity) -> int:
        """
        Сменить ключ узла.

        CHANGE_KEY подписан старым ключом и несёт доказательство:
        подпись нового ключа над старым адресом.
        """
        old_address = self.address
        proof = new_identity.sign(old_address)
        data = self._encode(BROADCAST_ADDRESS, OpCode.CHANGE_KEY, [new_identity.address, proof])

        self.identity = new_identity
        self._rebuild_routing_table()
        sent = await self._broadcast_encoded(data)

        logger.info(f"[IDENTITY] Changed key {old_address.hex()[:16]}... -> {self.address.hex()[:16]}...")
        await self.events.broadcast("change_key", {"old_address": old_address, "new_address": self.address})

        if self._announcement is not None:
            await self.announce()
        return sent

    async def _originate(self, op: int, payload: List[Any]) -> int:
        return await self._broadcast_encoded(self._encode(BROADCAST_ADDRESS, op, payload))

    async def _broadcast_encoded(self, data: bytes) -> int:
        self.broadcast_engine.mark_originated(data[:self.layout.signature_size])
        return await self._send_all(self.established_peers(), data)

    async def whisper(self, to: bytes, data: Any, strategy: str = "recursive", encrypted: bool = True) -> bool:
        """
        Отправить личное сообщение узлу to.

        Стратегии:
        - recursive: отдаём пиру, который строго ближе к to,
          дальше сообщение пересылают без расшифровки
        - iterative: ищем to через FIND_NODE и подключаемся напрямую

        Returns:
            True если сообщение ушло следующему хопу
        """
        if strategy not in WHISPER_STRATEGIES:
            raise ValueError(f"Unknown whisper strategy: {strategy!r}")

        message = self._encode(to, OpCode.WHISPER, [data], encrypted)

        if strategy == "iterative":
            peer = self.peer_manager.get_peer(to)
            if peer is not None and peer.state == PeerState.ESTABLISHED:
                return await self._send(peer, [message])

            contact = next((c for c in await self.find_node(to) if c.address == to), None)

            # Поиск мог сам открыть соединение с адресатом
            peer = self.peer_manager.get_peer(to)
            if peer is not None and peer.state == PeerState.ESTABLISHED:
                return await self._send(peer, [message])

            if contact is None:
                contact = self.contacts.get(to)
            if contact is None:
                logger.debug(f"[NODE] Lookup did not find {to.hex()[:16]}...")
                return False

            peer = await self.connect(contact.host, contact.port)
            if peer is None:
                return False
            try:
                if peer.address != to:
                    logger.debug(f"[NODE] Node at {contact.host}:{contact.port} is not {to.hex()[:16]}...")
                    return False
                return await self._send(peer, [message])
            finally:
                if peer.transient:
                    await self._disconnect(peer)

        peer = self._next_hop(to)
        if peer is None:
            logger.debug(f"[NODE] No route to {to.hex()[:16]}...")
            return False
        return await self._send(peer, [message])

    def _next_hop(self, to: bytes, source: Optional[Peer] = None) -> Optional[Peer]:
        """Сам адресат или пир, строго более близкий к нему, чем мы."""
        peer = self.peer_manager.get_peer(to)
        if peer is not None and peer.state == PeerState.ESTABLISHED:
            return peer

        own_distance = self.routing_table.distance(self.address, to)
        exclude = [source.address] if source is not None and source.address else []
        for candidate in self.routing_table.closest(to, self.subnet.k, exclude=exclude):
            if candidate.state != PeerState.ESTABLISHED:
                continue
            if self.routing_table.distance(candidate.address, to) < own_distance:
                return candidate
            break
        return None

    async def _forward_whisper(self, raw: RawMessage, source: Peer) -> bool:
        peer = self._next_hop(raw.recipient, source)
        if peer is None:
            logger.debug(f"[NODE] Dropped WHISPER for {raw.recipient.hex()[:16]}...: no closer peer")
            return False
        self.stats["whispers_forwarded"] += 1
        return await self._send(peer, [raw.data])

    async def custom(self, target: Union[Peer, bytes], sub_opcode: int, body: Any, encrypted: bool = False) -> Any:
        """
        Вызвать расширение пира.

        Returns:
            reply из ACK [15, sub_opcode, reply]
        """
        peer = target if isinstance(target, Peer) else self.peer_manager.get_peer(target)
        if peer is None:
            raise ConnectionError("Not connected to the target node")

        reply = await self.request(peer, OpCode.CUSTOM, [sub_opcode, body], encrypted=encrypted)
        if not isinstance(reply, list) or len(reply) != 3:
            raise PayloadDecodeError(f"Malformed CUSTOM reply: {reply!r}")
        return reply[2]

    def register_extension(self, sub_opcode: int, handler) -> None:
        self.router.register_extension(sub_opcode, handler)

    # =========================================================================
    # Broadcast callbacks
    # =========================================================================

    def record_announce(self, sender: bytes, host: str, port: int, source: Peer) -> Optional[NodeInfo]:
        """Запомнить контакт из ANNOUNCE."""
        if sender == self.address:
            return None

        if sender == source.address:
            source.listen_port = port
            if host in WILDCARD_HOSTS:
                host = source.host
        if host in WILDCARD_HOSTS:
            return None

        contact = NodeInfo(address=sender, host=host, port=port)
        if sender not in self.routing_table:
            self.contacts.put(contact)
        return contact

    def rekey_peer(self, old_address: bytes, new_address: bytes) -> None:
        """Перенести пира и контакт на новый адрес после CHANGE_KEY."""
        peer = self.peer_manager.get_peer(old_address)
        if peer is not None:
            in_table = self.routing_table.remove(old_address, peer)
            self.peer_manager.rebind(peer, new_address)
            if in_table:
                self._spawn(self.routing_table.insert_or_refresh(peer, self.ping_peer))

        contact = self.contacts.remove(old_address)
        if contact is not None and new_address != self.address:
            self.contacts.put(NodeInfo(address=new_address, host=contact.host, port=contact.port))

        logger.info(f"[NODE] Node {old_address.hex()[:16]}... is now {new_address.hex()[:16]}...")

    def _rebuild_routing_table(self) -> None:
        table = RoutingTable(self.address, k=self.subnet.k, tau=self.subnet.tau)
        for peer in self.routing_table.peers():
            table.add_peer(peer)
        self.routing_table = table
        self.dht.routing_table = table
        self.dht.local_address = self.address

    # =========================================================================
    # Background loops
    # =========================================================================

    async def _heartbeat_loop(self) -> None:
        """
        Периодический PING молчащих пиров.

        Не ответивший пир отключается.
        """
        interval = self.cfg.network.heartbeat_interval
        while self._running:
            await asyncio.sleep(interval)

            now = time.time()
            silent = [p for p in self.established_peers() if now - p.last_seen > interval]
            if not silent:
                continue

            results = await asyncio.gather(*(self.ping_peer(p) for p in silent))
            for peer, alive in zip(silent, results):
                if not alive:
                    logger.info(f"[NODE] Peer {peer} timed out")
                    await self._disconnect(peer)

    async def _refresh_loop(self) -> None:
        """Поиск случайных адресов в давно не менявшихся buckets."""
        interval = self.cfg.network.refresh_interval
        while self._running:
            await asyncio.sleep(interval)

            for target in self.routing_table.get_refresh_ids(interval):
                await self.find_node(target)

    # =========================================================================
    # Stats
    # =========================================================================

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "address": self.address.hex(),
            "host": self.host,
            "port": self.port,
            "peers": self.peer_manager.peer_count,
            "established": len(self.established_peers()),
            "outbound": self.peer_manager.outbound_count(),
            "known_contacts": len(self.contacts),
            **self.stats,
            "routing": self.routing_table.get_stats(),
            "dht": self.dht.get_stats(),
            "broadcast": self.broadcast_engine.get_stats(),
            "storage": await self.storage.get_stats(),
        }
