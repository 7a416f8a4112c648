"""
Kademlia Protocol - RPC операции DHT
====================================

[KADEMLIA] Основные RPC операции:
- FIND_NODE [target] -> ACK [9, target, contacts]
- FIND_VALUE [key] -> ACK [10, key, value, metadata]
                   или ACK [9, key, contacts] если значения нет
- STORE [owner, key, value] -> ACK [11, key]

Контакт в ответе - [address, host, port].

[LOOKUP] Итеративный поиск:
- alpha параллельных запросов в раунде
- Раунд ограничен таймаутом, опоздавшие ответы отменяются
- Продолжаем, пока находим более близкие узлы
- Возвращаем k ближайших найденных контактов
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING

from ..exceptions import LookupTimeout, OwnershipError, PayloadDecodeError
from ..serialization import encode_payload
from ..wire import OpCode
from .routing import RoutingTable, NodeInfo, NodeInfoCache, K, ALPHA
from .storage import ValueStore, EntryMetadata

if TYPE_CHECKING:
    from ..node import Peer

logger = logging.getLogger(__name__)


# async (contact, opcode, payload) -> payload ответа ACK
SendFunc = Callable[[NodeInfo, int, List[Any]], Awaitable[Any]]


def key_to_address(key: Any, size: int = 32) -> bytes:
    """
    Преобразовать ключ значения в точку адресного пространства.

    Хэшируем MessagePack-представление ключа, так что
    одинаковые payload-ключи всегда дают одну точку.
    """
    return hashlib.blake2b(encode_payload(key), digest_size=size).digest()


def parse_contacts(items: Any) -> List[NodeInfo]:
    """
    Разобрать список контактов из ответа.

    Raises:
        PayloadDecodeError: Список или запись имеют неверную форму
    """
    if not isinstance(items, list):
        raise PayloadDecodeError("Contacts must be a list")
    try:
        return [NodeInfo.from_payload(item) for item in items]
    except ValueError as e:
        raise PayloadDecodeError(str(e)) from e


@dataclass
class FindValueResult:
    """Ответ FIND_VALUE: либо значение, либо ближайшие контакты."""

    found: bool
    value: Any = None
    metadata: Optional[EntryMetadata] = None
    contacts: List[NodeInfo] = field(default_factory=list)

    @classmethod
    def from_reply(cls, reply: Any) -> "FindValueResult":
        if not isinstance(reply, list) or len(reply) < 3:
            raise PayloadDecodeError(f"Malformed FIND_VALUE reply: {reply!r}")

        if reply[0] == OpCode.FIND_VALUE and len(reply) == 4:
            return cls(found=True, value=reply[2], metadata=EntryMetadata.from_payload(reply[3]))
        if reply[0] == OpCode.FIND_NODE:
            return cls(found=False, contacts=parse_contacts(reply[2]))

        raise PayloadDecodeError(f"Unexpected FIND_VALUE reply tag: {reply[0]!r}")


class DHTProtocol:
    """
    Kademlia DHT Protocol - обработка RPC запросов.

    [KADEMLIA] Обрабатывает:
    - FIND_NODE: возвращает k ближайших контактов
    - FIND_VALUE: возвращает значение или контакты
    - STORE: сохраняет пару key-value

    Обработчики возвращают payload ACK или поднимают MeshError,
    который роутер превращает в NACK.

    [LOOKUP] Итеративный поиск узлов/значений через send_func.
    """

    def __init__(
        self,
        routing_table: RoutingTable,
        storage: ValueStore,
        contacts: NodeInfoCache,
        local_address: bytes,
        k: int = K,
        alpha: int = ALPHA,
        round_timeout: float = 3.0,
        max_rounds: int = 20,
    ):
        self.routing_table = routing_table
        self.storage = storage
        self.contacts = contacts
        self.local_address = local_address
        self.k = k
        self.alpha = alpha
        self.round_timeout = round_timeout
        self.max_rounds = max_rounds

        self.stats = {
            "lookups": 0,
            "rounds": 0,
            "timeouts": 0,
            "failed_requests": 0,
        }

    @property
    def tau(self) -> int:
        return self.routing_table.tau

    def distance(self, a: bytes, b: bytes) -> int:
        return self.routing_table.distance(a, b)

    def _check_address(self, value: Any, what: str) -> bytes:
        if not isinstance(value, bytes) or len(value) != len(self.local_address):
            raise PayloadDecodeError(f"{what} must be a {len(self.local_address)}-byte address")
        return value

    # =========================================================================
    # Request Handlers
    # =========================================================================

    def closest_contacts(self, target: bytes, exclude: Iterable[bytes] = ()) -> List[NodeInfo]:
        """
        До k контактов, ближайших к target.

        Берём подключённых пиров из таблицы; если их меньше k,
        дополняем кэшем контактов.
        """
        excluded = set(exclude)
        result: Dict[bytes, NodeInfo] = {}

        for peer in self.routing_table.closest(target, self.k, exclude=excluded):
            contact = peer.contact
            if contact is not None:
                result[contact.address] = contact

        if len(result) < self.k:
            for contact in self.contacts.closest(target, self.k, self.tau, exclude=excluded | set(result)):
                if contact.address != self.local_address:
                    result[contact.address] = contact

        ordered = sorted(result.values(), key=lambda c: self.distance(target, c.address))
        return ordered[:self.k]

    async def handle_find_node(self, sender: bytes, payload: Any) -> List[Any]:
        """FIND_NODE [target] -> [9, target, contacts]."""
        if not isinstance(payload, list) or len(payload) != 1:
            raise PayloadDecodeError("FIND_NODE payload must be [target]")
        target = self._check_address(payload[0], "FIND_NODE target")

        closest = self.closest_contacts(target, exclude=[sender])

        logger.debug(
            f"[DHT] FIND_NODE: target={target.hex()[:16]}..., returning {len(closest)} contacts"
        )
        return [OpCode.FIND_NODE, target, [c.to_payload() for c in closest]]

    async def handle_find_value(self, sender: bytes, payload: Any) -> List[Any]:
        """
        FIND_VALUE [key].

        [KADEMLIA] Если есть значение - возвращаем его,
        иначе ведём себя как FIND_NODE для точки ключа.
        """
        if not isinstance(payload, list) or len(payload) != 1:
            raise PayloadDecodeError("FIND_VALUE payload must be [key]")
        key = payload[0]

        entry = await self.storage.lookup(key)
        if entry is not None:
            value, metadata = entry
            logger.debug(f"[DHT] FIND_VALUE: found {key!r}")
            return [OpCode.FIND_VALUE, key, value, metadata.to_payload()]

        target = key_to_address(key, len(self.local_address))
        closest = self.closest_contacts(target, exclude=[sender])
        logger.debug(f"[DHT] FIND_VALUE: {key!r} not found, returning {len(closest)} contacts")
        return [OpCode.FIND_NODE, key, [c.to_payload() for c in closest]]

    async def handle_store(self, sender: bytes, payload: Any) -> List[Any]:
        """
        STORE [owner, key, value] -> [11, key].

        Raises:
            OwnershipError: Проверка владельца включена и owner != sender
        """
        if not isinstance(payload, list) or len(payload) != 3:
            raise PayloadDecodeError("STORE payload must be [owner, key, value]")
        owner, key, value = payload
        owner = self._check_address(owner, "STORE owner")

        if self.storage.enforce_owner and owner != sender:
            raise OwnershipError("STORE owner does not match the signed sender")

        await self.storage.store(key, value, EntryMetadata(owner=owner))
        return [OpCode.STORE, key]

    # =========================================================================
    # Iterative Operations
    # =========================================================================

    async def _query_round(
        self,
        contacts: List[NodeInfo],
        request: Callable[[NodeInfo], Awaitable[Any]],
    ) -> List[Tuple[NodeInfo, Any]]:
        """
        Опросить контакты параллельно с таймаутом раунда.

        Ошибки и опоздавшие ответы считаются отсутствующими.
        """
        self.stats["rounds"] += 1
        tasks = {asyncio.ensure_future(request(c)): c for c in contacts}

        done, pending = await asyncio.wait(tasks, timeout=self.round_timeout)

        if pending:
            self.stats["timeouts"] += len(pending)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.debug(f"[DHT] Lookup round: {len(pending)} of {len(tasks)} requests timed out")

        replies = []
        for task in done:
            contact = tasks[task]
            if task.cancelled():
                self.stats["failed_requests"] += 1
                continue
            error = task.exception()
            if error is not None:
                self.stats["failed_requests"] += 1
                if isinstance(error, LookupTimeout):
                    self.stats["timeouts"] += 1
                logger.debug(f"[DHT] Request to {contact.address.hex()[:16]}... failed: {error}")
                continue
            replies.append((contact, task.result()))
        return replies

    def _seed(self, target: bytes) -> Dict[bytes, NodeInfo]:
        return {c.address: c for c in self.closest_contacts(target)}

    def _learn(self, contact: NodeInfo) -> None:
        if contact.address != self.local_address and contact.address not in self.routing_table:
            self.contacts.put(contact)

    async def iterative_find_node(self, target: bytes, send: SendFunc) -> List[NodeInfo]:
        """
        Итеративный поиск k ближайших контактов к target.

        [KADEMLIA] Алгоритм:
        1. Начинаем с k ближайших известных контактов
        2. Параллельно отправляем FIND_NODE alpha неопрошенным
        3. Добавляем полученные контакты в shortlist
        4. Повторяем, пока появляются более близкие контакты
           и не исчерпан бюджет раундов
        """
        self.stats["lookups"] += 1

        async def request(contact: NodeInfo) -> List[NodeInfo]:
            reply = await send(contact, OpCode.FIND_NODE, [target])
            if not isinstance(reply, list) or len(reply) != 3 or reply[0] != OpCode.FIND_NODE:
                raise PayloadDecodeError(f"Malformed FIND_NODE reply: {reply!r}")
            return parse_contacts(reply[2])

        shortlist = self._seed(target)
        await self._iterate(target, shortlist, request)

        result = sorted(shortlist.values(), key=lambda c: self.distance(target, c.address))[:self.k]
        logger.debug(f"[DHT] iterative_find_node: target={target.hex()[:16]}..., found {len(result)}")
        return result

    async def _iterate(
        self,
        target: bytes,
        shortlist: Dict[bytes, NodeInfo],
        request: Callable[[NodeInfo], Awaitable[Any]],
        on_reply: Optional[Callable[[Any], Optional[List[NodeInfo]]]] = None,
    ) -> Any:
        """
        Общий цикл поиска.

        on_reply превращает ответ в список контактов или возвращает
        None, если поиск завершён (значение найдено); тогда _iterate
        возвращает этот ответ.
        """
        queried = set()
        best = min((self.distance(target, a) for a in shortlist), default=None)

        for _ in range(self.max_rounds):
            candidates = sorted(
                (c for c in shortlist.values() if c.address not in queried),
                key=lambda c: self.distance(target, c.address),
            )
            to_query = candidates[:self.alpha]
            if not to_query:
                break
            queried.update(c.address for c in to_query)

            found_closer = False
            for _contact, reply in await self._query_round(to_query, request):
                contacts = on_reply(reply) if on_reply else reply
                if contacts is None:
                    return reply

                for contact in contacts:
                    if contact.address == self.local_address or contact.address in shortlist:
                        continue
                    if len(contact.address) != len(self.local_address):
                        continue
                    shortlist[contact.address] = contact
                    self._learn(contact)

                    distance = self.distance(target, contact.address)
                    if best is None or distance < best:
                        best = distance
                        found_closer = True

            if not found_closer:
                break

        return None

    async def iterative_find_value(
        self, key: Any, send: SendFunc
    ) -> Tuple[Optional[Tuple[Any, EntryMetadata]], List[NodeInfo]]:
        """
        Итеративный поиск значения по ключу.

        Returns:
            ((value, metadata) или None, ближайшие контакты)
        """
        self.stats["lookups"] += 1

        entry = await self.storage.lookup(key)
        if entry is not None:
            return entry, []

        target = key_to_address(key, len(self.local_address))

        async def request(contact: NodeInfo) -> FindValueResult:
            return FindValueResult.from_reply(await send(contact, OpCode.FIND_VALUE, [key]))

        def on_reply(result: FindValueResult) -> Optional[List[NodeInfo]]:
            return None if result.found else result.contacts

        shortlist = self._seed(target)
        found = await self._iterate(target, shortlist, request, on_reply)
        closest = sorted(shortlist.values(), key=lambda c: self.distance(target, c.address))[:self.k]

        if found is not None:
            logger.debug(f"[DHT] iterative_find_value: found {key!r}")
            return (found.value, found.metadata), closest

        logger.debug(f"[DHT] iterative_find_value: {key!r} not found")
        return None, closest

    async def iterative_store(self, key: Any, value: Any, send: SendFunc) -> int:
        """
        Сохранить значение в сети.

        [KADEMLIA] Алгоритм:
        1. Сохраняем локально
        2. Находим k ближайших контактов к точке ключа
        3. Отправляем STORE каждому

        Returns:
            Количество узлов, сохранивших значение (включая нас)
        """
        await self.storage.store(key, value, EntryMetadata(owner=self.local_address))

        target = key_to_address(key, len(self.local_address))
        closest = await self.iterative_find_node(target, send)

        results = await asyncio.gather(
            *(send(c, OpCode.STORE, [self.local_address, key, value]) for c in closest),
            return_exceptions=True,
        )

        stored = 1
        for contact, result in zip(closest, results):
            if isinstance(result, BaseException):
                logger.debug(f"[DHT] STORE to {contact.address.hex()[:16]}... failed: {result}")
            else:
                stored += 1

        logger.debug(f"[DHT] iterative_store: {key!r} stored on {stored} nodes")
        return stored

    def get_stats(self) -> Dict:
        return {**self.stats, "known_contacts": len(self.contacts)}
