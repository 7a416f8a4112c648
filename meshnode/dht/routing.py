"""
Kademlia Routing Table
======================

[KADEMLIA] K-bucket таблица маршрутизации:
- XOR-метрика расстояния, усечённая до τ младших бит
- τ k-buckets, индекс = длина общего префикса с нашим адресом
- k живых пиров на bucket
- Замена по правилу Kademlia: сначала пингуем самый старый

[XOR] Почему XOR:
- XOR(a, a) = 0 (узел ближе всего к себе)
- XOR(a, b) = XOR(b, a) (симметрия)
- XOR(a, b) + XOR(b, c) >= XOR(a, c) (неравенство треугольника)
- Унарность: для любого a, b существует ровно один c: XOR(a, c) = b

[CONCURRENCY] Каждый bucket защищён своим threading.Lock.
Мутации (add, remove, touch, replace, apply_diff) выполняются
целиком под замком, поэтому читатели никогда не видят
наполовину обновлённый bucket. Замок НЕ удерживается во время
PING самого старого узла.

Bucket хранит ссылки на объекты Peer (владелец - PeerManager).
От Peer требуется только атрибут `address`.
"""

import os
import time
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, Iterator, List,
    Optional, Sequence, Tuple, TYPE_CHECKING,
)

if TYPE_CHECKING:
    from ..node import Peer

logger = logging.getLogger(__name__)


# Константы Kademlia
K = 20  # Размер k-bucket
ALPHA = 3  # Параллельность запросов
TAU = 256  # Биты метрики расстояния
BUCKET_REFRESH_INTERVAL = 3600  # Секунды между обновлениями bucket


def xor_distance(a: bytes, b: bytes, tau: int = TAU) -> int:
    """
    XOR-расстояние между двумя адресами по модулю 2^τ.

    Args:
        a: Первый адрес
        b: Второй адрес
        tau: Сколько младших бит учитывать

    Returns:
        Расстояние как целое число
    """
    if len(a) != len(b):
        raise ValueError(f"Address length mismatch: {len(a)} vs {len(b)}")

    value = int.from_bytes(a, 'big') ^ int.from_bytes(b, 'big')
    return value & ((1 << tau) - 1)


def distance_to_bucket_index(distance: int, tau: int = TAU) -> int:
    """
    Индекс bucket по расстоянию = длина общего старшего префикса.

    - Расстояние 0 (это мы сами) -> τ, обрезается до τ-1
    - Старший бит расстояния установлен -> bucket 0
    - Расстояние 1 -> bucket τ-1
    """
    prefix = tau - distance.bit_length()
    return min(max(prefix, 0), tau - 1)


def bucket_index(local: bytes, remote: bytes, tau: int = TAU) -> int:
    """Индекс bucket для remote относительно local."""
    return distance_to_bucket_index(xor_distance(local, remote, tau), tau)


def random_address_in_bucket(local: bytes, index: int, tau: int = TAU) -> bytes:
    """
    Сгенерировать случайный адрес, который попадёт в bucket index.

    [KADEMLIA] Используется для обновления bucket:
    ищем узлы, близкие к случайной точке этого bucket.
    """
    width = len(local)
    local_int = int.from_bytes(local, 'big')
    mask = (1 << tau) - 1

    # Ровно index совпадающих старших бит, затем отличающийся бит
    top_bit = tau - index - 1
    noise = int.from_bytes(os.urandom(width), 'big') & ((1 << top_bit) - 1)
    distance = (1 << top_bit) | noise

    target = (local_int & ~mask) | ((local_int ^ distance) & mask)
    return target.to_bytes(width, 'big')


# ============================================================================
# Node contact info
# ============================================================================

@dataclass
class NodeInfo:
    """
    Контакт узла, к которому мы можем подключиться.

    Передаётся в ответах FIND_NODE как [address, host, port].
    """

    address: bytes
    host: str
    port: int
    last_seen: float = field(default_factory=time.time)

    @property
    def endpoint(self) -> Tuple[str, int]:
        return (self.host, self.port)

    def touch(self) -> None:
        self.last_seen = time.time()

    def to_payload(self) -> List[Any]:
        return [self.address, self.host, self.port]

    @classmethod
    def from_payload(cls, item: Any) -> "NodeInfo":
        """
        Разобрать [address, host, port].

        Raises:
            ValueError: Неверная форма записи
        """
        if not isinstance(item, list) or len(item) != 3:
            raise ValueError(f"Contact must be [address, host, port], got {item!r}")
        address, host, port = item
        if not isinstance(address, bytes) or not isinstance(host, str) or not isinstance(port, int):
            raise ValueError(f"Contact has wrong field types: {item!r}")
        if not 0 < port < 65536:
            raise ValueError(f"Contact port out of range: {port}")
        return cls(address=address, host=host, port=port)

    def __hash__(self) -> int:
        return hash(self.address)

    def __eq__(self, other) -> bool:
        if isinstance(other, NodeInfo):
            return self.address == other.address
        return False


class NodeInfoCache:
    """
    Ограниченный LRU-кэш контактов, к которым мы не подключены.

    Заполняется, когда достигнут лимит исходящих соединений ℓ,
    и из ANNOUNCE / ответов FIND_NODE. Используется для
    дозаполнения buckets при отключении пиров.
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._contacts: OrderedDict[bytes, NodeInfo] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._contacts)

    def __contains__(self, address: bytes) -> bool:
        return address in self._contacts

    def put(self, info: NodeInfo) -> None:
        with self._lock:
            if info.address in self._contacts:
                self._contacts.move_to_end(info.address)
            self._contacts[info.address] = info
            info.touch()
            while len(self._contacts) > self.max_size:
                self._contacts.popitem(last=False)

    def get(self, address: bytes) -> Optional[NodeInfo]:
        with self._lock:
            return self._contacts.get(address)

    def remove(self, address: bytes) -> Optional[NodeInfo]:
        with self._lock:
            return self._contacts.pop(address, None)

    def contacts(self) -> List[NodeInfo]:
        with self._lock:
            return list(self._contacts.values())

    def closest(self, target: bytes, count: int, tau: int = TAU,
                exclude: Iterable[bytes] = ()) -> List[NodeInfo]:
        """Ближайшие к target контакты по XOR-расстоянию."""
        excluded = set(exclude)
        candidates = [c for c in self.contacts() if c.address not in excluded]
        candidates.sort(key=lambda c: xor_distance(target, c.address, tau))
        return candidates[:count]


# ============================================================================
# K-Bucket
# ============================================================================

class KBucket:
    """
    K-bucket для пиров с общей длиной префикса.

    [KADEMLIA] Каждый bucket:
    - Хранит до k пиров
    - Упорядочен по последнему контакту (LRU, свежие в конце)
    - При переполнении: проверяем head, если жив - отбрасываем новый
    """

    def __init__(self, k: int = K):
        self.k = k
        # OrderedDict для LRU: ключ = address, значение = Peer
        self._peers: "OrderedDict[bytes, Peer]" = OrderedDict()
        self._lock = threading.Lock()
        self.last_updated = time.time()

    def __len__(self) -> int:
        return len(self._peers)

    def __iter__(self) -> Iterator["Peer"]:
        with self._lock:
            return iter(list(self._peers.values()))

    def __contains__(self, address: bytes) -> bool:
        return address in self._peers

    @property
    def is_full(self) -> bool:
        return len(self._peers) >= self.k

    @property
    def peers(self) -> List["Peer"]:
        with self._lock:
            return list(self._peers.values())

    @property
    def addresses(self) -> Tuple[bytes, ...]:
        """Снимок состава bucket (для replace)."""
        with self._lock:
            return tuple(self._peers)

    @property
    def head(self) -> Optional["Peer"]:
        """Самый давно виденный пир."""
        with self._lock:
            if self._peers:
                return next(iter(self._peers.values()))
            return None

    def get(self, address: bytes) -> Optional["Peer"]:
        return self._peers.get(address)

    def add(self, peer: "Peer") -> Tuple[bool, Optional["Peer"]]:
        """
        Добавить пира в bucket.

        [KADEMLIA] Логика добавления:
        1. Пир уже есть -> обновляем ссылку и перемещаем в конец
        2. Bucket не полон -> добавляем в конец
        3. Bucket полон -> возвращаем head для проверки

        Returns:
            (added, eviction_candidate)
        """
        with self._lock:
            if peer.address in self._peers:
                self._peers[peer.address] = peer
                self._peers.move_to_end(peer.address)
                self.last_updated = time.time()
                return True, None

            if not self.is_full:
                self._peers[peer.address] = peer
                self.last_updated = time.time()
                return True, None

            return False, next(iter(self._peers.values()))

    def remove(self, address: bytes, peer: Optional["Peer"] = None) -> bool:
        """
        Удалить пира.

        Если передан peer, удаляем только если в bucket лежит именно он
        (переподключившийся пир не вытесняется старым соединением).
        """
        with self._lock:
            current = self._peers.get(address)
            if current is None or (peer is not None and current is not peer):
                return False
            del self._peers[address]
            return True

    def touch(self, address: bytes) -> bool:
        with self._lock:
            if address in self._peers:
                self._peers.move_to_end(address)
                self.last_updated = time.time()
                return True
            return False

    def replace_stale(self, new_peer: "Peer", stale_address: bytes) -> bool:
        """
        Заменить не ответивший head на нового пира.

        Returns:
            False если stale уже удалён или new_peer уже есть
        """
        with self._lock:
            if stale_address not in self._peers or new_peer.address in self._peers:
                return False
            del self._peers[stale_address]
            self._peers[new_peer.address] = new_peer
            self.last_updated = time.time()
            return True

    def replace(self, expected: Sequence[bytes], peers: Sequence["Peer"]) -> bool:
        """
        Атомарная замена всего bucket (compare-and-swap).

        Args:
            expected: Состав bucket, на котором основана замена
            peers: Новый состав, от старых к свежим

        Returns:
            False если bucket изменился после снятия снимка
        """
        if len(peers) > self.k:
            raise ValueError(f"Bucket replacement has {len(peers)} peers, k={self.k}")

        with self._lock:
            if tuple(self._peers) != tuple(expected):
                return False
            self._peers = OrderedDict((p.address, p) for p in peers)
            self.last_updated = time.time()
            return True

    def apply_diff(self, insert: Sequence["Peer"] = (), evict: Sequence[bytes] = ()) -> None:
        """
        Инкрементальное изменение: сначала evict, затем insert.

        Raises:
            ValueError: Результат превысил бы k (bucket не меняется)
        """
        with self._lock:
            evicted = set(evict)
            remaining = [a for a in self._peers if a not in evicted]
            new_addresses = {p.address for p in insert} - set(remaining)
            if len(remaining) + len(new_addresses) > self.k:
                raise ValueError(
                    f"Diff would grow bucket to {len(remaining) + len(new_addresses)}, k={self.k}"
                )

            for address in evict:
                self._peers.pop(address, None)
            for peer in insert:
                self._peers[peer.address] = peer
                self._peers.move_to_end(peer.address)
            self.last_updated = time.time()

    def needs_refresh(self, interval: float = BUCKET_REFRESH_INTERVAL) -> bool:
        return time.time() - self.last_updated > interval


# ============================================================================
# Routing Table
# ============================================================================

PingFunc = Callable[["Peer"], Awaitable[bool]]


class RoutingTable:
    """
    Kademlia Routing Table - таблица маршрутизации.

    [KADEMLIA] Структура:
    - τ k-buckets, bucket i - пиры с общим префиксом длины i
    - Пир находится не более чем в одном bucket
    - Размер bucket никогда не превышает k

    [USAGE]
        table = RoutingTable(identity.address, k=20, tau=256)
        await table.insert_or_refresh(peer, ping=node.ping_peer)
        nearest = table.closest(target, count=20)
    """

    def __init__(self, local_address: bytes, k: int = K, tau: int = TAU):
        if tau > len(local_address) * 8:
            raise ValueError(f"tau={tau} exceeds address width {len(local_address) * 8}")

        self.local_address = local_address
        self.k = k
        self.tau = tau
        self.buckets: List[KBucket] = [KBucket(k) for _ in range(tau)]

        logger.info(f"[DHT] RoutingTable initialized: local={local_address.hex()[:16]}... k={k} tau={tau}")

    def __len__(self) -> int:
        return sum(len(b) for b in self.buckets)

    def __contains__(self, address: bytes) -> bool:
        return address != self.local_address and address in self.bucket_for(address)

    def distance(self, a: bytes, b: bytes) -> int:
        return xor_distance(a, b, self.tau)

    def bucket_index(self, address: bytes) -> int:
        return bucket_index(self.local_address, address, self.tau)

    def bucket_for(self, address: bytes) -> KBucket:
        return self.buckets[self.bucket_index(address)]

    def add_peer(self, peer: "Peer") -> Tuple[bool, Optional["Peer"]]:
        """
        Синхронная попытка добавления.

        Returns:
            (added, eviction_candidate) - как KBucket.add
        """
        if peer.address == self.local_address:
            return False, None
        return self.bucket_for(peer.address).add(peer)

    async def insert_or_refresh(self, peer: "Peer", ping: PingFunc) -> bool:
        """
        Вставить или освежить пира.

        [KADEMLIA] Если bucket полон, пингуем самого старого:
        - ответил -> он становится свежим, новый пир отбрасывается
        - не ответил -> заменяем его новым пиром

        Замок bucket не удерживается во время ping.

        Returns:
            True если пир теперь в таблице
        """
        added, candidate = self.add_peer(peer)
        if added or candidate is None:
            return added

        bucket = self.bucket_for(peer.address)
        alive = await ping(candidate)

        if alive:
            bucket.touch(candidate.address)
            logger.debug(
                f"[DHT] Bucket full, kept {candidate.address.hex()[:16]}..., "
                f"dropped {peer.address.hex()[:16]}..."
            )
            return False

        if bucket.replace_stale(peer, candidate.address):
            logger.debug(f"[DHT] Evicted unresponsive {candidate.address.hex()[:16]}...")
            return True

        # Bucket изменился, пока шёл ping
        added, _ = bucket.add(peer)
        return added

    def remove(self, address: bytes, peer: Optional["Peer"] = None) -> bool:
        if address == self.local_address:
            return False
        return self.bucket_for(address).remove(address, peer)

    def get(self, address: bytes) -> Optional["Peer"]:
        if address == self.local_address:
            return None
        return self.bucket_for(address).get(address)

    def touch(self, address: bytes) -> bool:
        if address == self.local_address:
            return False
        return self.bucket_for(address).touch(address)

    def replace_bucket(self, index: int, expected: Sequence[bytes], peers: Sequence["Peer"]) -> bool:
        """
        Атомарно заменить bucket index (compare-and-swap).

        Raises:
            ValueError: Пир не принадлежит этому bucket или их больше k
        """
        self._check_members(index, peers)
        return self.buckets[index].replace(expected, peers)

    def apply_diff(self, index: int, insert: Sequence["Peer"] = (), evict: Sequence[bytes] = ()) -> None:
        """
        Инкрементально изменить bucket index.

        Raises:
            ValueError: Пир не принадлежит bucket или bucket переполнится
        """
        self._check_members(index, insert)
        self.buckets[index].apply_diff(insert, evict)

    def _check_members(self, index: int, peers: Sequence["Peer"]) -> None:
        seen = set()
        for peer in peers:
            if peer.address == self.local_address:
                raise ValueError("Local address cannot be stored in the routing table")
            if self.bucket_index(peer.address) != index:
                raise ValueError(
                    f"Peer {peer.address.hex()[:16]}... belongs to bucket "
                    f"{self.bucket_index(peer.address)}, not {index}"
                )
            if peer.address in seen:
                raise ValueError(f"Duplicate peer {peer.address.hex()[:16]}...")
            seen.add(peer.address)

    def closest(self, address: bytes, count: int = K, exclude: Iterable[bytes] = ()) -> List["Peer"]:
        """
        До count известных пиров по возрастанию расстояния до address.

        Пиры собираются из всех buckets, а не только из одного.
        """
        excluded = set(exclude)
        candidates = [
            peer for bucket in self.buckets for peer in bucket
            if peer.address not in excluded
        ]
        candidates.sort(key=lambda p: self.distance(address, p.address))
        return candidates[:count]

    def peers(self) -> List["Peer"]:
        result = []
        for bucket in self.buckets:
            result.extend(bucket.peers)
        return result

    def get_refresh_ids(self, interval: float = BUCKET_REFRESH_INTERVAL) -> List[bytes]:
        """
        Адреса для обновления давно не менявшихся непустых buckets.
        """
        return [
            random_address_in_bucket(self.local_address, i, self.tau)
            for i, bucket in enumerate(self.buckets)
            if len(bucket) > 0 and bucket.needs_refresh(interval)
        ]

    def get_stats(self) -> Dict:
        """Статистика таблицы маршрутизации."""
        sizes = {i: len(b) for i, b in enumerate(self.buckets) if len(b) > 0}
        return {
            "local_address": self.local_address.hex(),
            "total_peers": sum(sizes.values()),
            "non_empty_buckets": len(sizes),
            "total_buckets": self.tau,
            "k": self.k,
            "bucket_sizes": sizes,
        }
