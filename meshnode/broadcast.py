"""
Broadcast Engine - рассылка SHOUT / ANNOUNCE / CHANGE_KEY
=========================================================

[BROADCAST] Flooding с дедупликацией:
1. Сообщение пришло -> проверяем подпись в seen-множестве
2. Новое -> доставляем локально и пересылаем всем пирам,
   кроме того, от кого оно пришло
3. Уже виденное -> отбрасываем

Пересылаются исходные байты сообщения, поэтому подпись
источника остаётся действительной на каждом хопе.

[SPEAK] Та же дедупликация, но пересылка - локальная политика
(по умолчанию выключена). ACK отправляется, если включён
ack_speak или транспорт пира ненадёжен.

[SCALING] При лимите исходящих соединений ℓ каждый узел в среднем
держит 2ℓ соединений. Один broadcast порождает (2ℓ-1)·n + 1
пересылок при n >= 2ℓ+1 и (n-1)^2 в насыщенной сети n < 2ℓ+1.
Худшая задержка распространения: ceil(max((n-2)/ℓ, 1)) хопов.
"""

import math
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, TYPE_CHECKING

from .wire import OpCode, RawMessage

if TYPE_CHECKING:
    from .node import Peer

logger = logging.getLogger(__name__)


DEFAULT_SEEN_SIZE = 100_000


def expected_relay_count(n: int, ell: int) -> int:
    """
    Сколько раз broadcast будет отправлен по сети из n узлов.

    Учитывается исходная отправка и все пересылки.
    """
    if n < 2:
        return 0
    if n >= 2 * ell + 1:
        return (2 * ell - 1) * n + 1
    return (n - 1) ** 2


def max_propagation_lag(n: int, ell: int) -> int:
    """Худшее число хопов до последнего узла сети из n узлов."""
    return math.ceil(max((n - 2) / ell, 1))


class SeenBroadcastSet:
    """
    Ограниченное множество подписей увиденных broadcast-сообщений.

    [CONCURRENCY] check_and_add атомарна: для одной подписи
    True возвращается ровно один раз (пока запись не вытеснена).
    Вытесняется запись, полученная раньше всех остальных.
    """

    def __init__(self, max_size: int = DEFAULT_SEEN_SIZE):
        if max_size < 1:
            raise ValueError("Seen set size must be positive")
        self.max_size = max_size
        self._seen: "OrderedDict[bytes, None]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, signature: bytes) -> bool:
        return signature in self._seen

    def check_and_add(self, signature: bytes) -> bool:
        """
        Returns:
            True если подпись новая (и теперь запомнена)
        """
        with self._lock:
            if signature in self._seen:
                self._seen.move_to_end(signature)
                return False

            self._seen[signature] = None
            if len(self._seen) > self.max_size:
                self._seen.popitem(last=False)
            return True

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()


@dataclass
class BroadcastDecision:
    """Что делать с входящим broadcast-сообщением."""

    deliver: bool
    relay_to: List["Peer"] = field(default_factory=list)
    ack: bool = False


class BroadcastEngine:
    """
    Дедупликация и выбор получателей пересылки.

    Сам ничего не отправляет: Node пересылает raw.data
    каждому пиру из BroadcastDecision.relay_to.

    [USAGE]
        decision = engine.handle(message.raw, source=peer, peers=established)
        if decision.deliver:
            await events.broadcast("shout", ...)
        for target in decision.relay_to:
            await target.send_raw(message.raw.data)
    """

    def __init__(
        self,
        seen_size: int = DEFAULT_SEEN_SIZE,
        relay_speak: bool = False,
        ack_speak: bool = False,
    ):
        self.seen = SeenBroadcastSet(seen_size)
        self.relay_speak = relay_speak
        self.ack_speak = ack_speak

        self.stats: Dict[str, int] = {
            "received": 0,
            "duplicates": 0,
            "relayed": 0,
            "originated": 0,
        }

    def should_relay(self, raw: RawMessage) -> bool:
        """True ровно один раз для каждой подписи."""
        return self.seen.check_and_add(raw.signature)

    def mark_originated(self, signature: bytes) -> None:
        """Запомнить собственное сообщение, чтобы не переслать его эхо."""
        self.seen.check_and_add(signature)
        self.stats["originated"] += 1

    @staticmethod
    def relay_targets(peers: Iterable["Peer"], source: Optional["Peer"]) -> List["Peer"]:
        return [p for p in peers if p is not source]

    def handle(
        self,
        raw: RawMessage,
        source: Optional["Peer"],
        peers: Iterable["Peer"],
    ) -> BroadcastDecision:
        """
        Решить судьбу SHOUT / ANNOUNCE / CHANGE_KEY / SPEAK.
        """
        self.stats["received"] += 1
        is_speak = raw.opcode == OpCode.SPEAK
        ack = is_speak and (self.ack_speak or (source is not None and not source.reliable))

        if not self.should_relay(raw):
            self.stats["duplicates"] += 1
            logger.debug(f"[BROADCAST] Duplicate {OpCode(raw.opcode).name} {raw.signature.hex()[:16]}...")
            return BroadcastDecision(deliver=False, ack=ack)

        if is_speak and not self.relay_speak:
            return BroadcastDecision(deliver=True, ack=ack)

        targets = self.relay_targets(peers, source)
        self.stats["relayed"] += len(targets)
        return BroadcastDecision(deliver=True, relay_to=targets, ack=ack)

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "seen_size": len(self.seen),
            "seen_capacity": self.seen.max_size,
            "relay_speak": self.relay_speak,
        }
