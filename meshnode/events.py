"""
Event Bus - уведомления внутри процесса
=======================================

События узла:
- whisper, speak, shout, custom: входящие пользовательские данные
- announce: узел объявил свой host/port
- change_key: пир (или сам узел) сменил ключ
- peer_connected, peer_disconnected: жизненный цикл соединений

Каждый Node владеет своим EventBus. Подписка на неизвестное
событие - ошибка вызывающего кода, а не тихий no-op.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Union

logger = logging.getLogger(__name__)


Callback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

NODE_EVENTS: FrozenSet[str] = frozenset({
    "whisper",
    "speak",
    "shout",
    "custom",
    "announce",
    "change_key",
    "peer_connected",
    "peer_disconnected",
})


class EventBus:
    """Async event bus with a fixed set of event names."""

    def __init__(self, event_names: FrozenSet[str] = NODE_EVENTS):
        self.event_names = event_names
        self._subscribers: Dict[str, List[Callback]] = {name: [] for name in event_names}
        self._lock = asyncio.Lock()
        self.emitted: Dict[str, int] = {name: 0 for name in event_names}

    def _check_name(self, event_name: str) -> None:
        if event_name not in self.event_names:
            raise ValueError(f"Unknown event: {event_name}")

    async def subscribe(self, event_name: str, callback: Callback) -> None:
        self._check_name(event_name)
        async with self._lock:
            self._subscribers[event_name].append(callback)

    async def unsubscribe(self, event_name: str, callback: Callback) -> None:
        self._check_name(event_name)
        async with self._lock:
            self._subscribers[event_name] = [cb for cb in self._subscribers[event_name] if cb != callback]

    def subscriber_count(self, event_name: str) -> int:
        self._check_name(event_name)
        return len(self._subscribers[event_name])

    async def broadcast(self, event_name: str, payload: Dict[str, Any]) -> None:
        self._check_name(event_name)
        async with self._lock:
            callbacks = list(self._subscribers[event_name])
        self.emitted[event_name] += 1

        for cb in callbacks:
            try:
                result = cb(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                # Ошибка одного подписчика не мешает остальным
                logger.error(f"[EVENTS] Subscriber of '{event_name}' failed: {e}", exc_info=True)
