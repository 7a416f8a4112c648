"""
Value Store - локальное хранилище ключ/значение
===============================================

[KADEMLIA] Хранилище для STORE / FIND_VALUE:
- SQLite (aiosqlite) для персистентности, ":memory:" по умолчанию
- Безусловный upsert: новая запись перезаписывает старую
- Записи никогда не истекают сами по себе

[STORAGE] Ключ и значение - произвольные payload-значения
(строки, байты, числа, списки...). В базе они хранятся
в виде MessagePack, поэтому "k1" и b"k1" - разные ключи.

[SECURITY] Протокол не требует проверки владельца, но подписанный
`from` адрес STORE доступен: при enforce_owner=True ключ может
перезаписать только его первый владелец.
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from ..exceptions import OwnershipError, PayloadDecodeError
from ..serialization import decode_payload, encode_payload

logger = logging.getLogger(__name__)


@dataclass
class EntryMetadata:
    """Метаданные записи: кто и когда записал."""

    owner: bytes
    timestamp: float = field(default_factory=time.time)

    def to_payload(self) -> Dict[str, Any]:
        return {"owner": self.owner, "timestamp": self.timestamp}

    @classmethod
    def from_payload(cls, data: Any) -> "EntryMetadata":
        if not isinstance(data, dict) or not isinstance(data.get("owner"), bytes):
            raise PayloadDecodeError(f"Invalid entry metadata: {data!r}")
        timestamp = data.get("timestamp", 0.0)
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            raise PayloadDecodeError(f"Invalid entry timestamp: {timestamp!r}")
        return cls(owner=data["owner"], timestamp=float(timestamp))


class ValueStore:
    """
    Хранилище значений с метаданными.

    [CONCURRENCY] Все операции сериализованы одним asyncio.Lock,
    поэтому конкурентные STORE одного ключа не теряют обновлений.

    [PERSISTENCE] SQLite таблица value_store:
    - key: BLOB PRIMARY KEY (MessagePack ключа)
    - value: BLOB (MessagePack значения)
    - owner: BLOB
    - timestamp: REAL

    [USAGE]
        store = ValueStore()
        await store.initialize()
        await store.store("k1", "v1", EntryMetadata(owner=address))
        value, metadata = await store.lookup("k1")
    """

    def __init__(self, db_path: str = ":memory:", enforce_owner: bool = False):
        self.db_path = db_path
        self.enforce_owner = enforce_owner
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Открыть базу и создать таблицу."""
        if self._initialized:
            return

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS value_store (
                key BLOB PRIMARY KEY,
                value BLOB NOT NULL,
                owner BLOB NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        await self._db.commit()
        self._initialized = True

        logger.info(f"[STORAGE] Initialized: {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("ValueStore is not initialized")
        return self._db

    async def store(self, key: Any, value: Any, metadata: EntryMetadata) -> None:
        """
        Сохранить значение (upsert).

        Raises:
            OwnershipError: enforce_owner включён и ключ чужой
            PayloadEncodeError: Ключ или значение не сериализуются
        """
        db = self._require_db()
        key_blob = encode_payload(key)
        value_blob = encode_payload(value)

        async with self._lock:
            if self.enforce_owner:
                cursor = await db.execute(
                    "SELECT owner FROM value_store WHERE key = ?", (key_blob,)
                )
                row = await cursor.fetchone()
                if row is not None and row["owner"] != metadata.owner:
                    raise OwnershipError(f"Key {key!r} belongs to another owner")

            await db.execute(
                """
                INSERT OR REPLACE INTO value_store (key, value, owner, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                (key_blob, value_blob, metadata.owner, metadata.timestamp),
            )
            await db.commit()

        logger.debug(f"[STORAGE] Stored {key!r} ({len(value_blob)} bytes)")

    async def lookup(self, key: Any) -> Optional[Tuple[Any, EntryMetadata]]:
        """
        Найти запись.

        Returns:
            (value, metadata) или None
        """
        db = self._require_db()
        key_blob = encode_payload(key)

        async with self._lock:
            cursor = await db.execute(
                "SELECT value, owner, timestamp FROM value_store WHERE key = ?",
                (key_blob,),
            )
            row = await cursor.fetchone()

        if row is None:
            return None

        metadata = EntryMetadata(owner=row["owner"], timestamp=row["timestamp"])
        return decode_payload(row["value"]), metadata

    async def delete(self, key: Any) -> bool:
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute(
                "DELETE FROM value_store WHERE key = ?", (encode_payload(key),)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def has_key(self, key: Any) -> bool:
        return await self.lookup(key) is not None

    async def keys(self) -> List[Any]:
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute("SELECT key FROM value_store")
            rows = await cursor.fetchall()
        return [decode_payload(row["key"]) for row in rows]

    async def get_stats(self) -> Dict:
        """Статистика хранилища."""
        db = self._require_db()
        async with self._lock:
            cursor = await db.execute(
                "SELECT COUNT(*) AS count, SUM(LENGTH(value)) AS size FROM value_store"
            )
            row = await cursor.fetchone()

        return {
            "total_entries": row["count"],
            "total_size_bytes": row["size"] or 0,
            "enforce_owner": self.enforce_owner,
            "db_path": self.db_path,
        }
