"""
P2P Mesh Node Configuration
===========================
Централизованная конфигурация для всех модулей узла.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import os

# ============================================================================
# Subnet Presets
# ============================================================================

NETWORKS: Dict[str, Dict[str, object]] = {
    "mainnet": {
        "name": "Mesh Mainnet",
        "description": "meshnode/mainnet",
        "transport_id": 0,
    },
    "testnet": {
        "name": "Mesh Testnet",
        "description": "meshnode/testnet",
        "transport_id": 0,
    },
}

# Selected network from environment (.env: MESHNODE_NETWORK)
MESHNODE_NETWORK: str = os.getenv("MESHNODE_NETWORK", "testnet").lower()
if MESHNODE_NETWORK not in NETWORKS:
    MESHNODE_NETWORK = "testnet"

_SELECTED = NETWORKS[MESHNODE_NETWORK]

NETWORK_DESCRIPTION: str = _SELECTED["description"]  # type: ignore
TRANSPORT_ID: int = int(_SELECTED["transport_id"])  # type: ignore

PORT_ENV = os.getenv("MESHNODE_PORT", "").strip()
try:
    DEFAULT_PORT: int = int(PORT_ENV) if PORT_ENV else 8468
except ValueError:
    DEFAULT_PORT = 8468


@dataclass
class NetworkConfig:
    """Настройки сетевого слоя."""

    host: str = os.getenv("MESHNODE_HOST", "0.0.0.0")

    # Порт по умолчанию для TCP сервера
    default_port: int = DEFAULT_PORT

    # Bootstrap узлы для первоначального подключения к сети
    # [DECENTRALIZATION] После подключения узел узнаёт других пиров
    # через FIND_NODE и ANNOUNCE и больше не зависит от bootstrap.
    bootstrap_nodes: List[Tuple[str, int]] = field(default_factory=list)

    # Таймаут подключения (секунды)
    connection_timeout: float = 10.0

    # Таймаут согласования опций подсети (секунды)
    handshake_timeout: float = 5.0

    # Таймаут RPC запросов (секунды)
    rpc_timeout: float = 5.0

    # Таймаут одного раунда итеративного поиска (секунды)
    lookup_round_timeout: float = 3.0

    # Максимум раундов итеративного поиска
    lookup_max_rounds: int = 20

    # Интервал heartbeat для проверки живости пиров (секунды)
    heartbeat_interval: float = 30.0

    # Интервал обновления k-buckets (секунды)
    refresh_interval: float = 3600.0

    # Максимальный размер одной передачи (байты)
    max_transmission_size: int = 16 * 1024 * 1024

    # Размер кэша известных, но не подключённых контактов
    contact_cache_size: int = 1000


@dataclass
class SubnetConfig:
    """
    Параметры подсети.

    Все узлы подсети обязаны совпадать по каждому полю,
    иначе соединение разрывается после SET_CONNECTION_OPT.
    """

    k: int = 20                 # размер k-bucket
    alpha: int = 3              # параллелизм поиска
    tau: int = 256              # биты метрики расстояния
    beta: int = 256             # биты адреса
    ell: int = 8                # лимит исходящих соединений
    transport_id: int = TRANSPORT_ID
    network_description: str = NETWORK_DESCRIPTION


@dataclass
class CompressionConfig:
    """Настройки сжатия передач."""

    # Кодек, который мы просим у пира (см. meshnode.compression.Compression)
    preferred: int = int(os.getenv("MESHNODE_COMPRESSION", "4"))

    # Передачи меньше порога отправляются без сжатия
    min_size: int = 0


@dataclass
class BroadcastConfig:
    """Настройки широковещательных сообщений."""

    # Размер LRU множества увиденных сообщений
    seen_set_size: int = 100_000

    # Пересылать ли SPEAK дальше
    relay_speak: bool = False

    # Подтверждать SPEAK всегда, а не только ненадёжным пирам
    ack_speak: bool = False


@dataclass
class StorageConfig:
    """Настройки хранилища значений."""

    # Путь к базе SQLite (":memory:" - в памяти)
    database_path: str = os.getenv("MESHNODE_DB", ":memory:")

    # Перезапись ключа разрешена только прежнему владельцу
    enforce_owner: bool = False


@dataclass
class CryptoConfig:
    """Настройки криптографии."""

    # Путь к файлу с seed ключевой пары
    identity_file: str = os.getenv("MESHNODE_IDENTITY", "identity.key")

    # Подпись: Ed25519 (PyNaCl)
    # Шифрование: Curve25519-XSalsa20-Poly1305 (NaCl Box)


@dataclass
class Config:
    """Главный конфигурационный класс."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    subnet: SubnetConfig = field(default_factory=SubnetConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)


# Глобальный экземпляр конфигурации
config = Config()


def get_current_network() -> Dict[str, object]:
    """Вернуть активный пресет подсети."""
    return {
        "key": MESHNODE_NETWORK,
        "name": _SELECTED["name"],
        "description": NETWORK_DESCRIPTION,
        "transport_id": TRANSPORT_ID,
    }
