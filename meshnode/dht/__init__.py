"""
Kademlia DHT Module
===================

Распределённая хеш-таблица на основе Kademlia:
- RoutingTable: τ k-buckets подключённых пиров
- NodeInfoCache: контакты узлов, к которым мы не подключены
- ValueStore: локальное хранилище пар key-value
- DHTProtocol: FIND_NODE, FIND_VALUE, STORE и итеративный поиск

[KADEMLIA] Ключевые принципы:
- XOR-метрика, усечённая до τ бит
- Итеративный lookup с alpha параллельными запросами
- Замена в bucket по правилу "сначала пингуем самого старого"
"""

from .routing import (
    RoutingTable,
    KBucket,
    NodeInfo,
    NodeInfoCache,
    xor_distance,
    bucket_index,
    distance_to_bucket_index,
    random_address_in_bucket,
)

from .storage import ValueStore, EntryMetadata

from .protocol import (
    DHTProtocol,
    FindValueResult,
    key_to_address,
    parse_contacts,
)

__all__ = [
    # Routing
    "RoutingTable",
    "KBucket",
    "NodeInfo",
    "NodeInfoCache",
    "xor_distance",
    "bucket_index",
    "distance_to_bucket_index",
    "random_address_in_bucket",
    # Storage
    "ValueStore",
    "EntryMetadata",
    # Protocol
    "DHTProtocol",
    "FindValueResult",
    "key_to_address",
    "parse_contacts",
]
