"""
meshnode - ядро P2P узла
========================

- wire: кодек передач и сообщений
- identity: ключи Ed25519, подпись, шифрование
- dht: таблица маршрутизации Kademlia, хранилище, поиск
- broadcast: рассылка с дедупликацией
- protocol: обработчики opcode
- node: соединения, согласование опций, RPC
"""

from .compression import Compression, CompressionRegistry, default_registry
from .exceptions import (
    MeshError,
    TruncatedTransmission,
    TruncatedMessage,
    UnsupportedCompression,
    CompressionError,
    SignatureVerificationFailed,
    DecryptionError,
    PayloadDecodeError,
    PayloadEncodeError,
    PayloadTooLargeError,
    InvalidAddressError,
    SubnetMismatch,
    UnknownOpcode,
    LookupTimeout,
    OwnershipError,
    RequestRejected,
)
from .identity import Identity, load_or_create_identity, authenticate, verify
from .wire import (
    OpCode,
    Message,
    RawMessage,
    encode_message,
    encode_transmission,
    decode_transmission,
)
from .options import ConnectionOption, ConnectionOptions, Subnet
from .dht import NodeInfo, RoutingTable, ValueStore, EntryMetadata
from .broadcast import BroadcastEngine
from .events import EventBus
from .protocol import ProtocolRouter, MessageHandler
from .node import Node, Peer, PeerState, PeerManager

__all__ = [
    "Compression",
    "CompressionRegistry",
    "default_registry",
    "MeshError",
    "TruncatedTransmission",
    "TruncatedMessage",
    "UnsupportedCompression",
    "CompressionError",
    "SignatureVerificationFailed",
    "DecryptionError",
    "PayloadDecodeError",
    "PayloadEncodeError",
    "InvalidAddressError",
    "PayloadTooLargeError",
    "SubnetMismatch",
    "UnknownOpcode",
    "LookupTimeout",
    "OwnershipError",
    "RequestRejected",
    "Identity",
    "load_or_create_identity",
    "authenticate",
    "verify",
    "OpCode",
    "Message",
    "RawMessage",
    "encode_message",
    "encode_transmission",
    "decode_transmission",
    "ConnectionOption",
    "ConnectionOptions",
    "Subnet",
    "NodeInfo",
    "RoutingTable",
    "ValueStore",
    "EntryMetadata",
    "BroadcastEngine",
    "EventBus",
    "ProtocolRouter",
    "MessageHandler",
    "Node",
    "Peer",
    "PeerState",
    "PeerManager",
]
