"""
meshnode Test Configuration
===========================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, no sockets, fast
- Integration tests: Real nodes on localhost
- Simulation: Broadcast flooding over generated topologies

[FIXTURES]
- identity / identity_pair: Fresh Ed25519 identities
- value_store: In-memory ValueStore
- memory_pipe: Connected pair of in-memory asyncio streams
- fast_config: Config with short timeouts
- node_factory: Spawn N started nodes on 127.0.0.1
- wait_until: Poll a condition with a deadline

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Integration tests
    pytest -m "not slow"        # Skip simulations
"""

import sys
import asyncio
import tempfile
import shutil
import logging
from pathlib import Path
from typing import AsyncGenerator, Callable, Generator, List, Optional, Tuple

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import (  # noqa: E402
    BroadcastConfig,
    CompressionConfig,
    Config,
    NetworkConfig,
    StorageConfig,
    SubnetConfig,
)


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        path = str(item.fspath)
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)
        if path.endswith("_simulation.py"):
            item.add_marker(pytest.mark.slow)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="meshnode_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


# ============================================================================
# Identity Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def identity():
    """Fresh identity for each test."""
    from meshnode.identity import Identity
    return Identity()


@pytest.fixture(scope="function")
def identity_pair():
    """Sender/receiver identities."""
    from meshnode.identity import Identity
    return Identity(), Identity()


# ============================================================================
# Storage Fixtures
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def value_store():
    """Isolated in-memory ValueStore."""
    from meshnode.dht.storage import ValueStore

    store = ValueStore(":memory:")
    await store.initialize()
    yield store
    await store.close()


# ============================================================================
# In-memory Streams
# ============================================================================

class MemoryWriter:
    """
    StreamWriter stand-in that feeds bytes into the remote StreamReader.

    close() delivers EOF to the remote side, like a TCP FIN.
    """

    def __init__(self, remote: asyncio.StreamReader, peername: Tuple[str, int]):
        self._remote = remote
        self._peername = peername
        self._closing = False
        self.written: List[bytes] = []

    def write(self, data: bytes) -> None:
        if self._closing:
            return
        self.written.append(data)
        self._remote.feed_data(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        if not self._closing:
            self._closing = True
            self._remote.feed_eof()

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name: str, default=None):
        if name == "peername":
            return self._peername
        return default


def make_memory_pipe():
    """
    Two connected stream ends.

    Returns:
        ((reader_a, writer_a), (reader_b, writer_b)), где writer_a
        пишет в reader_b и наоборот
    """
    reader_a = asyncio.StreamReader()
    reader_b = asyncio.StreamReader()
    writer_a = MemoryWriter(reader_b, ("memory-b", 2))
    writer_b = MemoryWriter(reader_a, ("memory-a", 1))
    return (reader_a, writer_a), (reader_b, writer_b)


@pytest.fixture(scope="function")
def memory_pipe():
    """Factory for connected in-memory stream pairs."""
    return make_memory_pipe


# ============================================================================
# Config Fixtures
# ============================================================================

def make_config(**subnet_overrides) -> Config:
    """Config with short timeouts and no background chatter."""
    return Config(
        network=NetworkConfig(
            host="127.0.0.1",
            default_port=0,
            bootstrap_nodes=[],
            connection_timeout=2.0,
            handshake_timeout=2.0,
            rpc_timeout=2.0,
            lookup_round_timeout=1.0,
            lookup_max_rounds=10,
            heartbeat_interval=3600.0,
            refresh_interval=3600.0,
        ),
        subnet=SubnetConfig(**subnet_overrides),
        compression=CompressionConfig(preferred=4, min_size=0),
        broadcast=BroadcastConfig(),
        storage=StorageConfig(database_path=":memory:"),
    )


@pytest.fixture(scope="function")
def fast_config() -> Config:
    return make_config()


# ============================================================================
# Node Factory Fixture
# ============================================================================

class NodeFactory:
    """
    Factory for spawning test nodes on localhost.

    [USAGE]
        nodes = await node_factory.create(3)    # 3 started nodes
        await node_factory.connect(nodes[0], nodes[1])
        await node_factory.cleanup()            # Cleanup after test
    """

    def __init__(self):
        self.nodes: List = []

    async def create(
        self,
        count: int = 1,
        cfg: Optional[Config] = None,
        start: bool = True,
        identities: Optional[List] = None,
    ) -> List:
        """
        Create N test nodes listening on free ports.

        Args:
            count: Number of nodes to create
            cfg: Shared config (fresh fast config by default)
            start: Whether to start the nodes
            identities: Identities to use instead of fresh ones
        """
        from meshnode.node import Node

        created = []
        for i in range(count):
            identity = identities[i] if identities else None
            node = Node(identity, host="127.0.0.1", port=0, cfg=cfg or make_config())
            if start:
                await node.start()
            self.nodes.append(node)
            created.append(node)
        return created

    async def connect(self, node, other):
        """Connect node to other and return node's Peer for it."""
        return await node.connect("127.0.0.1", other.port)

    async def cleanup(self) -> None:
        """Stop all nodes."""
        for node in self.nodes:
            await node.stop()
        self.nodes.clear()


@pytest_asyncio.fixture(scope="function")
async def node_factory() -> AsyncGenerator[NodeFactory, None]:
    """
    Fixture providing NodeFactory for spawning test nodes.

    [USAGE]
        async def test_multi_node(node_factory):
            a, b = await node_factory.create(2)
            await node_factory.connect(a, b)
    """
    factory = NodeFactory()
    yield factory
    await factory.cleanup()


async def _wait_until(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True


@pytest.fixture(scope="function")
def wait_until():
    """
    Poll a condition until it holds or the timeout expires.

    [USAGE]
        assert await wait_until(lambda: len(node.established_peers()) == 1)
    """
    return _wait_until
