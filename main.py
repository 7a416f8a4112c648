#!/usr/bin/env python3
"""
P2P Mesh Node
=============

[DECENTRALIZATION] Этот скрипт запускает узел:
- Генерирует или загружает криптографическую идентичность
- Запускает TCP сервер для входящих соединений
- Подключается к bootstrap-узлам, ищет соседей, объявляет себя
- Участвует в DHT и рассылке SHOUT

Использование:
    python main.py [--port PORT] [--bootstrap HOST:PORT] [--identity FILE]

Примеры:
    # Запуск первого узла (bootstrap)
    python main.py --port 8468

    # Подключение к существующему узлу
    python main.py --port 8469 --bootstrap 127.0.0.1:8468

    # Узел без интерактивной оболочки
    python main.py --port 8470 --bootstrap 127.0.0.1:8468 --no-shell
"""

import argparse
import asyncio
import logging
import signal
from contextlib import suppress
from typing import List, Optional, Tuple

from dotenv import load_dotenv

# Загрузка переменных окружения из .env до чтения конфигурации
load_dotenv()

from config import config, get_current_network
from meshnode import Node, ValueStore, load_or_create_identity


# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("meshnode")


def parse_bootstrap(bootstrap_str: str) -> List[Tuple[str, int]]:
    """Парсить строку bootstrap узлов."""
    nodes = []
    for item in bootstrap_str.split(","):
        item = item.strip()
        if not item:
            continue
        if ":" in item:
            host, port_str = item.rsplit(":", 1)
            port = int(port_str)
        else:
            host = item
            port = config.network.default_port
        nodes.append((host, port))
    return nodes


def _format_value(value) -> str:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    return repr(value)


async def interactive_shell(node: Node, shutdown_event: Optional[asyncio.Event] = None) -> None:
    """
    Интерактивная оболочка для взаимодействия с узлом.
    """
    print("\n" + "=" * 60)
    print("P2P Mesh Node Interactive Shell")
    print(f"Address: {node.address.hex()}")
    print(f"Listening on: {node.host}:{node.port}")
    print("Type 'help' for commands, 'quit' to exit")
    print("=" * 60 + "\n")

    async def _on_text(event):
        print(f"\n[{event.get('kind')}] {event['sender'].hex()[:16]}...: {_format_value(event['data'])}")

    for kind in ("shout", "speak", "whisper"):
        await node.events.subscribe(kind, lambda event, kind=kind: _on_text({**event, "kind": kind}))

    loop = asyncio.get_running_loop()

    while True:
        if shutdown_event is not None and shutdown_event.is_set():
            break

        input_task = loop.run_in_executor(None, lambda: input(">>> "))
        if shutdown_event is not None:
            stop_task = asyncio.ensure_future(shutdown_event.wait())
            done, _ = await asyncio.wait({input_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if stop_task in done:
                break
            stop_task.cancel()
            with suppress(asyncio.CancelledError):
                await stop_task

        try:
            line = (await input_task).strip()
        except EOFError:
            break

        if not line:
            continue

        parts = line.split(maxsplit=2)
        cmd = parts[0].lower()

        try:
            if cmd in ("quit", "exit"):
                print("[INFO] Shutting down...")
                break

            elif cmd == "help":
                print("""
Available commands:
  peers                  - List established peers
  routing                - Show routing table info
  stats                  - Show node statistics
  put <key> <value>      - Store value in DHT
  get <key>              - Find value in DHT
  lookup <address>       - Iterative FIND_NODE
  shout <text>           - Broadcast to the whole network
  speak <text>           - Send to direct peers
  whisper <address> <text> - Private message
  connect <host:port>    - Connect to a node
  quit                   - Stop the node
""")

            elif cmd == "peers":
                peers = node.established_peers()
                print(f"Established peers: {len(peers)}")
                for peer in peers:
                    direction = "out" if peer.is_outbound else "in"
                    print(f"  {peer.address.hex()[:16]}... {peer.host}:{peer.port} ({direction})")

            elif cmd == "routing":
                stats = node.routing_table.get_stats()
                print(f"Peers in table: {stats['total_peers']}, "
                      f"non-empty buckets: {stats['non_empty_buckets']}/{stats['total_buckets']}")
                for index, size in sorted(stats["bucket_sizes"].items()):
                    print(f"  bucket {index}: {size}")

            elif cmd == "stats":
                stats = await node.get_stats()
                for key, value in stats.items():
                    print(f"  {key}: {value}")

            elif cmd == "put" and len(parts) == 3:
                stored = await node.store(parts[1], parts[2].encode())
                print(f"Stored on {stored} nodes")

            elif cmd == "get" and len(parts) >= 2:
                entry = await node.find_value(parts[1])
                if entry is None:
                    print("Not found")
                else:
                    value, metadata = entry
                    print(f"{_format_value(value)} (owner {metadata.owner.hex()[:16]}...)")

            elif cmd == "lookup" and len(parts) >= 2:
                for contact in await node.find_node(bytes.fromhex(parts[1])):
                    print(f"  {contact.address.hex()[:16]}... {contact.host}:{contact.port}")

            elif cmd in ("shout", "speak") and len(parts) >= 2:
                text = line.split(maxsplit=1)[1]
                sent = await (node.shout(text) if cmd == "shout" else node.speak(text))
                print(f"Sent to {sent} peers")

            elif cmd == "whisper" and len(parts) == 3:
                ok = await node.whisper(bytes.fromhex(parts[1]), parts[2])
                print("Sent" if ok else "No route")

            elif cmd == "connect" and len(parts) >= 2:
                (host, port), = parse_bootstrap(parts[1])
                peer = await node.connect(host, port)
                print(f"Connected to {peer}" if peer else "Connection failed")

            else:
                print(f"Unknown command: {line!r}. Type 'help'.")

        except ValueError as e:
            print(f"[ERROR] Bad argument: {e}")
        except (ConnectionError, OSError) as e:
            print(f"[ERROR] {e}")


async def main() -> None:
    """
    Главная функция - точка входа.
    """
    parser = argparse.ArgumentParser(
        description="P2P Mesh Node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start as bootstrap node
  python main.py --port 8468

  # Connect to existing network
  python main.py --port 8469 --bootstrap 127.0.0.1:8468
""",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=config.network.default_port,
        help=f"Port to listen on (default: {config.network.default_port})",
    )
    parser.add_argument(
        "--host", "-H",
        type=str,
        default=config.network.host,
        help=f"Host to bind to (default: {config.network.host})",
    )
    parser.add_argument(
        "--bootstrap", "-b",
        type=str,
        default="",
        help="Bootstrap nodes (comma-separated host:port)",
    )
    parser.add_argument(
        "--identity", "-i",
        type=str,
        default=config.crypto.identity_file,
        help=f"Identity file path (default: {config.crypto.identity_file})",
    )
    parser.add_argument(
        "--db", "-d",
        type=str,
        default=config.storage.database_path,
        help=f"Value store database path (default: {config.storage.database_path})",
    )
    parser.add_argument(
        "--no-shell",
        action="store_true",
        help="Disable interactive shell",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    network = get_current_network()
    logger.info(f"[MAIN] Starting in network: {network['name']} ({network['description']})")

    if args.bootstrap:
        config.network.bootstrap_nodes = parse_bootstrap(args.bootstrap)

    identity = load_or_create_identity(args.identity)
    storage = ValueStore(args.db, enforce_owner=config.storage.enforce_owner)

    node = Node(identity, host=args.host, port=args.port, storage=storage)
    await node.start()

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("[MAIN] Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, signal_handler)

    try:
        if args.no_shell:
            logger.info("[MAIN] Running in daemon mode. Press Ctrl+C to stop.")
            await shutdown_event.wait()
        else:
            await interactive_shell(node, shutdown_event)
    finally:
        await node.stop()
        logger.info("[MAIN] Shutdown complete")


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
