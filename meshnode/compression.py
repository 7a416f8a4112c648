"""
Compression Registry - кодеки сжатия передач
============================================

[WIRE] Передача несёт 3-битный compression id.
Кодеки подключаются через реестр id -> (compress, decompress).

| id | Кодек  |
|----|--------|
| 0  | none   |
| 1  | bz2    |
| 2  | gzip   |
| 3  | lzma   |
| 4  | zlib   |
| 5  | snappy |
| 6-7| reserved |
"""

import bz2
import gzip
import lzma
import zlib
import logging
from enum import IntEnum
from typing import Callable, Dict, List, Tuple

import snappy

from .exceptions import UnsupportedCompression, CompressionError

logger = logging.getLogger(__name__)


Codec = Callable[[bytes], bytes]


class Compression(IntEnum):
    """Идентификаторы кодеков (значения стабильны на проводе)."""

    NONE = 0
    BZ2 = 1
    GZIP = 2
    LZMA = 3
    ZLIB = 4
    SNAPPY = 5


MAX_COMPRESSION_ID = 0b111


def _identity(data: bytes) -> bytes:
    return data


class CompressionRegistry:
    """
    Реестр кодеков сжатия.

    [USAGE]
        registry = CompressionRegistry.default()
        packed = registry.compress(Compression.ZLIB, data)
        data = registry.decompress(Compression.ZLIB, packed)
    """

    def __init__(self):
        self._codecs: Dict[int, Tuple[Codec, Codec]] = {}

    @classmethod
    def default(cls) -> "CompressionRegistry":
        """Реестр со всеми стандартными кодеками."""
        registry = cls()
        registry.register(Compression.NONE, _identity, _identity)
        registry.register(Compression.BZ2, bz2.compress, bz2.decompress)
        registry.register(Compression.GZIP, gzip.compress, gzip.decompress)
        registry.register(Compression.LZMA, lzma.compress, lzma.decompress)
        registry.register(Compression.ZLIB, zlib.compress, zlib.decompress)
        registry.register(Compression.SNAPPY, snappy.compress, snappy.decompress)
        return registry

    def register(self, compression_id: int, compress: Codec, decompress: Codec) -> None:
        """Зарегистрировать кодек под id (0-7)."""
        if not 0 <= int(compression_id) <= MAX_COMPRESSION_ID:
            raise ValueError(f"Compression id must fit in 3 bits: {compression_id}")
        self._codecs[int(compression_id)] = (compress, decompress)

    def unregister(self, compression_id: int) -> None:
        self._codecs.pop(int(compression_id), None)

    def supports(self, compression_id: int) -> bool:
        return int(compression_id) in self._codecs

    @property
    def supported_ids(self) -> List[int]:
        return sorted(self._codecs)

    def compress(self, compression_id: int, data: bytes) -> bytes:
        """
        Сжать данные кодеком compression_id.

        Raises:
            UnsupportedCompression: Кодек не зарегистрирован
        """
        try:
            compress, _ = self._codecs[int(compression_id)]
        except KeyError:
            raise UnsupportedCompression(int(compression_id)) from None
        return compress(data)

    def decompress(self, compression_id: int, data: bytes) -> bytes:
        """
        Распаковать данные кодеком compression_id.

        Raises:
            UnsupportedCompression: Кодек не зарегистрирован
            CompressionError: Данные повреждены
        """
        try:
            _, decompress = self._codecs[int(compression_id)]
        except KeyError:
            raise UnsupportedCompression(int(compression_id)) from None

        try:
            return decompress(data)
        except Exception as e:
            raise CompressionError(f"Decompression with id {compression_id} failed: {e}") from e


# Глобальный реестр по умолчанию
default_registry = CompressionRegistry.default()
