"""
Compression Registry Unit Tests
===============================
"""

import pytest

from meshnode.compression import Compression, CompressionRegistry
from meshnode.exceptions import CompressionError, UnsupportedCompression


SAMPLE = b"mesh node payload " * 64


class TestCompressionRegistry:
    """Test codec registry."""

    def test_default_codecs(self):
        registry = CompressionRegistry.default()
        assert registry.supported_ids == [0, 1, 2, 3, 4, 5]

    @pytest.mark.parametrize("codec", list(Compression))
    def test_codec_restores_data(self, codec):
        registry = CompressionRegistry.default()
        packed = registry.compress(codec, SAMPLE)

        assert registry.decompress(codec, packed) == SAMPLE

    def test_none_is_passthrough(self):
        registry = CompressionRegistry.default()
        assert registry.compress(Compression.NONE, SAMPLE) == SAMPLE

    def test_real_codecs_shrink_repetitive_data(self):
        registry = CompressionRegistry.default()
        for codec in (Compression.ZLIB, Compression.SNAPPY, Compression.BZ2):
            assert len(registry.compress(codec, SAMPLE)) < len(SAMPLE)

    def test_unregistered_codec(self):
        registry = CompressionRegistry.default()
        registry.unregister(Compression.LZMA)

        assert not registry.supports(Compression.LZMA)
        with pytest.raises(UnsupportedCompression) as exc_info:
            registry.compress(Compression.LZMA, SAMPLE)
        assert exc_info.value.compression_id == Compression.LZMA

        with pytest.raises(UnsupportedCompression):
            registry.decompress(Compression.LZMA, SAMPLE)

    def test_custom_codec_in_free_slot(self):
        registry = CompressionRegistry()
        registry.register(6, lambda data: data[::-1], lambda data: data[::-1])

        assert registry.supports(6)
        assert registry.decompress(6, registry.compress(6, b"abc")) == b"abc"

    def test_id_must_fit_three_bits(self):
        registry = CompressionRegistry()
        with pytest.raises(ValueError):
            registry.register(8, bytes, bytes)

    def test_corrupt_data(self):
        registry = CompressionRegistry.default()
        with pytest.raises(CompressionError):
            registry.decompress(Compression.GZIP, b"not gzip at all")
