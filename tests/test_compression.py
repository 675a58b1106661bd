"""
Tests for the gzip compression codec.
"""
import os
import gzip

import pytest

from vaultstore.compression import GZIP_MAGIC, Compressor, sniff
from vaultstore.exceptions import DecompressionFailed


@pytest.fixture
def codec():
    return Compressor(threshold=1024)


class TestCompress:
    """Tests for threshold-based compression."""

    def test_empty_input(self, codec):
        """Test empty input is stored raw and restored."""
        stored, info = codec.compress(b'')
        assert stored == b''
        assert info.algorithm == 'none'
        assert codec.decompress(stored) == b''

    def test_below_threshold_is_raw(self, codec):
        """Test a 1023-byte payload is stored uncompressed."""
        data = b'a' * 1023
        stored, info = codec.compress(data)
        assert stored == data
        assert info.algorithm == 'none'
        assert info.ratio == 100

    def test_at_threshold_is_gzipped(self, codec):
        """Test a compressible 1024-byte payload is gzipped."""
        data = b'a' * 1024
        stored, info = codec.compress(data)
        assert stored[:2] == GZIP_MAGIC
        assert info.algorithm == 'gzip'
        assert info.original_size == 1024
        assert info.compressed_size == len(stored)
        assert info.ratio < 100
        assert codec.decompress(stored) == data

    def test_incompressible_falls_back_to_raw(self, codec):
        """Test data that does not shrink is stored raw."""
        data = os.urandom(4096)
        stored, info = codec.compress(data)
        assert info.algorithm == 'none'
        assert stored == data

    def test_interoperates_with_gzip_module(self, codec):
        """Test compressed output is a standard gzip stream."""
        data = b'{"items": []}' * 200
        stored, _ = codec.compress(data)
        assert gzip.decompress(stored) == data

    def test_magic_prefixed_input_round_trips(self, codec):
        """Test short input starting with the gzip magic is not mistaken for gzip."""
        data = GZIP_MAGIC + b'not really gzip'
        stored, info = codec.compress(data)
        assert info.algorithm == 'gzip'
        assert codec.decompress(stored) == data

    def test_chunked_input(self):
        """Test inputs larger than one chunk compress correctly."""
        codec = Compressor(threshold=16, chunk_size=64)
        data = b'vault item ' * 500
        stored, info = codec.compress(data)
        assert info.algorithm == 'gzip'
        assert codec.decompress(stored) == data


class TestDecompress:
    """Tests for decompression and format sniffing."""

    def test_sniff(self):
        """Test gzip detection uses the magic bytes."""
        assert sniff(gzip.compress(b'x')) == 'gzip'
        assert sniff(b'{"a": 1}') == 'none'
        assert sniff(b'') == 'none'

    def test_raw_passthrough(self, codec):
        """Test data without the magic is returned unchanged."""
        assert codec.decompress(b'plain json') == b'plain json'

    def test_corrupt_stream(self, codec):
        """Test a corrupt gzip body raises DecompressionFailed."""
        with pytest.raises(DecompressionFailed):
            codec.decompress(GZIP_MAGIC + b'\x08\x00garbage-garbage-garbage')

    def test_truncated_stream(self, codec):
        """Test a truncated gzip stream raises DecompressionFailed."""
        stored, _ = codec.compress(b'abc' * 1000)
        with pytest.raises(DecompressionFailed):
            codec.decompress(stored[:-10])

    def test_trailing_data(self, codec):
        """Test bytes after the gzip trailer raise DecompressionFailed."""
        stored, _ = codec.compress(b'abc' * 1000)
        with pytest.raises(DecompressionFailed):
            codec.decompress(stored + b'junk')
