"""
Compression Codec — gzip for serialized vault payloads.

Small payloads are stored raw. The format of a stored payload is detected
by sniffing the gzip magic bytes, never by an out-of-band flag.
"""
import zlib
import logging

from .exceptions import DecompressionFailed
from .models import CompressionInfo

logger = logging.getLogger("vaultstore")

GZIP_MAGIC = b"\x1f\x8b"
_GZIP_WBITS = 31  # zlib container flag for gzip framing


def sniff(data: bytes) -> str:
    """Return ``"gzip"`` if ``data`` starts with the gzip magic, else ``"none"``."""
    return "gzip" if data[:2] == GZIP_MAGIC else "none"


class Compressor:
    """Threshold-based gzip compression with a raw fallback."""

    def __init__(
        self,
        threshold: int = 1024,
        level: int = 6,
        chunk_size: int = 64 * 1024,
    ):
        self.threshold = threshold
        self.level = level
        self.chunk_size = chunk_size

    def _gzip(self, data: bytes) -> bytes:
        compressor = zlib.compressobj(self.level, zlib.DEFLATED, _GZIP_WBITS)
        chunks = []
        for offset in range(0, len(data), self.chunk_size):
            chunks.append(compressor.compress(data[offset:offset + self.chunk_size]))
        chunks.append(compressor.flush())
        return b"".join(chunks)

    @staticmethod
    def _raw(data: bytes) -> tuple[bytes, CompressionInfo]:
        return data, CompressionInfo(
            algorithm="none",
            original_size=len(data),
            compressed_size=len(data),
            ratio=100,
        )

    def compress(self, data: bytes) -> tuple[bytes, CompressionInfo]:
        """Compress ``data`` when it is at least ``threshold`` bytes long.

        Data that already starts with the gzip magic is always compressed,
        so that :meth:`decompress` can tell the two formats apart.

        Returns:
            Tuple of (stored bytes, CompressionInfo).
        """
        ambiguous = sniff(data) == "gzip"
        if len(data) < self.threshold and not ambiguous:
            return self._raw(data)
        try:
            compressed = self._gzip(data)
        except zlib.error as err:
            if ambiguous:
                raise
            logger.warning("Compression failed, storing raw payload: %s", err)
            return self._raw(data)
        if len(compressed) >= len(data) and not ambiguous:
            return self._raw(data)
        return compressed, CompressionInfo(
            algorithm="gzip",
            original_size=len(data),
            compressed_size=len(compressed),
            ratio=round(len(compressed) / len(data) * 100) if data else 100,
        )

    def decompress(self, data: bytes) -> bytes:
        """Inverse of :meth:`compress`.

        Raises:
            DecompressionFailed: If a gzip stream is corrupt or truncated.
        """
        if sniff(data) == "none":
            return data
        decompressor = zlib.decompressobj(_GZIP_WBITS)
        chunks = []
        try:
            for offset in range(0, len(data), self.chunk_size):
                chunks.append(
                    decompressor.decompress(data[offset:offset + self.chunk_size])
                )
            chunks.append(decompressor.flush())
        except zlib.error as err:
            raise DecompressionFailed() from err
        if not decompressor.eof or decompressor.unused_data:
            raise DecompressionFailed("Truncated or trailing data in gzip stream")
        return b"".join(chunks)
