"""
Compression stages for backup artifacts.

Artifacts are gzip streams (RFC 1952) so they can be inspected with the
usual command line tools:
- GzipStage: compress chunks as they flow through the builder
- GunzipStage: decompress chunks on the restore path
"""

import zlib

from .errors import CompressionError
from .stages import Stage


# zlib window size for a gzip header and trailer
GZIP_WBITS = 16 + zlib.MAX_WBITS

ARTIFACT_EXTENSION = '.gz'


class GzipStage(Stage):
    """
    Streaming gzip compressor.

    Keeps a single zlib compressor across chunks, so the concatenated
    output is one valid gzip member.
    """

    name = 'compress'

    def __init__(self, level: int = 6):
        """
        Initialize the compressor.

        Args:
            level: zlib compression level (1-9)
        """
        if not 1 <= level <= 9:
            raise ValueError(f"Invalid compression level: {level}. Valid range: 1-9")
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, GZIP_WBITS)

    def transform(self, chunk: bytes) -> bytes:
        try:
            return self._compressor.compress(chunk)
        except zlib.error as e:
            raise CompressionError(f"Compression failed: {e}")

    def flush(self) -> bytes:
        try:
            return self._compressor.flush(zlib.Z_FINISH)
        except zlib.error as e:
            raise CompressionError(f"Compression flush failed: {e}")


class GunzipStage(Stage):
    """Streaming gzip decompressor used when restoring an artifact."""

    name = 'decompress'

    def __init__(self):
        self._decompressor = zlib.decompressobj(GZIP_WBITS)

    def transform(self, chunk: bytes) -> bytes:
        try:
            return self._decompressor.decompress(chunk)
        except zlib.error as e:
            raise CompressionError(f"Decompression failed: {e}")

    def flush(self) -> bytes:
        try:
            tail = self._decompressor.flush()
        except zlib.error as e:
            raise CompressionError(f"Decompression flush failed: {e}")

        if not self._decompressor.eof:
            raise CompressionError("Compressed stream is truncated")

        return tail


def artifact_extension(compressed: bool, encrypted: bool) -> str:
    """
    Build the storage key extension for an artifact.

    Format: .dump[.gz][.enc]

    Args:
        compressed: Whether the artifact is gzip compressed
        encrypted: Whether the artifact is encrypted

    Returns:
        Extension string including the leading dot
    """
    extension = '.dump'
    if compressed:
        extension += ARTIFACT_EXTENSION
    if encrypted:
        extension += '.enc'
    return extension
