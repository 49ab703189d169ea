"""
Value serialization and pluggable compression for cache entries.
"""

import json
import pickle
import zlib
from typing import Any, Optional, Protocol

from ..logging_config import get_logger

logger = get_logger(__name__, 'cache_serialization')


class Compressor(Protocol):
    """Compression algorithm used for large cache values."""

    name: str

    def compress(self, data: bytes) -> bytes:
        ...

    def decompress(self, data: bytes) -> bytes:
        ...


class ZlibCompressor:
    """zlib-based compressor."""

    name = "zlib"

    def __init__(self, level: int = 6):
        self.level = level

    def compress(self, data: bytes) -> bytes:
        return zlib.compress(data, self.level)

    def decompress(self, data: bytes) -> bytes:
        return zlib.decompress(data)


class ValueSerializer:
    """Serializes cache values for compression and the disk layer."""

    def __init__(self, serialization_format: str = "pickle"):
        if serialization_format not in ("pickle", "json"):
            raise ValueError(f"Unsupported serialization format: {serialization_format}")
        self.serialization_format = serialization_format

    def dumps(self, value: Any) -> bytes:
        """Serialize value for storage."""
        try:
            if self.serialization_format == "json":
                payload = json.dumps(value)
                # Tuples, non-string keys and the like decode to a different value
                if json.loads(payload) != value:
                    raise TypeError(f"{type(value).__name__} value does not round-trip through JSON")
                return payload.encode('utf-8')
            return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        except Exception as e:
            logger.error(f"Serialization error: {e}", operation="serialize")
            raise

    def loads(self, data: bytes) -> Any:
        """Deserialize value from storage."""
        try:
            if self.serialization_format == "json":
                return json.loads(data.decode('utf-8'))
            return pickle.loads(data)
        except Exception as e:
            logger.error(f"Deserialization error: {e}", operation="deserialize")
            raise


def estimate_size(value: Any) -> int:
    """Approximate the footprint of an uncompressed value in bytes."""
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    return len(str(value).encode('utf-8'))


def get_compressor(name: Optional[str]) -> Optional[Compressor]:
    """Resolve a compressor by name."""
    if name is None:
        return None
    if name == "zlib":
        return ZlibCompressor()
    raise ValueError(f"Unknown compressor: {name}")
