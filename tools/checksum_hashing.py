from __future__ import annotations

import hashlib
import zlib
from enum import Enum
from typing import Any, Callable, Dict, List

import crc32c
import xxhash
from cityhash import CityHash128


DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024

_CRC32C_POLY = 0x82F63B78
_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF


class HashAlgorithmKind(str, Enum):
    CRC32 = "crc32"
    CRC32C = "crc32c"
    XXH3 = "xxhash3"
    CITY128 = "city128"
    SHA256 = "sha256"
    SHA512 = "sha512"
    BLAKE2B = "blake2b"
    BLAKE2S = "blake2s"
    NONE = "none"


DIGEST_WIDTHS: Dict[HashAlgorithmKind, int] = {
    HashAlgorithmKind.CRC32: 8,
    HashAlgorithmKind.CRC32C: 8,
    HashAlgorithmKind.XXH3: 16,
    HashAlgorithmKind.CITY128: 32,
    HashAlgorithmKind.SHA256: 64,
    HashAlgorithmKind.SHA512: 128,
    HashAlgorithmKind.BLAKE2B: 128,
    HashAlgorithmKind.BLAKE2S: 64,
}

CRC32C_ENGINES = ("auto", "hardware", "software")


class UnsupportedAlgorithmError(ValueError):
    pass


def normalize_digest(text: str) -> str:
    """Canonical form used for every digest comparison.

    Lowercases, drops an optional ``0x`` prefix and any leading zeros. An
    empty result collapses to ``"0"`` so that all-zero digests of different
    widths compare equal.
    """

    value = text.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    value = value.lstrip("0")
    return value or "0"


def digests_match(computed: str, expected: str) -> bool:
    return normalize_digest(computed) == normalize_digest(expected)


def _make_crc32c_table() -> List[int]:
    table = []
    for index in range(256):
        crc = index
        for _ in range(8):
            crc = (crc >> 1) ^ _CRC32C_POLY if crc & 1 else crc >> 1
        table.append(crc)
    return table


_CRC32C_TABLE = _make_crc32c_table()


def crc32c_hardware_available() -> bool:
    return bool(getattr(crc32c, "hardware_based", False))


def crc32c_software(data: bytes, value: int = 0) -> int:
    """Table-driven CRC-32C, continuing from a previous ``value``.

    Bit-identical to :func:`crc32c.crc32c`; the running value is the
    finalized CRC of everything seen so far, like :func:`zlib.crc32`.
    """

    table = _CRC32C_TABLE
    crc = value ^ _MASK32
    for byte in data:
        crc = (crc >> 8) ^ table[(crc ^ byte) & 0xFF]
    return crc ^ _MASK32


class StreamingHasher:
    """Incremental digest over a sequence of byte chunks."""

    kind = HashAlgorithmKind.NONE
    streaming = True

    def update(self, data: bytes) -> None:
        raise NotImplementedError

    def finalize(self) -> str:
        raise NotImplementedError


class Crc32Hasher(StreamingHasher):
    kind = HashAlgorithmKind.CRC32

    def __init__(self) -> None:
        self._value = 0

    def update(self, data: bytes) -> None:
        self._value = zlib.crc32(data, self._value)

    def finalize(self) -> str:
        return f"{self._value & _MASK32:08x}"


class Crc32cHasher(StreamingHasher):
    kind = HashAlgorithmKind.CRC32C

    def __init__(self, engine: str = "auto") -> None:
        if engine not in CRC32C_ENGINES:
            raise ValueError(f"Unknown CRC32C engine: {engine}")
        self.engine = engine
        # "hardware" means the compiled library; it picks SSE 4.2 / ARMv8
        # instructions itself and falls back to its own table when absent.
        self._update: Callable[[bytes, int], int] = crc32c_software if engine == "software" else crc32c.crc32c
        self._value = 0

    def update(self, data: bytes) -> None:
        self._value = self._update(data, self._value)

    def finalize(self) -> str:
        return f"{self._value & _MASK32:08x}"


class Xxh3Hasher(StreamingHasher):
    kind = HashAlgorithmKind.XXH3

    def __init__(self) -> None:
        self._state = xxhash.xxh3_64()

    def update(self, data: bytes) -> None:
        self._state.update(data)

    def finalize(self) -> str:
        return f"{self._state.intdigest() & _MASK64:016x}"


class City128Hasher(StreamingHasher):
    """CityHash128 over the whole content.

    The library only hashes complete buffers, so every chunk is kept in memory
    until :meth:`finalize`. Memory use grows with the file size; this is the
    one algorithm that does not scale to files larger than available RAM.
    """

    kind = HashAlgorithmKind.CITY128
    streaming = False

    def __init__(self) -> None:
        self._buffer = bytearray()

    def update(self, data: bytes) -> None:
        self._buffer.extend(data)

    def finalize(self) -> str:
        value = CityHash128(bytes(self._buffer))
        self._buffer = bytearray()
        high = (value >> 64) & _MASK64
        low = value & _MASK64
        return f"{high:016x}{low:016x}"


class HashlibHasher(StreamingHasher):
    def __init__(self, kind: HashAlgorithmKind, factory: Callable[[], Any]) -> None:
        self.kind = kind
        self._state = factory()

    def update(self, data: bytes) -> None:
        self._state.update(data)

    def finalize(self) -> str:
        return self._state.hexdigest()


_FACTORIES: Dict[HashAlgorithmKind, Callable[[str], StreamingHasher]] = {
    HashAlgorithmKind.CRC32: lambda engine: Crc32Hasher(),
    HashAlgorithmKind.CRC32C: lambda engine: Crc32cHasher(engine),
    HashAlgorithmKind.XXH3: lambda engine: Xxh3Hasher(),
    HashAlgorithmKind.CITY128: lambda engine: City128Hasher(),
    HashAlgorithmKind.SHA256: lambda engine: HashlibHasher(HashAlgorithmKind.SHA256, hashlib.sha256),
    HashAlgorithmKind.SHA512: lambda engine: HashlibHasher(HashAlgorithmKind.SHA512, hashlib.sha512),
    HashAlgorithmKind.BLAKE2B: lambda engine: HashlibHasher(
        HashAlgorithmKind.BLAKE2B, lambda: hashlib.blake2b(digest_size=64)
    ),
    HashAlgorithmKind.BLAKE2S: lambda engine: HashlibHasher(
        HashAlgorithmKind.BLAKE2S, lambda: hashlib.blake2s(digest_size=32)
    ),
}


def is_supported(kind: HashAlgorithmKind) -> bool:
    return kind in _FACTORIES


def new_hasher(kind: HashAlgorithmKind, crc32c_engine: str = "auto") -> StreamingHasher:
    factory = _FACTORIES.get(kind)
    if factory is None:
        raise UnsupportedAlgorithmError(f"No hasher for algorithm: {kind.value}")
    return factory(crc32c_engine)


def hash_bytes(kind: HashAlgorithmKind, data: bytes, crc32c_engine: str = "auto") -> str:
    hasher = new_hasher(kind, crc32c_engine)
    hasher.update(data)
    return hasher.finalize()


def hash_chunks(kind: HashAlgorithmKind, data: bytes, chunk_size: int, crc32c_engine: str = "auto") -> str:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    hasher = new_hasher(kind, crc32c_engine)
    view = memoryview(data)
    for offset in range(0, len(data), chunk_size):
        hasher.update(bytes(view[offset : offset + chunk_size]))
    return hasher.finalize()


__all__ = [
    "CRC32C_ENGINES",
    "DEFAULT_CHUNK_SIZE",
    "DIGEST_WIDTHS",
    "HashAlgorithmKind",
    "StreamingHasher",
    "UnsupportedAlgorithmError",
    "crc32c_hardware_available",
    "crc32c_software",
    "digests_match",
    "hash_bytes",
    "hash_chunks",
    "is_supported",
    "new_hasher",
    "normalize_digest",
]
