from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .checksum_hashing import HashAlgorithmKind
from .checksum_logging import logger


EXTENSION_ALGORITHMS: Dict[str, HashAlgorithmKind] = {
    ".crc32": HashAlgorithmKind.CRC32,
    ".crc32c": HashAlgorithmKind.CRC32C,
    ".xxhash3": HashAlgorithmKind.XXH3,
    ".city128": HashAlgorithmKind.CITY128,
    ".sha256": HashAlgorithmKind.SHA256,
    ".sha512": HashAlgorithmKind.SHA512,
    ".blake2b": HashAlgorithmKind.BLAKE2B,
    ".blake2s": HashAlgorithmKind.BLAKE2S,
}

# Search order when no manifest is named explicitly.
MANIFEST_CANDIDATES: Tuple[str, ...] = (
    "CRC.crc32",
    "CRC.crc32c",
    "CRC.xxhash3",
    "CRC.city128",
    "CRC.sha256",
    "CRC.sha512",
    "CRC.blake2b",
    "CRC.blake2s",
)

_FIELD_SPLIT = re.compile(r"\s+")


class ManifestError(Exception):
    """Base class for run-level manifest failures."""


class ManifestNotFoundError(ManifestError):
    def __init__(self, message: str = "No manifest found") -> None:
        super().__init__(message)


class EmptyManifestError(ManifestError):
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        super().__init__("Empty manifest")


class UnsupportedManifestError(ManifestError):
    pass


@dataclass(frozen=True)
class FileEntry:
    path: str
    expected_digest: str


@dataclass(frozen=True)
class Manifest:
    algorithm: HashAlgorithmKind
    entries: Tuple[FileEntry, ...]
    path: Optional[Path] = None

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def base_dir(self) -> Path:
        if self.path is None:
            return Path.cwd()
        return self.path.parent


def algorithm_for(path: Path) -> HashAlgorithmKind:
    kind = EXTENSION_ALGORITHMS.get(Path(path).suffix.lower())
    if kind is None:
        raise UnsupportedManifestError(f"Unsupported manifest extension: {Path(path).name}")
    return kind


def parse_line(line: str) -> Optional[FileEntry]:
    """Parse one ``<digest> [*]<path>`` line; ``None`` for skipped lines."""

    line = line.rstrip("\r\n")
    if not line.strip() or line.startswith(";"):
        return None
    parts = _FIELD_SPLIT.split(line.lstrip(), maxsplit=1)
    if len(parts) < 2:
        return None
    digest, rest = parts
    rest = rest.lstrip(" ")
    if rest.startswith("*"):
        rest = rest[1:]
    if not rest:
        return None
    return FileEntry(path=rest, expected_digest=digest)


def parse_lines(lines: Iterable[str]) -> List[FileEntry]:
    entries: List[FileEntry] = []
    for line in lines:
        entry = parse_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


def load_manifest(path: Path) -> Manifest:
    path = Path(path)
    algorithm = algorithm_for(path)
    try:
        with path.open("r", encoding="utf-8-sig", errors="surrogateescape", newline="") as handle:
            entries = parse_lines(handle)
    except OSError as exc:
        raise ManifestError(f"Cannot read manifest {path}: {exc}") from exc
    return Manifest(algorithm=algorithm, entries=tuple(entries), path=path)


def find_manifest(directory: Path, candidates: Sequence[str] = MANIFEST_CANDIDATES) -> Manifest:
    """Load the first candidate manifest in ``directory`` that parses.

    Raises :class:`ManifestNotFoundError` when none is usable and
    :class:`EmptyManifestError` when the selected one lists no files.
    """

    directory = Path(directory)
    for name in candidates:
        candidate = directory / name
        if not candidate.is_file():
            continue
        try:
            manifest = load_manifest(candidate)
        except ManifestError as exc:
            logger.debug(f"Skipping manifest candidate {candidate}: {exc}")
            continue
        return require_entries(manifest)
    raise ManifestNotFoundError()


def require_entries(manifest: Manifest) -> Manifest:
    if not manifest.entries:
        raise EmptyManifestError(manifest.path)
    return manifest


__all__ = [
    "EXTENSION_ALGORITHMS",
    "EmptyManifestError",
    "FileEntry",
    "MANIFEST_CANDIDATES",
    "Manifest",
    "ManifestError",
    "ManifestNotFoundError",
    "UnsupportedManifestError",
    "algorithm_for",
    "find_manifest",
    "load_manifest",
    "parse_line",
    "parse_lines",
    "require_entries",
]
