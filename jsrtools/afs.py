"""
AFS container access (Sega Dreamcast archives).

Layout: "AFS\\0", u32 entry count, then count x (u32 offset, u32 size).
"""

from __future__ import annotations

import dataclasses
import pathlib
import struct
from typing import Dict, List

from .jsr_tables import ArchiveFileReference


AFS_MAGIC = b"AFS\x00"


@dataclasses.dataclass(frozen=True)
class AfsEntry:
    index: int
    offset: int
    size: int


class AfsArchive:
    def __init__(self, name: str, data: bytes) -> None:
        self.name = name
        self.data = data
        self.entries = self._read_entries(data)

    @classmethod
    def open(cls, path: pathlib.Path) -> "AfsArchive":
        return cls(path.name, path.read_bytes())

    @staticmethod
    def _read_entries(data: bytes) -> List[AfsEntry]:
        if data[:4] != AFS_MAGIC:
            raise ValueError("Not an AFS archive (missing 'AFS\\0')")
        if len(data) < 8:
            raise ValueError("AFS header truncated")
        count = struct.unpack_from("<I", data, 4)[0]
        if 8 + count * 8 > len(data):
            raise ValueError(f"AFS entry table ({count} entries) runs past end of file")
        entries: List[AfsEntry] = []
        for i in range(count):
            off, size = struct.unpack_from("<II", data, 8 + i * 8)
            if off + size > len(data):
                raise ValueError(f"AFS entry {i} out of range (offset=0x{off:X}, size=0x{size:X})")
            entries.append(AfsEntry(i, off, size))
        return entries

    def get_sub_file(self, index: int) -> bytes:
        if not 0 <= index < len(self.entries):
            raise ValueError(f"{self.name}: entry {index} out of range (count={len(self.entries)})")
        e = self.entries[index]
        return self.data[e.offset:e.offset + e.size]


class AfsLibrary:
    """Opens archives under a root folder on first use and keeps them parsed."""

    def __init__(self, root: pathlib.Path) -> None:
        self.root = root
        self._archives: Dict[str, AfsArchive] = {}

    def archive(self, name: str) -> AfsArchive:
        arc = self._archives.get(name)
        if arc is None:
            path = self.root / name
            if not path.is_file():
                raise FileNotFoundError(f"AFS archive not found: {path}")
            arc = AfsArchive.open(path)
            self._archives[name] = arc
        return arc

    def __call__(self, name: str, index: int) -> ArchiveFileReference:
        return ArchiveFileReference(name, index, self.archive(name).get_sub_file(index))
