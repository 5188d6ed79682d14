from __future__ import annotations

import struct
from typing import Iterable

import pytest

from jsrtools.jsr_tables import EXECUTABLE_BASE, STAGE_BASE, ArchiveFileReference


class ImageBuilder:
    """Zero-filled buffer written at virtual addresses."""

    def __init__(self, base: int, size: int = 0x4000) -> None:
        self.base = base
        self.buf = bytearray(size)

    def put(self, addr: int, raw: bytes) -> None:
        off = addr - self.base
        self.buf[off:off + len(raw)] = raw

    def u32(self, addr: int, *values: int) -> None:
        self.put(addr, struct.pack(f"<{len(values)}I", *values))

    def pairs(self, addr: int, pairs: Iterable[tuple]) -> None:
        flat = [v for p in pairs for v in p]
        self.u32(addr, *flat)

    def instance(self, addr: int, model_id: int, pos=(0.0, 0.0, 0.0), rot=(0, 0, 0), scale=None, flags=None) -> None:
        raw = struct.pack("<I3f", model_id, *pos)
        raw += b"".join(struct.pack("<hH", r, 0) for r in rot)
        if scale is not None:
            raw += struct.pack("<3f", *scale)
        if flags is not None:
            raw += struct.pack("<f", flags)
        self.put(addr, raw)

    def data(self) -> bytes:
        return bytes(self.buf)


class FakeArchives:
    def __init__(self) -> None:
        self.files = {}
        self.calls = []

    def add(self, name: str, index: int, data: bytes) -> None:
        self.files[(name, index)] = data

    def __call__(self, name: str, index: int) -> ArchiveFileReference:
        self.calls.append((name, index))
        return ArchiveFileReference(name, index, self.files.get((name, index), b""))


def build_afs(files) -> bytes:
    header_size = 8 + 8 * len(files)
    out = bytearray(b"AFS\x00" + struct.pack("<I", len(files)))
    data = bytearray()
    for f in files:
        out += struct.pack("<II", header_size + len(data), len(f))
        data += f
    return bytes(out + data)


@pytest.fixture
def exec_image() -> ImageBuilder:
    return ImageBuilder(EXECUTABLE_BASE)


@pytest.fixture
def stage_image() -> ImageBuilder:
    return ImageBuilder(STAGE_BASE)


@pytest.fixture
def archives() -> FakeArchives:
    return FakeArchives()


@pytest.fixture
def txp_file() -> ArchiveFileReference:
    return ArchiveFileReference("TEX.AFS", 3, b"")
