"""
Jet Set Radio (Dreamcast) stage table decoders.

Walks the fixed tables baked into 1ST_READ.BIN and the stage AFS payloads:
- texture load tables -> texture registry + texlists
- model tables -> model records with texlist indices
- object tables -> placed object instances

Every table is addressed by the virtual address it had in the running
program, so reads go through a region base before touching a buffer.
"""

from __future__ import annotations

import dataclasses
import math
import struct
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np


EXECUTABLE_BASE = 0x8C010000
STAGE_BASE = 0x8CB00000
ALT_TEXTURE_LOAD_ADDR = 0x8CDA0000
DEFAULT_FILENAME_TABLE = 0x8C19428C

MAX_TABLE_ITERATIONS = 0x10000
MAX_TEXLIST_SLOTS = 0x10000

MODEL_ID_SKIP = 0xFFFFFFFF
MODEL_ID_END = 0xFFFFFFFE
STAGE_ADDR_MASK = 0xF0000000
STAGE_ADDR_MARKER = 0x80000000

LAYOUT_A_SIZE = 0x1C
SINGLES_STRIDE = 0x28
LAYOUT_B_MIN_SIZE = 0x24

ROT_TO_RADIANS = math.pi / 0x8000


class StructuralDecodeError(ValueError):
    """Table data that cannot be decoded as laid out (fatal for the stage)."""


@dataclasses.dataclass(frozen=True)
class Region:
    name: str
    base: int


EXEC_REGION = Region("exec", EXECUTABLE_BASE)
STAGE_REGION = Region("stage", STAGE_BASE)


def to_offset(region: Region, addr: int, buf_len: Optional[int] = None, size: int = 0) -> int:
    """Translate a virtual address into a byte offset of the region's buffer.

    When ``buf_len`` is given, the ``size`` bytes starting at the offset must
    also lie inside the buffer.
    """
    off = addr - region.base
    if off < 0:
        raise StructuralDecodeError(f"{region.name} address 0x{addr:08X} is below base 0x{region.base:08X}")
    if buf_len is not None and off + size > buf_len:
        raise StructuralDecodeError(
            f"{region.name} address 0x{addr:08X} (+0x{size:X}) runs past buffer end 0x{buf_len:X}"
        )
    return off


def _need(data: bytes, off: int, size: int) -> None:
    if off < 0 or off + size > len(data):
        raise StructuralDecodeError(f"read of {size} bytes at 0x{off:X} outside buffer of 0x{len(data):X}")


def le32(data: bytes, off: int) -> int:
    _need(data, off, 4)
    return struct.unpack_from("<I", data, off)[0]


def les16(data: bytes, off: int) -> int:
    _need(data, off, 2)
    return struct.unpack_from("<h", data, off)[0]


def lef32(data: bytes, off: int) -> float:
    _need(data, off, 4)
    return struct.unpack_from("<f", data, off)[0]


def read_u32_array(data: bytes, off: int, count: int) -> List[int]:
    if count < 0:
        raise StructuralDecodeError(f"negative table count {count}")
    _need(data, off, count * 4)
    return [int(v) for v in np.frombuffer(data, dtype="<u4", count=count, offset=off)]


@dataclasses.dataclass(frozen=True)
class ArchiveFileReference:
    afs_name: str
    afs_index: int
    data: bytes = dataclasses.field(repr=False, compare=False)


ArchiveFetcher = Callable[[str, int], ArchiveFileReference]


def txp_has_texture(file: ArchiveFileReference, offset: int) -> bool:
    if offset < 0 or offset + 4 > len(file.data):
        return False
    return file.data[offset:offset + 4] == b"GBIX"


# ---- filename table ----


def read_filename_table(exec_data: bytes, table_addr: int = DEFAULT_FILENAME_TABLE) -> List[str]:
    off = to_offset(EXEC_REGION, table_addr, len(exec_data))
    names: List[str] = []
    for _ in range(MAX_TABLE_ITERATIONS):
        end = exec_data.find(b"\x00", off)
        if end < 0:
            raise StructuralDecodeError(f"unterminated filename at 0x{off:X}")
        if end == off:
            return names
        names.append(exec_data[off:end].decode("ascii", errors="replace"))
        off = end + 1
    raise StructuralDecodeError(f"filename table at 0x{table_addr:08X} exceeds {MAX_TABLE_ITERATIONS} entries")


def lookup_filename(names: Sequence[str], file_id: int) -> Optional[str]:
    if 0 <= file_id < len(names):
        return names[file_id] or None
    return None


# ---- texlists ----


@dataclasses.dataclass(frozen=True)
class TexlistRef:
    texlist_addr: int
    slot: int


def read_texlist_ref_table(exec_data: bytes, ref_table_addr: int) -> List[TexlistRef]:
    off = to_offset(EXEC_REGION, ref_table_addr)
    refs: List[TexlistRef] = []
    for _ in range(MAX_TABLE_ITERATIONS):
        texlist_addr = le32(exec_data, off + 0x00)
        slot = le32(exec_data, off + 0x04)
        off += 0x08
        if texlist_addr == 0 and slot == 0xFFFFFFFF:
            return refs
        refs.append(TexlistRef(texlist_addr, slot))
    raise StructuralDecodeError(f"texlist ref table at 0x{ref_table_addr:08X} has no terminator")


@dataclasses.dataclass(frozen=True)
class TextureRecord:
    afs_name: str
    afs_index: int
    offset: int

    def to_dict(self) -> Dict[str, object]:
        return {"AFSFileName": self.afs_name, "AFSFileIndex": self.afs_index, "Offset": self.offset}


@dataclasses.dataclass
class Texlist:
    addr: int
    entries: List[Optional[int]] = dataclasses.field(default_factory=list)

    def set_slot(self, slot: int, index: int) -> None:
        if slot >= MAX_TEXLIST_SLOTS:
            raise StructuralDecodeError(f"texlist 0x{self.addr:08X} slot {slot} out of range")
        if slot >= len(self.entries):
            self.entries.extend([None] * (slot + 1 - len(self.entries)))
        self.entries[slot] = index


class TextureRegistry:
    """Append-only textures plus the texlists that index into them."""

    def __init__(self) -> None:
        self.textures: List[TextureRecord] = []
        self.texlists: List[Texlist] = []
        self._by_addr: Dict[int, int] = {}

    def add_texture(self, file: ArchiveFileReference, offset: int) -> int:
        self.textures.append(TextureRecord(file.afs_name, file.afs_index, offset))
        return len(self.textures) - 1

    def new_texlist(self, addr: int) -> Texlist:
        texlist = Texlist(addr)
        self._by_addr.setdefault(addr, len(self.texlists))
        self.texlists.append(texlist)
        return texlist

    def texlist_for(self, addr: int) -> Texlist:
        idx = self._by_addr.get(addr)
        if idx is None:
            return self.new_texlist(addr)
        return self.texlists[idx]

    def find_texlist_index(self, addr: int) -> Optional[int]:
        return self._by_addr.get(addr)


# ---- texture pack tables ----


def _texture_offset(txp_addr: int, load_addr: int) -> int:
    off = txp_addr - load_addr
    if off < 0:
        raise StructuralDecodeError(f"texture pack 0x{txp_addr:08X} lies below load address 0x{load_addr:08X}")
    return off


def _decode_ref_indexed(
    dst: TextureRegistry,
    exec_data: bytes,
    txp_file: ArchiveFileReference,
    table_addr: int,
    load_addr: int,
    end_on_ffff: bool,
) -> int:
    off = to_offset(EXEC_REGION, table_addr)
    added = 0
    for _ in range(MAX_TABLE_ITERATIONS):
        ref_table_addr = le32(exec_data, off + 0x00)
        txp_addr = le32(exec_data, off + 0x04)
        off += 0x08
        if ref_table_addr == 0 and (txp_addr == 0 or (end_on_ffff and txp_addr == 0xFFFFFFFF)):
            return added
        if txp_addr == 0:
            continue
        index = dst.add_texture(txp_file, _texture_offset(txp_addr, load_addr))
        added += 1
        for ref in read_texlist_ref_table(exec_data, ref_table_addr):
            dst.texlist_for(ref.texlist_addr).set_slot(ref.slot, index)
    raise StructuralDecodeError(f"texture pack table at 0x{table_addr:08X} has no terminator")


def decode_texpack_table_01(
    dst: TextureRegistry, exec_data: bytes, txp_file: ArchiveFileReference, table_addr: int, load_addr: int
) -> int:
    return _decode_ref_indexed(dst, exec_data, txp_file, table_addr, load_addr, end_on_ffff=True)


def decode_texpack_table_02(
    dst: TextureRegistry, exec_data: bytes, txp_file: ArchiveFileReference, table_addr: int, load_addr: int
) -> int:
    off = to_offset(EXEC_REGION, table_addr)
    texlist_addr = le32(exec_data, off + 0x00)
    texdata_addr = le32(exec_data, off + 0x04)
    count = le32(exec_data, to_offset(EXEC_REGION, texlist_addr) + 0x04)
    if count > MAX_TEXLIST_SLOTS:
        raise StructuralDecodeError(f"texlist 0x{texlist_addr:08X} count {count} out of range")

    texlist = dst.new_texlist(texlist_addr)
    added = 0
    for txp_addr in read_u32_array(exec_data, to_offset(EXEC_REGION, texdata_addr), count):
        if txp_addr == 0:
            texlist.entries.append(None)
            continue
        texlist.entries.append(dst.add_texture(txp_file, _texture_offset(txp_addr, load_addr)))
        added += 1
    return added


def decode_texpack_table_03(
    dst: TextureRegistry, exec_data: bytes, txp_file: ArchiveFileReference, table_addr: int, load_addr: int
) -> int:
    return _decode_ref_indexed(dst, exec_data, txp_file, table_addr, load_addr, end_on_ffff=False)


def decode_texpack_table(
    fmt: int,
    dst: TextureRegistry,
    exec_data: bytes,
    txp_file: ArchiveFileReference,
    table_addr: int,
    load_addr: int,
) -> int:
    if fmt == 0x01:
        return decode_texpack_table_01(dst, exec_data, txp_file, table_addr, load_addr)
    if fmt == 0x02:
        return decode_texpack_table_02(dst, exec_data, txp_file, table_addr, load_addr)
    if fmt in (0x03, 0x04, 0x05):
        # Tags 4/5 appear to share the tag 3 layout, loaded at a fixed address.
        return decode_texpack_table_03(dst, exec_data, txp_file, table_addr, ALT_TEXTURE_LOAD_ADDR)
    raise StructuralDecodeError(f"Invalid texlist format {fmt}")


@dataclasses.dataclass(frozen=True)
class BoundsAnomaly:
    table_addr: int
    position: int
    reason: str

    def to_dict(self) -> Dict[str, object]:
        return {"table": f"0x{self.table_addr:08X}", "position": self.position, "reason": self.reason}


def walk_texload_table(
    dst: TextureRegistry,
    exec_data: bytes,
    fetch: ArchiveFetcher,
    table_addr: int,
    load_addr_override: int = 0,
    format_override: int = 0,
    max_records: int = 0,
    filenames: Optional[Sequence[str]] = None,
) -> List[BoundsAnomaly]:
    """Walk a 0x20-byte texture load descriptor table and decode each texpack table.

    Returns the records that were skipped because their archive could not be
    named. Skips for an empty texpack address or a zero format tag are normal
    padding and are not reported.
    """
    if filenames is None:
        filenames = read_filename_table(exec_data)

    anomalies: List[BoundsAnomaly] = []
    off = to_offset(EXEC_REGION, table_addr)
    limit = max_records if max_records > 0 else MAX_TABLE_ITERATIONS
    for pos in range(limit):
        afs_file_id = le32(exec_data, off + 0x00)
        afs_index = le32(exec_data, off + 0x04)
        load_addr = le32(exec_data, off + 0x08)
        texpack_addr = le32(exec_data, off + 0x0C)
        fmt = le32(exec_data, off + 0x10)
        off += 0x20
        if texpack_addr == 0 and afs_file_id == 0 and afs_index == 0 and fmt == 0 and load_addr == 0:
            return anomalies
        if texpack_addr == 0:
            continue
        if load_addr_override > 0:
            load_addr = load_addr_override
        if afs_file_id == 0:
            anomalies.append(BoundsAnomaly(table_addr, pos, "reserved archive id 0"))
            continue
        afs_name = lookup_filename(filenames, afs_file_id)
        if afs_name is None:
            anomalies.append(BoundsAnomaly(table_addr, pos, f"archive id {afs_file_id} not in filename table"))
            continue
        if fmt == 0:
            continue
        if format_override > 0:
            fmt = format_override
        if fmt not in (0x01, 0x02, 0x03, 0x04, 0x05):
            raise StructuralDecodeError(f"Invalid texlist format {fmt} in table 0x{table_addr:08X} record {pos}")
        decode_texpack_table(fmt, dst, exec_data, fetch(afs_name, afs_index), texpack_addr, load_addr)
    if max_records > 0:
        return anomalies
    raise StructuralDecodeError(f"texture load table at 0x{table_addr:08X} has no terminator")


# ---- models ----


@dataclasses.dataclass(frozen=True)
class ModelRecord:
    afs_name: str
    afs_index: int
    offset: int
    texlist_index: Optional[int]

    def to_dict(self) -> Dict[str, object]:
        return {
            "AFSFileName": self.afs_name,
            "AFSFileIndex": self.afs_index,
            "Offset": self.offset,
            "TexlistIndex": self.texlist_index,
        }


@dataclasses.dataclass(frozen=True)
class ResolutionWarning:
    table_addr: int
    position: int
    model_addr: int
    texlist_addr: int

    def message(self) -> str:
        return (
            f"Model 0x{self.table_addr:08X} / 0x{self.position:02X} (NJ addr 0x{self.model_addr:08X}) "
            f"could not find texlist with addr: 0x{self.texlist_addr:08X}"
        )


def decode_model_table(
    exec_data: bytes,
    registry: TextureRegistry,
    scene_file: ArchiveFileReference,
    model_table_addr: int,
    texlist_table_addr: int,
    count: int,
) -> Tuple[List[ModelRecord], List[ResolutionWarning]]:
    model_addrs = read_u32_array(exec_data, to_offset(EXEC_REGION, model_table_addr), count)
    texlist_addrs = read_u32_array(exec_data, to_offset(EXEC_REGION, texlist_table_addr), count)

    models: List[ModelRecord] = []
    warnings: List[ResolutionWarning] = []
    for i, (model_addr, texlist_addr) in enumerate(zip(model_addrs, texlist_addrs)):
        texlist_index = registry.find_texlist_index(texlist_addr) if texlist_addr != 0 else None
        if texlist_index is None and texlist_addr != 0:
            warnings.append(ResolutionWarning(model_table_addr, i, model_addr, texlist_addr))
        offset = to_offset(STAGE_REGION, model_addr)
        models.append(ModelRecord(scene_file.afs_name, scene_file.afs_index, offset, texlist_index))
    return models, warnings


# ---- object instances ----


Vec3 = Tuple[float, float, float]


@dataclasses.dataclass(frozen=True)
class ObjectInstance:
    model_id: int
    translation: Vec3
    rotation: Vec3
    scale: Vec3 = (1.0, 1.0, 1.0)
    flags: Union[int, float] = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "ModelID": self.model_id,
            "Translation": list(self.translation),
            "Rotation": list(self.rotation),
            "Scale": list(self.scale),
            "Flags": self.flags,
        }


def _read_placement(data: bytes, off: int) -> Tuple[int, Vec3, Vec3]:
    model_id = le32(data, off + 0x00)
    translation = (lef32(data, off + 0x04), lef32(data, off + 0x08), lef32(data, off + 0x0C))
    # BAMS angles, one per 4-byte slot.
    rotation = (
        ROT_TO_RADIANS * les16(data, off + 0x10),
        ROT_TO_RADIANS * les16(data, off + 0x14),
        ROT_TO_RADIANS * les16(data, off + 0x18),
    )
    return model_id, translation, rotation


def decode_instance_a(stage_data: bytes, instance_addr: int) -> ObjectInstance:
    off = to_offset(STAGE_REGION, instance_addr, len(stage_data), LAYOUT_A_SIZE)
    model_id, translation, rotation = _read_placement(stage_data, off)
    return ObjectInstance(model_id, translation, rotation)


def decode_instance_b(stage_data: bytes, instance_addr: int, data_size: int = LAYOUT_B_MIN_SIZE) -> ObjectInstance:
    off = to_offset(STAGE_REGION, instance_addr)
    model_id, translation, rotation = _read_placement(stage_data, off)
    # Not confirmed to be a scale; many objects carry zeros here.
    scale = (lef32(stage_data, off + 0x1C), lef32(stage_data, off + 0x20), lef32(stage_data, off + 0x24))
    flags: Union[int, float] = 0
    if data_size >= 0x28:
        # Kept as the float the word decodes to; whether it is a bitmask is unknown.
        flags = lef32(stage_data, off + 0x28)
    return ObjectInstance(model_id, translation, rotation, scale, flags)


# ---- object tables ----


def decode_object_table_grouped(
    exec_data: bytes, scene_file: ArchiveFileReference, table_addr: int, count: int
) -> List[ObjectInstance]:
    group_ptrs = read_u32_array(exec_data, to_offset(EXEC_REGION, table_addr), count)
    stage_data = scene_file.data

    objects: List[ObjectInstance] = []
    for list_addr in group_ptrs:
        if list_addr == 0:
            continue
        off = to_offset(STAGE_REGION, list_addr)
        for _ in range(MAX_TABLE_ITERATIONS):
            instance_addr = le32(stage_data, off)
            off += 0x04
            if (instance_addr & STAGE_ADDR_MASK) != STAGE_ADDR_MARKER:
                break
            obj = decode_instance_a(stage_data, instance_addr)
            if obj.model_id == MODEL_ID_SKIP:
                continue
            objects.append(obj)
        else:
            raise StructuralDecodeError(f"object group list at 0x{list_addr:08X} has no terminator")
    return objects


def _walk_singles(
    exec_data: bytes,
    table_addr: int,
    count: int,
    stride: int,
    decode: Callable[[int], ObjectInstance],
) -> List[ObjectInstance]:
    if stride <= 0:
        raise StructuralDecodeError(f"object stride 0x{stride:X} must be positive")
    start_addrs = read_u32_array(exec_data, to_offset(EXEC_REGION, table_addr), count)

    objects: List[ObjectInstance] = []
    for start in start_addrs:
        if start == 0:
            continue
        for step in range(MAX_TABLE_ITERATIONS):
            obj = decode(start + step * stride)
            if obj.model_id == MODEL_ID_SKIP:
                continue
            if obj.model_id == MODEL_ID_END:
                break
            objects.append(obj)
        else:
            raise StructuralDecodeError(f"object list at 0x{start:08X} has no end marker")
    return objects


def decode_object_table_singles(
    exec_data: bytes, scene_file: ArchiveFileReference, table_addr: int, count: int
) -> List[ObjectInstance]:
    return _walk_singles(
        exec_data, table_addr, count, SINGLES_STRIDE, lambda addr: decode_instance_a(scene_file.data, addr)
    )


def decode_object_table_singles_sized(
    exec_data: bytes, scene_file: ArchiveFileReference, table_addr: int, count: int, data_size: int
) -> List[ObjectInstance]:
    if data_size < LAYOUT_B_MIN_SIZE:
        raise StructuralDecodeError(f"object data size 0x{data_size:X} below 0x{LAYOUT_B_MIN_SIZE:X}")
    return _walk_singles(
        exec_data, table_addr, count, data_size, lambda addr: decode_instance_b(scene_file.data, addr, data_size)
    )


OBJECT_LAYOUTS = ("grouped", "singles", "singles_sized")


def decode_object_table(
    layout: str,
    exec_data: bytes,
    scene_file: ArchiveFileReference,
    table_addr: int,
    count: int,
    data_size: int = 0,
) -> List[ObjectInstance]:
    if layout == "grouped":
        return decode_object_table_grouped(exec_data, scene_file, table_addr, count)
    if layout == "singles":
        return decode_object_table_singles(exec_data, scene_file, table_addr, count)
    if layout == "singles_sized":
        return decode_object_table_singles_sized(exec_data, scene_file, table_addr, count, data_size)
    raise ValueError(f"Unknown object table layout: {layout}")


# ---- stage assembly ----


@dataclasses.dataclass
class StageSlice:
    models: List[ModelRecord]
    objects: List[ObjectInstance]


@dataclasses.dataclass(frozen=True)
class SceneDocument:
    textures: Tuple[TextureRecord, ...]
    texlists: Tuple[Tuple[Optional[int], ...], ...]
    models: Tuple[ModelRecord, ...]
    objects: Tuple[ObjectInstance, ...]

    def to_dict(self) -> Dict[str, object]:
        return {
            "TexlistData": {
                "Textures": [t.to_dict() for t in self.textures],
                "Texlists": [list(entries) for entries in self.texlists],
            },
            "Models": [m.to_dict() for m in self.models],
            "Objects": [o.to_dict() for o in self.objects],
        }


def assemble_stage(registry: TextureRegistry, slices: Sequence[StageSlice]) -> SceneDocument:
    models: List[ModelRecord] = []
    objects: List[ObjectInstance] = []
    for stage_slice in slices:
        models_start = len(models)
        models.extend(stage_slice.models)
        objects.extend(
            dataclasses.replace(obj, model_id=obj.model_id + models_start) for obj in stage_slice.objects
        )
    return SceneDocument(
        textures=tuple(registry.textures),
        texlists=tuple(tuple(t.entries) for t in registry.texlists),
        models=tuple(models),
        objects=tuple(objects),
    )
