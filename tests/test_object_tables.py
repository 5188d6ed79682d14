import math
import struct

import pytest

from conftest import ImageBuilder

from jsrtools.jsr_tables import (
    EXECUTABLE_BASE,
    STAGE_BASE,
    ArchiveFileReference,
    StructuralDecodeError,
    TextureRegistry,
    decode_instance_a,
    decode_instance_b,
    decode_model_table,
    decode_object_table,
    decode_object_table_grouped,
    decode_object_table_singles,
    decode_object_table_singles_sized,
)

E = EXECUTABLE_BASE
S = STAGE_BASE


def _scene(stage_image):
    return ArchiveFileReference("STAGE1.AFS", 0, stage_image.data())


def test_model_table_resolves_texlists(exec_image, stage_image):
    reg = TextureRegistry()
    reg.new_texlist(0x8C0F0000)
    reg.new_texlist(0x8C0F0100)
    exec_image.u32(E + 0x100, S + 0x10, S + 0x20, S + 0x30)
    exec_image.u32(E + 0x200, 0x8C0F0100, 0, 0x8C0FFFF0)

    models, warnings = decode_model_table(exec_image.data(), reg, _scene(stage_image), E + 0x100, E + 0x200, 3)

    assert [m.offset for m in models] == [0x10, 0x20, 0x30]
    assert [m.texlist_index for m in models] == [1, None, None]
    assert models[0].to_dict() == {"AFSFileName": "STAGE1.AFS", "AFSFileIndex": 0, "Offset": 0x10, "TexlistIndex": 1}
    assert len(warnings) == 1
    assert warnings[0].position == 2
    assert warnings[0].texlist_addr == 0x8C0FFFF0
    assert "0x8C0FFFF0" in warnings[0].message()


def test_model_address_below_stage_base_is_fatal(exec_image, stage_image):
    exec_image.u32(E + 0x100, S - 0x10)
    with pytest.raises(StructuralDecodeError):
        decode_model_table(exec_image.data(), TextureRegistry(), _scene(stage_image), E + 0x100, E + 0x200, 1)


def test_instance_a_angles(stage_image):
    stage_image.instance(S + 0x40, 12, pos=(1.5, -2.0, 3.25), rot=(0x4000, -0x8000, 0))
    obj = decode_instance_a(stage_image.data(), S + 0x40)

    assert obj.model_id == 12
    assert obj.translation == (1.5, -2.0, 3.25)
    assert obj.rotation[0] == pytest.approx(math.pi / 2, abs=1e-6)
    assert obj.rotation[1] == pytest.approx(-math.pi, abs=1e-6)
    assert obj.rotation[2] == 0.0
    assert obj.scale == (1.0, 1.0, 1.0)
    assert obj.flags == 0


def test_instance_b_scale_and_flags(stage_image):
    stage_image.instance(S + 0x40, 3, rot=(0x2000, 0, 0), scale=(2.0, 0.0, 0.5), flags=4.0)
    data = stage_image.data()

    obj = decode_instance_b(data, S + 0x40, 0x34)
    assert obj.scale == (2.0, 0.0, 0.5)
    assert obj.flags == 4.0
    assert obj.rotation[0] == pytest.approx(math.pi / 4, abs=1e-6)

    assert decode_instance_b(data, S + 0x40, 0x24).flags == 0


def test_grouped_table(exec_image, stage_image):
    exec_image.u32(E + 0x100, S + 0x100, 0, S + 0x200)
    stage_image.u32(S + 0x100, S + 0x400, S + 0x420, S + 0x440, 0)
    stage_image.u32(S + 0x200, 0x12345678)
    stage_image.instance(S + 0x400, 5)
    stage_image.instance(S + 0x420, 0xFFFFFFFF)
    stage_image.instance(S + 0x440, 7, pos=(0.0, 1.0, 0.0))

    objs = decode_object_table_grouped(exec_image.data(), _scene(stage_image), E + 0x100, 3)
    assert [o.model_id for o in objs] == [5, 7]
    assert objs[1].translation == (0.0, 1.0, 0.0)


def test_grouped_table_group_without_markers_is_empty(exec_image, stage_image):
    exec_image.u32(E + 0x100, S + 0x200)
    stage_image.u32(S + 0x200, 0x0C000000, S + 0x400)
    stage_image.instance(S + 0x400, 5)
    assert decode_object_table_grouped(exec_image.data(), _scene(stage_image), E + 0x100, 1) == []


def test_singles_fixed_stride(exec_image, stage_image):
    exec_image.u32(E + 0x100, S + 0x600, 0)
    stage_image.instance(S + 0x600, 1)
    stage_image.instance(S + 0x628, 0xFFFFFFFF)
    stage_image.instance(S + 0x650, 2)
    stage_image.instance(S + 0x678, 0xFFFFFFFE)
    stage_image.instance(S + 0x6A0, 9)

    objs = decode_object_table_singles(exec_image.data(), _scene(stage_image), E + 0x100, 2)
    assert [o.model_id for o in objs] == [1, 2]


def test_singles_sized_stride(exec_image, stage_image):
    exec_image.u32(E + 0x100, S + 0x800)
    stage_image.instance(S + 0x800, 4, scale=(1.0, 1.0, 1.0), flags=1.0)
    stage_image.instance(S + 0x834, 6, scale=(3.0, 3.0, 3.0), flags=0.0)
    stage_image.instance(S + 0x868, 0xFFFFFFFE)

    objs = decode_object_table(
        "singles_sized", exec_image.data(), _scene(stage_image), E + 0x100, 1, 0x34
    )
    assert [o.model_id for o in objs] == [4, 6]
    assert objs[0].flags == 1.0
    assert objs[1].scale == (3.0, 3.0, 3.0)


def test_singles_running_off_buffer_is_fatal(exec_image, stage_image):
    exec_image.u32(E + 0x100, S + 0x3F00)
    with pytest.raises(StructuralDecodeError):
        decode_object_table_singles(exec_image.data(), _scene(stage_image), E + 0x100, 1)


def test_singles_sized_rejects_short_stride(exec_image, stage_image):
    with pytest.raises(StructuralDecodeError):
        decode_object_table_singles_sized(exec_image.data(), _scene(stage_image), E + 0x100, 1, 0x1C)


def test_unknown_layout(exec_image, stage_image):
    with pytest.raises(ValueError, match="Unknown object table layout"):
        decode_object_table("nested", exec_image.data(), _scene(stage_image), E + 0x100, 1)


def test_instance_b_flags_at_minimum_flagged_stride(stage_image):
    stage_image.instance(S + 0x40, 3, scale=(1.0, 1.0, 1.0), flags=2.0)
    assert decode_instance_b(stage_image.data(), S + 0x40, 0x28).flags == 2.0


def test_instance_b_keeps_non_finite_flags(stage_image):
    stage_image.instance(S + 0x40, 3, scale=(1.0, 1.0, 1.0))
    stage_image.u32(S + 0x68, 0xFFFFFFFF)
    assert math.isnan(decode_instance_b(stage_image.data(), S + 0x40, 0x34).flags)


def test_negative_table_count_is_fatal(exec_image, stage_image):
    exec_image.u32(E + 0x100, S + 0x10)
    with pytest.raises(StructuralDecodeError, match="negative table count"):
        decode_model_table(exec_image.data(), TextureRegistry(), _scene(stage_image), E + 0x100, E + 0x200, -1)
    with pytest.raises(StructuralDecodeError, match="negative table count"):
        decode_object_table_singles(exec_image.data(), _scene(stage_image), E + 0x100, -1)


def test_grouped_list_without_terminator_hits_ceiling(exec_image):
    stage = ImageBuilder(S, 0x50000)
    stage.put(S + 0x100, struct.pack("<I", S + 0x48000) * 0x10001)
    stage.instance(S + 0x48000, 0xFFFFFFFF)
    exec_image.u32(E + 0x100, S + 0x100)
    scene = ArchiveFileReference("STAGE1.AFS", 0, stage.data())
    with pytest.raises(StructuralDecodeError, match="no terminator"):
        decode_object_table_grouped(exec_image.data(), scene, E + 0x100, 1)


def test_singles_without_end_marker_hits_ceiling(exec_image):
    stage = ImageBuilder(S, 0x281000)
    exec_image.u32(E + 0x100, S + 0x100)
    scene = ArchiveFileReference("STAGE1.AFS", 0, stage.data())
    with pytest.raises(StructuralDecodeError, match="no end marker"):
        decode_object_table_singles(exec_image.data(), scene, E + 0x100, 1)


def test_singles_sized_without_end_marker_hits_ceiling(exec_image):
    stage = ImageBuilder(S, 0x241000)
    exec_image.u32(E + 0x100, S + 0x100)
    scene = ArchiveFileReference("STAGE1.AFS", 0, stage.data())
    with pytest.raises(StructuralDecodeError, match="no end marker"):
        decode_object_table_singles_sized(exec_image.data(), scene, E + 0x100, 1, 0x24)
