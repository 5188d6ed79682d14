#!/usr/bin/env python3
"""
Jet Set Radio (Dreamcast) stage extraction helpers.

Current capabilities:
- Dump the AFS filename table baked into 1ST_READ.BIN.
- List AFS archive entries.
- Extract stage scene documents (textures, texlists, models, placed objects)
  from a JSON/YAML config describing each stage's table addresses.

Stages are processed one after another, each with its own texture registry.
A stage whose tables fail to decode is reported and skipped; no partial
document is written for it.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import math
import pathlib
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .afs import AfsArchive, AfsLibrary
from .jsr_tables import (
    DEFAULT_FILENAME_TABLE,
    OBJECT_LAYOUTS,
    ArchiveFetcher,
    BoundsAnomaly,
    ResolutionWarning,
    SceneDocument,
    StageSlice,
    StructuralDecodeError,
    TextureRegistry,
    assemble_stage,
    decode_model_table,
    decode_object_table,
    read_filename_table,
    txp_has_texture,
    walk_texload_table,
)
from .scene_io import EXTENSIONS, FORMATS, serialize


@dataclasses.dataclass(frozen=True)
class TexLoadSpec:
    addr: int
    load_addr: int = 0
    format: int = 0
    max_records: int = 0


@dataclasses.dataclass(frozen=True)
class SliceSpec:
    model_table: int
    texlist_table: int
    model_count: int
    object_table: int
    object_count: int
    object_layout: str
    object_stride: int = 0


@dataclasses.dataclass(frozen=True)
class StageSpec:
    name: str
    scene_afs: str
    scene_index: int
    texload_tables: Tuple[TexLoadSpec, ...]
    slices: Tuple[SliceSpec, ...]


@dataclasses.dataclass
class StageResult:
    name: str
    document: Optional[SceneDocument] = None
    warnings: List[ResolutionWarning] = dataclasses.field(default_factory=list)
    anomalies: List[BoundsAnomaly] = dataclasses.field(default_factory=list)
    error: Optional[str] = None


class ConfigError(ValueError):
    """Bad stage config or stage selection."""


def _load_config(path: pathlib.Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping/object")
    return data


def _to_int(v: Any) -> int:
    if isinstance(v, bool):
        raise ConfigError("Expected int-like value, got: bool")
    if isinstance(v, int):
        return int(v)
    if isinstance(v, str):
        return int(v, 0)
    raise ConfigError(f"Expected int-like value, got: {type(v).__name__}")


def _req(d: Dict[str, Any], key: str, where: str) -> Any:
    if key not in d:
        raise ConfigError(f"{where}: missing '{key}'")
    return d[key]


def _parse_slice(raw: Any, where: str) -> SliceSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: slice must be a mapping")
    layout = str(_req(raw, "object_layout", where)).lower()
    if layout not in OBJECT_LAYOUTS:
        raise ConfigError(f"{where}: unknown object_layout '{layout}' (expected one of {', '.join(OBJECT_LAYOUTS)})")
    stride = _to_int(raw.get("object_stride", 0))
    for key in ("model_count", "object_count"):
        if _to_int(_req(raw, key, where)) < 0:
            raise ConfigError(f"{where}: {key} must not be negative")
    if layout == "singles_sized" and stride <= 0:
        raise ConfigError(f"{where}: object_layout singles_sized needs object_stride")
    return SliceSpec(
        model_table=_to_int(_req(raw, "model_table", where)),
        texlist_table=_to_int(_req(raw, "texlist_table", where)),
        model_count=_to_int(_req(raw, "model_count", where)),
        object_table=_to_int(_req(raw, "object_table", where)),
        object_count=_to_int(_req(raw, "object_count", where)),
        object_layout=layout,
        object_stride=stride,
    )


def _parse_stage(raw: Any, pos: int) -> StageSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"stages[{pos}] must be a mapping")
    name = str(raw.get("name", f"stage{pos}"))
    where = f"stage '{name}'"
    scene = _req(raw, "scene_file", where)
    if not isinstance(scene, dict):
        raise ConfigError(f"{where}: scene_file must be a mapping with 'afs' and 'index'")

    tex_raw = raw.get("texload_tables") or []
    slices_raw = raw.get("slices") or []
    if not isinstance(tex_raw, list) or not isinstance(slices_raw, list):
        raise ConfigError(f"{where}: 'texload_tables' and 'slices' must be lists")

    tex_specs: List[TexLoadSpec] = []
    for t in tex_raw:
        if isinstance(t, dict):
            tex_specs.append(
                TexLoadSpec(
                    addr=_to_int(_req(t, "addr", where)),
                    load_addr=_to_int(t.get("load_addr", 0)),
                    format=_to_int(t.get("format", 0)),
                    max_records=_to_int(t.get("max_records", 0)),
                )
            )
        else:
            tex_specs.append(TexLoadSpec(addr=_to_int(t)))

    return StageSpec(
        name=name,
        scene_afs=str(_req(scene, "afs", where)),
        scene_index=_to_int(scene.get("index", 0)),
        texload_tables=tuple(tex_specs),
        slices=tuple(_parse_slice(s, f"{where} slice {i}") for i, s in enumerate(slices_raw)),
    )


def parse_stage_config(cfg: Dict[str, Any]) -> Tuple[int, List[StageSpec]]:
    stages = cfg.get("stages", [])
    if not isinstance(stages, list):
        raise ConfigError("Config 'stages' must be a list")
    table_addr = _to_int(cfg.get("filename_table", DEFAULT_FILENAME_TABLE))
    return table_addr, [_parse_stage(s, i) for i, s in enumerate(stages)]


def extract_stage(
    exec_data: bytes,
    stage: StageSpec,
    fetch: ArchiveFetcher,
    filenames: Sequence[str],
) -> StageResult:
    result = StageResult(stage.name)
    registry = TextureRegistry()
    for t in stage.texload_tables:
        result.anomalies.extend(
            walk_texload_table(
                registry,
                exec_data,
                fetch,
                t.addr,
                load_addr_override=t.load_addr,
                format_override=t.format,
                max_records=t.max_records,
                filenames=filenames,
            )
        )

    scene_file = fetch(stage.scene_afs, stage.scene_index)
    slices: List[StageSlice] = []
    for s in stage.slices:
        models, warnings = decode_model_table(
            exec_data, registry, scene_file, s.model_table, s.texlist_table, s.model_count
        )
        result.warnings.extend(warnings)
        objects = decode_object_table(
            s.object_layout, exec_data, scene_file, s.object_table, s.object_count, s.object_stride
        )
        slices.append(StageSlice(models, objects))

    result.document = assemble_stage(registry, slices)
    return result


def _non_finite_flags(doc: SceneDocument) -> int:
    return sum(1 for o in doc.objects if isinstance(o.flags, float) and not math.isfinite(o.flags))


def _audit_textures(doc: SceneDocument, fetch: ArchiveFetcher) -> int:
    missing = 0
    for tex in doc.textures:
        if not txp_has_texture(fetch(tex.afs_name, tex.afs_index), tex.offset):
            missing += 1
    return missing


def cmd_filenames(args: argparse.Namespace) -> int:
    exec_data = pathlib.Path(args.exec).read_bytes()
    names = read_filename_table(exec_data, args.table_addr)
    report = {
        "exec": args.exec,
        "table_addr": f"0x{args.table_addr:08X}",
        "count": len(names),
        "filenames": [{"id": i, "name": n} for i, n in enumerate(names)],
    }
    if args.json:
        pathlib.Path(args.json).write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))
    return 0


def cmd_afs_list(args: argparse.Namespace) -> int:
    arc = AfsArchive.open(pathlib.Path(args.afs))
    report = {
        "afs": args.afs,
        "count": len(arc.entries),
        "entries": [{"index": e.index, "offset": e.offset, "size": e.size} for e in arc.entries],
    }
    if args.json:
        pathlib.Path(args.json).write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))
    return 0


def cmd_extract_stages(args: argparse.Namespace) -> int:
    exec_data = pathlib.Path(args.exec).read_bytes()
    cfg = _load_config(pathlib.Path(args.config))
    table_addr, stages = parse_stage_config(cfg)
    if args.stage:
        wanted = set(args.stage)
        unknown = wanted - {s.name for s in stages}
        if unknown:
            raise ConfigError(f"Unknown stage(s): {', '.join(sorted(unknown))}")
        stages = [s for s in stages if s.name in wanted]

    out_dir = pathlib.Path(args.outdir)
    out_dir.mkdir(parents=True, exist_ok=True)
    library = AfsLibrary(pathlib.Path(args.afs_dir))
    filenames = read_filename_table(exec_data, table_addr)

    recs: List[Dict[str, Any]] = []
    failed = 0
    for stage in stages:
        try:
            res = extract_stage(exec_data, stage, library, filenames)
            if args.strict and res.warnings:
                raise StructuralDecodeError(f"{len(res.warnings)} unresolved texlist reference(s)")
        except (StructuralDecodeError, ValueError, FileNotFoundError) as e:
            failed += 1
            recs.append({"name": stage.name, "ok": False, "error": str(e)})
            continue

        doc = res.document
        assert doc is not None
        out_path = out_dir / f"{stage.name}{EXTENSIONS[args.format]}"
        out_path.write_bytes(serialize(doc.to_dict(), args.format))
        rec: Dict[str, Any] = {
            "name": stage.name,
            "ok": True,
            "out": str(out_path),
            "counts": {
                "textures": len(doc.textures),
                "texlists": len(doc.texlists),
                "models": len(doc.models),
                "objects": len(doc.objects),
            },
            "warnings": [w.message() for w in res.warnings],
            "skipped_records": [a.to_dict() for a in res.anomalies],
        }
        bad_flags = _non_finite_flags(doc)
        if bad_flags:
            rec["non_finite_flags"] = bad_flags
        if args.audit_textures:
            rec["textures_without_gbix"] = _audit_textures(doc, library)
        recs.append(rec)

    manifest = {
        "exec": args.exec,
        "config": args.config,
        "outdir": str(out_dir),
        "format": args.format,
        "stages": recs,
        "counts": {"stages": len(recs), "failed": failed},
    }
    out_manifest = out_dir / "manifest.json"
    out_manifest.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    print(
        json.dumps(
            {
                "manifest": str(out_manifest),
                "stages": [
                    {"name": r["name"], "ok": r["ok"], "warnings": len(r.get("warnings", [])), "error": r.get("error")}
                    for r in recs
                ],
                **manifest["counts"],
            },
            indent=2,
        )
    )
    return 1 if failed else 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Jet Set Radio stage extraction helper")
    sub = p.add_subparsers(dest="cmd", required=True)

    pfn = sub.add_parser("filenames", help="Dump the AFS filename table from the executable")
    pfn.add_argument("--exec", required=True, help="Path to 1ST_READ.BIN")
    pfn.add_argument(
        "--table-addr",
        type=lambda x: int(x, 0),
        default=DEFAULT_FILENAME_TABLE,
        help=f"Filename table address (default: 0x{DEFAULT_FILENAME_TABLE:08X})",
    )
    pfn.add_argument("--json", help="Optional output JSON path")
    pfn.set_defaults(func=cmd_filenames)

    pal = sub.add_parser("afs-list", help="List entries of an AFS archive")
    pal.add_argument("--afs", required=True, help="Path to .AFS archive")
    pal.add_argument("--json", help="Optional output JSON path")
    pal.set_defaults(func=cmd_afs_list)

    pst = sub.add_parser("extract-stages", help="Config-driven stage scene extraction (JSON/YAML)")
    pst.add_argument("--exec", required=True, help="Path to 1ST_READ.BIN")
    pst.add_argument("--afs-dir", required=True, help="Folder holding the game's .AFS archives")
    pst.add_argument("--config", required=True, help="Stage config file (.json/.yaml/.yml)")
    pst.add_argument("--outdir", required=True, help="Output folder")
    pst.add_argument("--format", default="json", choices=FORMATS, help="Scene document format (default: json)")
    pst.add_argument("--stage", action="append", default=[], help="Only extract the named stage (repeatable)")
    pst.add_argument("--strict", action="store_true", help="Fail a stage on unresolved texlist references")
    pst.add_argument(
        "--audit-textures",
        action="store_true",
        help="Count texture records whose offset does not point at a GBIX header",
    )
    pst.set_defaults(func=cmd_extract_stages)

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except ConfigError as e:
        parser.error(str(e))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
