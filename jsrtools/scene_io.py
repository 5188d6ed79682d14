"""
Scene document serialization.

Documents are plain trees (dict/list/str/int/float/None). Unset texlist
slots travel as JSON null / YAML null and come back as None.
"""

from __future__ import annotations

import json
from typing import Any, Dict

import yaml


FORMATS = ("json", "yaml")
EXTENSIONS = {"json": ".json", "yaml": ".yaml"}


def serialize(document: Dict[str, Any], fmt: str = "json") -> bytes:
    if fmt == "json":
        return json.dumps(document, indent=2).encode("utf-8")
    if fmt == "yaml":
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=None).encode("utf-8")
    raise ValueError(f"Unsupported output format: {fmt}")


def parse(data: bytes, fmt: str = "json") -> Dict[str, Any]:
    text = data.decode("utf-8")
    if fmt == "json":
        doc = json.loads(text)
    elif fmt == "yaml":
        doc = yaml.safe_load(text)
    else:
        raise ValueError(f"Unsupported output format: {fmt}")
    if not isinstance(doc, dict):
        raise ValueError("Scene document root must be a mapping/object")
    return doc
