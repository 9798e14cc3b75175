from __future__ import annotations

import json
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def ensure_inside(base: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base.resolve())
        return True
    except ValueError:
        return False


def safe_join(base: Path, rel_path: str) -> Path:
    cleaned = rel_path.strip().replace("\\", "/")
    if not cleaned:
        raise ValueError("Path is empty")
    candidate = Path(cleaned)
    if candidate.is_absolute():
        raise ValueError(f"Absolute paths are not allowed: {rel_path}")
    target = (base / candidate).resolve()
    if target == base.resolve() or not ensure_inside(base, target):
        raise ValueError(f"Path escapes project root: {rel_path}")
    return target


def normalize_rel_path(rel_path: str) -> str:
    cleaned = rel_path.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with temp_path.open("w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.replace(temp_path, path)
    finally:
        temp_path.unlink(missing_ok=True)


def dumps_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=True)


def loads_json(value: str | None, default: object) -> object:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default
