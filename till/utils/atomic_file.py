from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from decimal import Decimal

__all__ = ["append_jsonl_atomic", "read_jsonl"]


def _default(o):
    if isinstance(o, Decimal):
        return str(o)
    if isinstance(o, datetime):
        return o.isoformat()
    raise TypeError(f"not JSON serializable: {type(o).__name__}")


def append_jsonl_atomic(path: str, obj: dict, ensure_ascii: bool = False) -> None:
    """
    Anexa una línea JSON (JSONL) con flush+fsync; no reescribe el archivo
    completo para mantener O(1). Agrega "ts" si no viene.
    """
    d = os.path.dirname(path) or "."
    os.makedirs(d, exist_ok=True)
    if "ts" not in obj:
        obj = {"ts": datetime.now(timezone.utc).isoformat(), **obj}
    line = json.dumps(obj, ensure_ascii=ensure_ascii, default=_default)
    with open(path, "a", encoding="utf-8", newline="\n") as f:
        f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def read_jsonl(path: str) -> list:
    if not os.path.exists(path):
        return []
    out = []
    with open(path, encoding="utf-8") as f:
        for ln in f:
            ln = ln.strip()
            if ln:
                out.append(json.loads(ln))
    return out
