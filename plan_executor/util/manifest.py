from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .fs import ensure_state_dir


def stable_timestamp(timestamp: str | None = None) -> str:
    if timestamp is not None:
        return timestamp
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_manifest(
    command: str,
    payload: dict[str, Any],
    out_dir: str | Path = ".plan-executor/runs",
    timestamp: str | None = None,
) -> Path:
    out_dir = ensure_state_dir(out_dir)
    ts = stable_timestamp(timestamp)
    path = out_dir / f"{ts}_{command}.json"
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    return path
