from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .util.fs import ensure_state_dir
from .util.manifest import utc_now_iso

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditLogEntry:
    timestamp: str
    event: str
    details: dict[str, Any] = field(default_factory=dict)


class AuditLog:
    """Fixed-capacity trail of security-relevant events.

    Past ``capacity`` the oldest entry is dropped. ``flush`` appends the
    buffered entries to ``path`` as JSON lines and never raises.
    """

    def __init__(self, capacity: int = 100, path: str | Path | None = None, echo: bool = False) -> None:
        if capacity < 1:
            raise ValueError("Audit capacity must be at least 1")
        self.capacity = capacity
        self.path = Path(path) if path is not None else None
        self.echo = echo
        self._entries: deque[AuditLogEntry] = deque(maxlen=capacity)
        self._flushed = 0

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, event: str, **details: Any) -> AuditLogEntry:
        entry = AuditLogEntry(timestamp=utc_now_iso(), event=event, details=details)
        if len(self._entries) == self.capacity and self._flushed:
            self._flushed -= 1
        self._entries.append(entry)
        if self.echo:
            LOGGER.info("[AUDIT] %s: %s", event, json.dumps(details, default=str))
        return entry

    def entries(self, event: str | None = None) -> list[AuditLogEntry]:
        if event is None:
            return list(self._entries)
        return [entry for entry in self._entries if entry.event == event]

    def flush(self) -> bool:
        if self.path is None:
            return False
        pending = list(self._entries)[self._flushed :]
        if not pending:
            return True
        try:
            ensure_state_dir(self.path.parent)
            with self.path.open("a", encoding="utf-8") as handle:
                for entry in pending:
                    handle.write(json.dumps(asdict(entry), default=str) + "\n")
        except OSError as exc:
            LOGGER.warning("Could not flush audit log to %s: %s", self.path, exc)
            return False
        self._flushed = len(self._entries)
        return True
