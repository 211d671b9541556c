from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol


class TraceSink(Protocol):
    def write(self, *, commit: str, stage: str, event: str, attempt: int = 0, payload: Optional[Dict[str, Any]] = None) -> None: ...


class TraceWriter:
    """
    Verbose append-only trace of every prompt/response pair, one JSON object per line,
    tagged with commit and stage. Each record is flushed before returning.
    """

    def __init__(self, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = threading.Lock()

    def write(
        self,
        *,
        commit: str,
        stage: str,
        event: str,
        attempt: int = 0,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "commit": commit,
            "stage": stage,
            "attempt": attempt,
            "event": event,
            "payload": payload or {},
        }
        line = json.dumps(record, ensure_ascii=False) + "\n"
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()

