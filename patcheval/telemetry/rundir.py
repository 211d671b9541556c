from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class RunDir:
    path: str

    @property
    def log_path(self) -> str:
        return os.path.join(self.path, "log.txt")

    @property
    def trace_path(self) -> str:
        return os.path.join(self.path, "trace.jsonl")

    @property
    def checkpoint_path(self) -> str:
        return os.path.join(self.path, "log.csv")


def create_run_dir(log_root: str, *, now: datetime | None = None) -> RunDir:
    """
    Create `<log_root>/<timestamp>/` and re-point `<log_root>/_current` at it.
    """
    now = now or datetime.now().astimezone()
    name = now.strftime("%Y-%m-%d_%H-%M-%S_%Z")
    path = os.path.join(log_root, name)
    os.makedirs(path, exist_ok=True)

    current = os.path.join(log_root, "_current")
    try:
        if os.path.islink(current) or os.path.exists(current):
            os.unlink(current)
        os.symlink(name, current)
    except OSError:
        # Filesystems without symlink support still get the run directory.
        pass
    return RunDir(path=path)
