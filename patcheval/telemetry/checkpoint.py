from __future__ import annotations

import csv
import os
import threading
from collections import OrderedDict
from typing import Dict, Iterator

from patcheval.models import CheckpointRow, Verdict


CHECKPOINT_COLUMNS = ("commit", "message_short", "stage", "verdict", "prompt_size", "response_size", "elapsed_s")


def _parse_verdict(raw: str) -> Verdict:
    # Older logs wrote free-text stages as "  123 long"; those carry no verdict.
    try:
        return Verdict((raw or "").strip())
    except ValueError:
        return Verdict.unknown


def _int(raw: str) -> int:
    try:
        return int(float((raw or "0").strip()))
    except ValueError:
        return 0


def _float(raw: str) -> float:
    try:
        return float((raw or "0").strip())
    except ValueError:
        return 0.0


class CheckpointLog:
    """
    Append-only CSV log with one row per (commit, stage). Each row is flushed and fsynced
    as soon as it is written so an interrupted run loses at most the in-flight stage.
    The same file is read back on resume.
    """

    def __init__(self, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = threading.Lock()

    def _drop_torn_tail(self) -> None:
        # A crash mid-write leaves a partial last line; cut back to the last complete row.
        if not os.path.exists(self.path) or os.path.getsize(self.path) == 0:
            return
        with open(self.path, "r+b") as f:
            f.seek(-1, os.SEEK_END)
            if f.read(1) == b"\n":
                return
            f.seek(0)
            data = f.read()
            f.truncate(data.rfind(b"\n") + 1)

    def append(self, row: CheckpointRow) -> None:
        values = [
            row.commit_id,
            row.message_short,
            row.stage,
            row.verdict.value,
            row.prompt_size,
            row.response_size,
            f"{row.elapsed_s:.3f}",
        ]
        with self._lock:
            self._drop_torn_tail()
            with open(self.path, "a", encoding="utf-8", newline="") as f:
                csv.writer(f).writerow(values)
                f.flush()
                os.fsync(f.fileno())

    def rows(self) -> Iterator[CheckpointRow]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8", newline="") as f:
            for rec in csv.reader(f):
                if len(rec) < len(CHECKPOINT_COLUMNS) or not rec[0].strip():
                    # A torn trailing line from a crash mid-write is ignored.
                    continue
                yield CheckpointRow(
                    commit_id=rec[0].strip(),
                    message_short=rec[1],
                    stage=rec[2].strip(),
                    verdict=_parse_verdict(rec[3]),
                    prompt_size=_int(rec[4]),
                    response_size=_int(rec[5]),
                    elapsed_s=_float(rec[6]),
                )

    def load(self) -> Dict[str, "OrderedDict[str, CheckpointRow]"]:
        """
        Resume index: commit id -> stage name -> first recorded row.
        """
        index: Dict[str, "OrderedDict[str, CheckpointRow]"] = {}
        for row in self.rows():
            stages = index.setdefault(row.commit_id, OrderedDict())
            stages.setdefault(row.stage, row)
        return index
