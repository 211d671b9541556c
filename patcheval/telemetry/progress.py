from __future__ import annotations

import logging
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, TextIO

import click

from patcheval.models import Commit, CommitResult, StageResult, StageSpec


logger = logging.getLogger(__name__)

SPINNER_CHARS = [
    "⠁", "⠂", "⠄", "⡀", "⡈", "⡐", "⡠", "⣀",
    "⣁", "⣂", "⣄", "⣌", "⣔", "⣤", "⣥", "⣦",
    "⣮", "⣶", "⣷", "⣿", "⡿", "⠿", "⢟", "⠟",
    "⡛", "⠛", "⠫", "⢋", "⠋", "⠍", "⡉", "⠉",
    "⠑", "⠡", "⢁",
]


class Spinner:
    """
    Cosmetic progress glyphs drawn by a daemon thread while the caller blocks.
    Only the run flag is shared with the drawing thread.
    """

    def __init__(self, *, stream: Optional[TextIO] = None, interval_s: float = 0.08, enabled: bool = True):
        self.stream = stream
        self.interval_s = interval_s
        self.enabled = enabled
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self, width: int = 1) -> "Spinner":
        if not self.enabled or self._thread is not None:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._spin, args=(max(1, width),), name="patcheval-spinner", daemon=True)
        self._thread.start()
        return self

    def _spin(self, width: int) -> None:
        out = self.stream or sys.stdout
        i = 0
        while not self._stop.is_set():
            out.write(SPINNER_CHARS[i] * width)
            out.flush()
            i = (i + 1) % len(SPINNER_CHARS)
            self._stop.wait(self.interval_s)
            out.write("\b" * width)
            out.flush()

    def stop(self) -> None:
        t = self._thread
        if t is None:
            return
        self._stop.set()
        t.join()
        self._thread = None

    def __enter__(self) -> "Spinner":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.stop()


def _fmt_eta(eta_s: float) -> str:
    at = datetime.now().astimezone() + timedelta(seconds=max(0.0, eta_s))
    return at.strftime("%Y-%m-%d %H:%M:%S %Z")


class ProgressReporter:
    """
    Human-facing progress: run header, one line per commit and one per stage.
    Everything shown on the console is mirrored into the operational log.
    """

    def __init__(self, *, echo: Optional[Callable[..., Any]] = None, spinner: Optional[Spinner] = None):
        self.echo = echo or click.echo
        self.spinner = spinner or Spinner(enabled=False)

    def line(self, text: str = "") -> None:
        self.echo(text)
        logger.info(text)

    def run_header(self, *, start_ref: str, end_ref: str, start_id: str | None, end_id: str, plan: List[str], skip_threshold: int) -> None:
        now = datetime.now(timezone.utc)
        self.line(f"patcheval: Walking between {start_ref} and {end_ref}")
        self.line(f"Start commit: {start_id or '(root)'}")
        self.line(f"End commit:   {end_id}")
        self.line("Walk started at:")
        self.line(f"\t{now.isoformat()}")
        self.line(f"\t{now.astimezone().isoformat()}")
        self.line(f"Commit test plan: {', '.join(plan)}")
        self.line(f"Skip commit on consecutive fails: {skip_threshold}")
        self.line("")

    def total_commits(self, total: int) -> None:
        self.line(f"Total commits: {total}")
        self.line("")

    def resumed(self, *, path: str, done: int, partial: int) -> None:
        self.line(f"Resuming from {path}: {done} commits done, {partial} partially recorded")

    def commit_started(self, commit: Commit, *, n: int, total: int, eta_s: float) -> None:
        local = datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
        self.line("%s, %3d/%d,  ETA %s, %s %s" % (local, n, total, _fmt_eta(eta_s), commit.id, commit.message_short))

    def commit_skipped(self, commit: Commit) -> None:
        self.line(" merge commit, skipped" if commit.is_merge else " skipped")

    def stage_started(self, commit: Commit, spec: StageSpec) -> None:
        self.echo(" test: %20s" % f"{spec.name} ", nl=False)
        self.spinner.start(12)

    def stage_finished(self, commit: Commit, result: StageResult) -> None:
        self.spinner.stop()
        text = self.format_stage(result)
        self.echo(text)
        logger.info(" test: %20s%s", f"{result.stage} ", text)

    @staticmethod
    def format_stage(result: StageResult) -> str:
        res = result.verdict.value if result.classifying else "%5d long" % result.response_size
        elapsed = max(result.elapsed_s, 1e-9)
        out = " %10s " % res
        out += "%5.2fs" % result.elapsed_s
        out += "  in: %5d B" % result.prompt_size
        out += "  out: %5d B" % result.response_size
        out += "  %7.2f B/s" % ((result.prompt_size + result.response_size) / elapsed)
        if result.prompt_tokens_per_s is not None or result.generated_tokens_per_s is not None:
            out += "  pt: %s tok %6.2f t/s" % (result.prompt_tokens or 0, result.prompt_tokens_per_s or 0.0)
            out += "  gen: %s tok %6.2f t/s" % (result.generated_tokens or 0, result.generated_tokens_per_s or 0.0)
        if result.retries:
            out += f"  retries: {result.retries}"
        return out

    def stage_replayed(self, result: StageResult) -> None:
        self.line(" test: %20s %10s (from checkpoint)" % (f"{result.stage} ", result.verdict.value))

    def commit_finished(self, result: CommitResult) -> None:
        if result.early_exit:
            self.line(" skipping remaining stages after %d consecutive fails" % result.consecutive_fails)
        if result.outcomes:
            self.line(" verdicts: " + ", ".join(f"{k}={'yes' if v else 'no'}" for k, v in result.outcomes.items()))

    def run_finished(self, *, processed: int, skipped: int, elapsed_s: float, stats: Dict[str, int]) -> None:
        self.line("")
        self.line(f"Done: {processed} commits evaluated, {skipped} skipped in {elapsed_s:.1f}s")
        if stats:
            self.line("Verdicts: " + ", ".join(f"{k}={v}" for k, v in sorted(stats.items())))

    def stop(self) -> None:
        self.spinner.stop()
