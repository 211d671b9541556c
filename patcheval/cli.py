"""patcheval command line: `patcheval run <start-ref> [<end-ref>] [resume <checkpoint-file>]`."""

from __future__ import annotations

import logging
import os
import signal
import sys
from typing import Any, List, Optional, Sequence, Tuple

import click

from patcheval.catalog.loader import DEFAULT_PROMPTS_DIR, load_catalog
from patcheval.engine.cancel import CancellationToken
from patcheval.engine.controller import RunController
from patcheval.engine.executor import ExecutorPolicy, StageExecutor
from patcheval.engine.plan_runner import PlanRunner
from patcheval.errors import BackendError, CatalogError, CommitNotFound, RefResolutionError, RunCancelled, TemplateMissing
from patcheval.gitops.walker import GitWalker
from patcheval.llm.ollama_client import OllamaClient
from patcheval.prompting.renderer import PromptParams, PromptRenderer
from patcheval.settings import Settings
from patcheval.telemetry.checkpoint import CheckpointLog
from patcheval.telemetry.progress import ProgressReporter, Spinner
from patcheval.telemetry.rundir import create_run_dir
from patcheval.telemetry.trace import TraceWriter


logger = logging.getLogger("patcheval")

EXIT_CANCELLED = 130


def parse_run_args(args: Sequence[str]) -> Tuple[str, str, Optional[str]]:
    """
    `<start-ref> [<end-ref>] [resume <file>]` -> (start, end, resume_path).
    end defaults to start.
    """
    tokens = list(args)
    resume: Optional[str] = None
    if "resume" in tokens:
        i = tokens.index("resume")
        if i + 1 >= len(tokens):
            raise click.UsageError("resume requires a checkpoint file")
        resume = tokens[i + 1]
        del tokens[i : i + 2]
    if not tokens:
        raise click.UsageError("Please provide start and end refs/tags/branches/commits.")
    if len(tokens) > 2:
        raise click.UsageError(f"unexpected arguments: {' '.join(tokens[2:])}")
    start = tokens[0]
    end = tokens[1] if len(tokens) > 1 else start
    return start, end, resume


def _attach_log_file(path: str) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return handler


@click.group()
def main() -> None:
    """Classify commits with a pipeline of language-model stages."""


@main.command("run")
@click.argument("args", nargs=-1)
@click.option("--repo", "repo_path", default=None, help="Repository to walk (default: PATCHEVAL_REPO_PATH or .)")
@click.option("--plan", "plan_csv", default=None, help="Comma-separated stage names overriding the catalog plan")
@click.option("--stages", "stages_path", default=None, help="Stage catalog YAML (default: packaged catalog)")
@click.option("--prompts", "prompts_dir", default=None, help="Directory with <stage>.md prompt templates")
def run_cmd(
    args: Tuple[str, ...],
    repo_path: Optional[str],
    plan_csv: Optional[str],
    stages_path: Optional[str],
    prompts_dir: Optional[str],
) -> None:
    """Evaluate commits between START and END; `resume FILE` continues an earlier checkpoint log."""
    start_ref, end_ref, resume_path = parse_run_args(args)

    settings = Settings()
    if repo_path:
        settings.repo_path = repo_path
    if stages_path:
        settings.stages_path = stages_path
    if prompts_dir:
        settings.prompts_dir = prompts_dir

    try:
        catalog = load_catalog(settings.stages_path)
        names: Optional[List[str]] = None
        if plan_csv:
            names = [x.strip() for x in plan_csv.split(",") if x.strip()]
        else:
            names = settings.plan_override()
        plan = catalog.resolve_plan(names)
        if not plan:
            raise click.UsageError("the stage plan is empty")
        renderer = PromptRenderer(prompts_dir=settings.prompts_dir or str(DEFAULT_PROMPTS_DIR))
        for spec in plan:
            renderer.render(spec.name, PromptParams(commit=""))

        walker = GitWalker(repo_path=settings.repo_path)
        walker.ensure_repo()
        rng = walker.resolve_range(start_ref, end_ref)
    except (CatalogError, TemplateMissing, RefResolutionError, CommitNotFound, ValueError) as e:
        raise click.ClickException(str(e)) from e

    resume_index = None
    if resume_path:
        if not os.path.isfile(resume_path):
            raise click.ClickException(f"checkpoint_not_found: {resume_path}")
        resume_index = CheckpointLog(resume_path).load()

    run_dir = create_run_dir(settings.log_root)
    handler = _attach_log_file(run_dir.log_path)
    cancel = CancellationToken()
    spinner = Spinner(enabled=settings.spinner_enabled and sys.stdout.isatty())
    progress = ProgressReporter(spinner=spinner)

    def _on_signal(signum: int, frame: Any) -> None:
        cancel.cancel(f"signal {signum}")
        raise RunCancelled(f"interrupted by signal {signum}")

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        executor = StageExecutor(
            backend=OllamaClient(
                base_url=settings.backend_base_url,
                connect_timeout_s=settings.backend_connect_timeout_s,
                read_timeout_s=settings.backend_read_timeout_s,
            ),
            renderer=renderer,
            policy=ExecutorPolicy.from_settings(settings),
            trace=TraceWriter(run_dir.trace_path),
            cancel=cancel,
        )
        runner = PlanRunner(
            executor=executor,
            plan=plan,
            outcomes=list(catalog.outcomes),
            skip_threshold=settings.skip_commit_on_consecutive_fails,
            process_merge_commits=settings.process_merge_commits,
        )
        checkpoint = CheckpointLog(resume_path or run_dir.checkpoint_path)
        controller = RunController(
            runner=runner,
            checkpoint=checkpoint,
            progress=progress,
            cancel=cancel,
            resume_index=resume_index,
        )

        progress.run_header(
            start_ref=start_ref,
            end_ref=end_ref,
            start_id=rng.start_id,
            end_id=rng.end_id,
            plan=[s.name for s in plan],
            skip_threshold=settings.skip_commit_on_consecutive_fails,
        )
        click.echo("Counting commits ", nl=False)
        with spinner.start(5):
            ids = walker.commit_ids(rng)
        click.echo("")
        pending = controller.pending(ids)
        if resume_path:
            partial = sum(1 for c in pending if c in (resume_index or {}))
            progress.resumed(path=resume_path, done=len(ids) - len(pending), partial=partial)
        progress.total_commits(len(pending))

        controller.run((walker.load(c) for c in pending), total=len(pending))
        progress.line(f"Results: {checkpoint.path}")
    except RunCancelled as e:
        progress.stop()
        click.echo("")
        logger.warning("run cancelled: %s", e)
        click.echo(f"Interrupted: {e}", err=True)
        sys.exit(EXIT_CANCELLED)
    except (BackendError, RefResolutionError, TemplateMissing, CatalogError) as e:
        logger.error("run aborted: %s", e)
        raise click.ClickException(str(e)) from e
    finally:
        spinner.stop()
        for sig, h in previous.items():
            signal.signal(sig, h)
        handler.flush()
        logger.removeHandler(handler)
        handler.close()


if __name__ == "__main__":
    main()
