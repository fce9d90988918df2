"""CLI entry point for the Targum witness reconciliation pipeline.

Exit codes:
    0  ok
    1  validation error or not found
    2  blocked by the priority gate
    3  batch halted by the stop rule
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from targum import __version__
from targum.cascade import CascadeThresholds, ReviewFilter, recompute_cascade_for_verse, review_queue
from targum.confidence import recompute_source_confidence
from targum.config import Settings
from targum.errors import TargumError
from targum.gates import GateOutcome, PriorityGate
from targum.ingest import (
    import_iiif_manifest,
    import_page_directory,
    install_catalog,
    load_baseline,
    load_catalog,
)
from targum.jobs import OcrJobHandler, OcrJobQueue, WorkerPool
from targum.ocr import OcrConfig, PillowCropper, build_executor
from targum.patchlog import SqlitePatchLog
from targum.pipeline.batch import BatchRunner
from targum.pipeline.split import split_region_into_witness_verses
from targum.remap import RemapConfig, remap_witness
from targum.store import BBox, ManuscriptStore, RegionStatus, Stage
from targum.taamim import TaamConfig, align_taamim_for_verse, recompute_taam_consensus
from targum.telemetry import ThrottleController

console = Console()

EXIT_INVALID = 1
EXIT_BLOCKED = 2
EXIT_HALTED = 3


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


@contextmanager
def open_store(ctx: click.Context) -> Iterator[ManuscriptStore]:
    """Open the store for one command; pipeline errors exit with code 1."""
    store = ManuscriptStore.open(_settings(ctx))
    try:
        yield store
    except TargumError as e:
        console.print(f"[red]Error ({e.code}): {escape(e.message)}[/red]")
        sys.exit(EXIT_INVALID)
    finally:
        store.close()


def _parse_bbox(value: str) -> BBox:
    try:
        x, y, w, h = (float(part) for part in value.split(","))
    except ValueError:
        raise click.BadParameter("bbox must be 'x,y,w,h'")
    return BBox(x=x, y=y, w=w, h=h)


def _verse_ids(store: ManuscriptStore, verse_id: str | None) -> list[str]:
    return [verse_id] if verse_id else store.list_verse_ids()


@click.group()
@click.version_option(version=__version__)
@click.option("--db", "db_path", type=click.Path(path_type=Path), help="Database path")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, db_path: Path | None, log_level: str):
    """Targum - witness reconciliation pipeline."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_env()
    if db_path is not None:
        settings.db_path = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the database schema."""
    with open_store(ctx) as store:
        SqlitePatchLog(store)
    console.print(f"[green]✓ Database initialized at {_settings(ctx).db_path}[/green]")


# ----------------------------------------------------------------------
# Ingest
# ----------------------------------------------------------------------


@cli.group()
def catalog():
    """Witness catalog commands."""
    pass


@catalog.command("load")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def catalog_load(ctx: click.Context, path: Path):
    """Load witnesses from a YAML catalog."""
    with open_store(ctx) as store:
        witnesses = install_catalog(store, load_catalog(path))

    table = Table(title="Witnesses")
    table.add_column("Priority", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Authority", justify="right")
    for w in witnesses:
        table.add_row(
            str(w.priority) if w.priority else "-", w.id, w.name, f"{w.authority_weight:.2f}"
        )
    console.print(table)


@cli.group()
def baseline():
    """Digital baseline commands."""
    pass


@baseline.command("load")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def baseline_load(ctx: click.Context, path: Path):
    """Load baseline verses from a TSV file (verse_id<TAB>text)."""
    with open_store(ctx) as store:
        count = load_baseline(store, path)
    console.print(f"[green]✓ Loaded {count} verses[/green]")


@cli.group()
def pages():
    """Page image commands."""
    pass


@pages.command("import")
@click.argument("witness_id")
@click.option("--dir", "directory", type=click.Path(path_type=Path), help="Image directory")
@click.option("--iiif", "manifest_url", help="IIIF manifest URL")
@click.option("--limit", type=int, default=None, help="Max IIIF canvases")
@click.pass_context
def pages_import(
    ctx: click.Context,
    witness_id: str,
    directory: Path | None,
    manifest_url: str | None,
    limit: int | None,
):
    """Import page images from a directory or a IIIF manifest."""
    if bool(directory) == bool(manifest_url):
        console.print("[red]Error: pass exactly one of --dir or --iiif[/red]")
        sys.exit(EXIT_INVALID)

    with open_store(ctx) as store:
        if directory:
            imported = import_page_directory(store, witness_id, directory)
        else:
            out_dir = Path(_settings(ctx).data_dir) / "pages" / witness_id
            imported = import_iiif_manifest(store, witness_id, manifest_url, out_dir, limit=limit)
    console.print(f"[green]✓ Imported {len(imported)} page(s) for {witness_id}[/green]")


@cli.group()
def region():
    """Page region commands."""
    pass


@region.command("tag")
@click.argument("page_id")
@click.argument("bbox")
@click.argument("start_verse_id")
@click.argument("end_verse_id")
@click.option(
    "--status",
    type=click.Choice([s.value for s in RegionStatus]),
    default=RegionStatus.OK.value,
)
@click.option("--index", "region_index", type=int, default=0)
@click.pass_context
def region_tag(
    ctx: click.Context,
    page_id: str,
    bbox: str,
    start_verse_id: str,
    end_verse_id: str,
    status: str,
    region_index: int,
):
    """Create a region on PAGE_ID covering START..END (bbox 'x,y,w,h')."""
    with open_store(ctx) as store:
        created = store.create_region(
            page_id,
            _parse_bbox(bbox),
            start_verse_id,
            end_verse_id,
            region_index=region_index,
            status=RegionStatus(status),
        )
    console.print(
        f"[green]✓ Region {created.id}: {start_verse_id}..{end_verse_id} on {page_id}[/green]"
    )


# ----------------------------------------------------------------------
# Gate
# ----------------------------------------------------------------------


@cli.group()
def gate():
    """Priority gate commands."""
    pass


@gate.command("evaluate")
@click.argument("witness_id")
@click.argument("stage", type=click.Choice([s.value for s in Stage]))
@click.option("--override", is_flag=True, help="Admin override (logged)")
@click.option("--actor", default=None, help="Who is asking")
@click.option("--note", default=None)
@click.pass_context
def gate_evaluate(
    ctx: click.Context, witness_id: str, stage: str, override: bool, actor: str | None, note: str | None
):
    """Evaluate whether WITNESS_ID may start STAGE."""
    with open_store(ctx) as store:
        evaluation = PriorityGate(store).evaluate(
            witness_id, stage, admin_override=override, actor=actor, note=note
        )

    if evaluation.outcome == GateOutcome.WITNESS_NOT_FOUND:
        console.print(f"[red]Error: witness not found: {witness_id}[/red]")
        sys.exit(EXIT_INVALID)

    color = "green" if evaluation.allowed else "red"
    console.print(f"[bold {color}]{evaluation.outcome.value.upper()}[/bold {color}]")
    for b in evaluation.blockers:
        console.print(f"  • {b.reason_code}: {b.detail}")
    if not evaluation.allowed:
        sys.exit(EXIT_BLOCKED)


@gate.command("complete")
@click.argument("witness_id")
@click.argument("stage", type=click.Choice([s.value for s in Stage]))
@click.option("--actor", default=None)
@click.pass_context
def gate_complete(ctx: click.Context, witness_id: str, stage: str, actor: str | None):
    """Mark STAGE completed for WITNESS_ID."""
    with open_store(ctx) as store:
        PriorityGate(store).mark_stage_completed(witness_id, stage, actor=actor)
    console.print(f"[green]✓ {witness_id} {stage} completed[/green]")


@gate.command("fail")
@click.argument("witness_id")
@click.argument("stage", type=click.Choice([s.value for s in Stage]))
@click.argument("error")
@click.option("--actor", default=None)
@click.pass_context
def gate_fail(ctx: click.Context, witness_id: str, stage: str, error: str, actor: str | None):
    """Mark STAGE failed for WITNESS_ID with ERROR."""
    with open_store(ctx) as store:
        PriorityGate(store).mark_stage_failed(witness_id, stage, error, actor=actor)
    console.print(f"[yellow]{witness_id} {stage} marked failed[/yellow]")


@gate.command("snapshot")
@click.pass_context
def gate_snapshot(ctx: click.Context):
    """Show priority witnesses and their stage status."""
    with open_store(ctx) as store:
        entries = PriorityGate(store).snapshot()

    table = Table(title="Priority Gate")
    table.add_column("P", justify="right")
    table.add_column("Witness", style="cyan")
    for stage in Stage:
        table.add_column(stage.value)
    for entry in entries:
        table.add_row(
            str(entry.witness.priority),
            entry.witness.id,
            *(entry.run_state.status_for(stage).value for stage in Stage),
        )
    console.print(table)


# ----------------------------------------------------------------------
# OCR jobs
# ----------------------------------------------------------------------


@cli.group()
def jobs():
    """OCR job commands."""
    pass


@jobs.command("enqueue")
@click.option("--witness", "witness_id", default=None)
@click.option("--skip-failed", is_flag=True, help="Do not requeue failed regions")
@click.pass_context
def jobs_enqueue(ctx: click.Context, witness_id: str | None, skip_failed: bool):
    """Queue OCR for every region that still needs it."""
    with open_store(ctx) as store:
        queued = OcrJobQueue(store).enqueue_missing(witness_id, retry_failed=not skip_failed)
    console.print(f"[green]✓ Queued {queued} job(s)[/green]")


@jobs.command("run")
@click.option("--workers", type=int, default=None, help="Worker count")
@click.option("--override", is_flag=True, help="Admin override of the priority gate")
@click.option("--actor", default=None)
@click.pass_context
def jobs_run(ctx: click.Context, workers: int | None, override: bool, actor: str | None):
    """Drain queued OCR jobs for witnesses the priority gate allows.

    Witnesses are visited in priority order; a blocked witness keeps its
    jobs queued until the witnesses above it complete OCR.
    """
    settings = _settings(ctx)
    with open_store(ctx) as store:
        queue = OcrJobQueue(store, stale_minutes=settings.job_stale_minutes)
        queue.requeue_stale()
        gate = PriorityGate(store)

        allowed, blocked = [], []
        for witness in store.list_witnesses():
            if queue.counts(witness.id).get("queued", 0) == 0:
                continue
            evaluation = gate.evaluate(
                witness.id, Stage.OCR, admin_override=override, actor=actor
            )
            if evaluation.allowed:
                allowed.append(witness.id)
            else:
                blocked.append((witness.id, evaluation))

        config = OcrConfig.from_settings(settings)
        handler = OcrJobHandler(
            store,
            queue,
            build_executor(config),
            PillowCropper(),
            Path(settings.data_dir) / "crops",
            config,
        )
        throttle = ThrottleController.from_settings(settings)

        async def drain() -> tuple[int, int]:
            completed = failed = 0
            for witness_id in allowed:
                pool = WorkerPool(
                    "ocr",
                    queue.for_witness(witness_id),
                    handler,
                    max_workers=workers or settings.ocr_workers,
                    throttle=throttle,
                )
                stats = await pool.run()
                completed += stats.completed
                failed += stats.failed
            return completed, failed

        completed, failed = asyncio.run(drain())

    for witness_id, evaluation in blocked:
        reasons = ", ".join(b.reason_code for b in evaluation.blockers)
        console.print(f"[yellow]Skipped {witness_id}: blocked ({reasons})[/yellow]")
    console.print(f"[green]✓ completed={completed}[/green] [red]failed={failed}[/red]")


@jobs.command("requeue-stale")
@click.option("--minutes", type=float, default=None)
@click.pass_context
def jobs_requeue_stale(ctx: click.Context, minutes: float | None):
    """Requeue running jobs older than the staleness window."""
    with open_store(ctx) as store:
        count = OcrJobQueue(store, _settings(ctx).job_stale_minutes).requeue_stale(minutes)
    console.print(f"Requeued {count} job(s)")


@jobs.command("list")
@click.option("--status", default=None)
@click.option("--witness", "witness_id", default=None)
@click.option("--limit", type=int, default=50)
@click.pass_context
def jobs_list(ctx: click.Context, status: str | None, witness_id: str | None, limit: int):
    """List OCR jobs."""
    with open_store(ctx) as store:
        queue = OcrJobQueue(store)
        rows = queue.list(status=status, witness_id=witness_id, limit=limit)
        counts = queue.counts(witness_id)

    table = Table(title="OCR Jobs")
    for col in ("ID", "Region", "Status", "Attempts", "Error"):
        table.add_column(col)
    for job in rows:
        table.add_row(
            str(job.id), str(job.region_id), job.status.value, str(job.attempts), job.error or ""
        )
    console.print(table)
    console.print(", ".join(f"{k}={v}" for k, v in counts.items()))


@jobs.command("retry")
@click.argument("job_id", type=int)
@click.pass_context
def jobs_retry(ctx: click.Context, job_id: int):
    """Requeue a failed job."""
    with open_store(ctx) as store:
        OcrJobQueue(store).retry(job_id)
    console.print(f"[green]✓ Job {job_id} requeued[/green]")


# ----------------------------------------------------------------------
# Split, confidence, cascade, review
# ----------------------------------------------------------------------


@cli.command()
@click.argument("region_id", type=int)
@click.pass_context
def split(ctx: click.Context, region_id: int):
    """Split a region's OCR text into per-verse witness rows."""
    with open_store(ctx) as store:
        outcome = split_region_into_witness_verses(store, region_id)
    color = "yellow" if outcome.partial else "green"
    console.print(
        f"[{color}]{outcome.status}[/{color}] {len(outcome.verse_ids)} verse(s)"
        + (f" ({outcome.reason})" if outcome.reason else "")
    )


@cli.command()
@click.option("--verse", "verse_id", default=None)
@click.pass_context
def confidence(ctx: click.Context, verse_id: str | None):
    """Recompute witness confidence for one verse or all verses."""
    with open_store(ctx) as store:
        total = 0
        for vid in _verse_ids(store, verse_id):
            total += recompute_source_confidence(store, vid)[1]
    console.print(f"[green]✓ Rescored {total} witness row(s)[/green]")


@cli.command()
@click.option("--verse", "verse_id", default=None)
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def cascade(ctx: click.Context, verse_id: str | None, as_json: bool):
    """Recompute the working text for one verse or all verses."""
    settings = _settings(ctx)
    with open_store(ctx) as store:
        thresholds = CascadeThresholds.from_settings(settings)
        patch_log = SqlitePatchLog(store)
        results = [
            recompute_cascade_for_verse(store, vid, thresholds, patch_log)
            for vid in _verse_ids(store, verse_id)
        ]

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in results], indent=2, ensure_ascii=False))
        return
    table = Table(title="Cascade")
    for col in ("Verse", "Source", "Confidence", "Flags", "Reasons"):
        table.add_column(col)
    for r in results:
        table.add_row(
            r.verse_id,
            r.selected_source,
            f"{r.ensemble_confidence:.3f}",
            ",".join(r.flags),
            ",".join(r.reason_codes),
        )
    console.print(table)


@cli.command("review-queue")
@click.option(
    "--filter",
    "review_filter",
    type=click.Choice([f.value for f in ReviewFilter]),
    default=ReviewFilter.LOW_CONFIDENCE.value,
)
@click.option("--limit", type=int, default=100)
@click.pass_context
def review_queue_cmd(ctx: click.Context, review_filter: str, limit: int):
    """Working-text rows needing human review."""
    with open_store(ctx) as store:
        rows = review_queue(store, review_filter, limit)
    table = Table(title=f"Review queue ({review_filter})")
    for col in ("Verse", "Source", "Confidence", "Flags", "Reasons"):
        table.add_column(col)
    for row in rows:
        table.add_row(
            row.verse_id,
            row.selected_source,
            f"{row.ensemble_confidence:.3f}",
            ",".join(row.flags),
            ",".join(row.reason_codes),
        )
    console.print(table)


# ----------------------------------------------------------------------
# Remap and taamim
# ----------------------------------------------------------------------


@cli.command()
@click.argument("witness_id")
@click.option("--min-score", type=float, default=None)
@click.option("--min-margin", type=float, default=None)
@click.option("--max-window", type=int, default=None)
@click.option("--start", "search_start", default=None, help="Search range start verse")
@click.option("--end", "search_end", default=None, help="Search range end verse")
@click.option("--no-backfill", is_flag=True)
@click.pass_context
def remap(
    ctx: click.Context,
    witness_id: str,
    min_score: float | None,
    min_margin: float | None,
    max_window: int | None,
    search_start: str | None,
    search_end: str | None,
    no_backfill: bool,
):
    """Re-tag a witness's regions by matching OCR text to the baseline."""
    settings = _settings(ctx)
    config = RemapConfig.from_settings(settings)
    if min_score is not None:
        config.min_score = min_score
    if min_margin is not None:
        config.min_margin = min_margin
    if max_window is not None:
        config.max_window = max_window

    with open_store(ctx) as store:
        summary = remap_witness(
            store,
            witness_id,
            config,
            search_start=search_start,
            search_end=search_end,
            backfill=not no_backfill,
            thresholds=CascadeThresholds.from_settings(settings),
            patch_log=SqlitePatchLog(store),
        )
    console.print(
        Panel(
            f"regions: {summary.total}\n"
            f"reassigned: {summary.reassigned}\n"
            f"review required: {summary.ambiguous}\n"
            f"touched verses: {len(summary.touched_verse_ids)}",
            title=f"Remap {witness_id}",
        )
    )


@cli.group()
def taam():
    """Taam alignment and consensus commands."""
    pass


@taam.command("align")
@click.option("--verse", "verse_id", default=None)
@click.option("--layer", default="working_text")
@click.pass_context
def taam_align(ctx: click.Context, verse_id: str | None, layer: str):
    """Align witness marks onto the target text."""
    with open_store(ctx) as store:
        count = 0
        for vid in _verse_ids(store, verse_id):
            count += len(align_taamim_for_verse(store, vid, layer))
    console.print(f"[green]✓ Stored {count} alignment(s)[/green]")


@taam.command("consensus")
@click.option("--verse", "verse_id", default=None)
@click.option("--layer", default="working_text")
@click.pass_context
def taam_consensus(ctx: click.Context, verse_id: str | None, layer: str):
    """Vote over current alignments."""
    config = TaamConfig.from_settings(_settings(ctx))
    with open_store(ctx) as store:
        results = [
            recompute_taam_consensus(store, vid, layer, config)
            for vid in _verse_ids(store, verse_id)
        ]
    table = Table(title="Taam consensus")
    for col in ("Verse", "Marks", "Candidates", "Stale", "Confidence", "Flags"):
        table.add_column(col)
    for r in results:
        table.add_row(
            r.consensus.verse_id,
            str(r.consensus_count),
            str(r.candidate_count),
            str(r.stale_count),
            f"{r.consensus.ensemble_confidence:.3f}",
            ",".join(r.consensus.flags),
        )
    console.print(table)


@cli.command()
@click.pass_context
def telemetry(ctx: click.Context):
    """Show resource sample, throttle state and worker limits."""
    snapshot = ThrottleController.from_settings(_settings(ctx)).snapshot()
    sample = snapshot["sample"] or {}
    lines = [f"state: {snapshot['state']}"]
    if sample:
        lines.append(f"memory: {sample['memory_percent']:.1f}%")
        lines.append(f"cpu: {sample['cpu_percent']:.1f}%")
        lines.append(f"process rss: {sample['process_rss_mb']:.1f} MB")
    lines.extend(f"{stage} workers: {limit}" for stage, limit in snapshot["limits"].items())
    console.print(Panel("\n".join(lines), title="Telemetry"))


# ----------------------------------------------------------------------
# Batch
# ----------------------------------------------------------------------


@cli.group()
def batch():
    """Batch pipeline commands."""
    pass


@batch.command("run")
@click.argument("run_dir", type=click.Path(path_type=Path))
@click.option("--resume", is_flag=True, help="Skip stages completed by a previous run")
@click.option("--dry-run", is_flag=True, help="Record stages without mutating")
@click.option("--override", is_flag=True, help="Admin override for gate blockers")
@click.option("--enforce-stage-order", is_flag=True)
@click.pass_context
def batch_run(
    ctx: click.Context,
    run_dir: Path,
    resume: bool,
    dry_run: bool,
    override: bool,
    enforce_stage_order: bool,
):
    """Run the staged pipeline over every witness."""
    settings = _settings(ctx)
    with open_store(ctx) as store:
        runner = BatchRunner(
            store,
            settings,
            run_dir,
            executor=build_executor(OcrConfig.from_settings(settings)),
            cropper=PillowCropper(),
            throttle=ThrottleController.from_settings(settings),
            patch_log=SqlitePatchLog(store),
            admin_override=override,
            enforce_stage_order=enforce_stage_order,
        )
        report = asyncio.run(runner.run(resume=resume, dry_run=dry_run))

    table = Table(title="Batch stages")
    table.add_column("Stage")
    table.add_column("Status")
    for name, info in report.checkpoint.stages.items():
        table.add_row(name, info.get("status", "pending"))
    console.print(table)

    if report.halted:
        console.print(Panel("\n".join(report.checkpoint.halt_reasons), title="Stopped"))
        sys.exit(EXIT_HALTED)
    console.print(f"[green]✓ Batch finished: {run_dir}[/green]")


if __name__ == "__main__":
    cli()
