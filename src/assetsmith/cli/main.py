"""assetsmith CLI: generate game assets from text descriptions.

Every subcommand supports a ``--json`` flag for machine-parseable output.
Progress is written to stderr so stdout stays clean for piping.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import click
import yaml

from assetsmith import __version__
from assetsmith.analysis import infer_asset_type
from assetsmith.cache import StageCache, StageCacheConfig
from assetsmith.cli.output import (
    format_batch,
    format_cache_stats,
    format_error,
    format_response,
    format_result,
)
from assetsmith.config import OUTPUT_FORMATS, PipelineConfig, load_config
from assetsmith.errors import AssetsmithError, AuthenticationError, GenerationCancelledError
from assetsmith.events import Event, EventType
from assetsmith.log_config import configure_logging
from assetsmith.models import STAGE_ORDER, STYLES, AssetType, GenerationRequest
from assetsmith.pipeline import create_pipeline, load_result

logger = logging.getLogger(__name__)

_DEFAULT_CACHE_DB = os.path.join(str(Path.home()), ".assetsmith", "cache.db")

_TYPE_CHOICES = tuple(t.value for t in AssetType)
_STAGE_CHOICES = tuple(s.value for s in STAGE_ORDER)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load(ctx: click.Context, **overrides: Any) -> PipelineConfig:
    config = load_config(ctx.obj.get("config_path"), **overrides)
    # The CLI runs one process per command, so resume and status need a
    # persistent cache to find earlier results.
    if config.cache_enabled and not config.cache_db_path:
        config.cache_db_path = _DEFAULT_CACHE_DB
    return config


def _fail(exc: BaseException, json_mode: bool) -> None:
    """Print *exc* as a standard error envelope and exit 1."""
    if isinstance(exc, AuthenticationError):
        click.echo(format_error(str(exc), code="AUTH_ERROR", json_mode=json_mode))
    elif isinstance(exc, AssetsmithError):
        click.echo(format_error(str(exc), code=exc.code or "ERROR", json_mode=json_mode))
    else:
        logger.exception("Unexpected CLI failure")
        click.echo(format_error(str(exc), code="INTERNAL_ERROR", json_mode=json_mode))
    sys.exit(1)


def _progress(json_mode: bool) -> Optional[Callable[[Event], None]]:
    """Event callback that prints one line per stage event to stderr."""
    if json_mode:
        return None

    def _echo(event: Event) -> None:
        data = event.data
        rid = data.get("result_id") or data.get("request_id", "")
        if event.type == EventType.STAGE_START:
            click.echo(f"  [{rid}] {data['stage']} ...", err=True)
        elif event.type == EventType.STAGE_COMPLETE:
            suffix = " (cached)" if data.get("cached") else ""
            click.echo(click.style(f"  [{rid}] {data['stage']} done{suffix}", fg="green"), err=True)
        elif event.type == EventType.ERROR:
            click.echo(click.style(f"  [{rid}] failed: {data.get('error')}", fg="red"), err=True)
        elif event.type == EventType.BATCH_ERROR:
            click.echo(click.style(f"  [{rid}] batch member failed: {data.get('reason')}", fg="red"), err=True)

    return _echo


def _run_cancellable(fn: Callable[[threading.Event], Any]) -> Any:
    """Run *fn* on a worker thread; Ctrl-C sets its cancel event.

    The main thread keeps the signal handler, so interrupting the CLI
    asks the pipeline to stop at its next checkpoint instead of killing
    it mid-write.
    """
    cancel = threading.Event()
    outcome: Dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = fn(cancel)
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name="assetsmith-cli", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.2)
        except KeyboardInterrupt:
            if cancel.is_set():
                raise
            click.echo("Cancelling, waiting for the current step to stop...", err=True)
            cancel.set()

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


def _read_batch_file(path: str) -> List[GenerationRequest]:
    """Parse a JSON or YAML list of request mappings."""
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if isinstance(data, dict) and "requests" in data:
        data = data["requests"]
    if not isinstance(data, list):
        raise click.BadParameter("batch file must contain a list of requests", param_hint="FILE")
    return [GenerationRequest.from_dict(item) for item in data]


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="ASSETSMITH_CONFIG",
    type=click.Path(dir_okay=False),
    help="Path to config.yaml (default ~/.assetsmith/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to the log file.")
@click.version_option(version=__version__, prog_name="assetsmith")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """assetsmith: staged 3D asset generation."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    try:
        configure_logging(level="DEBUG" if verbose else None)
    except OSError as exc:
        click.echo(f"Warning: file logging disabled ({exc})", err=True)


# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("description")
@click.option("--type", "asset_type", type=click.Choice(_TYPE_CHOICES), default=None,
              help="Asset category (inferred from the description if omitted).")
@click.option("--name", default=None, help="Asset name (defaults to the description).")
@click.option("--id", "request_id", default=None, help="Request id (random if omitted).")
@click.option("--subtype", default=None, help="Weapon type, armor slot or building type.")
@click.option("--style", type=click.Choice(STYLES), default=None, help="Visual style.")
@click.option("--output-dir", "-o", default=None, help="Directory for finished assets.")
@click.option("--format", "output_format", type=click.Choice(OUTPUT_FORMATS), default=None,
              help="Model file format.")
@click.option("--no-cache", is_flag=True, help="Do not read or write the stage cache.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def generate(
    ctx: click.Context,
    description: str,
    asset_type: Optional[str],
    name: Optional[str],
    request_id: Optional[str],
    subtype: Optional[str],
    style: Optional[str],
    output_dir: Optional[str],
    output_format: Optional[str],
    no_cache: bool,
    json_mode: bool,
) -> None:
    """Generate one asset from DESCRIPTION."""
    try:
        config = _load(
            ctx,
            output_dir=output_dir,
            output_format=output_format,
            cache_enabled=False if no_cache else None,
        )
        request = GenerationRequest(
            id=request_id or f"asset-{uuid.uuid4().hex[:8]}",
            name=name or description[:60],
            description=description,
            type=AssetType(asset_type) if asset_type else infer_asset_type(description),
            subtype=subtype,
            style=style,
        )
        pipeline = create_pipeline(config)
        on_event = _progress(json_mode)
        result = _run_cancellable(
            lambda cancel: pipeline.generate(request, on_event=on_event, cancel_event=cancel)
        )
    except GenerationCancelledError as exc:
        click.echo(format_error(str(exc), code=exc.code, json_mode=json_mode))
        sys.exit(130)
    except Exception as exc:
        _fail(exc, json_mode)
        return

    click.echo(format_result(result.to_dict(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# batch
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--window", "window_size", type=click.IntRange(min=1), default=None,
              help="Requests in flight at once (default from config).")
@click.option("--output-dir", "-o", default=None, help="Directory for finished assets.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def batch(
    ctx: click.Context,
    file: str,
    window_size: Optional[int],
    output_dir: Optional[str],
    json_mode: bool,
) -> None:
    """Generate every request listed in FILE (JSON or YAML list)."""
    failures: List[Dict[str, Any]] = []
    progress = _progress(json_mode)

    def _on_event(event: Event) -> None:
        if event.type == EventType.BATCH_ERROR:
            failures.append(dict(event.data))
        if progress is not None:
            progress(event)

    try:
        requests = _read_batch_file(file)
        config = _load(ctx, output_dir=output_dir, batch_size=window_size)
        pipeline = create_pipeline(config)
        results = _run_cancellable(
            lambda cancel: pipeline.batch_generate(
                requests, on_event=_on_event, cancel_event=cancel
            )
        )
    except click.BadParameter:
        raise
    except (yaml.YAMLError, OSError) as exc:
        click.echo(format_error(f"Cannot read batch file: {exc}", code="INVALID_FILE", json_mode=json_mode))
        sys.exit(1)
    except Exception as exc:
        _fail(exc, json_mode)
        return

    click.echo(format_batch([r.to_dict() for r in results], failures, json_mode=json_mode))
    if failures:
        sys.exit(1)


# ---------------------------------------------------------------------------
# resume
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("result_id")
@click.argument("stage", type=click.Choice(_STAGE_CHOICES))
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def resume(ctx: click.Context, result_id: str, stage: str, json_mode: bool) -> None:
    """Recompute STAGE and every later stage for RESULT_ID."""
    try:
        config = _load(ctx)
        pipeline = create_pipeline(config)
        on_event = _progress(json_mode)
        result = _run_cancellable(
            lambda cancel: pipeline.resume_from(
                result_id, stage, on_event=on_event, cancel_event=cancel
            )
        )
    except GenerationCancelledError as exc:
        click.echo(format_error(str(exc), code=exc.code, json_mode=json_mode))
        sys.exit(130)
    except Exception as exc:
        _fail(exc, json_mode)
        return

    click.echo(format_result(result.to_dict(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


def _open_cache(config: PipelineConfig) -> StageCache:
    return StageCache(
        StageCacheConfig(
            enabled=config.cache_enabled,
            ttl_seconds=config.cache_ttl,
            max_size_bytes=config.cache_max_bytes,
        ),
        db_path=config.cache_db_path,
    )


@cli.command()
@click.argument("result_id")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, result_id: str, json_mode: bool) -> None:
    """Show the stored stage history for RESULT_ID."""
    try:
        cache = _open_cache(_load(ctx))
        try:
            result = load_result(cache, result_id)
        finally:
            cache.close()
    except Exception as exc:
        _fail(exc, json_mode)
        return

    if result is None:
        click.echo(format_error(f"No stored generation result for {result_id!r}.", code="NOT_FOUND", json_mode=json_mode))
        sys.exit(1)
    click.echo(format_result(result.to_dict(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# cache-stats
# ---------------------------------------------------------------------------


@cli.command("cache-stats")
@click.option("--cleanup", is_flag=True, help="Remove expired entries first.")
@click.option("--clear", "clear_all", is_flag=True, help="Remove every entry first.")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def cache_stats(ctx: click.Context, cleanup: bool, clear_all: bool, json_mode: bool) -> None:
    """Show stage cache statistics."""
    try:
        cache = _open_cache(_load(ctx))
        try:
            if clear_all:
                cache.clear()
            elif cleanup:
                removed = cache.cleanup()
                if not json_mode:
                    click.echo(f"Removed {removed} expired entries.", err=True)
            stats = cache.stats()
        finally:
            cache.close()
    except Exception as exc:
        _fail(exc, json_mode)
        return

    click.echo(format_cache_stats(stats, json_mode=json_mode))


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@cli.command("config")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def show_config(ctx: click.Context, json_mode: bool) -> None:
    """Show the resolved configuration (API keys redacted)."""
    try:
        config = _load(ctx)
    except Exception as exc:
        _fail(exc, json_mode)
        return
    click.echo(format_response("success", data=config.to_dict(), json_mode=json_mode))


def main() -> None:
    """CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
