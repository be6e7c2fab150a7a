import asyncio
import contextlib
import signal
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from couchstream.core.models import PipelineResult
from couchstream.errors import EXIT_CONFIG, ConfigurationError, ReplicationError, worst_exit_code
from couchstream.logs import configure_logging
from couchstream.orchestration import build_checkpoint_store, merge_stats, open_pipeline, run_pipelines
from couchstream.orchestration.wiring import build_source
from couchstream.settings import PipelineSettings, Settings, load_settings

console = Console()

config_option = click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(dir_okay=False),
    envvar="COUCHSTREAM_CONFIG",
    help="TOML settings file",
)


def _load(config_path: str) -> Settings:
    try:
        return load_settings(config_path)
    except ConfigurationError as e:
        console.print(f"[red]configuration error:[/] {escape(str(e))}")
        sys.exit(EXIT_CONFIG)


def _select(settings: Settings, name: str | None) -> list[PipelineSettings]:
    if name is None:
        return list(settings.pipelines)
    try:
        return [settings.pipeline(name)]
    except ConfigurationError as e:
        raise click.BadParameter(str(e), param_hint="--pipeline") from e


@click.group()
def cli() -> None:
    """couchstream: replicate CouchDB change feeds into MongoDB."""


@cli.command("run")
@config_option
@click.option("--once", is_flag=True, default=False, help="Stop once every feed is caught up")
def run_cmd(config_path: str, once: bool) -> None:
    """Run every configured pipeline until SIGINT/SIGTERM (or caught up with --once)."""
    settings = _load(config_path)
    configure_logging(settings.log_level, settings.log_format)

    try:
        results = asyncio.run(_run_all(settings, follow=False if once else None))
    except ConfigurationError as e:
        console.print(f"[red]configuration error:[/] {escape(str(e))}")
        sys.exit(EXIT_CONFIG)

    _print_summary(results)
    sys.exit(worst_exit_code(r.error for r in results))


async def _run_all(settings: Settings, follow: bool | None) -> list[PipelineResult]:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # not available on every platform's event loop
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        async with contextlib.AsyncExitStack() as stack:
            pipelines = [
                await stack.enter_async_context(open_pipeline(ps, follow=follow))
                for ps in settings.pipelines
            ]
            return await run_pipelines(pipelines, stop)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)


def _print_summary(results: list[PipelineResult]) -> None:
    table = Table(title="couchstream run summary")
    table.add_column("pipeline")
    table.add_column("status")
    for name in ("admitted", "applied", "skipped", "dead-lettered", "failed"):
        table.add_column(name, justify="right")
    table.add_column("checkpoint")

    for r in results:
        s = r.stats
        style = "green" if r.ok else "red"
        table.add_row(
            escape(r.source_key),
            f"[{style}]{r.status}[/]",
            f"{s.admitted:,}",
            f"{s.applied:,}",
            f"{s.skipped:,}",
            f"{s.dead_lettered:,}",
            f"{s.failed:,}",
            escape(r.last_checkpoint or "-"),
        )
    if len(results) > 1:
        total = merge_stats(results)
        table.add_row(
            "[bold]total[/]",
            "",
            f"{total.admitted:,}",
            f"{total.applied:,}",
            f"{total.skipped:,}",
            f"{total.dead_lettered:,}",
            f"{total.failed:,}",
            "",
        )
    console.print(table)

    for r in results:
        if r.error is None:
            continue
        category = getattr(r.error, "category", type(r.error).__name__)
        console.print(
            f"[red]{escape(r.source_key)}[/] {category} at checkpoint "
            f"{escape(r.last_checkpoint or '-')}: {escape(str(r.error))}"
        )


@cli.group("checkpoint")
def checkpoint_group() -> None:
    """Inspect or re-seed stored checkpoints."""


@checkpoint_group.command("show")
@config_option
@click.option("--pipeline", "pipeline_name", default=None, help="Only this pipeline")
def checkpoint_show_cmd(config_path: str, pipeline_name: str | None) -> None:
    """Print the stored resume token of each pipeline."""
    settings = _load(config_path)
    selected = _select(settings, pipeline_name)

    async def read_all() -> list[tuple[PipelineSettings, str | None]]:
        rows = []
        for ps in selected:
            store = build_checkpoint_store(ps)
            try:
                rows.append((ps, await store.get(ps.get_checkpoint_key())))
            finally:
                await store.aclose()
        return rows

    try:
        rows = asyncio.run(read_all())
    except ReplicationError as e:
        console.print(f"[red]{e.category}:[/] {escape(str(e))}")
        sys.exit(e.exit_code)

    table = Table(title="checkpoints")
    table.add_column("pipeline")
    table.add_column("backend")
    table.add_column("key")
    table.add_column("token")
    for ps, token in rows:
        table.add_row(ps.display_name, ps.checkpoint_backend, ps.get_checkpoint_key(), token or "[dim]none[/]")
    console.print(table)


@checkpoint_group.command("reseed")
@config_option
@click.option("--pipeline", "pipeline_name", required=True, help="Pipeline to re-seed")
@click.option("--token", default=None, help="Token to store")
@click.option("--now", "use_now", is_flag=True, default=False, help="Store the source's current token")
def checkpoint_reseed_cmd(config_path: str, pipeline_name: str, token: str | None, use_now: bool) -> None:
    """Overwrite a pipeline's checkpoint, e.g. after the source rejected it.

    Changes between the old and the new token are not replicated.
    """
    if (token is None) == (not use_now):
        raise click.UsageError("Pass exactly one of --token or --now")

    settings = _load(config_path)
    ps = _select(settings, pipeline_name)[0]

    async def current_token() -> str:
        source = build_source(ps)
        try:
            return await source.current_token()
        finally:
            await source.aclose()

    async def reseed() -> tuple[str | None, str]:
        new_token = await current_token() if use_now else str(token)
        store = build_checkpoint_store(ps)
        try:
            old = await store.get(ps.get_checkpoint_key())
            await store.put(ps.get_checkpoint_key(), new_token)
        finally:
            await store.aclose()
        return old, new_token

    try:
        old, new = asyncio.run(reseed())
    except ReplicationError as e:
        console.print(f"[red]{e.category}:[/] {escape(str(e))}")
        sys.exit(e.exit_code)

    console.print(f"[bold]{ps.display_name}[/]: checkpoint {old or 'none'} → [green]{new}[/]")


if __name__ == "__main__":
    cli()
