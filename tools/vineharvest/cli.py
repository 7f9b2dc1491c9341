"""CLI entry-point for the Vine archive harvester."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import LEGACY_HOSTS, MIRROR_HOST, ArchiveConfig, HarvesterConfig, RewriteConfig, S3Config
from .errors import HarvestError
from .harvester import Harvester
from .ids import user_ids_from_lines, user_ids_from_listing
from .storage import open_storage, parse_location

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )
    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("s3transfer").setLevel(logging.WARNING)


def _print_stats(stats: dict) -> None:
    table = Table(title="Harvest Summary", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, val in stats.items():
        table.add_row(key.replace("_", " ").capitalize(), str(val))
    console.print(table)


def _fail(message: str) -> NoReturn:
    console.print(f"[red]✗[/red] {message}")
    sys.exit(1)


@click.group()
@click.option("--s3-endpoint", envvar="S3_ENDPOINT", default=None, help="S3/R2 endpoint URL")
@click.option("--s3-access-key", envvar="AWS_ACCESS_KEY_ID", default=None, help="S3 access key")
@click.option("--s3-secret-key", envvar="AWS_SECRET_ACCESS_KEY", default=None, help="S3 secret key")
@click.option("--s3-region", envvar="AWS_REGION", default="auto", show_default=True, help="S3 region (placeholder for R2)")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, **kwargs: Any) -> None:
    """Vine Archive Harvester – rebuild Vine users and posts from archive JSON.

    INPUT and OUTPUT locations may be local paths or s3://bucket/prefix URIs;
    each selects its storage backend independently.
    """
    _setup_logging(bool(kwargs.pop("verbose")))
    ctx.ensure_object(dict)
    ctx.obj["s3_cfg"] = S3Config(
        endpoint=kwargs["s3_endpoint"],
        access_key=kwargs["s3_access_key"],
        secret_key=kwargs["s3_secret_key"],
        region=kwargs["s3_region"],
    )


def _archive_options(f: Any) -> Any:
    options = [
        click.option("--workers", default=32, show_default=True, type=int, help="Concurrent workers per stage"),
        click.option("--rate", default=10.0, show_default=True, type=float, help="Global request ceiling (req/s, 0 = unlimited)"),
        click.option("--timeout", default=15.0, show_default=True, type=float, help="Per-request timeout in seconds"),
        click.option("--download-media", is_flag=True, help="Also download referenced media files"),
        click.option("--limit", default=0, type=int, help="Max slugs / users per run (0 = all)"),
        click.option("--profile-base", default=ArchiveConfig.profile_base, show_default=True, help="Base URL for profile JSON"),
        click.option("--post-base", default=ArchiveConfig.post_base, show_default=True, help="Base URL for post JSON"),
        click.option("--mirror-host", default=MIRROR_HOST, show_default=True, help="Replacement media host"),
        click.option("--legacy-host", "legacy_hosts", multiple=True, help="Legacy host to rewrite (repeatable)"),
        click.option("--no-progress", is_flag=True, help="Disable progress bars"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _make_config(ctx: click.Context, input: str, output: str, **kw: Any) -> HarvesterConfig:
    return HarvesterConfig(
        input=input,
        output=output,
        s3=ctx.obj["s3_cfg"],
        archive=ArchiveConfig(
            profile_base=kw["profile_base"],
            post_base=kw["post_base"],
            rate_limit=kw["rate"],
            timeout=kw["timeout"],
        ),
        rewrite=RewriteConfig(
            legacy_hosts=tuple(kw["legacy_hosts"]) or LEGACY_HOSTS,
            mirror_host=kw["mirror_host"],
        ),
        workers=kw["workers"],
        download_media=kw["download_media"],
        poll_interval=kw.get("loop_every", 0.0),
        limit=kw["limit"],
        input_suffix=kw.get("input_suffix", ".txt"),
        show_progress=not kw["no_progress"],
    )


def _open_harvester(cfg: HarvesterConfig) -> Harvester:
    try:
        return Harvester(cfg)
    except HarvestError as exc:
        _fail(f"Cannot start: {exc}")


def _parse_listing(raw: bytes) -> list[str]:
    """A JSON user list, or one id / vine.co/u/<id> URL per line."""
    text = raw.decode("utf-8", errors="replace").lstrip("\ufeff")
    if text.lstrip().startswith(("[", "{")):
        return user_ids_from_listing(json.loads(text))
    return user_ids_from_lines(text)


# ─── Commands ────────────────────────────────────────────────────


@cli.command()
@click.argument("input")
@click.argument("output")
@_archive_options
@click.option("--loop-every", default=0.0, type=float, help="Repeat the harvest every N seconds (0 = run once)")
@click.option("--input-suffix", default=".txt", show_default=True, help="Only scan input files with this suffix ('' = all)")
@click.pass_context
def run(ctx: click.Context, input: str, output: str, **kw: Any) -> None:
    """Scan INPUT for vine.co links, then harvest posts and profiles into OUTPUT.

    Example: vine-harvester run vine_tweets/ s3://vine-archive/harvest --workers 64
    """
    cfg = _make_config(ctx, input, output, **kw)
    with _open_harvester(cfg) as h:
        console.print(f"[bold]Harvesting [cyan]{input}[/cyan] → [cyan]{output}[/cyan]...[/bold]")
        try:
            h.run()
        except KeyboardInterrupt:
            h.stop()
            console.print("[yellow]Interrupted[/yellow]")
        except HarvestError as exc:
            _print_stats(h.state.stats.as_dict())
            _fail(str(exc))
        _print_stats(h.state.stats.as_dict())


@cli.command()
@click.argument("input")
@click.argument("output")
@click.option("--workers", default=8, show_default=True, type=int, help="Concurrent source readers")
@click.option("--input-suffix", default=".txt", show_default=True, help="Only scan input files with this suffix ('' = all)")
@click.pass_context
def scan(ctx: click.Context, input: str, output: str, workers: int, input_suffix: str) -> None:
    """Scan INPUT for Vine slugs and write them to OUTPUT/vine_slugs.txt.

    Example: vine-harvester scan s3://corpus/vine_tweets ./out
    """
    cfg = HarvesterConfig(
        input=input, output=output, s3=ctx.obj["s3_cfg"], workers=workers, input_suffix=input_suffix
    )
    with _open_harvester(cfg) as h:
        try:
            slugs = h.scan()
            h.write_slugs(slugs)
        except HarvestError as exc:
            _fail(str(exc))
        console.print(f"[green]✓[/green] Collected {len(slugs)} unique slugs")


@cli.command()
@click.argument("listing")
@click.argument("output")
@_archive_options
@click.pass_context
def users(ctx: click.Context, listing: str, output: str, **kw: Any) -> None:
    """Harvest the users listed in LISTING.

    LISTING is a JSON array of ids or user objects, or a text file with one
    numeric id or vine.co/u/<id> URL per line.

    Example: vine-harvester users profiles.json ./out --download-media
    """
    try:
        loc = parse_location(listing)
        if loc.is_s3:
            store = open_storage(f"s3://{loc.bucket}", ctx.obj["s3_cfg"])
            raw = store.read(loc.prefix.rstrip("/"))
        else:
            with open(listing, "rb") as fh:
                raw = fh.read()
        user_ids = _parse_listing(raw)
    except (OSError, ValueError, HarvestError) as exc:
        _fail(f"Cannot read {listing}: {exc}")
    if not user_ids:
        _fail(f"No user IDs found in {listing}")
    console.print(f"Loaded {len(user_ids)} user IDs from {listing}")

    cfg = _make_config(ctx, listing, output, **kw)
    with _open_harvester(cfg) as h:
        try:
            h.harvest_users(user_ids)
        except KeyboardInterrupt:
            h.stop()
            console.print("[yellow]Interrupted[/yellow]")
        _print_stats(h.state.stats.as_dict())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
