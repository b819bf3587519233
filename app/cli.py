from __future__ import annotations

import argparse
import mimetypes
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from .core.config import get_settings
from .core.logging import configure_logging
from .core.tools import check_tools
from .ingest.checksum import checksum_hex, compute_checksum
from .ingest.metadata import MetadataExtractor
from .ingest.thumbnails import ThumbnailGenerator

console = Console()


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "check", False):
        _run_environment_check()
        return

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI.

    Returns:
        The argument parser.
    """
    parser = argparse.ArgumentParser(description="Pictor ingest developer CLI")
    parser.add_argument("--check", action="store_true", help="Validate presence of ffprobe/rclone binaries")

    subparsers = parser.add_subparsers(dest="command")

    probe_parser = subparsers.add_parser("probe", help="Extract metadata from a local file and print it as JSON")
    probe_parser.add_argument("--file", required=True, help="Path to the source media file")
    probe_parser.add_argument("--content-type", default=None, help="Override the guessed MIME type")
    probe_parser.set_defaults(func=_cmd_probe)

    checksum_parser = subparsers.add_parser("checksum", help="Print the SHA-256 content checksum of a file")
    checksum_parser.add_argument("--file", required=True, help="Path to the source file")
    checksum_parser.set_defaults(func=_cmd_checksum)

    thumbs_parser = subparsers.add_parser("thumbs", help="Render the thumbnail set for an image")
    thumbs_parser.add_argument("--file", required=True, help="Path to the source image")
    thumbs_parser.add_argument("--out", default="thumbnails", help="Directory to write the rendered thumbnails to")
    thumbs_parser.set_defaults(func=_cmd_thumbs)

    worker_parser = subparsers.add_parser("worker", help="Run an rq worker over the priority queues")
    worker_parser.add_argument(
        "--queues",
        nargs="*",
        default=None,
        help="Priorities or queue names to listen on (default: all, highest priority first)",
    )
    worker_parser.add_argument("--burst", action="store_true", help="Exit once the queues are drained")
    worker_parser.set_defaults(func=_cmd_worker)
    return parser


def _require_file(raw: str) -> Path:
    path = Path(raw).expanduser().resolve()
    if not path.is_file():
        console.print(f"[red]File not found: {path}[/]")
        sys.exit(2)
    return path


def _cmd_probe(args: argparse.Namespace) -> None:
    """Extract metadata from a local file and print it as JSON.

    Args:
        args: The command-line arguments.
    """
    media_path = _require_file(args.file)
    content_type = args.content_type or mimetypes.guess_type(media_path.name)[0]
    settings = get_settings()
    extractor = MetadataExtractor(ffprobe_timeout_s=settings.ffprobe_timeout_s)
    with media_path.open("rb") as stream:
        metadata = extractor.extract(stream, media_path.name, content_type, media_path.stat().st_size)
    console.print_json(data=metadata.as_dict(), default=str)


def _cmd_checksum(args: argparse.Namespace) -> None:
    media_path = _require_file(args.file)
    with media_path.open("rb") as stream:
        digest = compute_checksum(stream)
    console.print(f"{checksum_hex(digest)}  {media_path.name}")


def _cmd_thumbs(args: argparse.Namespace) -> None:
    """Render the thumbnail set for an image and write the files to ``--out``.

    Args:
        args: The command-line arguments.
    """
    media_path = _require_file(args.file)
    out_dir = Path(args.out).expanduser().resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    with media_path.open("rb") as stream:
        generated = ThumbnailGenerator().generate(stream)
    if not generated:
        console.print("[red]No thumbnails could be rendered from this file.[/]")
        sys.exit(3)

    table = Table(title=f"Thumbnails for {media_path.name}")
    table.add_column("kind")
    table.add_column("size")
    table.add_column("bytes", justify="right")
    table.add_column("path")
    for kind, thumb in generated.items():
        target = out_dir / f"{media_path.stem}_{kind}{thumb.extension}"
        target.write_bytes(thumb.data)
        table.add_row(kind, f"{thumb.width}x{thumb.height}", str(len(thumb.data)), str(target))
    console.print(table)


def _cmd_worker(args: argparse.Namespace) -> None:
    """Start an rq worker that drains the queues in priority order.

    Args:
        args: The command-line arguments.
    """
    from rq import Worker

    from .core.jobs import PRIORITY_ORDER, RQJobBackend, get_job_backend

    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.json_logs)
    backend = get_job_backend()
    if not isinstance(backend, RQJobBackend):
        console.print("[red]The worker requires PICTOR_JOB_BACKEND=rq.[/]")
        sys.exit(1)

    queues = backend.ordered_queues()
    if args.queues:
        wanted = {backend.parse_queue_name(name) for name in args.queues}
        queues = [backend.queues[priority] for priority in PRIORITY_ORDER if priority in wanted]

    console.print(f"[dim]Listening on {', '.join(queue.name for queue in queues)}[/]")
    worker = Worker(queues, connection=backend.connection)
    worker.work(with_scheduler=True, burst=args.burst)


def _run_environment_check() -> None:
    """Check for the presence of optional external binaries."""
    results = check_tools()

    console.rule("[bold]Environment Check")
    for label, ok in results.items():
        console.print(f"[bold]{label}[/]: {'✅' if ok else '❌'}")

    if not all(results.values()):
        console.print("[yellow]Some tools are missing. Video metadata or the rclone backend will be unavailable.[/]")
        sys.exit(1)
    console.print("[green]Environment looks good![/]")


if __name__ == "__main__":
    main()
