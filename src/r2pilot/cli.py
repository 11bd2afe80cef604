"""CLI entry point for r2pilot."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from prometheus_client import REGISTRY, write_to_textfile

from r2pilot import metrics
from r2pilot.config import DEFAULT_CONFIG_PATH, R2PilotConfig, load_config, validate_config
from r2pilot.engine import TransferEngine
from r2pilot.errors import TransferError
from r2pilot.logging_config import configure_logging
from r2pilot.models import ProgressEvent, SignedUrlMethod, SignedUrlSpec
from r2pilot.progress import ProgressChannel
from r2pilot.transport import utc_now

logger = logging.getLogger("r2pilot")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="r2pilot",
        description="r2pilot - transfer files to and from Cloudflare R2",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to YAML configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--bucket",
        type=str,
        default=None,
        help="Bucket to use (overrides r2.default_bucket)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    parser.add_argument(
        "--metrics-file",
        type=Path,
        default=None,
        help="Write Prometheus metrics to this file when the command finishes",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    files = commands.add_parser("files", help="Upload, download, and manage objects")
    files_cmds = files.add_subparsers(dest="action", required=True)

    upload = files_cmds.add_parser("upload", help="Upload a local file")
    upload.add_argument("file", type=Path, help="Local file to upload")
    upload.add_argument("key", nargs="?", default=None, help="Object key (default: file name)")
    upload.add_argument("--content-type", default=None, help="Content-Type of the object")
    upload.add_argument(
        "--multipart", action="store_true", help="Force a multipart upload regardless of size"
    )
    upload.add_argument("--progress", action="store_true", help="Show progress on stderr")

    download = files_cmds.add_parser("download", help="Download an object")
    download.add_argument("key", help="Object key")
    download.add_argument(
        "dest", type=Path, nargs="?", default=None, help="Local path (default: key's file name)"
    )
    download.add_argument("--progress", action="store_true", help="Show progress on stderr")

    delete = files_cmds.add_parser("delete", help="Delete one or more objects")
    delete.add_argument("keys", nargs="+", help="Object keys")

    ls = files_cmds.add_parser("ls", help="List objects")
    ls.add_argument("--prefix", default="", help="Only list keys starting with this prefix")

    info = files_cmds.add_parser("info", help="Show object metadata")
    info.add_argument("key", help="Object key")

    urls = commands.add_parser("urls", help="Generate presigned URLs")
    urls_cmds = urls.add_subparsers(dest="action", required=True)

    generate = urls_cmds.add_parser("generate", help="Generate a presigned URL")
    generate.add_argument("key", help="Object key")
    generate.add_argument(
        "--method",
        type=str.upper,
        default="GET",
        choices=[m.value for m in SignedUrlMethod],
        help="HTTP method the URL grants (default: GET)",
    )
    generate.add_argument(
        "--expires",
        type=int,
        default=None,
        help="Validity in seconds (default: r2.default_expiration)",
    )
    generate.add_argument("--content-type", default=None, help="Content-Type bound into PUT URLs")
    generate.add_argument(
        "--output", choices=["text", "json"], default="text", help="Output format"
    )

    return parser.parse_args(argv)


def apply_overrides(config: R2PilotConfig, args: argparse.Namespace) -> R2PilotConfig:
    """Return a copy of ``config`` with command-line overrides applied."""
    update = {}
    if args.bucket is not None:
        update["r2"] = config.r2.model_copy(update={"default_bucket": args.bucket})
    logging_update = {}
    if args.log_level is not None:
        logging_update["level"] = args.log_level
    if args.log_format is not None:
        logging_update["format"] = args.log_format
    if logging_update:
        update["logging"] = config.logging.model_copy(update=logging_update)
    if args.metrics_file is not None:
        update["observability"] = config.observability.model_copy(update={"metrics": True})
    return config.model_copy(update=update) if update else config


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _progress_printer(label: str):
    def render(event: ProgressEvent) -> None:
        if event.total_bytes:
            pct = 100 * event.bytes_transferred / event.total_bytes
        else:
            pct = 100.0
        sys.stderr.write(
            f"\r{label}: {_format_size(event.bytes_transferred)} / "
            f"{_format_size(event.total_bytes)} ({pct:.0f}%)"
        )
        sys.stderr.flush()

    return render


async def _files_upload(engine: TransferEngine, args: argparse.Namespace) -> None:
    destination = engine.location(args.key or args.file.name)
    progress = ProgressChannel(callback=_progress_printer("upload")) if args.progress else None
    try:
        result = await engine.upload_file(
            args.file,
            destination,
            content_type=args.content_type,
            force_multipart=args.multipart,
            progress=progress,
        )
    finally:
        if progress is not None:
            progress.close()
            sys.stderr.write("\n")
    detail = f"{result.part_count} parts" if result.strategy == "multipart" else "single PUT"
    print(f"Uploaded {destination} ({_format_size(result.size)}, {detail})")


async def _files_download(engine: TransferEngine, args: argparse.Namespace) -> None:
    source = engine.location(args.key)
    dest = args.dest or Path(Path(args.key).name)
    if dest.is_dir():
        dest = dest / Path(args.key).name
    progress = ProgressChannel(callback=_progress_printer("download")) if args.progress else None
    try:
        result = await engine.download_file(source, dest, progress=progress)
    finally:
        if progress is not None:
            progress.close()
            sys.stderr.write("\n")
    print(f"Downloaded {source} to {dest} ({_format_size(result.size)})")


async def _files_delete(engine: TransferEngine, args: argparse.Namespace) -> None:
    deleted = await engine.delete_many(engine.config.r2.default_bucket, args.keys)
    for key in deleted:
        print(f"Deleted {key}")


async def _files_ls(engine: TransferEngine, args: argparse.Namespace) -> None:
    async for info in engine.list_objects(prefix=args.prefix):
        print(f"{info.last_modified:<26} {info.size:>12} {info.key}")


async def _files_info(engine: TransferEngine, args: argparse.Namespace) -> int:
    location = engine.location(args.key)
    head = await engine.head(location)
    if head is None:
        print(f"Not found: {location}", file=sys.stderr)
        return 1
    print(f"Key:           {head.key}")
    print(f"Size:          {head.size} ({_format_size(head.size)})")
    print(f"Content-Type:  {head.content_type}")
    print(f"ETag:          {head.etag}")
    print(f"Last-Modified: {head.last_modified}")
    return 0


def _urls_generate(engine: TransferEngine, args: argparse.Namespace) -> None:
    location = engine.location(args.key)
    expires = args.expires if args.expires is not None else engine.config.r2.default_expiration
    spec = engine.check_signed_url_spec(
        SignedUrlSpec(
            method=SignedUrlMethod(args.method),
            bucket=location.bucket,
            key=location.key,
            expires_in=expires,
            content_type=args.content_type,
        )
    )
    now = utc_now()
    url = engine.generate_signed_url(spec, now=now)
    if args.output == "json":
        payload = {
            "url": url,
            "method": spec.method.value,
            "bucket": spec.bucket,
            "key": spec.key,
            "expires_in": spec.expires_in,
            "expires_at": spec.expires_at(int(now.timestamp())),
        }
        print(json.dumps(payload))
    else:
        print(url)


async def run(config: R2PilotConfig, args: argparse.Namespace) -> int:
    """Run the selected command against a fresh TransferEngine.

    Returns:
        The process exit status.
    """
    async with TransferEngine(config) as engine:
        if args.command == "urls":
            _urls_generate(engine, args)
            return 0
        if args.action == "upload":
            await _files_upload(engine, args)
        elif args.action == "download":
            await _files_download(engine, args)
        elif args.action == "delete":
            await _files_delete(engine, args)
        elif args.action == "ls":
            await _files_ls(engine, args)
        elif args.action == "info":
            return await _files_info(engine, args)
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the r2pilot CLI.

    Loads configuration, applies CLI overrides, runs the command, and
    exits non-zero with the error message on any transfer failure.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    # Use a basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = apply_overrides(load_config(args.config), args)
        validate_config(config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    configure_logging(level=config.logging.level, fmt=config.logging.format)
    if config.observability.metrics:
        metrics.init_metrics()

    try:
        status = asyncio.run(run(config, args))
    except TransferError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        status = 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        status = 130
    finally:
        if args.metrics_file is not None:
            write_to_textfile(str(args.metrics_file), REGISTRY)

    sys.exit(status)


if __name__ == "__main__":
    main()
