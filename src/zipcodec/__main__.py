"""Command-line interface for zipcodec."""

from __future__ import annotations

import argparse
import logging
import sys
import warnings
from pathlib import Path

from . import __version__, format_size
from .archive import ExtractOptions, extract
from .exceptions import ZipCodecError
from .reader import ZipReader
from .writer import ZipWriter

logger = logging.getLogger("zipcodec")


def setup_logging(verbose: bool) -> None:
    """Send zipcodec log records to stderr."""
    logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO if verbose else logging.WARNING)


def progress_callback(filename: str, done: int, total: int) -> None:
    """Print progress for current file."""
    if total > 0:
        pct = (done / total) * 100
        bar_width = 30
        filled = int(bar_width * done / total)
        bar = "█" * filled + "░" * (bar_width - filled)
        print(f"\r  {bar} {pct:5.1f}% {Path(filename).name}", end="", flush=True)
        if done >= total:
            print()


def _add_path(zf: ZipWriter, path: Path, arcname: str, compress: bool, force_zip64: bool) -> None:
    """Add a file, or a directory and everything below it."""
    if path.is_symlink():
        warnings.warn(f"Skipping symlink: '{path}'", stacklevel=2)
        return
    if not path.is_dir():
        zf.add_file(path, arcname, compress=compress, force_zip64=force_zip64)
        return

    zf.add_empty_directory(arcname, mtime=path.stat().st_mtime)
    for item in sorted(path.iterdir()):
        _add_path(zf, item, f"{arcname}/{item.name}", compress, force_zip64)


def cmd_pack(args: argparse.Namespace) -> int:
    """Handle the pack command."""
    output = Path(args.output)
    paths = [Path(p) for p in args.paths]

    # Validate inputs
    for p in paths:
        if not p.exists():
            print(f"Error: '{p}' does not exist", file=sys.stderr)
            return 1

    compress = not args.store
    logger.info("Creating archive: %s", output)
    logger.info("Compression: %s", "STORED" if args.store else f"DEFLATE level {args.level}")

    try:
        with ZipWriter(
            output,
            compresslevel=args.level,
            on_progress=progress_callback if args.verbose else None,
        ) as zf:
            for p in paths:
                _add_path(zf, p, p.resolve().name, compress, args.zip64)
            zf.end(comment=args.comment, force_zip64=args.zip64)
    except (ZipCodecError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Created {output}: {format_size(output.stat().st_size)}, {len(zf.entries)} entries")
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    """Handle the extract command."""
    options = ExtractOptions(overwrite=args.overwrite, source_path=args.source_path)
    try:
        extract(args.archive, args.directory, options)
    except (ZipCodecError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """Handle the list command."""
    try:
        with ZipReader.open(args.archive) as zf:
            total = 0
            for entry in zf:
                modified = entry.last_modified().strftime("%Y-%m-%d %H:%M")
                print(f"{entry.uncompressed_size:>12}  {modified}  {entry.file_name}")
                total += entry.uncompressed_size
            print(f"{format_size(total):>12}  {zf.entry_count} entries")
            if zf.comment:
                print(zf.comment)
    except (ZipCodecError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog="zipcodec",
        description="Create, list and extract standard ZIP archives.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log progress to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Pack command
    pack_parser = subparsers.add_parser(
        "pack",
        help="Create a ZIP archive",
        description="Create a ZIP archive from files and directories.",
    )
    pack_parser.add_argument(
        "-o", "--output",
        required=True,
        help="Output archive path (e.g., backup.zip)",
    )
    pack_parser.add_argument(
        "paths",
        nargs="+",
        help="Files and directories to add",
    )
    pack_parser.add_argument(
        "-0", "--store",
        action="store_true",
        help="Store without compression",
    )
    pack_parser.add_argument(
        "-l", "--level",
        type=int,
        default=6,
        choices=range(1, 10),
        metavar="1-9",
        help="Compression level (default: 6)",
    )
    pack_parser.add_argument(
        "--comment",
        help="Archive comment (CP437 characters only)",
    )
    pack_parser.add_argument(
        "--zip64",
        action="store_true",
        help="Always write ZIP64 records",
    )

    # Extract command
    extract_parser = subparsers.add_parser(
        "extract",
        help="Extract a ZIP archive",
        description="Extract a ZIP archive into a directory.",
    )
    extract_parser.add_argument("archive", help="Archive to extract")
    extract_parser.add_argument(
        "-d", "--directory",
        required=True,
        help="Target directory",
    )
    extract_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Remove the target directory first",
    )
    extract_parser.add_argument(
        "--source-path",
        help="Only extract entries below this prefix, stripping it",
    )

    # List command
    list_parser = subparsers.add_parser(
        "list",
        help="List the entries of a ZIP archive",
    )
    list_parser.add_argument("archive", help="Archive to list")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "pack":
        return cmd_pack(args)
    if args.command == "extract":
        return cmd_extract(args)
    if args.command == "list":
        return cmd_list(args)

    return 0


if __name__ == "__main__":
    sys.exit(main())
