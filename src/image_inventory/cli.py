"""Command line entry point.

Usage
-----
image-inventory analyze alpine:3.20 debian:12
image-inventory cache list
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Optional, Sequence

from . import __version__
from .config import AnalysisConfig, ProgressOrdering
from .exceptions import InventoryError
from .inventory import analyze_images, cache_path, clear_cache, list_cached_images, remove_cached_image

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Send library logs to stderr as ``[LEVEL] message``."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    root = logging.getLogger("image_inventory")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="image-inventory",
        description="Inventory installed packages and their on-disk size in container images.",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = ap.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Analyze one or more images.")
    analyze.add_argument("images", nargs="+", help="Image references, e.g. alpine:3.20")
    analyze.add_argument("--no-cache", action="store_true", help="Do not read or write the local cache.")
    analyze.add_argument("--use-syft", action="store_true", help="Use syft instead of native parsing.")
    analyze.add_argument("--daemon", action="store_true", help="Try the local Docker daemon before the registry.")
    analyze.add_argument("--concurrency", type=int, default=None, help="Images analyzed at once.")
    analyze.add_argument("--fail-fast", action="store_true", help="Abort with an error if any image fails.")
    analyze.add_argument(
        "--ordered-progress",
        action="store_true",
        help="Print progress image by image instead of interleaved.",
    )
    analyze.add_argument("--platform", default=None, help="Platform for multi-arch images (os/arch[/variant]).")

    cache = sub.add_parser("cache", help="Manage the local image cache.")
    cache_sub = cache.add_subparsers(dest="cache_command", required=True)
    cache_sub.add_parser("list", help="List cached images.")
    cache_sub.add_parser("clear", help="Remove all cached images.")
    rm = cache_sub.add_parser("rm", help="Remove one cached image.")
    rm.add_argument("image", help="Reference exactly as it was analyzed.")
    cache_sub.add_parser("path", help="Show the cache directory.")

    return ap.parse_args(argv)


def _build_config(args: argparse.Namespace) -> AnalysisConfig:
    overrides = {
        "use_cache": not args.no_cache,
        "use_syft": args.use_syft,
        "use_daemon": args.daemon,
        "fail_fast": args.fail_fast,
    }
    if args.concurrency is not None:
        overrides["concurrency"] = args.concurrency
    if args.ordered_progress:
        overrides["progress_ordering"] = ProgressOrdering.ORDERED
    config = AnalysisConfig.from_env(**overrides)
    if args.platform:
        config.registry = replace(config.registry, platform=args.platform)
    return config


def _run_analyze(args: argparse.Namespace) -> int:
    config = _build_config(args)
    results = asyncio.run(analyze_images(args.images, config))
    print(json.dumps([r.to_dict() for r in results], indent=2))

    failed = [r for r in results if not r.ok]
    for result in failed:
        print(f"error: {result.image}: {result.error}", file=sys.stderr)
    return 1 if failed else 0


def _run_cache(args: argparse.Namespace) -> int:
    if args.cache_command == "list":
        entries = list_cached_images()
        if not entries:
            print("Cache is empty")
            return 0
        print(f"{'IMAGE':<50} {'SIZE':>10} CACHED AT")
        print("-" * 80)
        total = 0
        for entry in entries:
            total += entry.size_bytes
            size_mb = entry.size_bytes / (1024 * 1024)
            print(f"{entry.image_ref[:50]:<50} {size_mb:8.1f} MB {entry.cached_at:%Y-%m-%d %H:%M}")
        print("-" * 80)
        print(f"Total: {len(entries)} images, {total / (1024 * 1024):.1f} MB")
    elif args.cache_command == "clear":
        clear_cache()
        print("Cache cleared")
    elif args.cache_command == "rm":
        if remove_cached_image(args.image):
            print(f"Removed {args.image} from cache")
        else:
            print(f"{args.image} is not cached")
    elif args.cache_command == "path":
        print(cache_path())
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.verbose)
    try:
        if args.command == "analyze":
            return _run_analyze(args)
        return _run_cache(args)
    except (InventoryError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
