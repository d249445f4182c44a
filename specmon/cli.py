"""
specmon - command line interface

Usage:
    specmon list [ROOT] [--json]     discover spec modules and print their cases
    specmon watch [ROOT]             rerun affected specs whenever files change
    specmon cache stats [ROOT]       size of the compiled-module cache
    specmon cache clear [ROOT]       empty the compiled-module cache
    specmon graph [ROOT]             write an HTML graph of spec module imports
"""
import argparse
import asyncio
import json
import sys

from specmon import configure
from specmon.cache import CacheStore, format_size
from specmon.common import get_logger, set_log_level
from specmon.db import DB
from specmon.discovery import SpecDiscoverer
from specmon.watch import PytestRerunner, WatchOrchestrator
from specmon.watcher import SpecWatcher

logger = get_logger(__name__)


def _open_cache(conf) -> CacheStore:
    return CacheStore(DB(conf.datafile_path) if conf.datafile_path else None)


def _discoverer(conf, cache=None) -> SpecDiscoverer:
    return SpecDiscoverer(
        conf.rootdir,
        cache=cache if cache is not None else _open_cache(conf),
        spec_glob=conf.spec_glob,
        max_workers=conf.max_workers,
    )


def command_list(conf, args):
    discoverer = _discoverer(conf)
    try:
        result = asyncio.run(discoverer.discover_async())
    finally:
        discoverer.close()
        if discoverer.cache.db is not None:
            discoverer.cache.db.close()

    if args.json_output:
        print(
            json.dumps(
                {
                    "specs": [spec.to_record() for spec in result.specs],
                    "errors": [
                        {"file": error.relative_source_file, "message": error.message} for error in result.errors
                    ],
                },
                indent=2,
            )
        )
    else:
        for spec in result.specs:
            flags = [
                name
                for name, on in (
                    ("focused", spec.focused),
                    ("skipped", spec.skipped),
                    ("pending", spec.pending),
                    ("dynamic", spec.dynamic),
                    ("compile error", spec.has_compilation_error),
                )
                if on
            ]
            suffix = f"  [{', '.join(flags)}]" if flags else ""
            print(f"{spec.identity.relative_path}:{spec.line or '?'}  {spec.display_name}{suffix}")
        print(f"\n{len(result.specs)} specs")
        for error in result.errors:
            print(f"Error: {error.relative_source_file}: {error.message}", file=sys.stderr)
    return 1 if result.errors else 0


def command_cache(conf, args):
    if conf.datafile_path is None:
        print("Error: the cache is disabled (SPECMON_NO_CACHE)", file=sys.stderr)
        return 1
    cache = _open_cache(conf)
    try:
        if args.cache_command == "clear":
            removed = cache.clear()
            print(f"Cleared {removed} cached module(s) from {conf.datafile}")
        else:
            stats = cache.stats()
            print(f"Cache file: {conf.datafile_path}")
            print(f"Entries:    {stats.entries}")
            print(f"Size:       {format_size(stats.size)}")
    finally:
        cache.db.close()
    return 0


async def _watch(conf, args):
    queue = asyncio.Queue()
    cache = _open_cache(conf)
    discoverer = _discoverer(conf, cache)
    orchestrator = WatchOrchestrator(
        discoverer, rerun=PytestRerunner(conf.rootdir, extra_args=args.pytest_args)
    )
    watcher = SpecWatcher(conf.rootdir, queue, conf.debounce_interval, conf.spec_glob)
    try:
        result = await orchestrator.prime()
        for error in result.errors:
            logger.error("%s: %s", error.relative_source_file, error.message)
        watcher.start()
        await orchestrator.run(queue)
    finally:
        watcher.stop()
        discoverer.close()
        if cache.db is not None:
            cache.db.close()


def command_watch(conf, args):
    try:
        asyncio.run(_watch(conf, args))
    except KeyboardInterrupt:
        print("\nStopped watching.")
    return 0


def command_graph(conf, args):
    from specmon.graph import generate_graph  # pylint: disable=import-outside-toplevel

    try:
        output = generate_graph(conf.rootdir, args.output, conf.spec_glob)
    except ImportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Graph written to {output}")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="specmon",
        description="Discover, cache and watch describe/it spec modules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--spec-glob", dest="spec_glob", help="Spec module file name glob (default: *_spec.py)")
    parser.add_argument("--no-cache", dest="no_cache", action="store_true", default=None, help="Don't use the .specmondata cache")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="Discover and print spec cases")
    list_parser.add_argument("root", nargs="?", default=".", help="Project root (default: current directory)")
    list_parser.add_argument("--json", dest="json_output", action="store_true", help="Output results as JSON")
    list_parser.set_defaults(handler=command_list)

    watch_parser = subparsers.add_parser("watch", help="Rerun affected specs on change")
    watch_parser.add_argument("root", nargs="?", default=".", help="Project root (default: current directory)")
    watch_parser.add_argument(
        "--debounce-ms", dest="debounce_ms", type=int, help="Quiet period before a change is processed (default: 200)"
    )
    watch_parser.add_argument(
        "pytest_args", nargs=argparse.REMAINDER, help="Extra arguments passed to pytest after '--'"
    )
    watch_parser.set_defaults(handler=command_watch)

    cache_parser = subparsers.add_parser("cache", help="Inspect or clear the compiled-module cache")
    cache_parser.add_argument("cache_command", choices=["stats", "clear"])
    cache_parser.add_argument("root", nargs="?", default=".", help="Project root (default: current directory)")
    cache_parser.set_defaults(handler=command_cache)

    graph_parser = subparsers.add_parser("graph", help="Write an HTML graph of spec module imports")
    graph_parser.add_argument("root", nargs="?", default=".", help="Project root (default: current directory)")
    graph_parser.add_argument("--output", default="spec_dependency_graph.html", help="Output file name")
    graph_parser.set_defaults(handler=command_graph)
    return parser


def main(argv=None):
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    pytest_args = getattr(args, "pytest_args", None)
    if pytest_args and pytest_args[0] == "--":
        args.pytest_args = pytest_args[1:]
    conf = configure.from_environment(
        args.root,
        spec_glob=args.spec_glob,
        no_cache=args.no_cache,
        debounce_ms=getattr(args, "debounce_ms", None),
    )
    set_log_level(conf.log_level)
    return args.handler(conf, args)


if __name__ == "__main__":
    sys.exit(main())
