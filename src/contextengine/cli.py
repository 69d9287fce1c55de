"""Context Engine CLI.

Usage:
    contextengine ingest seed.yaml more.json    # Validate and load seed files
    contextengine query --tag security --limit 5
    contextengine get <id>
    contextengine similar <id> --top-k 3
    contextengine stats
    contextengine enhance "how do I validate input?"
    contextengine verify                        # Audit and repair indexes

Configuration comes from ``--config`` (YAML) or ``CONTEXT_ENGINE_*``
environment variables. With the in-process backend every invocation starts
empty, so pass ``--seed`` files to query against them.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from .config import EngineConfig
from .errors import ContextEngineError
from .interfaces import ScoredContext
from .services import RetrievalService


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _scored(results: list[ScoredContext]) -> list[dict]:
    return [{"score": round(r.score, 4), **r.record.to_dict()} for r in results]


def load_config(args: argparse.Namespace) -> EngineConfig:
    """Build the engine configuration for a command."""
    if getattr(args, "config", None):
        config = EngineConfig.from_file(args.config)
    else:
        config = EngineConfig.from_env()
    config.seed_paths = list(config.seed_paths) + list(getattr(args, "seed", None) or [])
    return config


async def cmd_ingest(service: RetrievalService, args: argparse.Namespace) -> int:
    """Load seed files into the store."""
    summary = await service.ingest_seed_files(args.files, default_language=args.language)
    _print_json({
        "total": summary.total,
        "ingested": summary.ingested,
        "invalid": summary.invalid,
        "errors": summary.error_details,
    })
    return 0 if summary.invalid == 0 else 2


async def cmd_query(service: RetrievalService, args: argparse.Namespace) -> int:
    result = await service.query(
        kinds=args.kind,
        tags=args.tag,
        domain_category=args.category,
        text=args.text,
        limit=args.limit,
        offset=args.offset,
        match=args.match,
    )
    _print_json({
        "total": result.total,
        "offset": result.offset,
        "limit": result.limit,
        "has_more": result.has_more,
        "results": _scored(result.results),
    })
    return 0


async def cmd_get(service: RetrievalService, args: argparse.Namespace) -> int:
    record = await service.get(args.id)
    _print_json(record.to_dict())
    return 0


async def cmd_similar(service: RetrievalService, args: argparse.Namespace) -> int:
    results = await service.similar(args.id, top_k=args.top_k)
    _print_json(_scored(results))
    return 0


async def cmd_stats(service: RetrievalService, args: argparse.Namespace) -> int:
    _print_json(await service.stats())
    return 0


async def cmd_enhance(service: RetrievalService, args: argparse.Namespace) -> int:
    enhanced = await service.enhance(args.message, limit=args.limit)
    print(enhanced.text)
    return 0


async def cmd_verify(service: RetrievalService, args: argparse.Namespace) -> int:
    repaired = await service.verify()
    _print_json({"repaired": repaired})
    return 0


COMMANDS = {
    "ingest": cmd_ingest,
    "query": cmd_query,
    "get": cmd_get,
    "similar": cmd_similar,
    "stats": cmd_stats,
    "enhance": cmd_enhance,
    "verify": cmd_verify,
}


async def run_command(args: argparse.Namespace) -> int:
    """Start a service, run one command against it and stop it."""
    config = load_config(args)
    try:
        async with RetrievalService(config) as service:
            return await COMMANDS[args.command](service, args)
    except (ContextEngineError, FileNotFoundError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contextengine",
        description="Context Engine - store and retrieve knowledge snippets",
    )
    parser.add_argument("--config", "-c", type=str, default=None,
                        help="YAML configuration file (default: environment)")
    parser.add_argument("--log-level", type=str, default="warning",
                        choices=["debug", "info", "warning", "error"])
    parser.add_argument("--seed", action="append", default=[], metavar="FILE",
                        help="Seed file to ingest at startup (repeatable)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ingest
    ingest_parser = subparsers.add_parser("ingest", help="Load YAML/JSON seed files")
    ingest_parser.add_argument("files", nargs="+")
    ingest_parser.add_argument("--language", type=str, default=None,
                               help="Language for entries that do not name one")

    # query
    query_parser = subparsers.add_parser("query", help="Filtered, ranked query")
    query_parser.add_argument("--kind", action="append", default=None)
    query_parser.add_argument("--tag", action="append", default=None)
    query_parser.add_argument("--category", type=str, default=None)
    query_parser.add_argument("--text", type=str, default=None)
    query_parser.add_argument("--limit", type=int, default=None)
    query_parser.add_argument("--offset", type=int, default=0)
    query_parser.add_argument("--match", choices=["all", "any"], default="all")

    # get
    get_parser = subparsers.add_parser("get", help="Show one context")
    get_parser.add_argument("id")

    # similar
    similar_parser = subparsers.add_parser("similar", help="Contexts similar to one")
    similar_parser.add_argument("id")
    similar_parser.add_argument("--top-k", type=int, default=5)

    # stats
    subparsers.add_parser("stats", help="Counts per kind, tag and category")

    # enhance
    enhance_parser = subparsers.add_parser(
        "enhance", help="Attach relevant contexts to a message"
    )
    enhance_parser.add_argument("message")
    enhance_parser.add_argument("--limit", type=int, default=3)

    # verify
    subparsers.add_parser("verify", help="Audit and repair index consistency")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
