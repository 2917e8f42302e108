"""CLI entrypoint for the conservation paper import pipeline."""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

from errors import PipelineError
from pipeline import RunConfig, RunController
from queries import load_query_set


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Import conservation research papers from CrossRef")
    parser.add_argument(
        "command",
        choices=["collect", "process", "run"],
        nargs="?",
        default="run",
        help=(
            "'collect': sweep CrossRef and cache the candidates. "
            "'process': enrich and store cached candidates. "
            "'run' (default): collect if nothing is cached, then process."
        ),
    )
    parser.add_argument(
        "--mode",
        choices=["backfill", "weekly"],
        default="backfill",
        help="'backfill' (default): historical categorised sweep. 'weekly': recent papers only.",
    )
    parser.add_argument("--target", type=int, default=None, help="Number of unique candidates to collect")
    parser.add_argument("--days", type=int, default=7, help="Look-back window for weekly mode")
    parser.add_argument("--start", type=int, default=0, help="First cached candidate to process")
    parser.add_argument("--limit", type=int, default=None, help="Maximum candidates to process in this batch")
    parser.add_argument("--fresh", action="store_true", help="Discard any cache and checkpoint first")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the duplicate and pre-filter checks without enrichment calls or database writes",
    )
    parser.add_argument("--queries", default=None, help="JSON file with query categories and authors")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RunConfig:
    overrides: dict = {"dry_run": args.dry_run}
    if args.target is not None:
        overrides["target"] = args.target
    if args.queries:
        overrides["query_set"], overrides["authors"] = load_query_set(args.queries)

    if args.mode == "weekly":
        return RunConfig.weekly(days=args.days, **overrides)
    return RunConfig.backfill(**overrides)


def main(argv: list[str] | None = None) -> int:
    """Initialize config and execute the requested command."""
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    controller = RunController(build_config(args))
    try:
        if args.command == "collect":
            if args.fresh:
                controller.checkpoints.clear()
            controller.collect()
        elif args.command == "process":
            if args.fresh:
                logging.warning("--fresh is ignored for 'process'; it would discard the cache to process")
            controller.process(start=args.start, limit=args.limit)
        else:
            controller.run(fresh=args.fresh)
    except PipelineError as exc:
        logging.error("Import failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
