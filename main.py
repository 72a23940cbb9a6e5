"""CLI entrypoint for the research-unit publications pipeline."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from dotenv import load_dotenv

from document_store import SanityDocumentStore
from models import Researcher
from pubmed_cache import CacheCoordinator, LockUnavailableError, RefreshCancelledError, RefreshInProgressError
from publications import (
    cancel_refresh,
    generate_missing_enrichments,
    reclassify_publications,
    refresh,
)
from settings import Settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Harvest, enrich and cache PubMed publications for a research unit")
    commands = parser.add_subparsers(dest="command", required=True)

    refresh_parser = commands.add_parser("refresh", help="Fetch PubMed, enrich new records and write the cache")
    refresh_parser.add_argument("--force", action="store_true", help="Refresh even if the cache is fresh")
    refresh_parser.add_argument("--max-per-researcher", type=int, default=None, help="PubMed results per researcher query")
    refresh_parser.add_argument(
        "--summaries",
        type=int,
        default=None,
        help="Maximum lay summaries to generate this run (0 disables enrichment)",
    )

    summarize_parser = commands.add_parser("summarize", help="Generate lay summaries missing from the cache")
    summarize_parser.add_argument("--limit", type=int, default=5, help="Maximum summaries to generate")

    reclassify_parser = commands.add_parser("reclassify", help="Re-run taxonomy classification on cached records")
    reclassify_parser.add_argument("--pmid", action="append", default=None, help="PMID to reclassify (repeatable)")
    reclassify_parser.add_argument("--limit", type=int, default=None, help="Maximum records to classify")

    commands.add_parser("cancel", help="Ask a running refresh to stop")
    commands.add_parser("status", help="Print cache and lock status")
    return parser.parse_args(argv)


def load_researchers(path: str) -> list[Researcher]:
    """Read researchers from a JSON list (or an object with a "researchers" list)."""
    file_path = Path(path)
    if not file_path.exists():
        raise RuntimeError(f"Researchers file not found: {file_path}")

    data = json.loads(file_path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("researchers") or []
    if not isinstance(data, list):
        raise RuntimeError(f"Researchers file must contain a list: {file_path}")

    researchers = [Researcher.from_dict(item) for item in data if isinstance(item, dict)]
    return [researcher for researcher in researchers if researcher.id]


def build_coordinator(settings: Settings) -> CacheCoordinator:
    return CacheCoordinator(
        SanityDocumentStore.from_env(),
        lock_ttl=settings.cache_lock_ttl,
        max_age=settings.cache_max_age,
    )


def run(args: argparse.Namespace, settings: Settings, coordinator: CacheCoordinator) -> None:
    """Dispatch one CLI command."""
    if args.command == "refresh":
        researchers = load_researchers(settings.researchers_file)
        logging.info("Loaded %s researchers from %s", len(researchers), settings.researchers_file)
        stats = refresh(
            researchers,
            coordinator=coordinator,
            settings=settings,
            max_per_researcher=args.max_per_researcher,
            summaries_per_run=args.summaries,
            force=args.force,
        )
        logging.info("Refresh stats: %s", stats.to_dict())
    elif args.command == "summarize":
        stats = generate_missing_enrichments(args.limit, coordinator=coordinator, settings=settings)
        logging.info("Summary stats: %s", stats.to_dict())
    elif args.command == "reclassify":
        stats = reclassify_publications(args.pmid, args.limit, coordinator=coordinator, settings=settings)
        logging.info("Reclassification stats: %s", stats.to_dict())
    elif args.command == "cancel":
        if cancel_refresh(coordinator):
            logging.info("Cancellation requested")
        else:
            logging.info("No refresh in progress")
    elif args.command == "status":
        doc = coordinator.read()
        if doc is None:
            print(json.dumps({"exists": False}))
            return
        print(json.dumps(
            {
                "exists": True,
                "generatedAt": doc.generated_at,
                "stale": coordinator.is_stale(doc),
                "refreshInProgress": coordinator.is_locked(doc),
                "refreshStartedAt": doc.refresh_started_at,
                "stats": doc.stats.to_dict(),
            },
            indent=2,
        ))


def main(argv: list[str] | None = None) -> None:
    """Initialize config and execute one command."""
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = parse_args(argv)
    settings = Settings.from_env()

    try:
        run(args, settings, build_coordinator(settings))
    except RefreshInProgressError as exc:
        logging.warning("%s", exc)
    except (RefreshCancelledError, LockUnavailableError) as exc:
        logging.error("%s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
