"""Entry point for the channel discovery service.

Usage:
    python -m channel_discovery.main serve                      # run the HTTP API
    python -m channel_discovery.main search "home espresso" -n 30
    python -m channel_discovery.main search cooking -n 50 --filters '{"exclude_brands": true}'
    python -m channel_discovery.main --config my.yaml serve      # use custom config
    python -m channel_discovery.main --dry-run search cooking    # validate config only
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from channel_discovery.config import PipelineConfig, load_config
from channel_discovery.jobs import JobManager

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 2.0


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the service."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="YouTube channel discovery - find channels for a keyword "
        "and enrich them with stats and contact details."
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Override data directory for sessions, job history and the discovery log",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Load config and print what would run without fetching anything",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug-level logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    search = sub.add_parser("search", help="Run one search in-process and save the results")
    search.add_argument("keyword", help="Search keyword")
    search.add_argument("--count", "-n", type=int, default=20, help="Number of channels to find")
    search.add_argument("--filters", type=str, default=None, help="Filter criteria as JSON")
    search.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Override output directory (default: from config)",
    )

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser.parse_args(argv)


async def run_search(
    config: PipelineConfig,
    keyword: str,
    count: int,
    filters: dict[str, Any] | None = None,
    data_dir: str | None = None,
) -> dict[str, Any]:
    """Run a single job to completion and return its final snapshot."""
    manager = JobManager(config, data_dir=data_dir)
    job = await manager.create_job(keyword, count, filters)

    try:
        while not job.is_terminal:
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
            logger.info(
                "%s: %d/%d channels, %d enriched (%d%%)",
                job.state.value, job.collected_count, job.target_count,
                job.stats.enriched, job.progress_percent(),
            )
        await manager.wait(job.job_id)
    finally:
        await manager.shutdown()
        manager.fetcher.close()

    return job.snapshot()


def save_results(snapshot: dict[str, Any], output_dir: str) -> Path:
    """Save a job snapshot to a timestamped JSON file.

    Returns the path to the output file.
    """
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    out_path = out_dir / f"channels_{timestamp}.json"

    data = {
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "keyword": snapshot["keyword"],
        "state": snapshot["state"],
        "stats": snapshot["stats"],
        "total_channels": len(snapshot["entities"]),
        "channels": snapshot["entities"],
    }

    with open(out_path, "w") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    logger.info("Results saved to %s", out_path)
    return out_path


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    config = load_config(args.config)
    if args.data_dir:
        config.data_dir = args.data_dir
    log_level = "DEBUG" if args.verbose else config.log_level
    setup_logging(log_level)

    filters = None
    if args.command == "search" and args.filters:
        try:
            filters = json.loads(args.filters)
        except json.JSONDecodeError as exc:
            logger.error("--filters is not valid JSON: %s", exc)
            sys.exit(2)

    if args.dry_run:
        logger.info("=== Dry Run ===")
        logger.info("  command: %s", args.command)
        logger.info("  data dir: %s", config.data_dir)
        logger.info("  listing: %s", config.listing)
        logger.info("  enrichment: %s", config.enrichment)
        if args.command == "search":
            logger.info("  search: %r x%d filters=%s", args.keyword, args.count, filters)
        logger.info("Dry run complete - nothing fetched.")
        return

    if args.command == "serve":
        import uvicorn

        from channel_discovery.api import create_app

        uvicorn.run(
            create_app(config),
            host=args.host or config.api.host,
            port=args.port or config.api.port,
            log_level=log_level.lower(),
        )
        return

    try:
        snapshot = asyncio.run(run_search(config, args.keyword, args.count, filters))
    except ValueError as exc:
        logger.error("Invalid search: %s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.warning("Interrupted - search cancelled")
        sys.exit(130)

    if snapshot["state"] == "failed":
        logger.error("Search failed: %s", snapshot["error"])
        sys.exit(1)
    if not snapshot["entities"]:
        logger.warning("No channels discovered. Check the keyword and your network.")
        return

    out_path = save_results(snapshot, args.output_dir or config.output_dir)
    logger.info("Done! %d channels saved to %s", len(snapshot["entities"]), out_path)


if __name__ == "__main__":
    main()
