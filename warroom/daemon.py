"""Warroom daemon - supervises staged runs until they finish or are stopped.

Usage:
    warroom-daemon RUN_SLUG [RUN_SLUG ...]
    warroom-daemon --propose RUN_SLUG
    warroom-daemon --merge RUN_SLUG
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from warroom import __version__
from warroom.config import WarroomConfig, load_warroom_config
from warroom.core import git, terminal_bridge
from warroom.core.orchestrator import LaneOrchestrator
from warroom.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="warroom-daemon", description="Orchestrate parallel agent lanes.")
    parser.add_argument("run_slugs", nargs="+", metavar="RUN_SLUG", help="Run directory name under the runs dir.")
    parser.add_argument("--config", type=Path, default=None, help="Path to warroom.yml.")
    parser.add_argument("--log-level", default=None, help="Override WARROOM_LOG_LEVEL.")
    parser.add_argument("--runs-dir", default=None, help="Override paths.runs_dir.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--propose", action="store_true", help="Write merge-proposal.json and exit.")
    mode.add_argument("--merge", action="store_true", help="Merge completed lanes and exit.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def configure_runtime(config: WarroomConfig) -> None:
    """Apply process-wide settings for git and tmux."""
    git.configure_git(
        binary=config.git.binary,
        remote=config.git.remote,
        local_timeout_s=config.git.local_timeout_s,
        network_timeout_s=config.git.network_timeout_s,
    )
    terminal_bridge.configure_tmux(config.terminal.tmux_binary)


async def _propose(orchestrator: LaneOrchestrator, run_slugs: List[str]) -> int:
    exit_code = 0
    for slug in run_slugs:
        result = await orchestrator.generate_merge_proposal(slug)
        if not result.success or result.proposal is None:
            logger.error("Merge proposal for %s failed: %s", slug, result.error)
            exit_code = 1
            continue
        for warning in result.proposal.warnings:
            logger.warning("%s: %s", slug, warning.message)
        logger.info("Merge order for %s: %s", slug, [entry.lane_id for entry in result.proposal.merge_order])
    return exit_code


async def _merge(orchestrator: LaneOrchestrator, run_slugs: List[str]) -> int:
    exit_code = 0
    for slug in run_slugs:
        result = await orchestrator.execute_merge(slug)
        if result.success:
            logger.info("Merged %s: %s (skipped %s)", slug, result.merged_lanes, result.skipped_lanes)
            continue
        exit_code = 1
        if result.conflict is not None:
            logger.error(
                "Merge of %s halted at lane %s. Conflicting files: %s",
                slug,
                result.conflict.lane_id,
                ", ".join(result.conflict.conflicting_files),
            )
        else:
            logger.error("Merge of %s failed: %s", slug, result.error)
    return exit_code


async def _supervise(orchestrator: LaneOrchestrator, run_slugs: List[str]) -> int:
    orchestrator.install_signal_handlers()

    started = []
    for slug in run_slugs:
        result = await orchestrator.start_run(slug)
        if result.success:
            started.append(slug)
        else:
            logger.error("Could not start run %s: %s", slug, result.error)
    if not started:
        return 1

    logger.info("Warroom is running %d run(s). Press Ctrl+C to stop.", len(started))
    waits = [asyncio.ensure_future(orchestrator.wait_for_run(slug)) for slug in started]
    shutdown_wait = asyncio.ensure_future(orchestrator.shutdown_requested.wait())
    try:
        await asyncio.wait([asyncio.gather(*waits), shutdown_wait], return_when=asyncio.FIRST_COMPLETED)
    finally:
        for future in [*waits, shutdown_wait]:
            future.cancel()
        await orchestrator.shutdown()

    statuses = {slug: orchestrator.get_run_status(slug) for slug in started}
    failed = [slug for slug, run in statuses.items() if run is not None and run.status == "failed"]
    for slug in failed:
        logger.error("Run %s failed", slug)
    return 1 if failed else 0


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)

    try:
        config = load_warroom_config(args.config)
    except ValidationError as e:
        logger.error("Invalid configuration: %s", e)
        return 2
    if args.runs_dir:
        config.paths.runs_dir = args.runs_dir
    if config.log_level and not args.log_level:
        setup_logging(level=config.log_level)

    configure_runtime(config)
    orchestrator = LaneOrchestrator.from_config(config)

    if args.propose:
        return await _propose(orchestrator, args.run_slugs)
    if args.merge:
        return await _merge(orchestrator, args.run_slugs)
    return await _supervise(orchestrator, args.run_slugs)


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Received interrupt signal...")
        sys.exit(130)


if __name__ == "__main__":
    run()
