"""Cleanup command: delete a server left behind by a previous run."""

import asyncio
import logging
import os
import sys

from lineage_builder.commands import EXIT_CONFIG, EXIT_FAILURE, EXIT_INTERRUPTED
from lineage_builder.config import load_cleanup_config
from lineage_builder.errors import BuilderError
from lineage_builder.provisioning.cloud import cleanup_from_state

logger = logging.getLogger(__name__)


def handle_cleanup(args):
    """Handle the cleanup command."""
    config = load_cleanup_config()
    state_file = args.state_file or config.server_state_file
    logger.info("Cleanup mode: destroying server from state file")

    if not os.path.exists(state_file):
        logger.info(f"No server state file found at {state_file}")
        logger.info("Nothing to cleanup")
        return

    if config.keep_server_on_failure:
        logger.warning("WARNING: KEEP_SERVER_ON_FAILURE is set")
        logger.warning("This indicates you wanted to preserve the server for debugging.")
        logger.warning("If you are sure you want to destroy it, unset KEEP_SERVER_ON_FAILURE and run cleanup again.")
        logger.warning("Example: KEEP_SERVER_ON_FAILURE=false lineage-builder cleanup")
        sys.exit(EXIT_CONFIG)

    try:
        cleaned = asyncio.run(cleanup_from_state(state_file))
    except KeyboardInterrupt:
        logger.error("Interrupted; the server may still exist, run cleanup again")
        sys.exit(EXIT_INTERRUPTED)
    except BuilderError as e:
        logger.error(f"Cleanup failed: {e}")
        sys.exit(EXIT_FAILURE)

    if cleaned:
        logger.info("Server cleanup completed successfully")


def register_cleanup_command(subparsers):
    """Register the cleanup subcommand."""
    parser = subparsers.add_parser(
        "cleanup",
        help="Delete the server recorded in the state file by a previous run",
    )
    parser.add_argument(
        "--state-file",
        default="",
        help="Server state file (default: $SERVER_STATE_FILE or .hetzner-server-state.json)",
    )
    parser.set_defaults(func=handle_cleanup)
