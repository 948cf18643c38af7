"""Build command: provision a server, run the build, collect artifacts, tear down."""

import asyncio
import logging
import sys

from lineage_builder.build.orchestrate import Orchestrator
from lineage_builder.commands import EXIT_CONFIG, EXIT_FAILURE, EXIT_INTERRUPTED
from lineage_builder.config import load_config_from_env
from lineage_builder.errors import BuilderError, ConfigError, PipelineError

logger = logging.getLogger(__name__)


def handle_build(args):
    """Handle the build command."""
    logger.info("lineage builder starting")
    try:
        config = load_config_from_env()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(EXIT_CONFIG)
    logger.info(f"Configuration loaded for source {config.source_location}")

    try:
        result = asyncio.run(Orchestrator(config).run())
    except KeyboardInterrupt:
        logger.error("Interrupted; the build server has been torn down")
        sys.exit(EXIT_INTERRUPTED)
    except PipelineError as e:
        logger.error(f"Build failed at stage '{e.stage}': {e.cause}")
        sys.exit(EXIT_CONFIG if isinstance(e.cause, ConfigError) else EXIT_FAILURE)
    except BuilderError as e:
        logger.error(f"Build failed: {e}")
        sys.exit(EXIT_FAILURE)

    logger.info(f"Build completed successfully: {len(result.local_paths)} artifact(s) in {config.local_artifact_dir}")


def register_build_command(subparsers):
    """Register the build subcommand."""
    parser = subparsers.add_parser(
        "build",
        help="Build on an ephemeral Hetzner server (configured via environment variables)",
    )
    parser.set_defaults(func=handle_build)
