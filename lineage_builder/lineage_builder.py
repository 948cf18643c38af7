#!/usr/bin/env python3
"""LineageOS builds on ephemeral Hetzner servers: CLI entrypoint."""

import argparse

from lineage_builder.commands.build import register_build_command
from lineage_builder.commands.cleanup import register_cleanup_command
from lineage_builder.logging_setup import setup_cli_logging


def main():
    parser = argparse.ArgumentParser(description="Build LineageOS on an ephemeral Hetzner Cloud server")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log remote command output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register_build_command(subparsers)
    register_cleanup_command(subparsers)

    args = parser.parse_args()
    setup_cli_logging(verbose=args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
