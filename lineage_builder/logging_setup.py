"""CLI logging setup: timestamped plain format for the builder commands."""

import logging
import sys

from lineage_builder.redact import SecretRedactingFilter


def setup_cli_logging(verbose=False):
    """Configure the root logger once for the CLI.

    Messages go to stdout so CI job logs keep them in order with remote
    output. Secret values from the environment are masked on every record.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", datefmt="%H:%M:%S"))
    # Logger filters do not see records propagated from child loggers
    handler.addFilter(SecretRedactingFilter())
    root.addHandler(handler)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
