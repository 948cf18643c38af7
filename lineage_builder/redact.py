"""Centralized secret redaction for console logs and persisted build logs."""

import logging
import os
import re

# Env vars whose values should be redacted from all output
_SECRET_ENV_VARS = [
    "HETZNER_TOKEN",
    "GITHUB_TOKEN",
    "BUILD_REPO_TOKEN",
    "GH_TOKEN",
]

_MIN_SECRET_LENGTH = 8  # skip short values to avoid false positives

# Assignment and header shapes that carry credentials, whatever their value
_SECRET_SHAPES = [
    re.compile(r"(?i)(github_token\s*=\s*)\S+"),
    re.compile(r"(?i)(hetzner_token\s*=\s*)\S+"),
    re.compile(r"(?i)(authorization:\s*(?:bearer|token|basic)\s+)\S+"),
    re.compile(r"(?i)(token\s*=\s*)\S+"),
]


def _collect_secret_values() -> set[str]:
    values = set()
    for var in _SECRET_ENV_VARS:
        val = os.environ.get(var, "")
        if len(val) >= _MIN_SECRET_LENGTH:
            values.add(val)
    return values


def _build_patterns(values: set[str]) -> list[re.Pattern]:
    # Sort by length descending so longer values match first
    return [re.compile(re.escape(v)) for v in sorted(values, key=len, reverse=True)]


# Lazy-initialized module cache
_patterns: list[re.Pattern] | None = None


def _get_patterns() -> list[re.Pattern]:
    global _patterns
    if _patterns is None:
        _patterns = _build_patterns(_collect_secret_values())
    return _patterns


def reset_secret_cache():
    """Forget cached secret values so the next call re-reads the environment."""
    global _patterns
    _patterns = None


def redact_secrets(text: str) -> str:
    """Replace known secret env var values with '***'."""
    return _apply(text, _get_patterns())


def sanitize_log(text: str) -> str:
    """Redact credential-shaped assignments and headers, then known secret values.

    Used on everything written to persistent storage. Unrelated text is left
    untouched.
    """
    for shape in _SECRET_SHAPES:
        text = shape.sub(lambda m: m.group(1) + "***", text)
    return redact_secrets(text)


def _apply(text: str, patterns: list[re.Pattern]) -> str:
    for p in patterns:
        text = p.sub("***", text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Logging filter that replaces secret values in log records with '***'.

    Attach it to handlers so records from every logger pass through it.
    Handles both f-string messages (msg is pre-formatted) and
    %-style messages (msg + args).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        patterns = _get_patterns()
        if patterns:
            record.msg = _apply(str(record.msg), patterns)
            if record.args:
                if isinstance(record.args, dict):
                    record.args = {k: _apply(v, patterns) if isinstance(v, str) else v for k, v in record.args.items()}
                elif isinstance(record.args, tuple):
                    record.args = tuple(_apply(a, patterns) if isinstance(a, str) else a for a in record.args)
        return True
