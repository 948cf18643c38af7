"""Bounded polling and the boot-stability state machine.

Every wait in the pipeline goes through poll_until(): one deadline, one
interval, cancellable sleeps. The boot-stability wait layers a
StabilityTracker on top of it to tell the rescue/installer system apart
from the final operating system.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field

from lineage_builder.errors import ReadinessTimeout

logger = logging.getLogger(__name__)

MEMORY_FILESYSTEMS = ("tmpfs", "ramfs")


async def poll_until(probe, *, timeout, interval, description, retry_on=(), probe_timeout=None):
    """Call *probe* until it returns a truthy value or *timeout* elapses.

    Args:
        probe: async callable taking no arguments. A falsy result is a failed
            attempt.
        timeout: overall budget in seconds.
        interval: delay between attempts in seconds.
        description: what is being waited for, used in log and error text.
        retry_on: exception types treated as a failed attempt. Anything else
            propagates immediately.
        probe_timeout: optional per-attempt limit; hitting it counts as a
            failed attempt.

    Returns:
        The first truthy probe result.

    Raises:
        ReadinessTimeout: the budget elapsed without a successful attempt.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    retry_on = tuple(retry_on) + ((TimeoutError,) if probe_timeout else ())
    last_error = None
    attempt = 0

    while True:
        attempt += 1
        try:
            if probe_timeout:
                async with asyncio.timeout(probe_timeout):
                    result = await probe()
            else:
                result = await probe()
        except retry_on as e:
            last_error = e
            logger.debug(f"Attempt {attempt} waiting for {description} failed: {e}")
            result = None
        if result:
            return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval, remaining))

    message = f"Timeout after {timeout}s waiting for {description}"
    if last_error is not None:
        message += f" (last error: {last_error})"
    raise ReadinessTimeout(message)


# ── Boot stability ─────────────────────────────────────────────────


class BootPhase(enum.Enum):
    UNREACHABLE = "unreachable"
    INSTALLER = "installer"
    STABILIZING = "stabilizing"
    STABLE = "stable"
    FAILED = "failed"


def is_rescue_hostname(hostname: str) -> bool:
    hostname = hostname.strip().lower()
    return hostname == "rescue" or hostname.startswith("rescue-")


def parse_root_fs_type(df_output: str) -> str:
    """Return the filesystem type mounted at / from ``df -T /`` output."""
    for line in df_output.lower().splitlines():
        fields = line.split()
        if len(fields) < 2 or fields[-1] != "/":
            continue
        return fields[1]
    return ""


def is_rescue_root_filesystem(df_output: str) -> bool:
    return parse_root_fs_type(df_output) in MEMORY_FILESYSTEMS


@dataclass(frozen=True)
class BootProbe:
    """What one successful connection reported about the running system."""

    hostname: str
    root_fs_type: str
    host_key_fingerprint: str = ""
    host_key: object = field(default=None, compare=False, repr=False)

    @property
    def is_installer(self) -> bool:
        return is_rescue_hostname(self.hostname) or self.root_fs_type in MEMORY_FILESYSTEMS

    @property
    def identity(self) -> tuple[str, str]:
        return self.hostname.strip().lower(), self.host_key_fingerprint


class StabilityTracker:
    """Track boot phases from successive probes.

    The host becomes STABLE only once non-installer probes with one
    unchanged identity have spanned *window* seconds. A failed probe, an
    installer probe or an identity change restarts the window.
    """

    def __init__(self, window: float):
        self.window = window
        self.phase = BootPhase.UNREACHABLE
        self.identity = None
        self.last_probe = None
        self._since = None

    def observe(self, probe: BootProbe | None, now: float) -> BootPhase:
        if self.phase in (BootPhase.STABLE, BootPhase.FAILED):
            return self.phase

        if probe is None:
            self._reset(BootPhase.UNREACHABLE)
        elif probe.is_installer:
            self._reset(BootPhase.INSTALLER)
        else:
            if self._since is None or probe.identity != self.identity:
                if self.identity is not None and probe.identity != self.identity:
                    logger.info(f"Host identity changed ({self.identity[0]} -> {probe.identity[0]}), restarting stability window")
                self.identity = probe.identity
                self._since = now
            self.last_probe = probe
            self.phase = BootPhase.STABLE if now - self._since >= self.window else BootPhase.STABILIZING
        return self.phase

    def stable_for(self, now: float) -> float:
        return 0.0 if self._since is None else now - self._since

    def fail(self) -> BootPhase:
        self.phase = BootPhase.FAILED
        return self.phase

    def _reset(self, phase):
        self.phase = phase
        self.identity = None
        self.last_probe = None
        self._since = None
