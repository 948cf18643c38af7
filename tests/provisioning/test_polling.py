"""Unit tests for poll_until and the boot-stability state machine."""

import asyncio
import math

import pytest

from lineage_builder.errors import ReadinessTimeout
from lineage_builder.provisioning.polling import (
    BootPhase,
    BootProbe,
    StabilityTracker,
    is_rescue_hostname,
    is_rescue_root_filesystem,
    parse_root_fs_type,
    poll_until,
)

FINAL = BootProbe(hostname="lineageos-builder", root_fs_type="ext4", host_key_fingerprint="SHA256:final")
RESCUE = BootProbe(hostname="rescue", root_fs_type="tmpfs", host_key_fingerprint="SHA256:rescue")


def _sequence(*results):
    """Async probe returning *results* in order; exceptions are raised."""
    remaining = list(results)
    calls = []

    async def _probe():
        calls.append(1)
        value = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(value, BaseException):
            raise value
        return value

    _probe.calls = calls
    return _probe


# ── poll_until ────────────────────────────────────────────────────


async def test_poll_until_returns_first_truthy_result():
    probe = _sequence(False, None, "ready")
    assert await poll_until(probe, timeout=5, interval=0.01, description="ready") == "ready"
    assert len(probe.calls) == 3


async def test_poll_until_retries_listed_exceptions():
    probe = _sequence(OSError("refused"), OSError("refused"), True)
    assert await poll_until(probe, timeout=5, interval=0.01, description="port", retry_on=(OSError,)) is True


async def test_poll_until_propagates_other_exceptions():
    probe = _sequence(KeyError("boom"), True)
    with pytest.raises(KeyError):
        await poll_until(probe, timeout=5, interval=0.01, description="x", retry_on=(OSError,))
    assert len(probe.calls) == 1


async def test_poll_until_timeout_is_bounded():
    loop = asyncio.get_running_loop()
    probe = _sequence(False)
    start = loop.time()
    with pytest.raises(ReadinessTimeout, match="Timeout after 0.2s waiting for nothing"):
        await poll_until(probe, timeout=0.2, interval=0.05, description="nothing")
    elapsed = loop.time() - start
    assert 0.2 <= elapsed < 0.2 + 0.05 + 0.5


async def test_poll_until_timeout_reports_last_error():
    probe = _sequence(OSError("connection refused"))
    with pytest.raises(ReadinessTimeout, match="last error: connection refused"):
        await poll_until(probe, timeout=0.05, interval=0.01, description="port", retry_on=(OSError,))


async def test_poll_until_probe_timeout_counts_as_failed_attempt():
    async def _hang():
        await asyncio.sleep(10)

    with pytest.raises(ReadinessTimeout):
        await poll_until(_hang, timeout=0.1, interval=0.01, description="slow", probe_timeout=0.02)


async def test_poll_until_is_cancellable_during_sleep():
    probe = _sequence(False)
    task = asyncio.create_task(poll_until(probe, timeout=60, interval=30, description="never"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(probe.calls) == 1


# ── Rescue detection ──────────────────────────────────────────────


@pytest.mark.parametrize(
    "hostname,expected",
    [
        ("rescue", True),
        ("RESCUE", True),
        ("rescue-fsn1", True),
        (" rescue\n", True),
        ("lineageos-builder", False),
        ("rescuer", False),
        ("not-rescue", False),
    ],
)
def test_is_rescue_hostname(hostname, expected):
    assert is_rescue_hostname(hostname) is expected


DF_EXT4 = """Filesystem     Type 1K-blocks    Used Available Use% Mounted on
/dev/sda1      ext4  157209876 1843212 148958468   2% /
"""

DF_TMPFS = """Filesystem     Type  1K-blocks  Used Available Use% Mounted on
tmpfs          tmpfs  16384000 10240  16373760   1% /
"""


def test_parse_root_fs_type():
    assert parse_root_fs_type(DF_EXT4) == "ext4"
    assert parse_root_fs_type(DF_TMPFS) == "tmpfs"
    assert parse_root_fs_type("") == ""


def test_is_rescue_root_filesystem():
    assert is_rescue_root_filesystem(DF_TMPFS) is True
    assert is_rescue_root_filesystem(DF_EXT4) is False
    assert is_rescue_root_filesystem("none ramfs 0 0 0 - /") is True


def test_boot_probe_installer_detection():
    assert RESCUE.is_installer is True
    assert BootProbe(hostname="rescue", root_fs_type="ext4").is_installer is True
    assert BootProbe(hostname="builder", root_fs_type="ramfs").is_installer is True
    assert FINAL.is_installer is False


# ── StabilityTracker ──────────────────────────────────────────────


@pytest.mark.parametrize("installer_ticks", [0, 1, 4])
@pytest.mark.parametrize("window,interval", [(60, 10), (25, 10), (30, 7)])
def test_stable_after_installer_ticks_plus_window(installer_ticks, window, interval):
    tracker = StabilityTracker(window)
    stable_tick = None
    for tick in range(50):
        probe = RESCUE if tick < installer_ticks else FINAL
        if tracker.observe(probe, tick * interval) == BootPhase.STABLE:
            stable_tick = tick
            break
    assert stable_tick == installer_ticks + math.ceil(window / interval)


def test_zero_window_is_stable_on_first_final_probe():
    tracker = StabilityTracker(0)
    assert tracker.observe(RESCUE, 0) == BootPhase.INSTALLER
    assert tracker.observe(FINAL, 10) == BootPhase.STABLE
    assert tracker.last_probe == FINAL


def test_unreachable_probe_resets_window():
    tracker = StabilityTracker(30)
    assert tracker.observe(FINAL, 0) == BootPhase.STABILIZING
    assert tracker.observe(FINAL, 20) == BootPhase.STABILIZING
    assert tracker.observe(None, 25) == BootPhase.UNREACHABLE
    assert tracker.stable_for(25) == 0.0
    assert tracker.observe(FINAL, 30) == BootPhase.STABILIZING
    assert tracker.observe(FINAL, 59) == BootPhase.STABILIZING
    assert tracker.observe(FINAL, 60) == BootPhase.STABLE


def test_installer_probe_resets_window():
    tracker = StabilityTracker(30)
    tracker.observe(FINAL, 0)
    assert tracker.observe(RESCUE, 20) == BootPhase.INSTALLER
    assert tracker.last_probe is None
    assert tracker.observe(FINAL, 40) == BootPhase.STABILIZING
    assert tracker.observe(FINAL, 70) == BootPhase.STABLE


def test_identity_change_restarts_window():
    tracker = StabilityTracker(30)
    rekeyed = BootProbe(hostname="lineageos-builder", root_fs_type="ext4", host_key_fingerprint="SHA256:other")
    tracker.observe(FINAL, 0)
    assert tracker.observe(rekeyed, 20) == BootPhase.STABILIZING
    assert tracker.identity == rekeyed.identity
    assert tracker.observe(rekeyed, 40) == BootPhase.STABILIZING
    assert tracker.observe(rekeyed, 50) == BootPhase.STABLE


def test_hostname_change_restarts_window():
    tracker = StabilityTracker(10)
    renamed = BootProbe(hostname="builder-2", root_fs_type="ext4", host_key_fingerprint="SHA256:final")
    tracker.observe(FINAL, 0)
    assert tracker.observe(renamed, 9) == BootPhase.STABILIZING
    assert tracker.observe(renamed, 18) == BootPhase.STABILIZING
    assert tracker.observe(renamed, 19) == BootPhase.STABLE


def test_terminal_phases_ignore_further_probes():
    tracker = StabilityTracker(0)
    tracker.observe(FINAL, 0)
    assert tracker.observe(None, 5) == BootPhase.STABLE

    failed = StabilityTracker(10)
    failed.observe(FINAL, 0)
    assert failed.fail() == BootPhase.FAILED
    assert failed.observe(FINAL, 100) == BootPhase.FAILED
