"""Provider-agnostic readiness waits: running state, open port, stable boot."""

import asyncio
import logging

from lineage_builder.errors import ProvisioningError, ReadinessTimeout, RemoteCommandError, TransportError
from lineage_builder.provisioning.polling import BootPhase, StabilityTracker, poll_until

logger = logging.getLogger(__name__)

DEFAULT_PORT_TIMEOUT = 300
DEFAULT_RUNNING_TIMEOUT = 300
# Rescue mode can persist several minutes while the server reboots into the final OS
DEFAULT_BOOT_TIMEOUT = 480


async def wait_for_running(provider, instance_id, timeout=DEFAULT_RUNNING_TIMEOUT, interval=5):
    """Poll the provider until the server reports the running state."""
    logger.info(f"Waiting for server {instance_id} to be running (timeout: {timeout}s)...")

    async def _probe():
        return await provider.instance_running(instance_id)

    await poll_until(
        _probe,
        timeout=timeout,
        interval=interval,
        description=f"server {instance_id} to be running",
        retry_on=(ProvisioningError,),
    )
    logger.info(f"Server {instance_id} is running.")


async def wait_for_port(host, port, timeout=DEFAULT_PORT_TIMEOUT, interval=3, dial_timeout=3):
    """Poll until a TCP connection to host:port succeeds."""
    logger.info(f"Waiting for {host}:{port} to accept connections (timeout: {timeout}s)...")

    async def _probe():
        _, writer = await asyncio.open_connection(host, port)
        writer.close()
        await writer.wait_closed()
        return True

    await poll_until(
        _probe,
        timeout=timeout,
        interval=interval,
        description=f"port {port} on {host}",
        retry_on=(OSError,),
        probe_timeout=dial_timeout,
    )
    logger.info(f"{host}:{port} is accepting connections.")


async def wait_for_stable_boot(probe, window, timeout=DEFAULT_BOOT_TIMEOUT, interval=10, probe_timeout=60):
    """Wait until the server runs its final OS with one identity for *window* seconds.

    Args:
        probe: async callable returning a BootProbe. Transport and remote
            command failures count as an unreachable host.
        window: stability window in seconds.

    Returns:
        The last BootProbe seen, which carries the host key to pin.

    Raises:
        ReadinessTimeout: the window was never completed within *timeout*.
    """
    loop = asyncio.get_running_loop()
    tracker = StabilityTracker(window)
    logger.info(f"Waiting for the server to leave rescue mode and stay up for {window}s (timeout: {timeout}s)...")

    async def _tick():
        try:
            async with asyncio.timeout(probe_timeout):
                result = await probe()
        except (TransportError, RemoteCommandError, TimeoutError) as e:
            logger.debug(f"Boot probe failed: {e}")
            result = None
        previous = tracker.phase
        phase = tracker.observe(result, loop.time())
        if phase != previous:
            logger.info(f"Boot phase: {previous.value} -> {phase.value}")
        if phase == BootPhase.STABILIZING:
            logger.info(f"Server {result.hostname} stable for {tracker.stable_for(loop.time()):.0f}/{window}s")
        return phase == BootPhase.STABLE

    try:
        await poll_until(
            _tick,
            timeout=timeout,
            interval=interval,
            description="the server to finish booting",
        )
    except ReadinessTimeout as e:
        last_phase = tracker.phase
        tracker.fail()
        raise ReadinessTimeout(f"{e} (last phase: {last_phase.value})") from e

    logger.info(f"Server {tracker.last_probe.hostname} is stable.")
    return tracker.last_probe
