"""Build orchestration: archive, provision, wait, build, collect, tear down."""

import asyncio
import contextlib
import logging
import os

from lineage_builder.build.archive import prepare_archive
from lineage_builder.build.driver import BuildDriver, BuildResult
from lineage_builder.build.release import GitHubReleasePublisher
from lineage_builder.errors import AuthError, BuilderError, BuildError, PipelineError
from lineage_builder.provisioning.cloud import provisioned_instance
from lineage_builder.provisioning.hetzner import HetznerClient
from lineage_builder.provisioning.keys import collect_debug_keys
from lineage_builder.provisioning.readiness import wait_for_port, wait_for_running, wait_for_stable_boot
from lineage_builder.provisioning.ssh_transport import SSHTransport, write_known_hosts
from lineage_builder.redact import sanitize_log

logger = logging.getLogger(__name__)

BUILD_LOG_NAME = "build.log"

STAGES = [
    "prepare source archive",
    "create server",
    "wait for server to be running",
    "wait for SSH port",
    "wait for boot to stabilize",
    "install container runtime",
    "stage source on server",
    "run build",
    "collect artifacts",
    "download artifacts",
]
PUBLISH_STAGE = "publish release"


class StageLogger:
    """Log a progress bar line before each pipeline stage."""

    def __init__(self, total, bar_width=20):
        self.total = total
        self.current = 0
        self.bar_width = bar_width

    def step(self, message):
        if self.total <= 0:
            logger.info(message)
            return
        self.current = min(self.current + 1, self.total)
        filled = min(self.current * self.bar_width // self.total, self.bar_width)
        bar = "[" + "#" * filled + "-" * (self.bar_width - filled) + "]"
        percent = self.current * 100 // self.total
        logger.info(f"{bar} {self.current}/{self.total} {percent:3d}% {message}")


def save_build_log(local_dir, text):
    """Write the (already sanitized) build log owner-only. Returns its path."""
    if not local_dir:
        return None
    os.makedirs(local_dir, exist_ok=True)
    path = os.path.join(local_dir, BUILD_LOG_NAME)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(text)
    return path


class Orchestrator:
    """Run the whole pipeline once.

    Collaborators are injectable so the pipeline can run against fakes:
    *provider* (ResourceProvider), *transport_factory* (called with host,
    port, username, private key), *archive_preparer* (async, config ->
    (path, cleanup)) and *publisher* (has async publish(paths)).
    """

    def __init__(self, config, provider=None, transport_factory=SSHTransport, archive_preparer=prepare_archive, publisher=None):
        self.config = config
        self.provider = provider or HetznerClient(config.hetzner_token)
        self.transport_factory = transport_factory
        self.archive_preparer = archive_preparer
        if publisher is None and config.publish_enabled:
            publisher = GitHubReleasePublisher.from_config(config)
        self.publisher = publisher
        self.progress = StageLogger(len(STAGES) + (1 if publisher else 0))

    @contextlib.asynccontextmanager
    async def _stage(self, name, announce=True):
        if announce:
            self.progress.step(name)
        try:
            yield
        except PipelineError:
            raise
        except BuilderError as e:
            raise PipelineError(name, e) from e
        except OSError as e:
            raise PipelineError(name, BuilderError(f"{type(e).__name__}: {e}")) from e

    async def run(self) -> BuildResult:
        """Run every stage in order; the server is torn down on every exit path.

        Raises:
            PipelineError: naming the failed stage, with the original error as cause.
        """
        config = self.config
        loop = asyncio.get_running_loop()

        async with self._stage("teardown", announce=False):
            async with contextlib.AsyncExitStack() as stack:
                async with self._stage("prepare source archive"):
                    archive_path, cleanup = await self.archive_preparer(config)
                stack.callback(cleanup)

                async with self._stage("create server"):
                    debug_keys = await collect_debug_keys(config.user_ssh_keys, config.github_actor)
                    instance = await stack.enter_async_context(provisioned_instance(self.provider, config, debug_keys))
                logger.info(f"Server {instance.name} (id={instance.id}) at {instance.ip}")

                transport = self.transport_factory(instance.ip, instance.ssh_port, instance.username, instance.ssh_key)

                async with self._stage("wait for server to be running"):
                    await wait_for_running(self.provider, instance.id)

                async with self._stage("wait for SSH port"):
                    await wait_for_port(instance.ip, instance.ssh_port)

                async with self._stage("wait for boot to stabilize"):
                    probe = await wait_for_stable_boot(transport.probe_boot, window=config.boot_stability_seconds)
                    self._trust_host(transport, instance, probe)

                driver = BuildDriver(transport, config)
                async with self._stage("install container runtime"):
                    await driver.ensure_runtime_present()

                # The build timeout covers staging and the build, not provisioning
                driver.deadline = loop.time() + config.build_timeout_seconds

                async with self._stage("stage source on server"):
                    await driver.stage_source(archive_path)

                async with self._stage("run build"):
                    await self._with_failure_logs(driver, driver.run_build())

                async with self._stage("collect artifacts"):
                    artifacts = await self._with_failure_logs(driver, driver.collect_artifacts())

                async with self._stage("download artifacts"):
                    local_paths = await driver.download_artifacts(artifacts)

                if self.publisher:
                    async with self._stage(PUBLISH_STAGE):
                        await self.publisher.publish(local_paths)

                result = BuildResult(artifacts=artifacts, logs=driver.logs, local_paths=local_paths)
        return result

    def _trust_host(self, transport, instance, probe):
        if self.config.host_key_policy == "insecure":
            logger.warning("Warning: SSH host key verification is disabled (SSH_HOST_KEY_POLICY=insecure)")
            return
        if probe.host_key is None:
            raise AuthError(f"Server {instance.ip} presented no host key to pin")
        transport.pin_host_key(probe.host_key)
        try:
            path = write_known_hosts(instance.ip, instance.ssh_port, probe.host_key, self.config.local_artifact_dir)
        except (OSError, ValueError) as e:
            logger.warning(f"Warning: failed to write known_hosts: {e}")
        else:
            logger.info(f"Host key recorded in {path}")

    async def _with_failure_logs(self, driver, step):
        """Await *step*; on a build failure persist the sanitized logs before re-raising."""
        try:
            return await step
        except BuildError:
            await self._persist_failure_logs(driver)
            raise

    async def _persist_failure_logs(self, driver):
        logger.info("Build failed, collecting remote logs")
        try:
            await driver.collect_remote_logs()
        except BuilderError as e:
            logger.error(f"Failed to collect remote logs: {e}")
        try:
            path = save_build_log(self.config.local_artifact_dir, sanitize_log(driver.logs))
        except OSError as e:
            logger.error(f"Failed to save build log: {e}")
            return
        if path:
            logger.info(f"Build log saved to {path}")
