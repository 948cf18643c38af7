"""Build driver: turn a source archive into downloaded artifacts on one build server."""

import asyncio
import logging
import os
import posixpath
import secrets
from dataclasses import dataclass, field

from lineage_builder.build.scripts import (
    bash_command,
    compose_build_script,
    compose_logs_command,
    docker_install_script,
    find_artifacts_command,
    stage_source_command,
)
from lineage_builder.errors import (
    BuildError,
    BuildTimeout,
    CommandCancelled,
    NoArtifactsError,
    RemoteCommandError,
    RuntimeSetupError,
)
from lineage_builder.provisioning.ssh_transport import CommandStatus

logger = logging.getLogger(__name__)

RUNTIME_INSTALL_TIMEOUT = 900
ARTIFACT_LIST_TIMEOUT = 120
DOWNLOAD_TIMEOUT = 3600
REMOTE_LOGS_TIMEOUT = 300


@dataclass
class BuildResult:
    """Remote artifact paths found after the build, plus the accumulated log."""

    artifacts: list[str]
    logs: str = ""
    local_paths: list[str] = field(default_factory=list)


class BuildDriver:
    """Drive the compose build over an SSHTransport.

    Every command's output is kept in a running log for failure diagnostics.
    *deadline* is an event-loop time bounding source staging and the build.
    """

    def __init__(self, transport, config, deadline=None):
        self.transport = transport
        self.config = config
        self.deadline = deadline
        self._logs = []

    @property
    def logs(self) -> str:
        return "\n".join(self._logs)

    def _remaining(self):
        if self.deadline is None:
            return None
        remaining = self.deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise BuildTimeout(f"Build timed out after {self.config.build_timeout_minutes} minutes")
        return remaining

    def _record(self, result):
        if result.stdout:
            self._logs.append(result.stdout)
        if result.stderr:
            self._logs.append(result.stderr)

    async def _run(self, command, timeout=None):
        result = await self.transport.run_command(command, timeout=timeout)
        self._record(result)
        return result

    async def ensure_runtime_present(self):
        """Make sure Docker and the compose plugin are installed, installing them if needed."""
        logger.info("Checking container runtime on the build server...")
        result = await self._run(bash_command(docker_install_script(self.config.get_docker_sha256)), timeout=RUNTIME_INSTALL_TIMEOUT)
        if result.status == CommandStatus.CANCELLED:
            raise RuntimeSetupError(f"Container runtime setup timed out after {RUNTIME_INSTALL_TIMEOUT}s")
        if not result.ok:
            detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else "no error output"
            raise RuntimeSetupError(f"Container runtime setup failed (exit {result.exit_code}): {detail}")
        logger.info("Container runtime is available.")

    async def stage_source(self, archive_path):
        """Upload the archive and make it the entire contents of the working directory."""
        remote_archive = f"/tmp/lineage-source-{secrets.token_hex(6)}.tar.gz"
        working_dir = self.config.working_dir
        try:
            size = os.path.getsize(archive_path)
            f = open(archive_path, "rb")
        except OSError as e:
            raise BuildError(f"Cannot read source archive {archive_path}: {e}") from e
        logger.info(f"Staging source archive ({size / 1e6:.1f} MB) into {working_dir}...")

        with f:
            try:
                await self.transport.upload_stream(remote_archive, f, mode=0o600, timeout=self._remaining())
            except CommandCancelled as e:
                raise BuildTimeout(str(e)) from e

        result = await self._run(stage_source_command(working_dir, remote_archive), timeout=self._remaining())
        if result.status == CommandStatus.CANCELLED:
            raise BuildTimeout(f"Build timed out while extracting the source into {working_dir}")
        if not result.ok:
            raise BuildError(f"Extracting source into {working_dir} failed (exit {result.exit_code}): {result.stderr.strip()}")
        logger.info("Source staged.")

    async def run_build(self):
        """Run the compose build service to completion. Non-zero exit is a build failure."""
        script = compose_build_script(self.config.working_dir, self.config.compose_file, self.config.build_service_name)
        result = await self._run(bash_command(script), timeout=self._remaining())
        if result.status == CommandStatus.CANCELLED:
            raise BuildTimeout(f"Build timed out after {self.config.build_timeout_minutes} minutes")
        if not result.ok:
            raise BuildError(f"build failed: service '{self.config.build_service_name}' exited with status {result.exit_code}")
        logger.info("Build finished successfully.")

    async def collect_artifacts(self) -> list[str]:
        """List remote artifacts. Zero matches is an error."""
        config = self.config
        result = await self._run(
            find_artifacts_command(config.working_dir, config.artifact_dir, config.artifact_pattern),
            timeout=ARTIFACT_LIST_TIMEOUT,
        )
        if not result.ok:
            raise BuildError(f"Listing artifacts in {config.artifact_dir} failed: {result.stderr.strip() or result.status.value}")

        artifacts = []
        for line in result.stdout.splitlines():
            if line.strip():
                artifacts.append(posixpath.normpath(posixpath.join(config.working_dir, line.strip())))
        if not artifacts:
            raise NoArtifactsError(f"no artifacts matched {config.artifact_dir}/{config.artifact_pattern}")
        logger.info(f"Found {len(artifacts)} artifact(s): {', '.join(posixpath.basename(a) for a in artifacts)}")
        return artifacts

    async def download_artifacts(self, remote_paths) -> list[str]:
        """Download each artifact into the local artifact directory, stopping at the first failure."""
        local_dir = self.config.local_artifact_dir
        try:
            os.makedirs(local_dir, exist_ok=True)
        except OSError as e:
            raise BuildError(f"Cannot create local artifact directory {local_dir}: {e}") from e

        names = [posixpath.basename(p) for p in remote_paths]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise BuildError(f"Artifacts share file names: {', '.join(duplicates)}")

        local_paths = []
        for remote_path, name in zip(remote_paths, names):
            local_path = os.path.join(local_dir, name)
            try:
                await self.transport.download_to_file(remote_path, local_path, timeout=DOWNLOAD_TIMEOUT)
            except (RemoteCommandError, CommandCancelled, OSError) as e:
                raise BuildError(f"Download artifact {remote_path} failed: {e}") from e
            local_paths.append(local_path)
        logger.info(f"Downloaded {len(local_paths)} artifact(s) to {local_dir}")
        return local_paths

    async def collect_remote_logs(self, timeout=REMOTE_LOGS_TIMEOUT) -> str:
        """Fetch the compose services' own log view."""
        config = self.config
        result = await self._run(compose_logs_command(config.working_dir, config.compose_file), timeout=timeout)
        if result.status == CommandStatus.CANCELLED:
            raise CommandCancelled(f"Collecting remote logs timed out after {timeout}s")
        if not result.ok:
            raise RemoteCommandError(f"Collecting remote logs failed (exit {result.exit_code}): {result.stderr.strip()}")
        return result.stdout
