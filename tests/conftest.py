"""Shared pytest fixtures for all test modules."""

import dataclasses
import os
import subprocess
import sys

import pytest

from lineage_builder.config import BuildConfig
from lineage_builder.errors import NotFoundError
from lineage_builder.provisioning.polling import BootProbe
from lineage_builder.provisioning.ssh_transport import CommandResult, CommandStatus
from lineage_builder.provisioning.types import Credential, ResourceProvider, ServerInfo


PROJECT_ROOT = os.path.normpath(os.path.join(os.path.dirname(__file__), ".."))

HETZNER_TOKEN = "hz-test-token-0123456789"


@pytest.fixture(scope="session")
def project_root():
    """Absolute path to the project root directory."""
    return PROJECT_ROOT


@pytest.fixture(scope="session")
def run_cli(project_root):
    """Return a callable that invokes the lineage-builder CLI as a subprocess."""

    def _run(*args, env=None, cwd=None):
        child_env = {"PATH": os.environ.get("PATH", ""), "PYTHONPATH": project_root}
        child_env.update(env or {})
        result = subprocess.run(
            [sys.executable, "-m", "lineage_builder.lineage_builder", *args],
            capture_output=True,
            text=True,
            cwd=cwd or project_root,
            env=child_env,
        )
        return result.returncode, result.stdout, result.stderr

    return _run


# ── Fakes ───────────────────────────────────────────────────────────


class FakeProvider(ResourceProvider):
    """In-memory ResourceProvider that records every call."""

    def __init__(self, status="running", ip="203.0.113.10"):
        self.status = status
        self.ip = ip
        self.calls = []
        self.servers = {}
        self.credentials = {}
        self.fail_create_instance = None
        self.fail_delete_instance = None
        self._next_id = 1000

    def count(self, method):
        return sum(1 for name, _ in self.calls if name == method)

    def _new_id(self):
        self._next_id += 1
        return self._next_id

    async def create_credential(self, name, public_key):
        self.calls.append(("create_credential", (name, public_key)))
        credential = Credential(id=self._new_id(), name=name)
        self.credentials[credential.id] = public_key
        return credential

    async def delete_credential(self, credential_id):
        self.calls.append(("delete_credential", (credential_id,)))
        if self.credentials.pop(credential_id, None) is None:
            raise NotFoundError(f"ssh key {credential_id} not found")

    async def create_instance(self, name, server_type, image, location, user_data, credential_ids):
        self.calls.append(("create_instance", (name, server_type, image, location, user_data, list(credential_ids))))
        if self.fail_create_instance:
            raise self.fail_create_instance
        info = ServerInfo(id=self._new_id(), name=name, status=self.status, ip=self.ip, datacenter="fsn1-dc14")
        self.servers[info.id] = info
        return info

    async def get_instance(self, instance_id):
        self.calls.append(("get_instance", (instance_id,)))
        if instance_id not in self.servers:
            raise NotFoundError(f"server {instance_id} not found")
        return self.servers[instance_id]

    async def delete_instance(self, instance_id):
        self.calls.append(("delete_instance", (instance_id,)))
        if self.fail_delete_instance:
            raise self.fail_delete_instance
        if self.servers.pop(instance_id, None) is None:
            raise NotFoundError(f"server {instance_id} not found")


def ok(stdout="", stderr=""):
    return CommandResult(stdout, stderr, CommandStatus.SUCCESS, 0)


def failed(exit_code, stdout="", stderr=""):
    return CommandResult(stdout, stderr, CommandStatus.EXIT_NONZERO, exit_code)


class FakeTransport:
    """Stands in for SSHTransport. *handler* maps a command string to a CommandResult."""

    def __init__(self, host="203.0.113.10", port=22, username="root", private_key=None, handler=None, probes=None):
        self.host = host
        self.port = port
        self.username = username
        self.private_key = private_key
        self.handler = handler or (lambda command: ok())
        self.probes = list(probes or [])
        self.commands = []
        self.uploads = []
        self.downloads = []
        self.pinned_host_key = None

    async def run_command(self, command, timeout=None):
        self.commands.append(command)
        return self.handler(command)

    async def upload_stream(self, remote_path, stream, mode=0o644, timeout=None):
        self.uploads.append((remote_path, stream.read(), mode))

    async def download_to_file(self, remote_path, local_path, timeout=None, mode=0o600):
        self.downloads.append((remote_path, local_path))
        with open(local_path, "wb") as f:
            f.write(f"contents of {remote_path}".encode())

    async def probe_boot(self):
        if self.probes:
            return self.probes.pop(0)
        return BootProbe(hostname="lineageos-builder", root_fs_type="ext4", host_key_fingerprint="SHA256:fake")

    def pin_host_key(self, key):
        self.pinned_host_key = key


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def make_config(tmp_path):
    """Return a factory for a BuildConfig rooted in tmp_path."""

    def _make(**overrides):
        source_dir = tmp_path / "source"
        source_dir.mkdir(exist_ok=True)
        defaults = {
            "hetzner_token": HETZNER_TOKEN,
            "build_source_dir": str(source_dir),
            "local_artifact_dir": str(tmp_path / "artifacts"),
            "server_state_file": str(tmp_path / "state" / "server.json"),
            "boot_stability_seconds": 0,
            "host_key_policy": "insecure",
        }
        defaults.update(overrides)
        return dataclasses.replace(BuildConfig(), **defaults)

    return _make


@pytest.fixture
def compose_source(tmp_path):
    """A source tree with a minimal compose file defining the build service."""
    source_dir = tmp_path / "source"
    source_dir.mkdir(exist_ok=True)
    (source_dir / "docker-compose.yml").write_text("services:\n  build:\n    image: lineageos-builder:latest\n")
    (source_dir / "build.sh").write_text("#!/bin/sh\nrepo sync\n")
    return source_dir
