"""SSH transport: run commands and move files on the build server via asyncssh.

Each operation dials a fresh connection. All shell interpolation goes
through shell_quote().
"""

import asyncio
import contextlib
import enum
import ipaddress
import logging
import os
from dataclasses import dataclass

import asyncssh

from lineage_builder.errors import AuthError, CommandCancelled, DialError, RemoteCommandError
from lineage_builder.provisioning.keys import host_key_fingerprint
from lineage_builder.provisioning.polling import BootProbe, parse_root_fs_type

logger = logging.getLogger(__name__)

COMMAND_LOG_PREFIX = "[SSH] $"
_CHUNK_SIZE = 64 * 1024


def shell_quote(value: str) -> str:
    """Quote *value* as one POSIX shell word."""
    return "'" + value.replace("'", "'\\''") + "'"


class CommandStatus(enum.Enum):
    SUCCESS = "success"
    EXIT_NONZERO = "exit_nonzero"
    CANCELLED = "cancelled"


@dataclass
class CommandResult:
    """Outcome of one remote command."""

    stdout: str
    stderr: str
    status: CommandStatus
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.SUCCESS

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


class SSHTransport:
    """Remote shell on one host, authenticated with an in-memory private key.

    Host keys are not verified until pin_host_key() is called; from then on
    every connection must present exactly the pinned key.
    """

    def __init__(self, host, port, username, private_key, connect_timeout=30):
        if private_key is None:
            raise ValueError("private key is required")
        self.host = host
        self.port = port
        self.username = username
        self.private_key = private_key
        self.connect_timeout = connect_timeout
        self.pinned_host_key = None

    @property
    def address(self):
        return f"{self.username}@{self.host}:{self.port}"

    def pin_host_key(self, key):
        self.pinned_host_key = key
        logger.info(f"Pinned host key {host_key_fingerprint(key)} for {self.host}")

    def _known_hosts(self):
        if self.pinned_host_key is None:
            return None
        return ([self.pinned_host_key], [], [])

    @contextlib.asynccontextmanager
    async def _connect(self):
        try:
            conn = await asyncssh.connect(
                self.host,
                port=self.port,
                username=self.username,
                client_keys=[self.private_key],
                known_hosts=self._known_hosts(),
                connect_timeout=self.connect_timeout,
                agent_path=None,
            )
        except (asyncssh.PermissionDenied, asyncssh.HostKeyNotVerifiable) as e:
            raise AuthError(f"SSH handshake with {self.address} rejected: {e}") from e
        except (OSError, asyncssh.Error) as e:
            raise DialError(f"SSH connection to {self.address} failed: {e}") from e

        try:
            yield conn
        except (OSError, asyncssh.Error) as e:
            raise DialError(f"SSH session to {self.address} failed: {e}") from e
        finally:
            conn.close()
            await conn.wait_closed()

    async def _supervise(self, process, work, timeout):
        """Drive *work* to completion unless *timeout* or cancellation hits first.

        Returns:
            (finished, result). On timeout the remote process is killed and
            (False, None) is returned.
        """
        task = asyncio.ensure_future(work)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            self._abort(process, task)
            raise
        if not done:
            self._abort(process, task)
            return False, None
        return True, task.result()

    def _abort(self, process, task):
        try:
            process.kill()
        except (OSError, asyncssh.Error) as e:
            logger.debug(f"Could not signal remote process on {self.host}: {e}")
        process.close()
        task.cancel()

    async def run_command(self, command, timeout=None) -> CommandResult:
        """Run *command* and capture its output.

        A non-zero exit is reported in the result, not raised. When *timeout*
        elapses the remote process is killed and the partial output comes
        back with status CANCELLED.
        """
        logger.info(f"{COMMAND_LOG_PREFIX} {command}")
        stdout_parts, stderr_parts = [], []

        async def _drain(process):
            await asyncio.gather(
                _pump(process.stdout, stdout_parts.append),
                _pump(process.stderr, stderr_parts.append),
            )
            await process.wait_closed()

        async with self._connect() as conn:
            process = await conn.create_process(command, encoding="utf-8", errors="replace")
            finished, _ = await self._supervise(process, _drain(process), timeout)

        stdout, stderr = "".join(stdout_parts), "".join(stderr_parts)
        if stdout.strip():
            logger.debug(f"[SSH][stdout]\n{stdout.strip()}")
        if stderr.strip():
            logger.debug(f"[SSH][stderr]\n{stderr.strip()}")

        if not finished:
            logger.warning(f"Command cancelled after {timeout}s: {command}")
            return CommandResult(stdout, stderr, CommandStatus.CANCELLED)

        exit_code = process.returncode
        status = CommandStatus.SUCCESS if exit_code == 0 else CommandStatus.EXIT_NONZERO
        return CommandResult(stdout, stderr, status, exit_code)

    async def check_command(self, command, timeout=None) -> str:
        """Run *command*; raise unless it exits zero. Returns stdout."""
        result = await self.run_command(command, timeout=timeout)
        if result.status == CommandStatus.CANCELLED:
            raise CommandCancelled(f"Command timed out after {timeout}s: {command}")
        if not result.ok:
            raise RemoteCommandError(f"Command exited with status {result.exit_code}: {command}: {result.stderr.strip()}")
        return result.stdout

    async def upload_stream(self, remote_path, stream, mode=0o644, timeout=None):
        """Write the binary file object *stream* to *remote_path* with permissions *mode*."""
        quoted = shell_quote(remote_path)
        command = "sh -c " + shell_quote(f"cat > {quoted} && chmod {mode:04o} {quoted}")
        logger.info(f"Uploading to {self.host}:{remote_path}")

        async def _send(process):
            while True:
                chunk = stream.read(_CHUNK_SIZE)
                if not chunk:
                    break
                process.stdin.write(chunk)
                await process.stdin.drain()
            process.stdin.write_eof()
            stderr = await process.stderr.read()
            await process.wait_closed()
            return stderr

        async with self._connect() as conn:
            process = await conn.create_process(command, encoding=None)
            finished, stderr = await self._supervise(process, _send(process), timeout)

        if not finished:
            raise CommandCancelled(f"Upload to {self.host}:{remote_path} timed out after {timeout}s")
        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            raise RemoteCommandError(f"Upload to {self.host}:{remote_path} failed (exit {process.returncode}): {detail}")

    async def download_to_file(self, remote_path, local_path, timeout=None, mode=0o600):
        """Stream *remote_path* into a freshly created *local_path*.

        The local file is removed again if the download does not complete.
        """
        command = f"cat {shell_quote(remote_path)}"
        logger.info(f"Downloading {self.host}:{remote_path} -> {local_path}")
        completed = False
        fd = os.open(local_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        try:
            with os.fdopen(fd, "wb") as f:

                async def _receive(process):
                    _, stderr = await asyncio.gather(
                        _pump(process.stdout, f.write),
                        process.stderr.read(),
                    )
                    await process.wait_closed()
                    return stderr

                async with self._connect() as conn:
                    process = await conn.create_process(command, encoding=None)
                    finished, stderr = await self._supervise(process, _receive(process), timeout)

            if not finished:
                raise CommandCancelled(f"Download of {self.host}:{remote_path} timed out after {timeout}s")
            if process.returncode != 0:
                detail = stderr.decode(errors="replace").strip()
                raise RemoteCommandError(f"Download of {self.host}:{remote_path} failed (exit {process.returncode}): {detail}")
            completed = True
        finally:
            if not completed:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(local_path)

    async def probe_boot(self) -> BootProbe:
        """Report hostname, root filesystem type and host key over one connection."""
        async with self._connect() as conn:
            host_key = conn.get_server_host_key()
            hostname = await _run_checked(conn, "hostname")
            df_output = await _run_checked(conn, "df -T /")
        return BootProbe(
            hostname=hostname.strip(),
            root_fs_type=parse_root_fs_type(df_output),
            host_key_fingerprint=host_key_fingerprint(host_key) if host_key is not None else "",
            host_key=host_key,
        )


async def _pump(stream, sink):
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        if not chunk:
            return
        sink(chunk)


async def _run_checked(conn, command):
    result = await conn.run(command, check=False)
    if result.exit_status != 0:
        raise RemoteCommandError(f"Command exited with status {result.exit_status}: {command}")
    return result.stdout or ""


# ── known_hosts ────────────────────────────────────────────────────


def is_valid_host(host: str) -> bool:
    """Accept IP addresses and plain DNS names only."""
    if not host:
        return False
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    for label in host.split("."):
        if not label or label.startswith("-") or label.endswith("-"):
            return False
        if not all(c.isascii() and (c.isalnum() or c == "-") for c in label):
            return False
    return True


def known_hosts_line(host, port, key) -> str:
    if not is_valid_host(host):
        raise ValueError(f"invalid host: {host}")
    host_field = host if port == 22 else f"[{host}]:{port}"
    key_type, key_data = key.export_public_key("openssh").decode().split()[:2]
    return f"{host_field} {key_type} {key_data}"


def write_known_hosts(host, port, key, base_dir) -> str:
    """Write a known_hosts file for the pinned host key. Returns its path."""
    os.makedirs(base_dir, exist_ok=True)
    path = os.path.join(base_dir, "known_hosts")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(known_hosts_line(host, port, key) + "\n")
    return path
