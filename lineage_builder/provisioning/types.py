"""Shared data types for the build server provider."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import asyncssh

from lineage_builder.errors import NotFoundError


@dataclass
class Credential:
    """An SSH public key registered with the provider."""

    id: int
    name: str
    reused: bool = False


@dataclass
class ServerInfo:
    """Provider-side view of a server."""

    id: int
    name: str
    status: str
    ip: str = ""
    datacenter: str = ""


@dataclass
class Instance:
    """A provisioned build server and everything needed to reach and delete it."""

    id: int
    name: str
    ip: str
    ssh_key: asyncssh.SSHKey | None = field(default=None, repr=False)
    username: str = "root"
    ssh_port: int = 22
    credential_id: int = 0
    extra_credential_ids: list[int] = field(default_factory=list)
    datacenter: str = ""

    @property
    def address(self) -> str:
        """SSH address string (user@host)."""
        return f"{self.username}@{self.ip}" if self.username else self.ip

    @property
    def ssh_command(self) -> str:
        port = f" -p {self.ssh_port}" if self.ssh_port != 22 else ""
        return f"ssh{port} {self.address}"


class ResourceProvider(ABC):
    """Cloud API surface the pipeline needs: server and SSH key lifecycle.

    Implementations raise NotFoundError for missing resources and
    ProvisioningError for every other API failure.
    """

    @abstractmethod
    async def create_credential(self, name: str, public_key: str) -> Credential:
        """Register an SSH public key."""

    @abstractmethod
    async def delete_credential(self, credential_id: int) -> None:
        """Delete a registered SSH key."""

    @abstractmethod
    async def create_instance(
        self,
        name: str,
        server_type: str,
        image: str,
        location: str,
        user_data: str,
        credential_ids: list[int],
    ) -> ServerInfo:
        """Create a server with the given SSH keys injected at boot."""

    @abstractmethod
    async def get_instance(self, instance_id: int) -> ServerInfo:
        """Fetch a server by id."""

    @abstractmethod
    async def delete_instance(self, instance_id: int) -> None:
        """Delete a server."""

    async def find_or_create_credential(self, name: str, public_key: str) -> Credential:
        """Register a key, or reuse an identical one already registered.

        Providers that cannot look keys up fall back to plain creation.
        """
        return await self.create_credential(name, public_key)

    async def instance_running(self, instance_id: int) -> bool:
        info = await self.get_instance(instance_id)
        return info.status == "running"

    async def instance_exists(self, instance_id: int) -> bool:
        try:
            await self.get_instance(instance_id)
        except NotFoundError:
            return False
        return True
