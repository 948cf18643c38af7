"""Persisted server state: what the cleanup command needs to delete a server.

The file holds the provider token, so it is written owner-only and should be
treated like the token itself.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from lineage_builder.errors import StateError

logger = logging.getLogger(__name__)


@dataclass
class ServerState:
    server_id: int
    server_name: str
    server_ip: str
    ssh_port: int
    ssh_key_id: int
    extra_credential_ids: list[int] = field(default_factory=list)
    datacenter: str = ""
    created_at: str = ""
    provider_token: str = field(default="", repr=False)

    @classmethod
    def from_instance(cls, instance, provider_token):
        return cls(
            server_id=instance.id,
            server_name=instance.name,
            server_ip=instance.ip,
            ssh_port=instance.ssh_port,
            ssh_key_id=instance.credential_id,
            extra_credential_ids=list(instance.extra_credential_ids),
            datacenter=instance.datacenter,
            created_at=datetime.now(timezone.utc).isoformat(),
            provider_token=provider_token,
        )

    @property
    def credential_ids(self) -> list[int]:
        return [cid for cid in [self.ssh_key_id, *self.extra_credential_ids] if cid]


def save_server_state(path, state: ServerState):
    """Write *state* to *path* (mode 0600), creating parent directories."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(asdict(state), f, indent=2)
    # O_CREAT does not change the mode of an existing file
    os.chmod(path, 0o600)
    logger.info(f"Server state saved to {path}")


def load_server_state(path) -> ServerState | None:
    """Read the state file. Returns None when it does not exist."""
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        raise StateError(f"Cannot read server state {path}: {e}") from e

    if not isinstance(data, dict):
        raise StateError(f"Server state {path} is not a JSON object")
    try:
        return ServerState(
            server_id=int(data["server_id"]),
            server_name=data.get("server_name", ""),
            server_ip=data.get("server_ip", ""),
            ssh_port=int(data.get("ssh_port", 22)),
            ssh_key_id=int(data.get("ssh_key_id", 0)),
            extra_credential_ids=[int(cid) for cid in data.get("extra_credential_ids") or []],
            datacenter=data.get("datacenter", ""),
            created_at=data.get("created_at", ""),
            provider_token=data.get("provider_token", ""),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise StateError(f"Server state {path} is malformed: {e}") from e


def remove_server_state(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    logger.info(f"Removed server state {path}")
