"""Build server provisioning: provider API, SSH transport, readiness waits, state."""

from lineage_builder.provisioning.cloud import (
    cleanup_from_state,
    delete_credentials,
    provision_instance,
    provisioned_instance,
    teardown_instance,
)
from lineage_builder.provisioning.hetzner import HetznerAPIError, HetznerClient
from lineage_builder.provisioning.keys import collect_debug_keys, fetch_github_user_keys, generate_ephemeral_key
from lineage_builder.provisioning.polling import BootPhase, BootProbe, StabilityTracker, poll_until
from lineage_builder.provisioning.readiness import wait_for_port, wait_for_running, wait_for_stable_boot
from lineage_builder.provisioning.shell import run_shell_cmd
from lineage_builder.provisioning.ssh_transport import (
    CommandResult,
    CommandStatus,
    SSHTransport,
    shell_quote,
    write_known_hosts,
)
from lineage_builder.provisioning.state import ServerState, load_server_state, remove_server_state, save_server_state
from lineage_builder.provisioning.types import Credential, Instance, ResourceProvider, ServerInfo

__all__ = [
    "Credential",
    "Instance",
    "ResourceProvider",
    "ServerInfo",
    "HetznerClient",
    "HetznerAPIError",
    "generate_ephemeral_key",
    "fetch_github_user_keys",
    "collect_debug_keys",
    "poll_until",
    "BootPhase",
    "BootProbe",
    "StabilityTracker",
    "wait_for_port",
    "wait_for_running",
    "wait_for_stable_boot",
    "run_shell_cmd",
    "SSHTransport",
    "CommandResult",
    "CommandStatus",
    "shell_quote",
    "write_known_hosts",
    "ServerState",
    "save_server_state",
    "load_server_state",
    "remove_server_state",
    "provision_instance",
    "provisioned_instance",
    "teardown_instance",
    "delete_credentials",
    "cleanup_from_state",
]
