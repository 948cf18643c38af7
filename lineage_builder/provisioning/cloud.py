"""Build server lifecycle: provision, guaranteed teardown, cleanup from saved state.

Bridge between the orchestrator and the ResourceProvider. Every server
created through provisioned_instance() is deleted on every exit path unless
the operator asked to keep it after a failure.
"""

import asyncio
import contextlib
import logging
import time

from lineage_builder.errors import CleanupError, ConfigError, NotFoundError, ProvisioningError, StateError
from lineage_builder.provisioning.hetzner import HetznerClient
from lineage_builder.provisioning.keys import generate_ephemeral_key
from lineage_builder.provisioning.state import ServerState, load_server_state, remove_server_state, save_server_state
from lineage_builder.provisioning.types import Instance

logger = logging.getLogger(__name__)


def _read_user_data(path):
    if not path:
        return ""
    try:
        with open(path) as f:
            return f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read user data {path}: {e}") from e


async def _register_debug_keys(provider, public_keys, stamp, created):
    """Register debug keys. Returns the IDs of keys that already existed.

    IDs of keys created here are appended to *created* as soon as they
    exist so the caller can delete them if provisioning is cut short. A key
    that cannot be registered only costs debug access, so it is skipped.
    """
    reused = []
    for i, public_key in enumerate(public_keys):
        # Names are for humans; the provider deduplicates on key content
        name = f"user-key-{stamp}-{i}"
        try:
            credential = await provider.find_or_create_credential(name, public_key)
        except ProvisioningError as e:
            logger.warning(f"Warning: failed to add debug SSH key {i}: {e}")
            continue
        (reused if credential.reused else created).append(credential.id)
    return reused


async def provision_instance(provider, config, debug_keys=()) -> Instance:
    """Create a fresh SSH key and a server that trusts it.

    Keys registered here are deleted again if server creation fails.
    """
    user_data = _read_user_data(config.server_user_data_path)
    private_key, public_key = generate_ephemeral_key()
    stamp = int(time.time())

    created_ids = []
    try:
        credential = await provider.create_credential(f"lineage-builder-{stamp}", public_key)
        created_ids.append(credential.id)
        reused_ids = await _register_debug_keys(provider, debug_keys, stamp, created_ids)
        extra_ids = created_ids[1:]
        if extra_ids or reused_ids:
            logger.info(f"Injecting {len(extra_ids) + len(reused_ids)} debug SSH key(s) into the server")

        info = await provider.create_instance(
            name=config.server_name,
            server_type=config.server_type,
            image=config.server_image,
            location=config.server_location,
            user_data=user_data,
            credential_ids=[credential.id, *extra_ids, *reused_ids],
        )
    except (Exception, asyncio.CancelledError):
        await delete_credentials(provider, created_ids)
        raise

    return Instance(
        id=info.id,
        name=info.name,
        ip=info.ip,
        ssh_key=private_key,
        ssh_port=config.ssh_port,
        credential_id=credential.id,
        extra_credential_ids=extra_ids,
        datacenter=info.datacenter,
    )


async def delete_credentials(provider, credential_ids) -> list[CleanupError]:
    """Delete SSH keys, collecting failures instead of raising them."""
    errors = []
    for credential_id in credential_ids:
        if not credential_id:
            continue
        try:
            await provider.delete_credential(credential_id)
        except NotFoundError:
            logger.info(f"SSH key {credential_id} already deleted.")
        except ProvisioningError as e:
            error = CleanupError(f"Failed to delete SSH key {credential_id}: {e}")
            logger.warning(f"Warning: {error}")
            errors.append(error)
    return errors


async def teardown_instance(provider, instance, state_file="", strict=True):
    """Delete the server and its SSH keys, then forget the saved state.

    A server that is already gone counts as deleted. When the server cannot
    be deleted the state file is kept for the cleanup command, and the
    failure is raised only if *strict*.
    """
    deleted = True
    try:
        await provider.delete_instance(instance.id)
    except NotFoundError:
        logger.info(f"Server {instance.id} already deleted.")
    except ProvisioningError as e:
        deleted = False
        delete_error = e
        logger.error(f"Failed to delete server {instance.id}: {e}")

    await delete_credentials(provider, [instance.credential_id, *instance.extra_credential_ids])

    if not deleted:
        if state_file:
            logger.error(f"Server state kept in {state_file}; run 'lineage-builder cleanup' to retry")
        if strict:
            raise ProvisioningError(f"Failed to delete server {instance.id}: {delete_error}") from delete_error
        return
    if state_file:
        remove_server_state(state_file)


def _report_kept_server(instance, config):
    key_ids = ", ".join(str(i) for i in [instance.credential_id, *instance.extra_credential_ids])
    logger.warning("WARNING: KEEP_SERVER_ON_FAILURE is set, leaving the server running for debugging")
    logger.warning(f"  Server:   {instance.name} (id={instance.id})")
    logger.warning(f"  IP:       {instance.ip}")
    logger.warning(f"  Connect:  {instance.ssh_command}  (with one of the injected debug keys)")
    logger.warning(f"  SSH keys: {key_ids} (left registered)")
    logger.warning(f"  State:    {config.server_state_file or '(not saved)'}")
    logger.warning("  Cleanup:  unset KEEP_SERVER_ON_FAILURE and run 'lineage-builder cleanup'")


@contextlib.asynccontextmanager
async def provisioned_instance(provider, config, debug_keys=()):
    """Provision a server and guarantee its teardown.

    Usage::

        async with provisioned_instance(provider, config) as instance:
            ...

    On a failure with keep_server_on_failure set, teardown is skipped and
    the kept server is reported. Cancellation and success always tear down.
    A teardown failure is raised only when the body succeeded.
    """
    instance = await provision_instance(provider, config, debug_keys)
    state_file = config.server_state_file
    if state_file:
        try:
            save_server_state(state_file, ServerState.from_instance(instance, config.hetzner_token))
        except OSError as e:
            logger.warning(f"Warning: failed to save server state to {state_file}: {e}")
            state_file = ""

    succeeded = False
    keep = False
    try:
        yield instance
        succeeded = True
    except Exception:
        keep = config.keep_server_on_failure
        if keep:
            _report_kept_server(instance, config)
        raise
    finally:
        if not keep:
            await teardown_instance(provider, instance, state_file, strict=succeeded)


async def cleanup_from_state(state_path, provider_factory=HetznerClient) -> bool:
    """Delete the server recorded in *state_path*, if it still exists.

    Returns:
        False when there was no state file (nothing to clean up), True
        once the recorded server is confirmed gone and the file removed.

    Raises:
        StateError: the state file is unreadable.
        ProvisioningError: the server exists but could not be deleted.
    """
    state = load_server_state(state_path)
    if state is None:
        logger.info(f"No server state file found at {state_path}, nothing to cleanup")
        return False

    logger.info(f"Found persisted server state: id={state.server_id} name={state.server_name} ip={state.server_ip}")
    if not state.provider_token:
        raise StateError(f"Server state {state_path} has no provider token")
    provider = provider_factory(state.provider_token)

    if not await provider.instance_exists(state.server_id):
        logger.info(f"Server {state.server_id} no longer exists, cleaning up state file")
    else:
        try:
            await provider.delete_instance(state.server_id)
        except NotFoundError:
            logger.info(f"Server {state.server_id} already deleted.")

    await delete_credentials(provider, state.credential_ids)
    remove_server_state(state_path)
    return True
