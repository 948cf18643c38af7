"""SSH key material: per-run ephemeral keys, fingerprints, debug keys from GitHub."""

import logging
import os

import asyncssh
import httpx

from lineage_builder.errors import ProvisioningError

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
_MAX_KEYS_RESPONSE = 1 << 20
LOCAL_PUBLIC_KEY_FILES = ("id_rsa.pub", "id_ed25519.pub", "id_ecdsa.pub")


def generate_ephemeral_key(comment="lineage-builder"):
    """Generate a fresh Ed25519 key pair in memory.

    Returns:
        (private_key, public_key_openssh) where private_key is an
        asyncssh.SSHKey usable as a client key and the public key is a
        single authorized_keys line.
    """
    key = asyncssh.generate_private_key("ssh-ed25519", comment=comment)
    public_key = key.export_public_key("openssh").decode().strip()
    return key, public_key


def md5_fingerprint(public_key: str) -> str:
    """Return the colon-separated MD5 fingerprint the provider indexes keys by."""
    try:
        key = asyncssh.import_public_key(public_key.strip())
    except (asyncssh.KeyImportError, ValueError) as e:
        raise ProvisioningError(f"Cannot parse public key: {e}") from e
    return key.get_fingerprint("md5").removeprefix("MD5:")


def host_key_fingerprint(key) -> str:
    return key.get_fingerprint("sha256")


async def fetch_github_user_keys(username, api_url=GITHUB_API_URL, transport=None):
    """Fetch a GitHub user's public SSH keys.

    Returns:
        List of authorized_keys lines, empty for an empty username.
    """
    if not username:
        return []

    url = f"{api_url}/users/{username}/keys"
    async with httpx.AsyncClient(transport=transport) as client:
        resp = await client.get(url, headers={"Accept": "application/vnd.github+json"}, timeout=30)
    if resp.status_code != 200:
        raise ProvisioningError(f"GitHub API returned status {resp.status_code} for {url}")
    if len(resp.content) > _MAX_KEYS_RESPONSE:
        raise ProvisioningError(f"GitHub key list for {username} is too large")

    try:
        keys = resp.json()
    except ValueError as e:
        raise ProvisioningError(f"Cannot parse GitHub keys for {username}: {e}") from e
    return [k["key"].strip() for k in keys if k.get("key")]


def load_local_public_keys(ssh_dir=None):
    """Read the operator's default public keys from ~/.ssh, skipping missing files."""
    ssh_dir = ssh_dir or os.path.expanduser("~/.ssh")
    keys = []
    for name in LOCAL_PUBLIC_KEY_FILES:
        try:
            with open(os.path.join(ssh_dir, name)) as f:
                key = f.read().strip()
        except OSError:
            continue
        if key:
            keys.append(key)
    return keys


async def collect_debug_keys(user_keys, github_actor="", transport=None, ssh_dir=None):
    """Combine configured debug keys with the GitHub Actions actor's keys.

    Failing to fetch the actor's keys only costs debug access, so it is
    logged and skipped. When neither source yields a key, the local
    ~/.ssh public keys are used.
    """
    keys = list(user_keys)
    if github_actor:
        try:
            actor_keys = await fetch_github_user_keys(github_actor, transport=transport)
        except (ProvisioningError, httpx.HTTPError) as e:
            logger.warning(f"Warning: failed to fetch GitHub SSH keys for {github_actor}: {e}")
        else:
            if actor_keys:
                logger.info(f"Found {len(actor_keys)} SSH key(s) for GitHub user {github_actor}, injecting for debugging")
            keys.extend(actor_keys)
    if not keys:
        keys = load_local_public_keys(ssh_dir)
        if keys:
            logger.info(f"Using {len(keys)} local SSH public key(s) for debugging")
    # De-duplicate, keeping order
    return list(dict.fromkeys(keys))
