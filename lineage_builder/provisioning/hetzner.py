"""Hetzner Cloud provider: create/delete build servers and SSH keys via the REST API."""

import logging

import httpx

from lineage_builder.errors import NotFoundError, ProvisioningError
from lineage_builder.provisioning.keys import md5_fingerprint
from lineage_builder.provisioning.types import Credential, ResourceProvider, ServerInfo

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.hetzner.cloud/v1"
REQUEST_TIMEOUT = 60


class HetznerAPIError(ProvisioningError):
    """Error reported by the Hetzner API, with its machine-readable code."""

    def __init__(self, message, code="", status_code=0):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


def _server_info(server) -> ServerInfo:
    public_net = server.get("public_net") or {}
    ipv4 = public_net.get("ipv4") or {}
    datacenter = server.get("datacenter") or {}
    return ServerInfo(
        id=server["id"],
        name=server.get("name", ""),
        status=server.get("status", ""),
        ip=ipv4.get("ip") or "",
        datacenter=datacenter.get("name", ""),
    )


class HetznerClient(ResourceProvider):
    """ResourceProvider backed by the Hetzner Cloud API.

    A new httpx.AsyncClient is opened per request; connection failures are
    retried by the transport, API errors are not.
    """

    def __init__(self, token, api_url=DEFAULT_API_URL, transport=None):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.transport = transport

    # ── API helpers ───────────────────────────────────────────────

    async def _request(self, method, path, payload=None, params=None):
        """Make an authenticated API request.

        Returns:
            Parsed JSON body, or an empty dict for bodyless responses.
        """
        url = f"{self.api_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}"}
        transport = self.transport or httpx.AsyncHTTPTransport(retries=3)
        try:
            async with httpx.AsyncClient(transport=transport) as client:
                resp = await client.request(method, url, json=payload, params=params, headers=headers, timeout=REQUEST_TIMEOUT)
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Hetzner API {method} {path} failed: {e}") from e

        if resp.is_success:
            return resp.json() if resp.content else {}

        code, message = "", resp.text.strip()
        try:
            error = resp.json().get("error") or {}
            code = error.get("code", "")
            message = error.get("message", message)
        except ValueError:
            pass
        text = f"Hetzner API {method} {path} returned {resp.status_code}: {message}"
        if code == "not_found" or resp.status_code == 404:
            raise NotFoundError(text)
        raise HetznerAPIError(text, code=code, status_code=resp.status_code)

    async def _require_named(self, collection, name, label):
        result = await self._request("GET", f"/{collection}", params={"name": name})
        if not result.get(collection):
            raise ProvisioningError(f"{label} {name!r} not found")

    # ── SSH keys ──────────────────────────────────────────────────

    async def create_credential(self, name, public_key) -> Credential:
        result = await self._request("POST", "/ssh_keys", {"name": name, "public_key": public_key})
        key = result["ssh_key"]
        logger.info(f"SSH key registered (id={key['id']}, name={name}).")
        return Credential(id=key["id"], name=key.get("name", name))

    async def find_or_create_credential(self, name, public_key) -> Credential:
        """Register *public_key*, reusing the existing key if the provider already has it.

        The provider enforces uniqueness on key content, not on the name.
        """
        try:
            return await self.create_credential(name, public_key)
        except HetznerAPIError as e:
            if e.code != "uniqueness_error":
                raise
        fingerprint = md5_fingerprint(public_key)
        result = await self._request("GET", "/ssh_keys", params={"fingerprint": fingerprint})
        keys = result.get("ssh_keys") or []
        if not keys:
            raise ProvisioningError(f"SSH key with fingerprint {fingerprint} exists but could not be found")
        logger.info(f"SSH key already registered (fingerprint: {fingerprint}), reusing it")
        return Credential(id=keys[0]["id"], name=keys[0].get("name", ""), reused=True)

    async def delete_credential(self, credential_id):
        if not credential_id:
            return
        await self._request("DELETE", f"/ssh_keys/{credential_id}")
        logger.info(f"SSH key {credential_id} deleted.")

    # ── Servers ───────────────────────────────────────────────────

    async def create_instance(self, name, server_type, image, location, user_data, credential_ids) -> ServerInfo:
        await self._require_named("server_types", server_type, "Server type")
        await self._require_named("images", image, "Server image")
        if location:
            await self._require_named("locations", location, "Server location")

        payload = {
            "name": name,
            "server_type": server_type,
            "image": image,
            "ssh_keys": list(credential_ids),
            "start_after_create": True,
        }
        if location:
            payload["location"] = location
        if user_data:
            payload["user_data"] = user_data

        logger.info(f"Creating Hetzner server (name={name}, type={server_type}, image={image}, location={location or 'auto'})...")
        result = await self._request("POST", "/servers", payload)
        server = result.get("server")
        if not server:
            raise ProvisioningError("Create server returned no server")
        info = _server_info(server)
        if not info.ip:
            logger.error(f"Server {info.id} has no public IPv4, deleting it")
            try:
                await self.delete_instance(info.id)
            except ProvisioningError as e:
                logger.error(f"Failed to delete server {info.id}: {e}")
            raise ProvisioningError(f"Server {info.id} has no public IPv4")
        logger.info(f"Server created (id={info.id}, ip={info.ip}, datacenter={info.datacenter}).")
        return info

    async def get_instance(self, instance_id) -> ServerInfo:
        result = await self._request("GET", f"/servers/{instance_id}")
        return _server_info(result["server"])

    async def delete_instance(self, instance_id):
        logger.info(f"Deleting Hetzner server {instance_id}...")
        await self._request("DELETE", f"/servers/{instance_id}")
        logger.info(f"Server {instance_id} deleted.")
