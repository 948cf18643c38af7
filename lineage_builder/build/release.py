"""GitHub release publishing: get-or-create a release by tag and upload assets."""

import logging
import os

import httpx

from lineage_builder.errors import PublishError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
API_VERSION = "2022-11-28"
REQUEST_TIMEOUT = 60
UPLOAD_TIMEOUT = 1800
_CHUNK_SIZE = 1024 * 1024


async def _iter_file(path):
    with open(path, "rb") as f:
        while True:
            chunk = f.read(_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk


class GitHubReleasePublisher:
    """Publish local files as assets of the release at *tag* in *repo* ("owner/name").

    Re-running against an existing release reuses it, and an asset with the
    same file name is replaced.
    """

    def __init__(self, token, repo, tag, name="", notes="", api_url=DEFAULT_API_URL, transport=None):
        self.token = token
        self.repo = repo
        self.tag = tag
        self.name = name or tag
        self.notes = notes
        self.api_url = api_url.rstrip("/")
        self.transport = transport

    @classmethod
    def from_config(cls, config, transport=None):
        return cls(
            config.github_token,
            config.release_repo,
            config.release_tag,
            name=config.release_name,
            notes=config.release_notes,
            transport=transport,
        )

    def _client(self):
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        return httpx.AsyncClient(headers=headers, transport=self.transport, timeout=REQUEST_TIMEOUT)

    @staticmethod
    def _check(resp, what):
        if not resp.is_success:
            raise PublishError(f"{what} failed: GitHub API returned {resp.status_code}: {resp.text.strip()[:200]}")
        return resp.json() if resp.content else {}

    async def _get_or_create_release(self, client):
        base = f"{self.api_url}/repos/{self.repo}/releases"
        resp = await client.get(f"{base}/tags/{self.tag}")
        if resp.status_code != 404:
            release = self._check(resp, f"Get release {self.tag}")
            logger.info(f"Using existing release {self.tag} (id={release['id']})")
            return release

        logger.info(f"Creating release {self.tag} in {self.repo}...")
        resp = await client.post(base, json={"tag_name": self.tag, "name": self.name, "body": self.notes})
        return self._check(resp, f"Create release {self.tag}")

    async def _upload_asset(self, client, release, path):
        name = os.path.basename(path)
        for asset in release.get("assets") or []:
            if asset.get("name") == name:
                logger.info(f"Replacing existing asset {name}")
                resp = await client.delete(f"{self.api_url}/repos/{self.repo}/releases/assets/{asset['id']}")
                self._check(resp, f"Delete asset {name}")

        upload_url = release["upload_url"].split("{", 1)[0]
        size = os.path.getsize(path)
        logger.info(f"Uploading {name} ({size / 1e6:.1f} MB) to release {self.tag}...")
        resp = await client.post(
            upload_url,
            params={"name": name},
            content=_iter_file(path),
            headers={"Content-Type": "application/octet-stream", "Content-Length": str(size)},
            timeout=UPLOAD_TIMEOUT,
        )
        self._check(resp, f"Upload asset {name}")

    async def publish(self, paths):
        """Upload every file in *paths*. Stops at the first failure."""
        try:
            async with self._client() as client:
                release = await self._get_or_create_release(client)
                for path in paths:
                    await self._upload_asset(client, release, path)
        except httpx.HTTPError as e:
            raise PublishError(f"Publishing release {self.tag} failed: {e}") from e
        except OSError as e:
            raise PublishError(f"Cannot read artifact: {e}") from e
        logger.info(f"Published {len(paths)} asset(s) to {self.repo}@{self.tag}")
