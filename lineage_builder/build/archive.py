"""Source archive preparation: local directory or git clone, packed as tar.gz."""

import asyncio
import base64
import contextlib
import logging
import os
import shutil
import tarfile
import tempfile
import time

from lineage_builder.build.scripts import validate_compose_manifest
from lineage_builder.errors import ArchiveError
from lineage_builder.provisioning.shell import run_shell_cmd
from lineage_builder.redact import sanitize_log

logger = logging.getLogger(__name__)

CLONE_TIMEOUT = 1800


def normalize_repo_url(repo_url):
    """Rewrite SSH-style and scheme-less URLs to https so header auth applies."""
    if repo_url.startswith(("http://", "https://")):
        return repo_url
    if repo_url.startswith("git@"):
        host, sep, path = repo_url.removeprefix("git@").partition(":")
        if not sep or not host or not path:
            raise ArchiveError(f"Invalid BUILD_REPO_URL: {repo_url}")
        return f"https://{host}/{path}"
    return "https://" + repo_url.removeprefix("//")


def build_auth_header(token):
    encoded = base64.b64encode(f"x-access-token:{token.strip()}".encode()).decode()
    return f"AUTHORIZATION: basic {encoded}"


async def _git(args, display):
    rc, _, stderr = await run_shell_cmd(["git", *args], timeout=CLONE_TIMEOUT, display=display)
    if rc != 0:
        raise ArchiveError(f"{display} failed (exit {rc}): {sanitize_log(stderr.strip())}")


async def clone_repository(repo_url, dest, ref="", token=""):
    """Clone *repo_url* into *dest*, optionally checking out *ref*."""
    token = token.strip()
    if token:
        url = normalize_repo_url(repo_url)
        args = ["-c", f"http.extraheader={build_auth_header(token)}", "clone", url, dest]
        display = f"git -c http.extraheader=*** clone {url}"
    else:
        args = ["clone", repo_url, dest]
        display = f"git clone {repo_url}"
    await _git(args, display)
    if ref:
        await _git(["-C", dest, "checkout", ref], f"git checkout {ref}")


def create_archive(source_dir, archive_path, exclude=()):
    """Pack *source_dir* into a gzip tarball rooted at '.', skipping *exclude* paths.

    Excluded paths that contain *source_dir* itself are ignored.
    """
    source_dir = os.path.abspath(source_dir)
    excluded = set()
    for p in exclude:
        if not p:
            continue
        path = os.path.abspath(p)
        if source_dir != path and not source_dir.startswith(path + os.sep):
            excluded.add(path)

    def _filter(info):
        full = os.path.normpath(os.path.join(source_dir, info.name))
        for path in excluded:
            if full == path or full.startswith(path + os.sep):
                return None
        return info

    with tarfile.open(archive_path, "w:gz") as tar:
        tar.add(source_dir, arcname=".", filter=_filter)


async def prepare_archive(config):
    """Produce one uploadable archive of the build source.

    Returns:
        (archive_path, cleanup) where cleanup() removes the archive and any
        clone staging directory.

    Raises:
        ArchiveError: the source could not be read, cloned or packed.
        ConfigError: the compose manifest is missing or lacks the build service.
    """
    base_dir = config.local_artifact_dir or tempfile.gettempdir()
    try:
        os.makedirs(base_dir, exist_ok=True)
    except OSError as e:
        raise ArchiveError(f"Cannot create directory {base_dir} for the source archive: {e}") from e
    archive_path = os.path.join(base_dir, f"lineage-source-{time.time_ns()}.tar.gz")
    staging_dir = None

    def cleanup():
        if staging_dir:
            shutil.rmtree(staging_dir, ignore_errors=True)
        with contextlib.suppress(FileNotFoundError):
            os.remove(archive_path)

    try:
        if config.build_source_dir:
            source_dir = config.build_source_dir
            if not os.path.isdir(source_dir):
                raise ArchiveError(f"BUILD_SOURCE_DIR {source_dir} is not a directory")
        else:
            staging_dir = tempfile.mkdtemp(prefix="repo-staging-", dir=base_dir)
            await clone_repository(config.build_repo_url, staging_dir, config.build_repo_ref, config.build_repo_token)
            source_dir = staging_dir

        if config.compose_file:
            validate_compose_manifest(os.path.join(source_dir, config.compose_file), config.build_service_name)

        logger.info(f"Packing {config.source_location} into {archive_path}...")
        exclude = [archive_path, config.local_artifact_dir, config.server_state_file]
        try:
            await asyncio.to_thread(create_archive, source_dir, archive_path, exclude)
        except (OSError, tarfile.TarError) as e:
            raise ArchiveError(f"Cannot create source archive: {e}") from e
    except (Exception, asyncio.CancelledError):
        cleanup()
        raise

    logger.info(f"Source archive ready ({os.path.getsize(archive_path) / 1e6:.1f} MB).")
    return archive_path, cleanup
