"""Build configuration: the single place that reads the process environment."""

import os
import posixpath
import re
from dataclasses import dataclass

from lineage_builder.errors import ConfigError

DEFAULT_SERVER_TYPE = "cx41"
DEFAULT_SERVER_IMAGE = "ubuntu-22.04"
DEFAULT_SERVER_NAME = "lineageos-builder"
DEFAULT_COMPOSE_FILE = "docker-compose.yml"
DEFAULT_SERVICE_NAME = "build"
DEFAULT_WORKING_DIR = "lineageos-build"
DEFAULT_SSH_PORT = 22
DEFAULT_TIMEOUT_MINUTES = 360
DEFAULT_STABILITY_SECONDS = 60
DEFAULT_ARTIFACT_DIR = "zips"
DEFAULT_ARTIFACT_PATTERN = "*.zip"
DEFAULT_LOCAL_ARTIFACTS = "artifacts"
DEFAULT_STATE_FILE = ".hetzner-server-state.json"

HOST_KEY_POLICIES = ("pin", "insecure")

_TRUE_VALUES = ("true", "1", "yes")
_SHA256_RE = re.compile(r"[0-9a-f]{64}")


@dataclass(frozen=True)
class BuildConfig:
    """Immutable build configuration, assembled once at startup."""

    hetzner_token: str = ""
    build_source_dir: str = ""
    build_repo_url: str = ""
    build_repo_ref: str = ""
    build_repo_token: str = ""
    server_type: str = DEFAULT_SERVER_TYPE
    server_location: str = ""
    server_image: str = DEFAULT_SERVER_IMAGE
    server_name: str = DEFAULT_SERVER_NAME
    server_user_data_path: str = ""
    compose_file: str = DEFAULT_COMPOSE_FILE
    build_service_name: str = DEFAULT_SERVICE_NAME
    working_dir: str = DEFAULT_WORKING_DIR
    artifact_dir: str = DEFAULT_ARTIFACT_DIR
    artifact_pattern: str = DEFAULT_ARTIFACT_PATTERN
    local_artifact_dir: str = DEFAULT_LOCAL_ARTIFACTS
    ssh_port: int = DEFAULT_SSH_PORT
    build_timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES
    boot_stability_seconds: int = DEFAULT_STABILITY_SECONDS
    keep_server_on_failure: bool = False
    user_ssh_keys: tuple[str, ...] = ()
    github_actions: bool = False
    github_actor: str = ""
    server_state_file: str = DEFAULT_STATE_FILE
    host_key_policy: str = "pin"
    get_docker_sha256: str = ""
    github_token: str = ""
    release_repo: str = ""
    release_tag: str = ""
    release_name: str = ""
    release_notes: str = ""

    @property
    def build_timeout_seconds(self) -> int:
        return self.build_timeout_minutes * 60

    @property
    def publish_enabled(self) -> bool:
        return bool(self.release_repo and self.release_tag)

    @property
    def source_location(self) -> str:
        return self.build_source_dir or self.build_repo_url


@dataclass(frozen=True)
class CleanupConfig:
    """Configuration for the standalone cleanup command."""

    server_state_file: str = DEFAULT_STATE_FILE
    keep_server_on_failure: bool = False


def load_config_from_env(environ=None) -> BuildConfig:
    """Build a BuildConfig from environment variables.

    Raises:
        ConfigError: a required variable is missing or a value is invalid.
    """
    env = os.environ if environ is None else environ

    hetzner_token = env.get("HETZNER_TOKEN", "")
    if not hetzner_token:
        raise ConfigError("HETZNER_TOKEN is required")

    build_source_dir = env.get("BUILD_SOURCE_DIR", "")
    build_repo_url = env.get("BUILD_REPO_URL", "")
    if not build_source_dir and not build_repo_url:
        raise ConfigError("BUILD_SOURCE_DIR or BUILD_REPO_URL is required")

    host_key_policy = _env_or_default(env, "SSH_HOST_KEY_POLICY", "pin").lower()
    if host_key_policy not in HOST_KEY_POLICIES:
        raise ConfigError(f"SSH_HOST_KEY_POLICY must be one of {', '.join(HOST_KEY_POLICIES)}, got {host_key_policy!r}")

    github_token = env.get("GITHUB_TOKEN", "")
    release_repo = env.get("RELEASE_REPO", "")
    release_tag = env.get("RELEASE_TAG", "")
    if bool(release_repo) != bool(release_tag):
        raise ConfigError("RELEASE_REPO and RELEASE_TAG must be set together")
    if release_repo and "/" not in release_repo:
        raise ConfigError(f"RELEASE_REPO must be 'owner/name', got {release_repo!r}")
    if release_repo and not github_token:
        raise ConfigError("GITHUB_TOKEN is required when RELEASE_REPO is set")

    get_docker_sha256 = env.get("GET_DOCKER_SHA256", "").strip().lower()
    if get_docker_sha256 and not _SHA256_RE.fullmatch(get_docker_sha256):
        raise ConfigError("GET_DOCKER_SHA256 must be a hex-encoded SHA-256 digest")

    github_actions = env.get("GITHUB_ACTIONS", "") == "true"

    return BuildConfig(
        hetzner_token=hetzner_token,
        build_source_dir=build_source_dir,
        build_repo_url=build_repo_url,
        build_repo_ref=env.get("BUILD_REPO_REF", ""),
        build_repo_token=env.get("BUILD_REPO_TOKEN", ""),
        server_type=_env_or_default(env, "HETZNER_SERVER_TYPE", DEFAULT_SERVER_TYPE),
        server_location=env.get("HETZNER_SERVER_LOCATION", ""),
        server_image=_env_or_default(env, "HETZNER_SERVER_IMAGE", DEFAULT_SERVER_IMAGE),
        server_name=_env_or_default(env, "HETZNER_SERVER_NAME", DEFAULT_SERVER_NAME),
        server_user_data_path=env.get("HETZNER_SERVER_USER_DATA", ""),
        compose_file=normalize_compose_file(
            build_source_dir,
            _env_or_default(env, "BUILD_COMPOSE_FILE", DEFAULT_COMPOSE_FILE),
        ),
        build_service_name=_env_or_default(env, "BUILD_SERVICE_NAME", DEFAULT_SERVICE_NAME),
        working_dir=_env_or_default(env, "BUILD_WORKDIR", DEFAULT_WORKING_DIR),
        artifact_dir=_env_or_default(env, "ARTIFACT_DIR", DEFAULT_ARTIFACT_DIR),
        artifact_pattern=_env_or_default(env, "ARTIFACT_PATTERN", DEFAULT_ARTIFACT_PATTERN),
        local_artifact_dir=_env_or_default(env, "LOCAL_ARTIFACT_DIR", DEFAULT_LOCAL_ARTIFACTS),
        ssh_port=_env_to_int(env, "HETZNER_SSH_PORT", DEFAULT_SSH_PORT),
        build_timeout_minutes=_env_to_int(env, "BUILD_TIMEOUT_MINUTES", DEFAULT_TIMEOUT_MINUTES),
        boot_stability_seconds=_env_to_int(env, "BOOT_STABILITY_SECONDS", DEFAULT_STABILITY_SECONDS, minimum=0),
        keep_server_on_failure=_env_to_bool(env, "KEEP_SERVER_ON_FAILURE"),
        user_ssh_keys=_split_keys(env.get("USER_SSH_KEYS", "")),
        github_actions=github_actions,
        github_actor=env.get("GITHUB_ACTOR", "") if github_actions else "",
        server_state_file=_env_or_default(env, "SERVER_STATE_FILE", DEFAULT_STATE_FILE),
        host_key_policy=host_key_policy,
        get_docker_sha256=get_docker_sha256,
        github_token=github_token,
        release_repo=release_repo,
        release_tag=release_tag,
        release_name=_env_or_default(env, "RELEASE_NAME", release_tag),
        release_notes=env.get("RELEASE_NOTES", ""),
    )


def load_cleanup_config(environ=None) -> CleanupConfig:
    """Cleanup mode only needs the state file location and the keep flag."""
    env = os.environ if environ is None else environ
    return CleanupConfig(
        server_state_file=_env_or_default(env, "SERVER_STATE_FILE", DEFAULT_STATE_FILE),
        keep_server_on_failure=_env_to_bool(env, "KEEP_SERVER_ON_FAILURE"),
    )


def normalize_compose_file(build_source_dir: str, compose_file: str) -> str:
    """Return the compose file path relative to the source tree root.

    Absolute paths are accepted only when they point inside build_source_dir.
    Paths that resolve to the tree root itself or escape it are rejected.
    """
    if not compose_file:
        return ""
    if os.path.isabs(compose_file):
        if not build_source_dir:
            raise ConfigError(f"BUILD_COMPOSE_FILE must be relative to the repository root, got {compose_file!r}")
        relative = os.path.relpath(os.path.normpath(compose_file), os.path.normpath(build_source_dir))
    else:
        relative = os.path.normpath(compose_file)
    relative = relative.replace(os.sep, posixpath.sep)
    if relative in (".", "") or relative == ".." or relative.startswith("../"):
        raise ConfigError(f"BUILD_COMPOSE_FILE {compose_file!r} must point to a file inside the source tree")
    return relative


def _env_or_default(env, key, fallback):
    value = env.get(key, "")
    return value if value else fallback


def _env_to_int(env, key, fallback, minimum=1):
    value = env.get(key, "")
    if not value:
        return fallback
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from None
    if parsed < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {parsed}")
    return parsed


def _env_to_bool(env, key):
    return env.get(key, "").strip().lower() in _TRUE_VALUES


def _split_keys(value):
    return tuple(key.strip() for key in value.split(",") if key.strip())
