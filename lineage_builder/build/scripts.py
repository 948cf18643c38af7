"""Remote shell scripts for the build server and compose manifest validation.

Every value interpolated into a script goes through shell_quote().
"""

import yaml

from lineage_builder.errors import ConfigError
from lineage_builder.provisioning.ssh_transport import shell_quote

GET_DOCKER_URL = "https://get.docker.com"
REMOTE_BUILD_LOG = ".lineage-builder-build.log"


def bash_command(script: str) -> str:
    """Wrap a multi-line script so it runs under bash whatever the login shell is."""
    return f"bash -c {shell_quote(script)}"


def docker_install_script(expected_sha256=""):
    """Idempotent Docker + compose plugin setup.

    Installs Docker from get.docker.com only when it is missing. The
    installer is checked against *expected_sha256* when one is given and
    executed with a warning otherwise. Missing privileges or tools are
    fatal.
    """
    return f"""set -euo pipefail

docker_compose_available() {{
  docker compose version >/dev/null 2>&1
}}

install_docker_packages() {{
  if [ "$(id -u)" -ne 0 ]; then
    echo "docker is missing and cannot be installed without root; ensure the build server runs as root" >&2
    exit 1
  fi
  if ! command -v curl >/dev/null 2>&1; then
    echo "curl is required to install Docker; set HETZNER_SERVER_IMAGE to an image that includes curl" >&2
    exit 1
  fi
  if ! command -v sha256sum >/dev/null 2>&1; then
    echo "sha256sum is required to check the Docker installer; set HETZNER_SERVER_IMAGE to an image that includes coreutils" >&2
    exit 1
  fi
  installer="$(mktemp)"
  trap 'rm -f "$installer"' EXIT
  curl -fsSL {GET_DOCKER_URL} -o "$installer"
  actual_sha256="$(sha256sum "$installer" | cut -d ' ' -f 1)"
  expected_sha256={shell_quote(expected_sha256)}
  if [ -n "$expected_sha256" ]; then
    if [ "$actual_sha256" != "$expected_sha256" ]; then
      echo "get.docker.com checksum verification failed: expected $expected_sha256, got $actual_sha256" >&2
      exit 1
    fi
  else
    echo "warning: executing unverified installer script (sha256 $actual_sha256); set GET_DOCKER_SHA256 to pin it" >&2
  fi
  sh "$installer"
}}

if ! command -v docker >/dev/null 2>&1; then
  install_docker_packages
fi
if ! docker_compose_available; then
  echo "docker compose plugin is required but not available; install Docker with get.docker.com which includes the compose plugin" >&2
  exit 1
fi
docker compose version
"""


def compose_build_script(working_dir, compose_file, service):
    """Pull and run the build service, exiting with the service's exit code.

    Output is teed into a log file in the working directory; PIPESTATUS
    keeps the compose exit code instead of tee's.
    """
    compose = f"docker compose -f {shell_quote(compose_file)}"
    return f"""set -euo pipefail
cd {shell_quote(working_dir)}
docker compose version
{compose} pull
set +e
{compose} up --build --abort-on-container-exit --exit-code-from {shell_quote(service)} 2>&1 | tee {REMOTE_BUILD_LOG}
status=${{PIPESTATUS[0]}}
set -e
exit "$status"
"""


def stage_source_command(working_dir, remote_archive):
    """Replace the working directory with the archive contents, then drop the archive."""
    wd = shell_quote(working_dir)
    archive = shell_quote(remote_archive)
    return f"rm -rf {wd} && mkdir -p {wd} && tar -xzf {archive} -C {wd}; status=$?; rm -f {archive}; exit $status"


def find_artifacts_command(working_dir, artifact_dir, pattern):
    return (
        f"cd {shell_quote(working_dir)} && "
        f"find {shell_quote(artifact_dir)} -maxdepth 2 -type f -name {shell_quote(pattern)} -print"
    )


def compose_logs_command(working_dir, compose_file):
    return f"cd {shell_quote(working_dir)} && docker compose -f {shell_quote(compose_file)} logs --no-color"


def validate_compose_manifest(path, service):
    """Check that *path* is a compose file defining *service*.

    Raises:
        ConfigError: the file is missing, not YAML, or lacks the service.
    """
    try:
        with open(path) as f:
            manifest = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Compose file not found: {path}") from None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse compose file {path}: {e}") from e

    if not isinstance(manifest, dict):
        raise ConfigError(f"Compose file {path} is not a mapping")
    services = manifest.get("services")
    if not isinstance(services, dict) or not services:
        raise ConfigError(f"Compose file {path} defines no services")
    if service not in services:
        raise ConfigError(f"Compose file {path} has no service '{service}' (found: {', '.join(sorted(services))})")
    return manifest
