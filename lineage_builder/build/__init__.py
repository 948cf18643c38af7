"""Build library: source archives, remote build driver, orchestration, release publishing."""

from lineage_builder.build.archive import create_archive, normalize_repo_url, prepare_archive
from lineage_builder.build.driver import BuildDriver, BuildResult
from lineage_builder.build.orchestrate import Orchestrator, StageLogger, save_build_log
from lineage_builder.build.release import GitHubReleasePublisher
from lineage_builder.build.scripts import (
    compose_build_script,
    docker_install_script,
    validate_compose_manifest,
)

__all__ = [
    "create_archive",
    "normalize_repo_url",
    "prepare_archive",
    "BuildDriver",
    "BuildResult",
    "Orchestrator",
    "StageLogger",
    "save_build_log",
    "GitHubReleasePublisher",
    "compose_build_script",
    "docker_install_script",
    "validate_compose_manifest",
]
