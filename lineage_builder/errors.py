"""Error taxonomy for the build pipeline.

Every failure the pipeline can report derives from BuilderError so the CLI
can map it to an exit status. CleanupError is the non-fatal category: it is
collected and logged by teardown code and never raised over a primary result.
"""


class BuilderError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(BuilderError):
    """Missing or invalid configuration. Fatal at startup, never retried."""


class ProvisioningError(BuilderError):
    """Provider API failure (quota, unknown type/image/location, HTTP errors)."""


class NotFoundError(ProvisioningError):
    """The provider reports that the requested resource does not exist."""


class ReadinessTimeout(BuilderError):
    """A bounded wait (port, running state, boot stability) gave up."""


class TransportError(BuilderError):
    """SSH session could not be established."""


class DialError(TransportError):
    """TCP connect failed, timed out, or the connection dropped."""


class AuthError(TransportError):
    """SSH handshake rejected: bad key or host key mismatch."""


class RemoteCommandError(BuilderError):
    """A remote command that must succeed exited non-zero."""


class CommandCancelled(BuilderError):
    """A remote operation was cut short by its deadline."""


class BuildError(BuilderError):
    """The remote build did not produce usable artifacts."""


class RuntimeSetupError(BuildError):
    """The container runtime is missing and could not be installed."""


class BuildTimeout(BuildError):
    """The build-phase deadline elapsed."""


class NoArtifactsError(BuildError):
    """The build finished but nothing matched the artifact glob."""


class ArchiveError(BuilderError):
    """The source archive could not be prepared."""


class PublishError(BuilderError):
    """Release publishing failed."""


class StateError(BuilderError):
    """The persisted server state file is unreadable."""


class CleanupError(BuilderError):
    """Secondary cleanup step failed (non-fatal, logged only)."""


class PipelineError(BuilderError):
    """A pipeline stage failed. Carries the stage name and the original error."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause
