"""Exceptions raised by htzbuild.

Everything derives from BuildError so the CLI can report any failure with a
single handler and exit non-zero after teardown.
"""

from __future__ import annotations


class BuildError(Exception):
    """Base class for all htzbuild failures."""


class ConfigError(BuildError):
    """Invalid or missing configuration (config file, env folder, profile mapping)."""


class PrerequisiteMissing(BuildError):
    """A required local tool, credential or file is absent."""


class NoSshKeyAvailable(BuildError):
    """No SSH key was configured and the provider account has none."""


class ProvisioningFailed(BuildError):
    """The provider CLI refused to create the server."""


class ProvisioningResponseInvalid(BuildError):
    """The create response lacked a server id or a public IPv4 address.

    server_id is set when the server was created but its address is unusable,
    so the caller can still delete it.
    """

    def __init__(self, message: str, server_id: str | None = None) -> None:
        self.server_id = server_id
        super().__init__(message)


class ReadinessTimeout(BuildError):
    """A bounded readiness poll ran out of attempts."""


class TransferFailed(BuildError):
    """rsync or scp exited non-zero."""


class ChannelUnavailable(BuildError):
    """ssh itself failed (exit 255), so the remote state is unknown."""


class RemoteCommandFailed(BuildError):
    """A remote command exited non-zero and the caller did not tolerate it."""

    def __init__(self, command: str, exit_status: int, stderr: str = "") -> None:
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        message = stderr.strip() or f"SSH command failed with status {exit_status}"
        super().__init__(message)


class RemoteBuildCrashed(BuildError):
    """The detached build died without writing the status file or an artifact."""

    def __init__(self, log_tail: str = "") -> None:
        self.log_tail = log_tail
        super().__init__("Remote build failed")


class ArtifactNotFound(BuildError):
    """None of the artifact candidates exist on the server."""


class InvalidTransition(BuildError):
    """The orchestrator tried to move its state machine backwards."""
