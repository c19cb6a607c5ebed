"""Data models for htzbuild runs."""

from __future__ import annotations

import enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict


class BuildState(enum.StrEnum):
    """Lifecycle states of a build session, in the order they are entered."""

    IDLE = "idle"
    PROVISIONING = "provisioning"
    AWAITING_READY = "awaiting_ready"
    SYNCING = "syncing"
    BUILD_LAUNCHED = "build_launched"
    MONITORING = "monitoring"
    RETRIEVING_ARTIFACT = "retrieving_artifact"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (BuildState.DONE, BuildState.FAILED)


# Forward order of the happy path; FAILED sits outside it.
STATE_ORDER: list[BuildState] = [
    BuildState.IDLE,
    BuildState.PROVISIONING,
    BuildState.AWAITING_READY,
    BuildState.SYNCING,
    BuildState.BUILD_LAUNCHED,
    BuildState.MONITORING,
    BuildState.RETRIEVING_ARTIFACT,
    BuildState.DONE,
]


class CommandResult(BaseModel):
    """Outcome of one remote command."""

    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class ProvisionedServer(BaseModel):
    """Identity of a freshly created server."""

    model_config = ConfigDict(frozen=True)

    id: str
    ip: str


class BuildResult(BaseModel):
    """Result returned by RemoteBuilder.run() once the artifact is local."""

    profile: str
    server_name: str
    state: BuildState
    artifact_path: Path | None = None
