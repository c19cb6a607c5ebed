"""Locate the build artifact on the server and copy it home."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Protocol

from htzbuild.config import RunConfiguration, interpolate
from htzbuild.errors import ArtifactNotFound, ConfigError

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "build"


class ArtifactSource(Protocol):
    def file_exists(self, path: str) -> bool: ...

    def download(self, remote_path: str, local_path: Path) -> None: ...


def format_timestamp(moment: datetime) -> str:
    """UTC ISO timestamp with millis, made filename-safe.

    2024-01-01T12:00:00.000Z -> 2024-01-01-12-00-00-000
    """
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    iso = moment.replace(tzinfo=None).isoformat(timespec="milliseconds")
    return iso.replace("T", "-").replace(":", "-").replace(".", "-")


def artifact_filename(remote_path: str, moment: datetime) -> str:
    return f"{ARTIFACT_PREFIX}-{format_timestamp(moment)}{PurePosixPath(remote_path).suffix}"


class ArtifactResolver:
    """Maps a profile to its expected output and finds what the build produced."""

    def __init__(self, config: RunConfiguration, profile: str, output_dir: Path) -> None:
        self.config = config
        self.profile = profile
        self.output_dir = output_dir
        self._vars = config.template_vars(profile)

    def output_path(self) -> str:
        """Remote path the build should write to (profile entry, else ``default``)."""
        mapping = self.config.artifact_for_profile
        template = mapping.get(self.profile) or mapping.get("default")
        if not template:
            raise ConfigError(f"No artifact path defined for profile {self.profile!r}")
        return interpolate(template, self._vars)

    def candidates(self) -> list[str]:
        return [interpolate(c, self._vars) for c in self.config.artifact_candidates]

    def find(self, source: ArtifactSource) -> str | None:
        """First candidate, in configured order, that exists remotely."""
        for candidate in self.candidates():
            if source.file_exists(candidate):
                return candidate
        return None

    def retrieve(self, source: ArtifactSource, moment: datetime) -> Path:
        """Copy the first existing candidate into output_dir under a timestamped name."""
        remote = self.find(source)
        if remote is None:
            raise ArtifactNotFound("No build artifact was found on the remote server")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        local = self.output_dir / artifact_filename(remote, moment)
        logger.info("downloading %s -> %s", remote, local)
        source.download(remote, local)
        return local
