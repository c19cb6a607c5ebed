"""Shared fakes and fixtures for htzbuild tests."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from htzbuild.cloud.config import HetznerConfig
from htzbuild.errors import ChannelUnavailable, RemoteCommandFailed
from htzbuild.models import CommandResult, ProvisionedServer

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeChannel:
    """In-memory stand-in for SSHChannel.

    The build counts as running for *running_ticks* pgrep probes; once they
    are used up, *finish_files* appear on the "server". The first
    *dropped_probes* monitoring probes fail as if ssh could not connect.
    """

    def __init__(
        self,
        *,
        files: set[str] | None = None,
        running_ticks: int = 0,
        finish_files: set[str] | None = None,
        ssh_failures: int = 0,
        dropped_probes: int = 0,
        log: str = "gradle: BUILD RUNNING\n",
    ) -> None:
        self.files = set(files or ())
        self.running_ticks = running_ticks
        self.finish_files = set(finish_files or ())
        self.ssh_failures = ssh_failures
        self.dropped_probes = dropped_probes
        self.log = log
        self.commands: list[str] = []
        self.scripts: list[str] = []
        self.synced: list[tuple[Path, str, list[str]]] = []
        self.downloads: list[tuple[str, Path]] = []

    def __call__(self, host: str, key_file: Path, *, env=None) -> FakeChannel:
        self.host = host
        self.key_file = key_file
        return self

    def execute(
        self,
        command: str,
        *,
        allow_failure: bool = False,
        stream_output: bool = False,
        connect_timeout: int | None = None,
    ) -> CommandResult:
        self.commands.append(command)
        status = 0
        if command == "echo ready":
            if self.ssh_failures:
                self.ssh_failures -= 1
                status = 255
        elif command.startswith("fuser"):
            status = 1
        elif command.startswith("pgrep"):
            if self.running_ticks > 0:
                self.running_ticks -= 1
            else:
                self.files |= self.finish_files
                status = 1
        elif "nohup" in command:
            self.scripts.append(command)

        result = CommandResult(exit_status=status)
        if status != 0 and not allow_failure:
            raise RemoteCommandFailed(command, status, "boom")
        return result

    def _drop(self, command: str) -> None:
        if self.dropped_probes:
            self.dropped_probes -= 1
            raise ChannelUnavailable(f"ssh to {self.host} failed: {command}")

    def check(self, command: str) -> bool:
        self._drop(command)
        return self.execute(command, allow_failure=True).ok

    def file_exists(self, path: str) -> bool:
        self.commands.append(f"test -f {path}")
        self._drop(path)
        return path in self.files

    def tail(self, path: str, lines: int) -> str:
        self.commands.append(f"tail -n {lines} {path}")
        self._drop(path)
        return self.log

    def sync(self, local_dir: Path, remote_dir: str, excludes=()) -> None:
        self.synced.append((local_dir, remote_dir, list(excludes)))

    def download(self, remote_path: str, local_path: Path) -> None:
        self.downloads.append((remote_path, local_path))
        local_path.write_text(f"contents of {remote_path}")


class FakeProvisioner:
    def __init__(self, *, create_error: Exception | None = None, destroy_ok: bool = True) -> None:
        self.create_error = create_error
        self.destroy_ok = destroy_ok
        self.created: list[dict] = []
        self.destroyed: list[str] = []

    def check_access(self) -> None:
        pass

    def create(self, **kwargs) -> ProvisionedServer:
        self.created.append(kwargs)
        if self.create_error is not None:
            raise self.create_error
        return ProvisionedServer(id="42", ip="203.0.113.10")

    def destroy(self, server_id: str) -> bool:
        self.destroyed.append(server_id)
        return self.destroy_ok


@pytest.fixture
def hetzner(tmp_path: Path) -> HetznerConfig:
    cloud_init = tmp_path / "cloud-init.yaml"
    cloud_init.write_text("#cloud-config\n")
    key = tmp_path / "id_test"
    key.write_text("key")
    return HetznerConfig(ssh_key="ci-key", ssh_key_file=key, cloud_init_file=cloud_init)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "app"
    project.mkdir()
    (project / "package.json").write_text("{}")
    return project


@pytest.fixture
def tools_installed(monkeypatch):
    monkeypatch.setattr("htzbuild.builder.shutil.which", lambda tool, path=None: f"/usr/bin/{tool}")
