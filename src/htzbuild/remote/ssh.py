"""SSH channel to the build server: commands, rsync upload and scp download.

Every remote interaction goes through SSHChannel. Commands are wrapped in
``bash -lc`` so the login profile (PATH, Android SDK vars) is in effect.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from htzbuild.errors import ChannelUnavailable, RemoteCommandFailed, TransferFailed
from htzbuild.models import CommandResult

logger = logging.getLogger(__name__)

# ssh exits 255 when it cannot reach or authenticate to the host.
SSH_CONNECTION_FAILED = 255

SSH_OPTIONS = (
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "ServerAliveInterval=60",
    "-o",
    "ServerAliveCountMax=3",
)


class SSHChannel:
    """Runs commands on one host as *user* using a private key file."""

    def __init__(
        self,
        host: str,
        key_file: Path,
        *,
        user: str = "root",
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.host = host
        self.key_file = Path(key_file)
        self.user = user
        self.env = dict(env) if env is not None else None

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def ssh_args(self, *, connect_timeout: int | None = None) -> list[str]:
        args = list(SSH_OPTIONS)
        if connect_timeout is not None:
            args += ["-o", f"ConnectTimeout={connect_timeout}"]
        args += ["-i", str(self.key_file)]
        return args

    @property
    def ssh_command_line(self) -> str:
        """The ssh invocation as one shell string, for ``rsync -e``."""
        return shlex.join(["ssh", *self.ssh_args()])

    def execute(
        self,
        command: str,
        *,
        allow_failure: bool = False,
        stream_output: bool = False,
        connect_timeout: int | None = None,
    ) -> CommandResult:
        """Run *command* remotely.

        Raises RemoteCommandFailed on a non-zero exit unless allow_failure is
        set. With stream_output the remote output goes straight to our
        stdout/stderr and the returned result has empty stdout/stderr.
        """
        cmd = [
            "ssh",
            *self.ssh_args(connect_timeout=connect_timeout),
            self.target,
            f"bash -lc {shlex.quote(command)}",
        ]
        logger.debug("ssh %s: %s", self.host, command)

        proc = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=not stream_output,
            text=True,
            env=self.env,
        )
        result = CommandResult(
            exit_status=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if not result.ok and not allow_failure:
            raise RemoteCommandFailed(command, result.exit_status, result.stderr)
        return result

    def _reached(self, command: str) -> CommandResult:
        """Run a read-only probe; ssh's own failure is raised, not read as an answer."""
        result = self.execute(command, allow_failure=True)
        if result.exit_status == SSH_CONNECTION_FAILED:
            raise ChannelUnavailable(
                f"ssh to {self.host} failed: {result.stderr.strip() or 'connection error'}"
            )
        return result

    def check(self, command: str) -> bool:
        """True if *command* exits 0 on the server. Raises ChannelUnavailable if ssh fails."""
        return self._reached(command).ok

    def file_exists(self, path: str) -> bool:
        return self.check(f"test -f {shlex.quote(path)}")

    def tail(self, path: str, lines: int) -> str:
        return self._reached(f"tail -n {int(lines)} {shlex.quote(path)}").stdout

    def sync(self, local_dir: Path, remote_dir: str, excludes: Sequence[str] = ()) -> None:
        """One-way rsync of *local_dir* into *remote_dir*, progress streamed."""
        remote = remote_dir.rstrip("/") + "/"
        cmd = ["rsync", "-avz", "--progress"]
        for pattern in excludes:
            cmd += ["--exclude", pattern]
        cmd += ["-e", self.ssh_command_line, f"{local_dir}/", f"{self.target}:{remote}"]
        self._transfer(cmd)

    def download(self, remote_path: str, local_path: Path) -> None:
        cmd = ["scp", *self.ssh_args(), f"{self.target}:{remote_path}", str(local_path)]
        self._transfer(cmd)

    def _transfer(self, cmd: list[str]) -> None:
        logger.debug("running %s", shlex.join(cmd))
        proc = subprocess.run(cmd, capture_output=False, env=self.env)
        if proc.returncode != 0:
            raise TransferFailed(
                f"Command {cmd[0]} {' '.join(cmd[1:])} failed with status {proc.returncode}"
            )
