"""RemoteBuilder: one build on a throwaway Hetzner server.

Lifecycle (forward only; any failure moves to FAILED):

    idle -> provisioning -> awaiting_ready -> syncing -> build_launched
         -> monitoring -> retrieving_artifact -> done

The server is deleted when the run ends, whatever the outcome. The build
itself runs detached on the server, so the only completion signal is the
status file it writes when it succeeds.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path

from htzbuild import console
from htzbuild.artifacts import ArtifactResolver
from htzbuild.cleanup import TeardownRegistry
from htzbuild.cloud.config import HetznerConfig
from htzbuild.cloud.hcloud import HetznerProvisioner, Provisioner
from htzbuild.config import RunConfiguration, build_config
from htzbuild.errors import (
    ChannelUnavailable,
    InvalidTransition,
    PrerequisiteMissing,
    ProvisioningResponseInvalid,
    RemoteBuildCrashed,
)
from htzbuild.models import STATE_ORDER, BuildResult, BuildState
from htzbuild.remote.poll import APT_LOCK, SSH_READY, build_monitor, poll_until
from htzbuild.remote.script import compose_build_script
from htzbuild.remote.ssh import SSH_CONNECTION_FAILED, SSHChannel

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("hcloud", "rsync", "ssh", "scp")
SERVER_NAME_PREFIX = "eas-builder"
SSH_PROBE_TIMEOUT = 5
APT_LOCK_FILE = "/var/lib/dpkg/lock-frontend"


def _process_pattern(pattern: str) -> str:
    """Bracket the first character so pgrep -f does not match the probing shell itself."""
    if pattern and pattern[0].isalnum():
        return f"[{pattern[0]}]{pattern[1:]}"
    return pattern


class RemoteBuilder:
    """Provision, build, fetch the artifact, and always destroy the server."""

    def __init__(
        self,
        profile: str = "preview",
        env: Mapping[str, str] | None = None,
        config: RunConfiguration | None = None,
        *,
        hetzner: HetznerConfig | None = None,
        project_dir: Path | None = None,
        provisioner: Provisioner | None = None,
        channel_factory: Callable[..., SSHChannel] = SSHChannel,
        teardown: TeardownRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._profile = profile
        self.env = dict(os.environ if env is None else env)
        self.config = config or build_config()
        self.hetzner = hetzner or HetznerConfig.from_env(self.env)
        self.project_dir = (project_dir or Path.cwd()).resolve()
        self.output_dir = self.project_dir / self.config.output_dir
        self.provisioner = provisioner or HetznerProvisioner(self.env)
        self.teardown = teardown or TeardownRegistry()
        self._channel_factory = channel_factory
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

        self.server_name = f"{SERVER_NAME_PREFIX}-{int(self._clock().timestamp() * 1000)}"
        self.server_id: str | None = None
        self.server_ip: str | None = None
        self.artifact_name: str | None = None
        self.channel: SSHChannel | None = None
        self.state = BuildState.IDLE
        self.resolver = ArtifactResolver(self.config, profile, self.output_dir)

    @property
    def profile(self) -> str:
        return self._profile

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new: BuildState) -> None:
        if self.state.terminal:
            raise InvalidTransition(f"cannot leave terminal state {self.state}")
        if new != BuildState.FAILED and STATE_ORDER.index(new) <= STATE_ORDER.index(self.state):
            raise InvalidTransition(f"cannot move from {self.state} to {new}")
        logger.debug("state %s -> %s", self.state, new)
        self.state = new

    def _remote(self) -> SSHChannel:
        assert self.channel is not None, "no server provisioned"
        return self.channel

    def run(self) -> BuildResult:
        """Execute the whole lifecycle. Raises BuildError subclasses on failure."""
        console.banner(
            "Hetzner Cloud EAS Build Tool",
            {
                "Profile": self.profile,
                "Server": f"{self.hetzner.server_type} @ {self.hetzner.location}",
            },
        )
        try:
            self.check_prerequisites()
            self.provision()
            self.wait_until_ready()
            self.sync_project()
            self.launch_build()
            self.monitor_build()
            artifact = self.retrieve_artifact()
            self._transition(BuildState.DONE)
        except BaseException:
            if not self.state.terminal:
                self.state = BuildState.FAILED
            raise
        finally:
            self.teardown.fire()

        console.success("Build complete!")
        console.info(f"Artifact location: {artifact}")
        return BuildResult(
            profile=self.profile,
            server_name=self.server_name,
            state=self.state,
            artifact_path=artifact,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def check_prerequisites(self) -> None:
        console.info("Checking prerequisites...")
        for tool in REQUIRED_TOOLS:
            if shutil.which(tool, path=self.env.get("PATH")) is None:
                raise PrerequisiteMissing(f"{tool} is required but not installed")

        self.provisioner.check_access()

        if not self.hetzner.cloud_init_file.is_file():
            raise PrerequisiteMissing(f"Cloud-init file not found at {self.hetzner.cloud_init_file}")
        if not self.hetzner.ssh_key_file.exists():
            console.warn(f"SSH key file {self.hetzner.ssh_key_file} not found; relying on ssh-agent")
        console.success("Prerequisites satisfied")

    def provision(self) -> None:
        self._transition(BuildState.PROVISIONING)
        hz = self.hetzner
        console.info(f"Creating server: {self.server_name} ({hz.server_type} in {hz.location})...")
        try:
            server = self.provisioner.create(
                name=self.server_name,
                server_type=hz.server_type,
                image=hz.image,
                location=hz.location,
                user_data_file=hz.cloud_init_file,
                ssh_key=hz.ssh_key,
            )
        except ProvisioningResponseInvalid as exc:
            if exc.server_id is not None:
                # Created but unusable; it still has to be deleted.
                self.server_id = exc.server_id
                self.teardown.arm(self._destroy_server)
            raise
        self.server_id = server.id
        self.server_ip = server.ip
        self.teardown.arm(self._destroy_server)
        self.channel = self._channel_factory(server.ip, hz.ssh_key_file, env=self.env)
        console.success(f"Server created: {server.ip} (ID: {server.id})")

    def wait_until_ready(self) -> None:
        self._transition(BuildState.AWAITING_READY)
        channel = self._remote()

        console.info("Waiting for SSH access...")
        try:
            poll_until(
                lambda: channel.execute(
                    "echo ready", allow_failure=True, connect_timeout=SSH_PROBE_TIMEOUT
                ).ok,
                SSH_READY,
                sleep=self._sleep,
                on_retry=lambda _attempt: console.progress_tick(),
            )
        finally:
            console.end_progress()

        console.info("Waiting for cloud-init to finish...")
        channel.execute("cloud-init status --wait", allow_failure=True, stream_output=True)

        console.info("Waiting for apt locks...")
        # fuser exits 0 while something holds the lock.
        poll_until(
            lambda: channel.execute(
                f"fuser {APT_LOCK_FILE} >/dev/null 2>&1", allow_failure=True
            ).exit_status
            not in (0, SSH_CONNECTION_FAILED),
            APT_LOCK,
            sleep=self._sleep,
            on_retry=lambda _attempt: console.info("Waiting for apt lock..."),
        )
        console.success("Server is ready")

    def sync_project(self) -> None:
        self._transition(BuildState.SYNCING)
        console.info("Syncing project files to server...")
        self._remote().sync(self.project_dir, self.config.remote_project_dir, self.config.sync_excludes)
        console.success("Project synced")

    def _secrets(self) -> dict[str, str]:
        secrets = {}
        for name in self.config.secret_env:
            value = self.env.get(name)
            if value:
                console.info(f"{name} is set ({len(value)} chars)")
                secrets[name] = value
            else:
                console.warn(f"{name} is NOT set - build may fail if remote credentials are needed")
        return secrets

    def launch_build(self) -> None:
        self._transition(BuildState.BUILD_LAUNCHED)
        console.info(f"Running build for profile {self.profile}...")
        console.info("This may take 10-20 minutes...")

        output_file = self.resolver.output_path()
        script = compose_build_script(self.config, self.profile, output_file, self._secrets())
        self._remote().execute(script.render(), stream_output=True)
        logger.info("detached build started, output expected at %s", output_file)

    def monitor_build(self) -> None:
        self._transition(BuildState.MONITORING)
        console.info("Monitoring build progress...")
        policy = build_monitor(self.config.monitor_interval)
        poll_until(self._build_finished, policy, sleep=self._sleep)

    def retrieve_artifact(self) -> Path:
        self._transition(BuildState.RETRIEVING_ARTIFACT)
        console.info("Retrieving build artifact...")
        path = self.resolver.retrieve(self._remote(), self._clock())
        self.artifact_name = path.name
        console.success(f"Artifact saved: {path}")
        return path

    # ------------------------------------------------------------------
    # Monitoring helpers
    # ------------------------------------------------------------------

    def _build_running(self) -> bool:
        patterns = self.config.build_processes
        if not patterns:
            # Nothing to probe for; only the status file can end the wait.
            return True
        probe = " || ".join(
            f"pgrep -f {shlex.quote(_process_pattern(p))} >/dev/null" for p in patterns
        )
        return self._remote().check(probe)

    def _build_finished(self) -> bool:
        """One monitoring tick: True when done, False to keep waiting, raises on a crash.

        A tick in which ssh itself fails says nothing about the build, which
        keeps running detached; it is skipped and the next tick tries again.
        """
        try:
            return self._inspect_build()
        except ChannelUnavailable as exc:
            console.warn(f"Could not reach the server, will retry: {exc}")
            return False

    def _inspect_build(self) -> bool:
        channel = self._remote()
        cfg = self.config

        if channel.file_exists(cfg.remote_status_file):
            console.success("Build completed")
            return True

        if self._build_running():
            tail = channel.tail(cfg.remote_log_path, cfg.log_tail_lines)
            if tail.strip():
                console.raw(tail)
            return False

        if self.resolver.find(channel) is not None:
            console.success("Build completed")
            return True

        if cfg.crash_grace_period > 0:
            self._sleep(cfg.crash_grace_period)
            if channel.file_exists(cfg.remote_status_file) or self.resolver.find(channel):
                console.success("Build completed")
                return True

        tail = channel.tail(cfg.remote_log_path, cfg.crash_log_lines)
        console.error("Build process died unexpectedly. Check logs:")
        if tail.strip():
            console.raw(tail)
        raise RemoteBuildCrashed(tail)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _destroy_server(self) -> None:
        if not self.server_id:
            return
        console.warn(f"Cleaning up server {self.server_name} (ID: {self.server_id})...")
        if self.provisioner.destroy(self.server_id):
            self.server_id = None
            console.success("Server deleted")
        else:
            console.error(
                f"Failed to delete server during cleanup; remove it manually:"
                f" hcloud server delete {self.server_id}"
            )
