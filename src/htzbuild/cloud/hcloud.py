"""Hetzner Cloud server create/delete through the ``hcloud`` CLI."""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ValidationError

from htzbuild.errors import (
    NoSshKeyAvailable,
    PrerequisiteMissing,
    ProvisioningFailed,
    ProvisioningResponseInvalid,
)
from htzbuild.models import ProvisionedServer

logger = logging.getLogger(__name__)


class Provisioner(Protocol):
    """What the builder needs from a cloud provider."""

    def check_access(self) -> None: ...

    def create(
        self,
        *,
        name: str,
        server_type: str,
        image: str,
        location: str,
        user_data_file: Path,
        ssh_key: str | None = None,
    ) -> ProvisionedServer: ...

    def destroy(self, server_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# `hcloud server create -o json` response shape (only the fields we read)
# ---------------------------------------------------------------------------


class _IPv4(BaseModel):
    ip: str


class _PublicNet(BaseModel):
    ipv4: _IPv4


class _ServerId(BaseModel):
    id: int | str


class _Server(_ServerId):
    public_net: _PublicNet


class _CreatedResponse(BaseModel):
    server: _ServerId


class _CreateResponse(BaseModel):
    server: _Server


def parse_create_response(stdout: str) -> ProvisionedServer:
    """Extract the server id and public IPv4 from the create response.

    The id is read first: a response with an id but no usable IPv4 still
    means a server exists, and the raised error carries its id.
    """
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise ProvisioningResponseInvalid("Unable to parse server creation response") from exc

    try:
        created = _CreatedResponse.model_validate(data)
    except ValidationError as exc:
        raise ProvisioningResponseInvalid(
            f"Server creation response is missing the server id: {exc}"
        ) from exc
    server_id = str(created.server.id)

    try:
        response = _CreateResponse.model_validate(data)
    except ValidationError as exc:
        raise ProvisioningResponseInvalid(
            f"Server {server_id} was created without a public IPv4 address: {exc}",
            server_id=server_id,
        ) from exc

    return ProvisionedServer(id=server_id, ip=response.server.public_net.ipv4.ip)


class HetznerProvisioner:
    """Creates and deletes servers with the hcloud CLI."""

    def __init__(self, env: Mapping[str, str] | None = None, *, binary: str = "hcloud") -> None:
        self.env = dict(env) if env is not None else None
        self.binary = binary

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        cmd = [self.binary, *args]
        logger.debug("running %s", " ".join(cmd))
        return subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            env=self.env,
        )

    def check_access(self) -> None:
        """Require HCLOUD_TOKEN or an active hcloud context."""
        if self.env is not None and self.env.get("HCLOUD_TOKEN"):
            return
        try:
            result = self._run("context", "active")
        except FileNotFoundError as exc:
            raise PrerequisiteMissing(f"{self.binary} is required but not installed") from exc
        if result.returncode != 0 or not result.stdout.strip():
            raise PrerequisiteMissing("HCLOUD_TOKEN not set and no active hcloud context found")

    def first_ssh_key(self) -> str | None:
        """Name of the first SSH key registered in the account, if any."""
        result = self._run("ssh-key", "list", "-o", "noheader", "-o", "columns=name")
        if result.returncode != 0:
            logger.warning("could not list SSH keys: %s", result.stderr.strip())
            return None
        for line in result.stdout.splitlines():
            if line.strip():
                return line.strip()
        return None

    def create(
        self,
        *,
        name: str,
        server_type: str,
        image: str,
        location: str,
        user_data_file: Path,
        ssh_key: str | None = None,
    ) -> ProvisionedServer:
        """Create a server and return its id and public IPv4.

        Uses *ssh_key* if given, otherwise the first key in the account.
        """
        key = ssh_key or self.first_ssh_key()
        if not key:
            raise NoSshKeyAvailable(
                "No SSH key found. Add one via: hcloud ssh-key create --name mykey"
                " --public-key-from-file ~/.ssh/id_hetzner.pub"
            )
        logger.info("Using SSH key: %s", key)

        result = self._run(
            "server",
            "create",
            "--name",
            name,
            "--type",
            server_type,
            "--image",
            image,
            "--location",
            location,
            "--ssh-key",
            key,
            "--user-data-from-file",
            str(user_data_file),
            "--poll-interval",
            "1s",
            "--output",
            "json",
        )
        if result.returncode != 0:
            raise ProvisioningFailed(result.stderr.strip() or "Failed to create server")

        return parse_create_response(result.stdout.strip())

    def destroy(self, server_id: str) -> bool:
        """Delete the server. Never raises; returns whether deletion succeeded."""
        try:
            result = self._run("server", "delete", server_id, "--poll-interval", "1s")
        except OSError as exc:
            logger.error("Failed to delete server %s: %s", server_id, exc)
            return False
        if result.returncode != 0:
            logger.error("Failed to delete server %s: %s", server_id, result.stderr.strip())
            return False
        return True
