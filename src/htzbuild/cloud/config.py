"""Hetzner Cloud settings, loaded from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_CLOUD_INIT = Path(__file__).resolve().parent.parent / "cloud-init-builder.yaml"


def expand_home(path: str) -> Path:
    """Expand a leading ``~`` the way a shell would."""
    return Path(os.path.expanduser(path))


class HetznerConfig(BaseModel):
    """Provisioning parameters for the build server."""

    token: str | None = Field(default=None, description="HCLOUD_TOKEN; optional with an hcloud context")
    ssh_key: str | None = Field(default=None, description="SSH key name registered in Hetzner")
    ssh_key_file: Path = Field(default_factory=lambda: expand_home("~/.ssh/id_hetzner"))
    server_type: str = Field(default="cpx52")
    location: str = Field(default="fsn1")
    image: str = Field(default="ubuntu-24.04")
    cloud_init_file: Path = Field(default=DEFAULT_CLOUD_INIT)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> HetznerConfig:
        """Load configuration from environment variables."""
        env = os.environ if env is None else env
        return cls(
            token=env.get("HCLOUD_TOKEN") or None,
            ssh_key=env.get("HETZNER_SSH_KEY") or None,
            ssh_key_file=expand_home(env.get("HETZNER_SSH_KEY_FILE") or "~/.ssh/id_hetzner"),
            server_type=env.get("HETZNER_SERVER_TYPE") or "cpx52",
            location=env.get("HETZNER_LOCATION") or "fsn1",
            image=env.get("HCLOUD_IMAGE") or "ubuntu-24.04",
            cloud_init_file=Path(env.get("CLOUD_INIT_FILE") or DEFAULT_CLOUD_INIT),
        )
