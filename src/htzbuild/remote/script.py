"""Compose the bash script that prepares the server and starts the build.

The script is a list of typed statements, each rendering its own lines.
All dynamic values are quoted with shlex.quote; secrets are embedded only in
base64 form and decoded when the remote env file is sourced.

Base64 is transport safety (no quoting breakage, no plain token in the
echoed env file), not secrecy: anyone who can read the env file or the
process list on the server can recover the token.
"""

from __future__ import annotations

import base64
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Protocol

from htzbuild.config import RunConfiguration, interpolate
from htzbuild.errors import ConfigError

STATUS_SENTINEL = "BUILD_COMPLETE"

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Statement(Protocol):
    def render(self) -> list[str]: ...


@dataclass(frozen=True)
class WriteFile:
    """Write *lines* verbatim to *path* through a quoted heredoc."""

    path: str
    lines: tuple[str, ...]
    delimiter: str = "ENVFILE"

    def render(self) -> list[str]:
        delimiter = self.delimiter
        while delimiter in self.lines:
            delimiter += "_"
        return [f"cat <<'{delimiter}' > {shlex.quote(self.path)}", *self.lines, delimiter]


@dataclass(frozen=True)
class AppendLine:
    path: str
    line: str

    def render(self) -> list[str]:
        return [f"echo {shlex.quote(self.line)} >> {shlex.quote(self.path)}"]


@dataclass(frozen=True)
class ExportSecret:
    """Append ``export NAME=...`` to the env file if *value* is set.

    The file receives a command substitution that decodes the base64 payload
    when sourced, so the plain value never appears in the script.
    """

    name: str
    value: str | None
    env_file: str

    def __post_init__(self) -> None:
        if not _ENV_NAME.match(self.name):
            raise ConfigError(f"Invalid secret variable name: {self.name!r}")

    def render(self) -> list[str]:
        if not self.value:
            return [f'echo "Adding {self.name}: NO"', f"# {self.name} not provided"]
        encoded = base64.b64encode(self.value.encode("utf-8")).decode("ascii")
        export = f'export {self.name}="$(printf %s {encoded} | base64 -d)"'
        return [
            f'echo "Adding {self.name}: YES ({len(self.value)} chars)"',
            f"echo {shlex.quote(export)} >> {shlex.quote(self.env_file)}",
        ]


@dataclass(frozen=True)
class ShowFile:
    path: str
    label: str

    def render(self) -> list[str]:
        return [
            f"echo {shlex.quote(f'=== {self.label} contents ===')}",
            f"cat {shlex.quote(self.path)}",
            f"echo {shlex.quote(f'=== end {self.label} ===')}",
        ]


@dataclass(frozen=True)
class ChangeDirectory:
    path: str

    def render(self) -> list[str]:
        return [f"cd {shlex.quote(self.path)}"]


@dataclass(frozen=True)
class CommitRepo:
    """Turn *path* into a git repository holding the synced tree."""

    path: str
    email: str = "build@localhost"
    name: str = "EAS Builder"
    message: str = "Build commit"

    def render(self) -> list[str]:
        return [
            f"git config --global --add safe.directory {shlex.quote(self.path)}",
            f"git config --global user.email {shlex.quote(self.email)}",
            f"git config --global user.name {shlex.quote(self.name)}",
            "git init -q",
            "git add -A",
            f"git commit -m {shlex.quote(self.message)} -q",
        ]


@dataclass(frozen=True)
class LaunchDetachedJob:
    """Start *body* under nohup in the background, detached from the SSH session.

    Output goes to *log_path*; the sentinel is written to *status_file* only
    when every line of the body succeeded.
    """

    body: tuple[str, ...]
    log_path: str
    status_file: str

    def job_lines(self) -> list[str]:
        return [
            *self.body,
            f"echo {STATUS_SENTINEL} > {shlex.quote(self.status_file)}",
        ]

    def render(self) -> list[str]:
        job = "\n".join(self.job_lines())
        return [
            f"nohup bash -c {shlex.quote(job)} > {shlex.quote(self.log_path)} 2>&1 < /dev/null &",
            'echo "Build started in background (PID: $!)"',
        ]


@dataclass
class BuildScript:
    statements: list[Statement] = field(default_factory=list)

    def add(self, *statements: Statement) -> BuildScript:
        self.statements.extend(statements)
        return self

    def render(self) -> str:
        lines = ["set -e", ""]
        for statement in self.statements:
            lines.extend(statement.render())
        return "\n".join(lines) + "\n"


def render_build_command(config: RunConfiguration, profile: str, output_file: str) -> str:
    """Interpolate ``${PROFILE}``, ``${OUTPUT_FILE}`` and the remote paths into buildCommand."""
    variables = {k: shlex.quote(v) for k, v in config.template_vars(profile).items()}
    variables["OUTPUT_FILE"] = shlex.quote(output_file)
    return interpolate(config.build_command, variables)


def compose_build_script(
    config: RunConfiguration,
    profile: str,
    output_file: str,
    secrets: Mapping[str, str] | None = None,
) -> BuildScript:
    """Assemble the standard script: env file, secrets, profile, git commit, detached build."""
    secrets = secrets or {}
    env_file = config.remote_env_file

    job: list[str] = [
        f"source {shlex.quote(env_file)}",
        *(
            f'echo "{name} in subshell: $([ -n "${{{name}:-}}" ] && echo SET || echo NOT SET)"'
            for name in config.secret_env
        ),
        'echo "PROFILE in subshell: $PROFILE"',
        "set -e",
    ]
    if config.install_command:
        job += ['echo "Installing dependencies..."', config.install_command]
    job += [
        'echo "Running build..."',
        f"OUTPUT_FILE={shlex.quote(output_file)}",
        render_build_command(config, profile, output_file),
    ]

    script = BuildScript()
    script.add(WriteFile(env_file, tuple(config.env_script)))
    script.add(*(ExportSecret(name, secrets.get(name), env_file) for name in config.secret_env))
    script.add(
        AppendLine(env_file, f"export PROFILE={shlex.quote(profile)}"),
        ShowFile(env_file, PurePosixPath(env_file).name),
        ChangeDirectory(config.remote_project_dir),
        CommitRepo(config.remote_project_dir),
        LaunchDetachedJob(tuple(job), config.remote_log_path, config.remote_status_file),
    )
    return script
