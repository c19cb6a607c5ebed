"""Run configuration: built-in defaults deep-merged with an optional config file.

The config file lives at ``<project>/htzbuild.config.json`` by default (YAML
is accepted too) and uses camelCase keys::

    {
      "artifactForProfile": {"production": "/root/out-${PROFILE}.aab"},
      "syncExcludes": ["node_modules", ".git"]
    }

Objects are merged key by key; lists replace the default wholesale.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from htzbuild.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("htzbuild.config.json", "htzbuild.config.yaml", "htzbuild.config.yml")

DEFAULT_CONFIG: dict[str, Any] = {
    "syncExcludes": ["node_modules", ".expo", "android", "ios", ".git", "coverage", "build-output"],
    "remoteProjectDir": "/root/project",
    "remoteEnvFile": "/root/build-env.sh",
    "remoteLogPath": "/root/build.log",
    "remoteStatusFile": "/root/build-status",
    "artifactForProfile": {
        "production": "/root/build-output.aab",
        "default": "/root/build-output.apk",
    },
    "artifactCandidates": ["/root/build-output.apk", "/root/build-output.aab"],
    "envScript": [
        "export ANDROID_HOME=/opt/android-sdk",
        "export ANDROID_SDK_ROOT=/opt/android-sdk",
        "export PATH=$PATH:$ANDROID_HOME/cmdline-tools/latest/bin:$ANDROID_HOME/platform-tools",
    ],
    "installCommand": "npm install",
    "buildCommand": (
        'npx eas-cli build --local --platform android --profile "$PROFILE"'
        " --non-interactive --output $OUTPUT_FILE"
    ),
    "buildProcesses": ["eas-cli build", "npm install", "gradlew"],
    "secretEnv": ["EXPO_TOKEN"],
    "monitorInterval": 30.0,
    "logTailLines": 3,
    "crashLogLines": 100,
    "crashGracePeriod": 10.0,
    "outputDir": "build-output",
}

_PLACEHOLDER = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


class RunConfiguration(BaseModel):
    """Remote layout and build commands for one run. Immutable once loaded."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    sync_excludes: list[str]
    remote_project_dir: str
    remote_env_file: str
    remote_log_path: str
    remote_status_file: str
    artifact_for_profile: dict[str, str]
    artifact_candidates: list[str]
    env_script: list[str]
    install_command: str = ""
    build_command: str
    build_processes: list[str] = Field(default_factory=list)
    secret_env: list[str] = Field(default_factory=list)
    monitor_interval: float = Field(default=30.0, gt=0)
    log_tail_lines: int = Field(default=3, ge=0)
    crash_log_lines: int = Field(default=100, ge=0)
    crash_grace_period: float = Field(default=10.0, ge=0)
    output_dir: str = "build-output"

    def template_vars(self, profile: str) -> dict[str, str]:
        """Values for the ``${NAME}`` placeholders used in remote paths."""
        return {
            "PROFILE": profile,
            "REMOTE_PROJECT_DIR": self.remote_project_dir,
            "REMOTE_ENV_FILE": self.remote_env_file,
            "REMOTE_LOG_PATH": self.remote_log_path,
            "REMOTE_STATUS_FILE": self.remote_status_file,
        }


def interpolate(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``${NAME}`` tokens for known names; unknown tokens are kept.

    Unknown tokens are left alone because they are usually shell variables
    meant for the remote side.
    """

    def _replacer(m: re.Match) -> str:
        return variables.get(m.group(1), m.group(0))

    return _PLACEHOLDER.sub(_replacer, template)


def deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge *overrides* onto *base*. Dicts merge recursively, lists are replaced."""
    merged = copy.deepcopy(dict(base))
    if not overrides:
        return merged

    for key, value in overrides.items():
        if isinstance(value, list):
            merged[key] = list(value)
        elif isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = deep_merge(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = value
    return merged


def resolve_config_path(project_dir: Path, config_file: str | Path | None) -> Path | None:
    """Locate the config file. Returns None when no implicit file exists."""
    if config_file:
        path = Path(config_file)
        return path if path.is_absolute() else (Path.cwd() / path).resolve()

    for name in CONFIG_FILENAMES:
        candidate = project_dir / name
        if candidate.exists():
            return candidate
    return None


def _read_overlay(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not parse config file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain an object at the top level")
    return data


def build_config(overrides: Mapping[str, Any] | None = None) -> RunConfiguration:
    """Validate DEFAULT_CONFIG merged with *overrides*."""
    merged = deep_merge(DEFAULT_CONFIG, overrides)
    try:
        return RunConfiguration.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_config(project_dir: Path, config_file: str | Path | None = None) -> RunConfiguration:
    """Load the run configuration for *project_dir*.

    An explicitly named file must exist; without one the project directory is
    searched and built-in defaults are used when nothing is found.
    """
    path = resolve_config_path(project_dir, config_file)
    if path is None:
        logger.debug("no config file in %s, using defaults", project_dir)
        return build_config()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    logger.info("Loading config from %s", path)
    return build_config(_read_overlay(path))
