"""Command-line entry point.

Usage:
    htzbuild [profile] [--env-folder DIR] [--config FILE]

Syncs the current project to a fresh Hetzner server, runs the build there and
copies the artifact into ./build-output. The server is always deleted.

Provider settings come from the environment (HCLOUD_TOKEN, HETZNER_SSH_KEY,
HETZNER_SSH_KEY_FILE, HETZNER_SERVER_TYPE, HETZNER_LOCATION, HCLOUD_IMAGE,
CLOUD_INIT_FILE); files in the env folder fill in anything not already set.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from htzbuild import console
from htzbuild.builder import RemoteBuilder
from htzbuild.cleanup import exit_handlers
from htzbuild.config import load_config
from htzbuild.envfiles import apply_env, load_env_folder
from htzbuild.errors import BuildError

DEFAULT_PROFILE = "preview"
DEFAULT_ENV_FOLDER = ".env"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="htzbuild",
        description=(
            "Run `eas build --local` on a temporary Hetzner Cloud server and pull the"
            " artifact into ./build-output."
        ),
    )
    parser.add_argument(
        "profile",
        nargs="?",
        help=f"Build profile (default: {DEFAULT_PROFILE})",
    )
    parser.add_argument(
        "-p",
        "--profile",
        dest="profile_option",
        metavar="NAME",
        help="Override the build profile",
    )
    parser.add_argument(
        "-e",
        "--env-folder",
        metavar="PATH",
        help=f"Directory of env files to load (default: {DEFAULT_ENV_FOLDER})",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Config file (default: htzbuild.config.json in the project)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose logging",
    )
    return parser


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logging.getLogger("htzbuild").setLevel(logging.DEBUG if debug else logging.INFO)


def _load_env(folder_option: str | None, project_dir: Path) -> None:
    """Apply env-folder variables to os.environ without overriding existing ones.

    An explicit folder must exist. The default ``.env`` may be absent, or be a
    plain dotenv file, which load_dotenv() has already handled.
    """
    folder = (project_dir / (folder_option or DEFAULT_ENV_FOLDER)).resolve()
    if folder_option is None and not folder.is_dir():
        if not folder.exists():
            console.warn(f"Env folder {folder} not found, using the current environment")
        return

    console.info(f"Loading environment from {folder}")
    applied = apply_env(load_env_folder(folder), os.environ)
    logging.getLogger(__name__).debug("applied env vars: %s", sorted(applied))


def main(argv: list[str] | None = None) -> None:
    from dotenv import load_dotenv

    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.debug or bool(os.environ.get("HTZBUILD_DEBUG")))

    project_dir = Path.cwd()
    profile = args.profile_option or args.profile or DEFAULT_PROFILE

    try:
        if (project_dir / ".env").is_file():
            load_dotenv(project_dir / ".env", override=False)
        _load_env(args.env_folder, project_dir)
        config = load_config(project_dir, args.config)

        builder = RemoteBuilder(profile, os.environ, config, project_dir=project_dir)
        with exit_handlers(builder.teardown):
            builder.run()
    except BuildError as exc:
        console.error(str(exc))
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
