"""Tests for the command-line entry point."""

from __future__ import annotations

import os

import pytest

from htzbuild import cli
from htzbuild.cleanup import TeardownRegistry
from htzbuild.errors import ProvisioningFailed


class FakeBuilder:
    instances: list[FakeBuilder] = []
    error: Exception | None = None

    def __init__(self, profile, env, config, *, project_dir) -> None:
        self.profile = profile
        self.env = env
        self.config = config
        self.project_dir = project_dir
        self.teardown = TeardownRegistry()
        FakeBuilder.instances.append(self)

    def run(self) -> None:
        if FakeBuilder.error is not None:
            raise FakeBuilder.error


@pytest.fixture(autouse=True)
def fake_builder(monkeypatch, tmp_path):
    FakeBuilder.instances = []
    FakeBuilder.error = None
    monkeypatch.setattr(cli, "RemoteBuilder", FakeBuilder)
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("HTZBUILD_DEBUG", raising=False)
    return FakeBuilder


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return excinfo.value.code


@pytest.mark.parametrize(
    ("argv", "profile"),
    [
        ([], "preview"),
        (["production"], "production"),
        (["production", "--profile", "development"], "development"),
        (["-p", "staging"], "staging"),
    ],
)
def test_profile_selection(argv, profile):
    assert _run(argv) == 0
    assert FakeBuilder.instances[0].profile == profile


def test_build_error_exits_non_zero(capsys):
    FakeBuilder.error = ProvisioningFailed("server type unavailable")

    assert _run([]) == 1
    assert "server type unavailable" in capsys.readouterr().out


def test_config_error_exits_before_building(tmp_path):
    (tmp_path / "htzbuild.config.json").write_text("[1, 2]")

    assert _run([]) == 1
    assert FakeBuilder.instances == []


def test_env_folder_fills_missing_variables(monkeypatch, tmp_path):
    env_dir = tmp_path / "secrets"
    env_dir.mkdir()
    (env_dir / "build.env").write_text("HTZ_TEST_NEW=fresh\nHTZ_TEST_KEEP=file\n")
    monkeypatch.delenv("HTZ_TEST_NEW", raising=False)
    monkeypatch.setenv("HTZ_TEST_KEEP", "shell")

    assert _run(["--env-folder", "secrets"]) == 0

    assert os.environ["HTZ_TEST_NEW"] == "fresh"
    assert os.environ["HTZ_TEST_KEEP"] == "shell"


def test_explicit_missing_env_folder_fails():
    assert _run(["--env-folder", "nowhere"]) == 1
    assert FakeBuilder.instances == []


def test_default_env_file_is_loaded(monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("HTZ_TEST_DOTENV=yes\n")
    monkeypatch.delenv("HTZ_TEST_DOTENV", raising=False)

    assert _run([]) == 0
    assert os.environ["HTZ_TEST_DOTENV"] == "yes"
