"""Tests for artifact resolution and retrieval."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest

from htzbuild.artifacts import ArtifactResolver, artifact_filename, format_timestamp
from htzbuild.config import build_config
from htzbuild.errors import ArtifactNotFound, ConfigError


class FakeSource:
    def __init__(self, existing: set[str]) -> None:
        self.existing = existing
        self.checked: list[str] = []
        self.downloads: list[tuple[str, Path]] = []

    def file_exists(self, path: str) -> bool:
        self.checked.append(path)
        return path in self.existing

    def download(self, remote_path: str, local_path: Path) -> None:
        self.downloads.append((remote_path, local_path))
        local_path.write_bytes(b"artifact")


MOMENT = datetime(2024, 1, 1, 12, 0, 0, 123000, tzinfo=UTC)


def test_timestamp_format():
    assert format_timestamp(MOMENT) == "2024-01-01-12-00-00-123"


def test_timestamp_converts_to_utc():
    local = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert format_timestamp(local) == "2024-01-01-12-00-00-000"


def test_filename_keeps_remote_extension():
    assert artifact_filename("/root/build-output.aab", MOMENT) == "build-2024-01-01-12-00-00-123.aab"


def test_profile_mapping_interpolates():
    config = build_config({"artifactForProfile": {"production": "/root/out-${PROFILE}.aab"}})

    assert ArtifactResolver(config, "production", Path(".")).output_path() == "/root/out-production.aab"
    assert ArtifactResolver(config, "preview", Path(".")).output_path() == "/root/build-output.apk"


def test_missing_mapping_is_a_config_error():
    config = build_config()
    config = config.model_copy(update={"artifact_for_profile": {"production": "/root/a.aab"}})

    with pytest.raises(ConfigError, match="preview"):
        ArtifactResolver(config, "preview", Path(".")).output_path()


def test_first_existing_candidate_wins(tmp_path):
    config = build_config({"artifactCandidates": ["/root/a.apk", "/root/b.aab"]})
    source = FakeSource({"/root/a.apk", "/root/b.aab"})

    local = ArtifactResolver(config, "preview", tmp_path / "out").retrieve(source, MOMENT)

    assert source.downloads == [("/root/a.apk", local)]
    assert local == tmp_path / "out" / "build-2024-01-01-12-00-00-123.apk"
    assert local.read_bytes() == b"artifact"


def test_later_candidate_used_when_first_missing(tmp_path):
    config = build_config({"artifactCandidates": ["/root/a.apk", "/root/b.aab"]})
    source = FakeSource({"/root/b.aab"})

    local = ArtifactResolver(config, "preview", tmp_path).retrieve(source, MOMENT)

    assert source.checked == ["/root/a.apk", "/root/b.aab"]
    assert local.suffix == ".aab"


def test_no_candidate_raises(tmp_path):
    source = FakeSource(set())

    with pytest.raises(ArtifactNotFound):
        ArtifactResolver(build_config(), "preview", tmp_path).retrieve(source, MOMENT)

    assert source.downloads == []
