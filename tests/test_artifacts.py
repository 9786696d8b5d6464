import json
import os

import pytest

from releaseci.artifacts import ArtifactCollector, LocalArtifactStore
from releaseci.dsl import build_step, platform_job
from releaseci.errors import PublishError


def job(artifacts, collection="linux-packages"):
    return platform_job("linux-x86_64-musl", build_step("build", "true"), artifacts=artifacts, collection=collection)


def test_collects_only_matching_files(tmp_path):
    (tmp_path / "chdig_amd64.deb").write_text("deb")
    (tmp_path / "chdig.x86_64.rpm").write_text("rpm")
    (tmp_path / "notes.txt").write_text("unrelated")

    collection = ArtifactCollector().collect(job(["*.deb", "*.rpm", "*.deb"]), tmp_path)

    assert collection.name == "linux-packages"
    assert collection.files == ["chdig.x86_64.rpm", "chdig_amd64.deb"]
    assert {a.target for a in collection.artifacts} == {"linux-x86_64-musl"}


def test_no_matches_is_an_error(tmp_path):
    with pytest.raises(PublishError, match="no files matched"):
        ArtifactCollector().collect(job(["*.deb"]), tmp_path)


def test_symlink_escaping_workspace_is_rejected(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    outside = tmp_path / "other.deb"
    outside.write_text("someone else's package")
    os.symlink(outside, ws / "link.deb")

    with pytest.raises(PublishError, match="outside"):
        ArtifactCollector().collect(job(["*.deb"]), ws)


def test_store_writes_files_and_manifest(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "chdig_amd64.deb").write_text("deb")
    store = LocalArtifactStore(tmp_path / "store")

    receipt = store.publish("run1", ArtifactCollector().collect(job(["*.deb"]), ws))

    manifest = json.loads((tmp_path / "store" / "run1" / "linux-packages" / "manifest.json").read_text())
    assert receipt.files == ["chdig_amd64.deb"]
    assert manifest["files"][0]["size"] == 3
    assert store.published("run1") == ["linux-packages"]


def test_collection_is_published_once_per_run(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "chdig_amd64.deb").write_text("deb")
    store = LocalArtifactStore(tmp_path / "store")
    collection = ArtifactCollector().collect(job(["*.deb"]), ws)

    store.publish("run1", collection)

    with pytest.raises(PublishError, match="already published"):
        store.publish("run1", collection)
