"""Tests for capturing files out of one environment and restoring them into the next."""

import base64
import json
from unittest.mock import AsyncMock

import pytest

from control_plane.src.models.state import ManifestEntry, StoredFile
from control_plane.src.services.crdt import LWWMap
from control_plane.src.services.state_continuity import (
    StateContinuityManager,
    classify,
    decode_content,
    encode_content,
)
from control_plane.src.services.state_store import StateStore

SCOPE = "card-42"
PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\xff"
WORKSPACE = "/home/user/workspace"


@pytest.fixture
def state_store(temp_db, app_config) -> StateStore:
    return StateStore(temp_db, app_config)


@pytest.fixture
def manager(state_store, app_config) -> StateContinuityManager:
    return StateContinuityManager(state_store, app_config)


class TestContentEncoding:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("report.md", "markdown"),
            ("src/app.TS", "code"),
            ("data.csv", "csv"),
            ("chart.png", "image"),
            ("paper.pdf", "pdf"),
            ("Makefile", "text"),
            ("archive.xyz", "text"),
            (".hidden/config.yml", "json"),
        ],
    )
    def test_classify(self, path, expected):
        assert classify(path) == expected

    def test_text_is_stored_verbatim(self):
        assert encode_content("héllo".encode("utf-8"), "markdown") == ("héllo", "markdown")

    def test_binary_is_base64(self):
        content, file_type = encode_content(PNG_BYTES, "image")

        assert file_type == "image"
        assert base64.b64decode(content) == PNG_BYTES

    def test_undecodable_text_is_demoted_to_binary(self):
        content, file_type = encode_content(b"\xff\xfe\x00", "text")

        assert file_type == "binary"
        assert base64.b64decode(content) == b"\xff\xfe\x00"

    def test_untyped_base64_signature_is_decoded(self):
        pdf = b"%PDF-1.7 minimal"
        stored = StoredFile(scope_id=SCOPE, path="x", content=base64.b64encode(pdf).decode(), type="")

        assert decode_content(stored) == pdf

    def test_untyped_signature_lookalike_is_written_as_text(self):
        stored = StoredFile(scope_id=SCOPE, path="x", content="/9j/ is not base64!", type="")

        assert decode_content(stored) == b"/9j/ is not base64!"

    @pytest.mark.parametrize("content", ["JVBERi0xLjc=", "/9j/4AAQSkZJRg==", "iVBORw0KGgo="])
    def test_text_typed_content_is_never_decoded(self, content):
        stored = StoredFile(scope_id=SCOPE, path="notes.txt", content=content, type="text")

        assert decode_content(stored) == content.encode("utf-8")

    @pytest.mark.asyncio
    async def test_base64_lookalike_text_file_restores_byte_for_byte(self, manager, provisioner):
        source = provisioner.add("sbx-1")
        source.files[f"{WORKSPACE}/notes.md"] = b"JVBERi0xLjc="
        await manager.capture(SCOPE, source, ["workspace/notes.md"])
        target = provisioner.add("sbx-2")

        await manager.restore(SCOPE, target)

        assert target.files[f"{WORKSPACE}/notes.md"] == b"JVBERi0xLjc="


class TestCapture:
    @pytest.mark.asyncio
    async def test_capture_writes_snapshot_with_manifest(self, manager, state_store, provisioner):
        env = provisioner.add("sbx-1")
        env.files[f"{WORKSPACE}/report.md"] = b"# Report\n"
        env.files[f"{WORKSPACE}/chart.png"] = PNG_BYTES
        env.files["/home/user/notes.txt"] = b"scratch"

        result = await manager.capture(
            SCOPE,
            env,
            ["workspace/report.md", f"{WORKSPACE}/chart.png", "notes.txt", "workspace/missing.md", "notes.txt"],
            run_id="session-1",
        )

        assert result.captured == ["report.md", "chart.png", "/home/user/notes.txt"]
        assert result.skipped == ["workspace/missing.md"]
        snapshot = state_store.get_latest_snapshot(SCOPE)
        assert snapshot.id == result.snapshot_id
        assert snapshot.run_id == "session-1"
        assert [(e.path, e.type, e.size) for e in snapshot.manifest] == [
            ("/home/user/notes.txt", "text", 7),
            ("chart.png", "image", len(PNG_BYTES)),
            ("report.md", "markdown", 9),
        ]

    @pytest.mark.asyncio
    async def test_nothing_readable_means_no_snapshot(self, manager, state_store, provisioner):
        env = provisioner.add("sbx-1")

        result = await manager.capture(SCOPE, env, ["workspace/missing.md", ""])

        assert result.snapshot_id is None
        assert result.captured == []
        assert state_store.get_latest_snapshot(SCOPE) is None

    @pytest.mark.asyncio
    async def test_later_capture_extends_manifest(self, manager, state_store, provisioner):
        env = provisioner.add("sbx-1")
        env.files[f"{WORKSPACE}/a.md"] = b"first"
        await manager.capture(SCOPE, env, ["workspace/a.md"], run_id="run-1")

        env.files[f"{WORKSPACE}/a.md"] = b"first, revised"
        env.files[f"{WORKSPACE}/b.md"] = b"second"
        await manager.capture(SCOPE, env, ["workspace/b.md", "workspace/a.md"], run_id="run-2")

        manifest = state_store.get_latest_snapshot(SCOPE).manifest
        assert [entry.path for entry in manifest] == ["a.md", "b.md"]
        assert state_store.get_file(manifest[0].storage_key).content == "first, revised"

    @pytest.mark.asyncio
    async def test_snapshot_folds_pushed_state(self, manager, state_store, provisioner):
        update = LWWMap()
        update.set("stage", "research", 1, "agent")
        state_store.push_update(SCOPE, update.encode(), "agent")
        env = provisioner.add("sbx-1")
        env.files[f"{WORKSPACE}/a.md"] = b"x"

        await manager.capture(SCOPE, env, ["workspace/a.md"])

        snapshot = state_store.get_latest_snapshot(SCOPE)
        assert LWWMap.decode(snapshot.state_blob).get("stage") == "research"


class TestRestore:
    @pytest.mark.asyncio
    async def test_round_trip_into_fresh_environment(self, manager, state_store, provisioner, app_config):
        source = provisioner.add("sbx-old")
        source.files[f"{WORKSPACE}/docs/report.md"] = b"# Report\n"
        source.files[f"{WORKSPACE}/chart.png"] = PNG_BYTES
        update = LWWMap()
        update.set("stage", "draft", 1, "agent")
        state_store.push_update(SCOPE, update.encode(), "agent")
        await manager.capture(SCOPE, source, ["workspace/docs/report.md", "workspace/chart.png"])

        target = provisioner.add("sbx-new")
        result = await manager.restore(SCOPE, target)

        assert result.files_written == 2
        assert result.files_failed == 0
        assert result.state_written is True
        assert target.files[f"{WORKSPACE}/docs/report.md"] == b"# Report\n"
        assert target.files[f"{WORKSPACE}/chart.png"] == PNG_BYTES
        assert f"{WORKSPACE}/docs" in target.dirs
        assert json.loads(target.files[app_config.agent_state_file]) == {"stage": "draft"}

    @pytest.mark.asyncio
    async def test_empty_scope_restores_nothing(self, manager, provisioner, app_config):
        target = provisioner.add("sbx-new")

        result = await manager.restore("never-seen", target)

        assert result.to_dict() == {
            "files_written": 0,
            "files_failed": 0,
            "state_written": False,
            "errors": [],
        }
        assert target.files == {}

    @pytest.mark.asyncio
    async def test_missing_content_is_counted_not_raised(self, manager, state_store, provisioner):
        manifest = [ManifestEntry(path="ghost.md", storage_key="scopes/x/files/none", size=1, type="markdown")]
        state_store.save_snapshot(SCOPE, LWWMap().encode(), manifest)
        target = provisioner.add("sbx-new")

        result = await manager.restore(SCOPE, target)

        assert result.files_written == 0
        assert result.files_failed == 1
        assert "ghost.md" in result.errors[0]

    @pytest.mark.asyncio
    async def test_write_failures_do_not_abort_restore(self, manager, provisioner):
        source = provisioner.add("sbx-old")
        source.files[f"{WORKSPACE}/a.md"] = b"a"
        source.files[f"{WORKSPACE}/b.md"] = b"b"
        await manager.capture(SCOPE, source, ["workspace/a.md", "workspace/b.md"])

        target = provisioner.add("sbx-new")
        target.write_file = AsyncMock(side_effect=[OSError("disk full"), None])

        result = await manager.restore(SCOPE, target)

        assert result.files_written == 1
        assert result.files_failed == 1
