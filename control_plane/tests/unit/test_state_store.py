"""Tests for the per-scope CRDT update log, snapshots and file store."""

from datetime import datetime, timedelta, timezone
import random

import pytest

from control_plane.src.models.state import ManifestEntry, StoredFile
from control_plane.src.services.crdt import CRDTDecodeError, LWWMap
from control_plane.src.services.state_store import StateStore, storage_key_for

SCOPE = "pipeline-1"


@pytest.fixture
def store(temp_db, app_config) -> StateStore:
    return StateStore(temp_db, app_config)


def update(key, value, timestamp, client_id="agent") -> bytes:
    state = LWWMap()
    state.set(key, value, timestamp, client_id)
    return state.encode()


class TestUpdates:
    def test_push_and_read_back_in_order(self, store: StateStore):
        base = datetime.now(timezone.utc) - timedelta(minutes=5)
        store.push_update(SCOPE, update("a", 1, 1), "c1", now=base + timedelta(seconds=2))
        store.push_update(SCOPE, update("b", 2, 1), "c2", now=base)
        store.push_update("other-scope", update("c", 3, 1), "c3", now=base)

        updates = store.get_updates_since(SCOPE)

        assert [u.client_id for u in updates] == ["c2", "c1"]

    def test_since_is_exclusive(self, store: StateStore):
        base = datetime.now(timezone.utc) - timedelta(minutes=5)
        first = store.push_update(SCOPE, update("a", 1, 1), "c1", now=base)
        store.push_update(SCOPE, update("a", 2, 2), "c2", now=base + timedelta(seconds=1))

        updates = store.get_updates_since(SCOPE, since=first.created_at)

        assert [u.client_id for u in updates] == ["c2"]

    def test_undecodable_update_rejected(self, store: StateStore):
        with pytest.raises(CRDTDecodeError):
            store.push_update(SCOPE, b"garbage", "c1")

        assert store.get_updates_since(SCOPE) == []


class TestFullState:
    def test_empty_scope(self, store: StateStore):
        full = store.get_full_state(SCOPE)

        assert len(full.state) == 0
        assert full.snapshot_id is None
        assert full.updates_applied == 0

    def test_arrival_order_does_not_change_state(self, temp_db, app_config):
        blobs = [update(f"k{i % 3}", i, random.Random(i).randint(1, 5), f"c{i % 2}") for i in range(9)]
        hashes = set()
        for seed in range(5):
            order = list(blobs)
            random.Random(seed).shuffle(order)
            store = StateStore(temp_db, app_config)
            scope = f"scope-{seed}"
            for blob in order:
                store.push_update(scope, blob, "client")
            hashes.add(store.get_full_state(scope).state_hash)

        assert len(hashes) == 1

    def test_snapshot_plus_later_updates(self, store: StateStore):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        store.save_snapshot(SCOPE, update("title", "snap", 1), now=old)
        store.push_update(SCOPE, update("status", "done", 2), "agent")

        full = store.get_full_state(SCOPE)

        assert full.state.to_dict() == {"title": "snap", "status": "done"}
        assert full.updates_applied == 1


class TestCompaction:
    def test_compaction_preserves_state(self, store: StateStore):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        for i in range(5):
            store.push_update(SCOPE, update(f"k{i}", i, i + 1), "agent", now=old + timedelta(seconds=i))
        store.push_update(SCOPE, update("recent", True, 10), "agent")
        before = store.get_full_state(SCOPE)

        result = store.compact(SCOPE)

        after = store.get_full_state(SCOPE)
        assert result.state_hash == before.state_hash
        assert after.state_hash == before.state_hash
        assert after.snapshot_id == result.snapshot_id
        # Old updates pruned, the recent one kept inside the safety margin
        assert result.updates_deleted == 5
        assert [u.client_id for u in store.get_updates_since(SCOPE)] == ["agent"]

    def test_late_update_stamped_before_snapshot_is_not_lost(self, store: StateStore):
        store.push_update(SCOPE, update("a", 1, 1), "agent")
        now = datetime.now(timezone.utc)
        store.compact(SCOPE, now=now)

        # Stamped before the compaction, committed after it
        store.push_update(SCOPE, update("late", "yes", 2), "slow-writer", now=now - timedelta(seconds=5))

        assert store.get_full_state(SCOPE).state.get("late") == "yes"

    def test_compaction_keeps_latest_manifest(self, store: StateStore):
        manifest = [ManifestEntry(path="report.md", storage_key="k1", size=3, type="markdown")]
        store.save_snapshot(SCOPE, LWWMap().encode(), manifest, run_id="run-1")

        store.compact(SCOPE)

        latest = store.get_latest_snapshot(SCOPE)
        assert latest.run_id is None
        assert [entry.path for entry in latest.manifest] == ["report.md"]
        assert len(store.list_snapshots(SCOPE)) == 2


class TestFiles:
    def test_put_files_upserts_by_path(self, store: StateStore):
        store.put_files([StoredFile(scope_id=SCOPE, path="out/report.md", content="v1", type="markdown", size=2)])
        stored = store.put_files(
            [StoredFile(scope_id=SCOPE, path="out/report.md", content="v2", type="markdown", size=2)]
        )

        key = storage_key_for(SCOPE, "out/report.md")
        assert stored[0].storage_key == key
        assert store.get_file(key).content == "v2"
        assert store.get_file(key).name == "report.md"
        assert len(store.list_files(SCOPE)) == 1

    def test_storage_keys_are_scoped(self):
        assert storage_key_for("a", "x.md") != storage_key_for("b", "x.md")
        assert storage_key_for("a", "x.md") == storage_key_for("a", "x.md")

    def test_missing_file(self, store: StateStore):
        assert store.get_file("scopes/none/files/none") is None
