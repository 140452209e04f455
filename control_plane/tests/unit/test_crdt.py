"""Tests for the last-writer-wins map CRDT."""

import itertools
import random

import pytest

from control_plane.src.services.crdt import CRDTDecodeError, LWWMap, merge_blobs


def single(key, value, timestamp, client_id="a") -> LWWMap:
    state = LWWMap()
    state.set(key, value, timestamp, client_id)
    return state


class TestLocalWrites:
    def test_newer_write_wins(self):
        state = LWWMap()
        assert state.set("title", "draft", 1, "a")
        assert state.set("title", "final", 2, "a")

        assert state.get("title") == "final"

    def test_older_write_is_ignored(self):
        state = LWWMap()
        state.set("title", "final", 5, "a")

        assert state.set("title", "draft", 3, "b") is False
        assert state.get("title") == "final"

    def test_equal_timestamps_break_ties_on_client_id(self):
        state = LWWMap()
        state.set("title", "from-a", 5, "a")
        state.set("title", "from-b", 5, "b")

        assert state.get("title") == "from-b"

    def test_delete_is_a_tombstone(self):
        state = LWWMap()
        state.set("title", "x", 1, "a")
        state.delete("title", 2, "a")

        assert "title" not in state
        assert state.get("title", "gone") == "gone"
        assert len(state) == 0
        # An older write cannot resurrect the key
        assert state.set("title", "stale", 1, "z") is False

    def test_to_dict_lists_live_keys(self):
        state = LWWMap()
        state.set("b", {"n": 1}, 1, "a")
        state.set("a", [1, 2], 1, "a")
        state.set("c", "x", 1, "a")
        state.delete("c", 2, "a")

        assert state.to_dict() == {"a": [1, 2], "b": {"n": 1}}
        assert list(state) == ["a", "b"]


class TestMerge:
    @pytest.fixture
    def updates(self) -> list[LWWMap]:
        rng = random.Random(7)
        result = []
        for i in range(12):
            state = LWWMap()
            key = rng.choice(["title", "status", "owner"])
            if rng.random() < 0.25:
                state.delete(key, rng.randint(1, 6), rng.choice("abc"))
            else:
                state.set(key, f"value-{i}", rng.randint(1, 6), rng.choice("abc"))
            result.append(state)
        return result

    def test_order_of_application_does_not_matter(self, updates):
        expected = merge_blobs(u.encode() for u in updates)
        rng = random.Random(11)
        for _ in range(20):
            shuffled = list(updates)
            rng.shuffle(shuffled)
            assert merge_blobs(u.encode() for u in shuffled) == expected

    def test_merge_is_commutative_and_associative(self, updates):
        a, b, c = updates[:3]

        assert a.merge(b) == b.merge(a)
        assert a.merge(b).merge(c) == a.merge(b.merge(c))

    def test_merge_is_idempotent(self, updates):
        merged = merge_blobs(u.encode() for u in updates)

        assert merged.merge(merged) == merged
        for update in updates:
            assert merged.merge(update) == merged

    def test_conflicting_values_at_same_rank_resolve_identically(self):
        left = single("k", "left", 1, "same")
        right = single("k", "right", 1, "same")

        assert left.merge(right).get("k") == right.merge(left).get("k")

    def test_merge_does_not_mutate_inputs(self):
        left = single("k", "old", 1)
        right = single("k", "new", 2)

        left.merge(right)

        assert left.get("k") == "old"

    def test_every_permutation_of_small_log(self):
        log = [single("k", "one", 1, "a"), single("k", "two", 2, "a"), LWWMap()]
        log[2].delete("k", 3, "b")
        hashes = {
            merge_blobs(u.encode() for u in perm).state_hash()
            for perm in itertools.permutations(log)
        }

        assert len(hashes) == 1


class TestEncoding:
    def test_encode_decode_preserves_tombstones(self):
        state = single("k", "v", 1)
        state.delete("gone", 4, "a")

        decoded = LWWMap.decode(state.encode())

        assert decoded == state
        assert decoded.entries()["gone"].deleted is True

    def test_empty_blob_is_empty_map(self):
        assert len(LWWMap.decode(b"")) == 0
        assert len(LWWMap.decode(None)) == 0

    @pytest.mark.parametrize(
        "blob",
        [
            b"not json",
            b"\xff\xfe",
            b'{"v": 2, "entries": {}}',
            b'{"v": 1}',
            b'{"v": 1, "entries": {"k": [1, "a"]}}',
            b'{"v": 1, "entries": {"k": ["1", "a", false, null]}}',
        ],
    )
    def test_invalid_blobs_raise(self, blob):
        with pytest.raises(CRDTDecodeError):
            LWWMap.decode(blob)

    def test_state_hash_tracks_logical_state(self):
        first = single("k", "v", 1)
        second = single("k", "v", 1)

        assert first.state_hash() == second.state_hash()
        second.set("k", "w", 2, "a")
        assert first.state_hash() != second.state_hash()
