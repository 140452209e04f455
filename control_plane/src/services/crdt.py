"""Last-writer-wins map CRDT used for per-scope agent state.

Each key holds the write with the greatest ``(timestamp, client_id, digest)``
triple. Deletes are tombstones, so a delete and a concurrent older write
resolve the same way on every replica. Because the winner of a key depends
only on the set of writes seen, ``merge`` is commutative, associative and
idempotent: replaying State Updates in any order yields the same state.

Wire format (canonical JSON, UTF-8)::

    {"v": 1, "entries": {"<key>": [timestamp, client_id, deleted, value], ...}}
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
from typing import Any, Iterable, Iterator, Optional

FORMAT_VERSION = 1


class CRDTDecodeError(ValueError):
    """Raised when bytes are not a valid encoded ``LWWMap``."""


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class LWWEntry:
    timestamp: int
    client_id: str
    deleted: bool
    value: Any = None

    @property
    def rank(self) -> tuple[int, str, str]:
        """Total order used to pick the winning write."""
        digest = hashlib.sha256(_canonical([self.deleted, self.value]).encode("utf-8")).hexdigest()
        return (self.timestamp, self.client_id, digest)

    def to_wire(self) -> list[Any]:
        return [self.timestamp, self.client_id, self.deleted, self.value]


class LWWMap:
    """A JSON-valued map where concurrent writes resolve to the highest rank."""

    def __init__(self, entries: Optional[dict[str, LWWEntry]] = None):
        self._entries: dict[str, LWWEntry] = dict(entries or {})

    # ------------------------------------------------------------------
    # Local writes
    # ------------------------------------------------------------------

    def _apply(self, key: str, entry: LWWEntry) -> bool:
        current = self._entries.get(key)
        if current is None or entry.rank > current.rank:
            self._entries[key] = entry
            return True
        return False

    def set(self, key: str, value: Any, timestamp: int, client_id: str) -> bool:
        """Write ``value``; returns False when an existing write outranks it."""
        return self._apply(key, LWWEntry(int(timestamp), client_id, False, value))

    def delete(self, key: str, timestamp: int, client_id: str) -> bool:
        return self._apply(key, LWWEntry(int(timestamp), client_id, True, None))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None or entry.deleted:
            return default
        return entry.value

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not entry.deleted

    def __iter__(self) -> Iterator[str]:
        return (key for key, entry in sorted(self._entries.items()) if not entry.deleted)

    def __len__(self) -> int:
        return sum(1 for entry in self._entries.values() if not entry.deleted)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LWWMap):
            return NotImplemented
        return self.encode() == other.encode()

    def entries(self) -> dict[str, LWWEntry]:
        return dict(self._entries)

    def to_dict(self) -> dict[str, Any]:
        """Live (non-deleted) values keyed by name."""
        return {key: self._entries[key].value for key in self}

    # ------------------------------------------------------------------
    # Merge and encoding
    # ------------------------------------------------------------------

    def merge(self, other: "LWWMap") -> "LWWMap":
        """Return a new map holding the per-key winner of ``self`` and ``other``."""
        merged = LWWMap(self._entries)
        for key, entry in other._entries.items():
            merged._apply(key, entry)
        return merged

    def encode(self) -> bytes:
        payload = {
            "v": FORMAT_VERSION,
            "entries": {key: entry.to_wire() for key, entry in sorted(self._entries.items())},
        }
        return _canonical(payload).encode("utf-8")

    @classmethod
    def decode(cls, data: Optional[bytes]) -> "LWWMap":
        if not data:
            return cls()
        try:
            payload = json.loads(bytes(data).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CRDTDecodeError(f"state blob is not valid JSON: {e}") from e
        if not isinstance(payload, dict) or payload.get("v") != FORMAT_VERSION:
            raise CRDTDecodeError("state blob has an unsupported format version")
        raw_entries = payload.get("entries")
        if not isinstance(raw_entries, dict):
            raise CRDTDecodeError("state blob is missing its entries")
        entries: dict[str, LWWEntry] = {}
        for key, wire in raw_entries.items():
            if not (isinstance(wire, list) and len(wire) == 4):
                raise CRDTDecodeError(f"malformed entry for key {key!r}")
            timestamp, client_id, deleted, value = wire
            if not isinstance(timestamp, int) or not isinstance(client_id, str):
                raise CRDTDecodeError(f"malformed entry for key {key!r}")
            entries[key] = LWWEntry(timestamp, client_id, bool(deleted), value)
        return cls(entries)

    def state_hash(self) -> str:
        """SHA-256 of the canonical encoding; equal for logically equal states."""
        return hashlib.sha256(self.encode()).hexdigest()

    def __repr__(self) -> str:
        return f"LWWMap({len(self)} live keys, {len(self._entries)} entries)"


def merge_blobs(blobs: Iterable[Optional[bytes]]) -> LWWMap:
    """Decode and merge any number of encoded maps."""
    state = LWWMap()
    for blob in blobs:
        state = state.merge(LWWMap.decode(blob))
    return state


__all__ = ["CRDTDecodeError", "LWWEntry", "LWWMap", "merge_blobs"]
