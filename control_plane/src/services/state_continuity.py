"""Carry files and CRDT state from one pipeline stage to the next.

``capture`` runs after a session finishes and before its environment is
killed; ``restore`` runs in a fresh environment before the agent server
starts. Both are best-effort: individual file failures are counted and
logged, never raised.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import posixpath
from typing import Iterable, Optional

from ..models.state import (
    BINARY_FILE_TYPES,
    CaptureResult,
    FileType,
    ManifestEntry,
    RestoreResult,
    StoredFile,
    TEXT_FILE_TYPES,
)
from .config import AppConfig, get_config
from .provisioner import EnvironmentHandle
from .state_store import StateStore

logger = logging.getLogger(__name__)

EXTENSION_TYPES: dict[str, FileType] = {
    "ts": "code",
    "js": "code",
    "tsx": "code",
    "jsx": "code",
    "py": "code",
    "rs": "code",
    "go": "code",
    "java": "code",
    "css": "code",
    "scss": "code",
    "sh": "code",
    "json": "json",
    "yaml": "json",
    "yml": "json",
    "md": "markdown",
    "mdx": "markdown",
    "html": "html",
    "htm": "html",
    "txt": "text",
    "csv": "csv",
    "pdf": "pdf",
    "png": "image",
    "jpg": "image",
    "jpeg": "image",
    "gif": "image",
    "webp": "image",
}

# Leading characters of base64-encoded binary formats
BASE64_SIGNATURES: tuple[tuple[str, FileType], ...] = (
    ("JVBERi", "pdf"),
    ("iVBORw0KGgo", "image"),
    ("/9j/", "image"),
)


def classify(path: str) -> FileType:
    """File type by extension; unknown extensions are ``text``."""
    name = posixpath.basename(path)
    if "." not in name:
        return "text"
    return EXTENSION_TYPES.get(name.rsplit(".", 1)[-1].lower(), "text")


def sniff_base64_binary(content: str) -> Optional[FileType]:
    for signature, file_type in BASE64_SIGNATURES:
        if content.startswith(signature):
            return file_type
    return None


def encode_content(data: bytes, file_type: FileType) -> tuple[str, FileType]:
    """Text verbatim, binary as base64. Undecodable 'text' is demoted to binary."""
    if file_type not in BINARY_FILE_TYPES:
        try:
            return data.decode("utf-8"), file_type
        except UnicodeDecodeError:
            file_type = "binary"
    return base64.b64encode(data).decode("ascii"), file_type


def decode_content(stored: StoredFile) -> bytes:
    """Bytes to write for a stored file.

    A known type is authoritative; signatures are only sniffed for content
    stored without one.
    """
    if stored.type in BINARY_FILE_TYPES:
        return base64.b64decode(stored.content, validate=True)
    if stored.type in TEXT_FILE_TYPES or sniff_base64_binary(stored.content) is None:
        return stored.content.encode("utf-8")
    try:
        return base64.b64decode(stored.content, validate=True)
    except (binascii.Error, ValueError):
        return stored.content.encode("utf-8")


class StateContinuityManager:
    """Snapshot produced files at completion and write them back on the next start."""

    def __init__(
        self,
        state_store: Optional[StateStore] = None,
        config: Optional[AppConfig] = None,
    ):
        self.config = config or get_config()
        self.store = state_store or StateStore(config=self.config)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _read_location(self, path: str) -> str:
        """Changed paths are reported relative to the agent server's working directory."""
        if path.startswith("/"):
            return posixpath.normpath(path)
        return posixpath.normpath(posixpath.join(self.config.agent_home, path))

    def _stored_path(self, location: str) -> str:
        workspace = self.config.agent_workspace_dir.rstrip("/")
        if location.startswith(workspace + "/"):
            return location[len(workspace) + 1 :]
        return location

    def _restore_target(self, stored_path: str) -> str:
        if stored_path.startswith("/"):
            return stored_path
        return posixpath.normpath(posixpath.join(self.config.agent_workspace_dir, stored_path))

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture(
        self,
        scope_id: str,
        handle: EnvironmentHandle,
        changed_paths: Iterable[str],
        run_id: Optional[str] = None,
    ) -> CaptureResult:
        """Read changed files from the environment and write a new snapshot."""
        result = CaptureResult()
        files: list[StoredFile] = []
        for path in dict.fromkeys(p for p in changed_paths if p):
            location = self._read_location(path)
            try:
                data = await handle.read_file(location)
            except Exception as e:
                logger.warning(f"[capture:{scope_id}] skipping unreadable {location}: {e}")
                result.skipped.append(path)
                continue
            content, file_type = encode_content(data, classify(location))
            stored_path = self._stored_path(location)
            files.append(
                StoredFile(
                    scope_id=scope_id,
                    path=stored_path,
                    content=content,
                    type=file_type,
                    size=len(data),
                )
            )
            result.captured.append(stored_path)

        if not files:
            logger.info(f"[capture:{scope_id}] nothing to capture ({len(result.skipped)} skipped)")
            return result

        stored = self.store.put_files(files)
        previous = self.store.get_latest_snapshot(scope_id)
        manifest = {entry.path: entry for entry in (previous.manifest if previous else [])}
        for item in stored:
            manifest[item.path] = ManifestEntry(
                path=item.path,
                storage_key=item.storage_key,
                size=item.size,
                type=item.type,
            )
        full = self.store.get_full_state(scope_id)
        snapshot = self.store.save_snapshot(
            scope_id,
            full.state.encode(),
            manifest=sorted(manifest.values(), key=lambda entry: entry.path),
            run_id=run_id,
        )
        result.snapshot_id = snapshot.id
        logger.info(
            f"[capture:{scope_id}] {len(stored)} files captured into snapshot {snapshot.id}"
        )
        return result

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(self, scope_id: str, handle: EnvironmentHandle) -> RestoreResult:
        """Write the scope's latest manifest files and merged state into ``handle``."""
        result = RestoreResult()
        try:
            snapshot = self.store.get_latest_snapshot(scope_id)
        except Exception as e:
            logger.warning(f"[restore:{scope_id}] cannot load snapshot: {e}")
            result.errors.append(f"snapshot: {e}")
            snapshot = None

        made_dirs: set[str] = set()
        for entry in snapshot.manifest if snapshot else []:
            target = self._restore_target(entry.path)
            try:
                stored = self.store.get_file(entry.storage_key)
                if stored is None:
                    raise LookupError(f"no stored content for {entry.storage_key}")
                parent = posixpath.dirname(target)
                if parent and parent not in made_dirs:
                    await handle.make_dir(parent)
                    made_dirs.add(parent)
                await handle.write_file(target, decode_content(stored))
                result.files_written += 1
            except Exception as e:
                logger.warning(f"[restore:{scope_id}] failed to restore {entry.path}: {e}")
                result.files_failed += 1
                result.errors.append(f"{entry.path}: {e}")

        try:
            full = self.store.get_full_state(scope_id)
            if len(full.state) > 0:
                state_file = self.config.agent_state_file
                await handle.make_dir(posixpath.dirname(state_file))
                await handle.write_file(
                    state_file,
                    json.dumps(full.state.to_dict(), indent=2, sort_keys=True),
                )
                result.state_written = True
        except Exception as e:
            logger.warning(f"[restore:{scope_id}] failed to restore state: {e}")
            result.errors.append(f"state: {e}")

        logger.info(
            f"[restore:{scope_id}] {result.files_written} files restored, "
            f"{result.files_failed} failed, state={'yes' if result.state_written else 'no'}"
        )
        return result


_continuity_manager: Optional[StateContinuityManager] = None


def get_continuity_manager() -> StateContinuityManager:
    global _continuity_manager
    if _continuity_manager is None:
        from .state_store import get_state_store

        _continuity_manager = StateContinuityManager(state_store=get_state_store())
    return _continuity_manager


__all__ = [
    "StateContinuityManager",
    "get_continuity_manager",
    "classify",
    "encode_content",
    "decode_content",
    "sniff_base64_binary",
]
