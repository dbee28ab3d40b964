from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import os
import re
import subprocess
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from stagegate.errors import CheckpointConflict, CheckpointNotFound, StateError
from stagegate.models import CheckpointInfo, utcnow_iso
from stagegate.state.store import StateStore

logger = logging.getLogger(__name__)

ADDED = "added"
MODIFIED = "modified"
REMOVED = "removed"


@dataclass(slots=True, frozen=True)
class Change:
    kind: str
    path: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "path": self.path}


def _matches_any(path: str, patterns: Iterable[str]) -> bool:
    for pattern in patterns:
        normalized = pattern.rstrip("/")
        if path == normalized or path.startswith(f"{normalized}/"):
            return True
        if fnmatch.fnmatch(path, pattern):
            return True
    return False


class CheckpointStore(ABC):
    """Named, restorable workspace snapshots keyed by execution id."""

    def __init__(
        self,
        workspace: Path,
        state: StateStore,
        *,
        ignore: Iterable[str] = (".git",),
    ) -> None:
        self.workspace = workspace.resolve()
        self.state = state
        ignored = set(ignore)
        try:
            ignored.add(state.state_dir.relative_to(self.workspace).parts[0])
        except (ValueError, IndexError):
            pass
        self.ignore = tuple(sorted(ignored))

    @abstractmethod
    def _snapshot(self, checkpoint_id: str, execution_id: str, label: str) -> str:
        """Capture the workspace and return an opaque snapshot handle."""

    @abstractmethod
    def _changes(self, handle: str) -> list[Change]:
        """Workspace changes since the snapshot behind ``handle``."""

    @abstractmethod
    def _restore_paths(self, handle: str, changes: list[Change]) -> None:
        """Revert the given changed paths to their snapshot content."""

    @abstractmethod
    def _drop(self, handle: str) -> None:
        """Free storage held by the snapshot."""

    @abstractmethod
    def _latest_handle(self, execution_id: str | None) -> str | None:
        """Newest snapshot handle found in storage, bypassing metadata."""

    @staticmethod
    def _sanitize_label(label: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", label.strip().lower()).strip("-")
        return safe or "checkpoint"

    def _is_ignored(self, rel_path: str) -> bool:
        first = rel_path.split("/", maxsplit=1)[0]
        return first in self.ignore

    def list_checkpoints(self, execution_id: str | None = None) -> list[CheckpointInfo]:
        items = [CheckpointInfo.from_dict(item) for item in self.state.get_checkpoints().values()]
        if execution_id is not None:
            items = [item for item in items if item.execution_id == execution_id]
        return sorted(items, key=lambda item: (item.created_at, item.id))

    def get(self, checkpoint_id: str) -> CheckpointInfo:
        payload = self.state.get_checkpoints().get(checkpoint_id)
        if payload is None:
            raise CheckpointNotFound(f"Checkpoint not found: {checkpoint_id}")
        return CheckpointInfo.from_dict(payload)

    def _usable(self, checkpoint_id: str) -> CheckpointInfo:
        info = self.get(checkpoint_id)
        if not info.usable:
            raise CheckpointNotFound(f"Checkpoint was discarded: {checkpoint_id}")
        return info

    def active_for(self, execution_id: str) -> CheckpointInfo | None:
        usable = [item for item in self.list_checkpoints(execution_id) if item.usable]
        return usable[-1] if usable else None

    def create(self, execution_id: str, label: str) -> str:
        existing = self.active_for(execution_id)
        if existing is not None:
            raise CheckpointConflict(
                f"Execution {execution_id} already holds checkpoint {existing.id}; "
                "discard it before creating another."
            )
        timestamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        checkpoint_id = f"cp-{timestamp}-{uuid4().hex[:8]}"
        safe_label = self._sanitize_label(label)
        handle = self._snapshot(checkpoint_id, execution_id, safe_label)
        info = CheckpointInfo(
            id=checkpoint_id,
            execution_id=execution_id,
            label=safe_label,
            created_at=utcnow_iso(),
            snapshot_handle=handle,
        )
        self.state.put_checkpoint(info.to_dict())
        logger.info("Created checkpoint %s (%s) for %s", checkpoint_id, safe_label, execution_id)
        return checkpoint_id

    def preview(self, checkpoint_id: str) -> list[Change]:
        info = self._usable(checkpoint_id)
        return self._changes(info.snapshot_handle)

    def restore(self, checkpoint_id: str, *, keep_paths: Iterable[str] = ()) -> list[Change]:
        """Revert the workspace; paths matching ``keep_paths`` keep their current content."""
        info = self._usable(checkpoint_id)
        retained = list(keep_paths)
        changes = [
            change
            for change in self._changes(info.snapshot_handle)
            if not _matches_any(change.path, retained)
        ]
        self._restore_paths(info.snapshot_handle, changes)
        info.status = "restored"
        self.state.put_checkpoint(info.to_dict())
        logger.info(
            "Restored checkpoint %s: %d path(s) reverted, %d pattern(s) retained",
            checkpoint_id,
            len(changes),
            len(retained),
        )
        return changes

    def discard(self, checkpoint_id: str) -> None:
        info = self.get(checkpoint_id)
        if not info.usable:
            return
        self._drop(info.snapshot_handle)
        info.status = "discarded"
        self.state.put_checkpoint(info.to_dict())
        logger.info("Discarded checkpoint %s", checkpoint_id)

    def emergency_restore(self, execution_id: str | None = None) -> bool:
        """Best-effort restore of the newest checkpoint. Never raises."""
        handle: str | None = None
        info: CheckpointInfo | None = None
        try:
            candidates = [item for item in self.list_checkpoints(execution_id) if item.usable]
            if candidates:
                info = candidates[-1]
                handle = info.snapshot_handle
        except Exception:
            logger.exception("Checkpoint metadata unreadable; scanning snapshot storage")
        try:
            if handle is None:
                handle = self._latest_handle(execution_id)
            if handle is None:
                logger.warning("Emergency restore found no checkpoint to restore")
                return False
            self._restore_paths(handle, self._changes(handle))
        except Exception:
            logger.exception("Emergency restore failed for snapshot %s", handle)
            return False
        if info is not None:
            try:
                info.status = "restored"
                self.state.put_checkpoint(info.to_dict())
            except Exception:
                logger.exception("Could not record emergency restore of %s", info.id)
        logger.warning("Emergency restore applied snapshot %s", handle)
        return True


class FilesystemCheckpointStore(CheckpointStore):
    """Content-addressed snapshots: one manifest per checkpoint plus shared blobs."""

    def __init__(
        self,
        workspace: Path,
        state: StateStore,
        *,
        ignore: Iterable[str] = (".git",),
    ) -> None:
        super().__init__(workspace, state, ignore=ignore)
        self.objects_dir = state.state_dir / "objects"
        self.snapshots_dir = state.state_dir / "snapshots"
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)

    def _blob_path(self, digest: str) -> Path:
        return self.objects_dir / digest[:2] / digest[2:]

    def _manifest_path(self, handle: str) -> Path:
        return self.snapshots_dir / f"{handle}.json"

    def _workspace_files(self) -> dict[str, Path]:
        files: dict[str, Path] = {}
        for root, dirnames, filenames in os.walk(self.workspace):
            root_path = Path(root)
            rel_root = root_path.relative_to(self.workspace).as_posix()
            if rel_root != "." and self._is_ignored(rel_root):
                dirnames[:] = []
                continue
            dirnames[:] = [
                name
                for name in dirnames
                if not (rel_root == "." and name in self.ignore)
            ]
            for filename in filenames:
                path = root_path / filename
                rel_path = path.relative_to(self.workspace).as_posix()
                if self._is_ignored(rel_path) or not path.is_file():
                    continue
                files[rel_path] = path
        return files

    @staticmethod
    def _digest(path: Path) -> str:
        hasher = hashlib.sha256()
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(65536), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    def _current_manifest(self) -> dict[str, str]:
        return {rel: self._digest(path) for rel, path in self._workspace_files().items()}

    def _read_manifest(self, handle: str) -> dict[str, str]:
        path = self._manifest_path(handle)
        if not path.exists():
            raise CheckpointNotFound(f"Snapshot storage missing for {handle}")
        payload = json.loads(path.read_text(encoding="utf-8"))
        files = payload.get("files", {})
        return {str(key): str(value) for key, value in files.items()}

    def _snapshot(self, checkpoint_id: str, execution_id: str, label: str) -> str:
        manifest: dict[str, str] = {}
        for rel_path, path in self._workspace_files().items():
            data = path.read_bytes()
            digest = hashlib.sha256(data).hexdigest()
            blob = self._blob_path(digest)
            if not blob.exists():
                blob.parent.mkdir(parents=True, exist_ok=True)
                blob.write_bytes(data)
            manifest[rel_path] = digest
        handle = f"{execution_id}--{checkpoint_id}"
        self._manifest_path(handle).write_text(
            json.dumps(
                {
                    "checkpoint_id": checkpoint_id,
                    "execution_id": execution_id,
                    "label": label,
                    "created_at": utcnow_iso(),
                    "files": manifest,
                },
                ensure_ascii=False,
                indent=2,
            ),
            encoding="utf-8",
        )
        return handle

    def _changes(self, handle: str) -> list[Change]:
        snapshot = self._read_manifest(handle)
        current = self._current_manifest()
        changes: list[Change] = []
        for path in sorted(set(snapshot) | set(current)):
            if path not in snapshot:
                changes.append(Change(ADDED, path))
            elif path not in current:
                changes.append(Change(REMOVED, path))
            elif snapshot[path] != current[path]:
                changes.append(Change(MODIFIED, path))
        return changes

    def _restore_paths(self, handle: str, changes: list[Change]) -> None:
        snapshot = self._read_manifest(handle)
        for change in changes:
            target = self.workspace / change.path
            if change.kind == ADDED:
                target.unlink(missing_ok=True)
                continue
            blob = self._blob_path(snapshot[change.path])
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(blob.read_bytes())

    def _drop(self, handle: str) -> None:
        self._manifest_path(handle).unlink(missing_ok=True)
        referenced: set[str] = set()
        for manifest in self.snapshots_dir.glob("*.json"):
            try:
                payload = json.loads(manifest.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                continue
            referenced.update(str(value) for value in payload.get("files", {}).values())
        for blob in self.objects_dir.glob("*/*"):
            if f"{blob.parent.name}{blob.name}" not in referenced:
                blob.unlink(missing_ok=True)

    def _latest_handle(self, execution_id: str | None) -> str | None:
        pattern = f"{execution_id}--*.json" if execution_id else "*.json"
        manifests = sorted(self.snapshots_dir.glob(pattern), key=lambda item: item.stat().st_mtime)
        if not manifests:
            return None
        return manifests[-1].stem


class GitCheckpointStore(CheckpointStore):
    """Snapshots stored as commits under ``refs/stagegate/checkpoints``.

    The workspace is captured through a throwaway index so the user's staging
    area and branches are never touched.
    """

    REF_PREFIX = "refs/stagegate/checkpoints"
    IDENTITY = {
        "GIT_AUTHOR_NAME": "stagegate",
        "GIT_AUTHOR_EMAIL": "stagegate@localhost",
        "GIT_COMMITTER_NAME": "stagegate",
        "GIT_COMMITTER_EMAIL": "stagegate@localhost",
    }

    def __init__(
        self,
        workspace: Path,
        state: StateStore,
        *,
        ignore: Iterable[str] = (".git",),
    ) -> None:
        super().__init__(workspace, state, ignore=ignore)
        top = self._run_git(["rev-parse", "--show-toplevel"], check=False)
        if top.returncode != 0:
            raise StateError("Git checkpoints require the workspace to be a git repository.")
        if Path(top.stdout.decode("utf-8").strip()).resolve() != self.workspace:
            raise StateError("Git checkpoints require the workspace to be the repository root.")

    def _run_git(
        self,
        args: list[str],
        *,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[bytes]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.workspace,
            capture_output=True,
            env=env,
        )
        if check and proc.returncode != 0:
            message = proc.stderr.decode("utf-8", errors="replace").strip()
            raise StateError(message or f"git {' '.join(args)} failed")
        return proc

    def _git_text(self, args: list[str], *, env: dict[str, str] | None = None) -> str:
        return self._run_git(args, env=env).stdout.decode("utf-8").strip()

    def _write_tree(self) -> str:
        with tempfile.NamedTemporaryFile(prefix="stagegate-index-", delete=False) as index_file:
            index_path = index_file.name
        try:
            Path(index_path).unlink(missing_ok=True)
            env = os.environ.copy()
            env["GIT_INDEX_FILE"] = index_path
            pathspec = ["."] + [f":(exclude){name}" for name in self.ignore if name != ".git"]
            self._run_git(["add", "-A", "--", *pathspec], env=env)
            return self._git_text(["write-tree"], env=env)
        finally:
            Path(index_path).unlink(missing_ok=True)

    def _snapshot(self, checkpoint_id: str, execution_id: str, label: str) -> str:
        tree = self._write_tree()
        env = os.environ.copy()
        env.update(self.IDENTITY)
        commit = self._git_text(
            ["commit-tree", tree, "-m", f"stagegate checkpoint {checkpoint_id}: {label}"],
            env=env,
        )
        ref = f"{self.REF_PREFIX}/{execution_id}/{checkpoint_id}"
        self._run_git(["update-ref", ref, commit])
        return ref

    def _changes(self, handle: str) -> list[Change]:
        if self._run_git(["rev-parse", "--verify", "--quiet", handle], check=False).returncode:
            raise CheckpointNotFound(f"Snapshot storage missing for {handle}")
        current = self._write_tree()
        raw = self._run_git(
            [
                "diff-tree",
                "-r",
                "-z",
                "--no-renames",
                "--name-status",
                f"{handle}^{{tree}}",
                current,
            ]
        ).stdout.decode("utf-8")
        parts = [part for part in raw.split("\0") if part]
        kinds = {"A": ADDED, "D": REMOVED}
        changes: list[Change] = []
        for status, path in zip(parts[0::2], parts[1::2], strict=False):
            changes.append(Change(kinds.get(status[:1], MODIFIED), path))
        return sorted(changes, key=lambda change: change.path)

    def _restore_paths(self, handle: str, changes: list[Change]) -> None:
        for change in changes:
            target = self.workspace / change.path
            if change.kind == ADDED:
                target.unlink(missing_ok=True)
                continue
            data = self._run_git(["cat-file", "blob", f"{handle}:{change.path}"]).stdout
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    def _drop(self, handle: str) -> None:
        self._run_git(["update-ref", "-d", handle], check=False)

    def _latest_handle(self, execution_id: str | None) -> str | None:
        prefix = f"{self.REF_PREFIX}/{execution_id}" if execution_id else self.REF_PREFIX
        refs = self._git_text(
            ["for-each-ref", "--sort=-committerdate", "--format=%(refname)", prefix]
        )
        lines = [line.strip() for line in refs.splitlines() if line.strip()]
        return lines[0] if lines else None


def build_checkpoint_store(backend: str, workspace: Path, state: StateStore) -> CheckpointStore:
    if backend == "git":
        return GitCheckpointStore(workspace, state)
    if backend == "files":
        return FilesystemCheckpointStore(workspace, state)
    raise StateError(f"Unsupported checkpoint backend: {backend}")


def changes_payload(changes: list[Change]) -> list[dict[str, Any]]:
    return [change.to_dict() for change in changes]
