"""
Backup manager — pre-mutation snapshots and their restore.

Layout (one directory per run, named by the run id):

    <backup_dir>/<run_id>/manifest.json
    <backup_dir>/<run_id>/<seq>-<step_id>/files/etc/sysctl.d/99-ubuntu-ai.conf

The manifest lists every Snapshot of the run in creation order and is
rewritten atomically (write to temp file, then rename) after each
snapshot or restore, so a crash never leaves it half-written.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from provisionctl.core.errors import BackupIOError, ConfigurationError, RestoreConflictError
from provisionctl.core.models.record import Snapshot, SnapshotEntry

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
FILES_DIR = "files"


class BackupManifest(BaseModel):
    """Index of all snapshots taken during one run."""

    run_id: str
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    snapshots: list[Snapshot] = Field(default_factory=list)


class BackupManager:
    """Snapshot paths before a step mutates them, restore them on request.

    Args:
        backup_dir: Root of the backup area.
    """

    def __init__(self, backup_dir: Path):
        self._root = Path(backup_dir)

    @property
    def root(self) -> Path:
        return self._root

    # ── Snapshot ────────────────────────────────────────────────

    def snapshot(self, paths: list[str], step_id: str, run_id: str) -> Snapshot:
        """Copy the current state of every path into the run's backup area.

        Returns:
            The persisted Snapshot.

        Raises:
            BackupIOError: Any path could not be saved. Nothing partial
                is left in the manifest.
        """
        manifest = self._load(run_id)
        seq = len(manifest.snapshots) + 1
        snapshot_id = f"{seq:03d}-{step_id}"
        snap_dir = self._run_dir(run_id) / snapshot_id

        # Leftover from a snapshot whose manifest write failed
        shutil.rmtree(snap_dir, ignore_errors=True)
        try:
            snap_dir.mkdir(parents=True)
            entries = [self._capture(path, snap_dir) for path in paths]
        except OSError as e:
            shutil.rmtree(snap_dir, ignore_errors=True)
            raise BackupIOError(
                f"Cannot snapshot paths for step '{step_id}': {e}", step_id=step_id,
            ) from e

        snap = Snapshot(
            snapshot_id=snapshot_id,
            run_id=run_id,
            step_id=step_id,
            seq=seq,
            entries=entries,
        )
        manifest.snapshots.append(snap)
        self._save(manifest, step_id=step_id)
        logger.debug("Snapshot %s/%s: %s", run_id, snapshot_id, ", ".join(snap.paths))
        return snap

    def _capture(self, path: str, snap_dir: Path) -> SnapshotEntry:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return SnapshotEntry(path=path, kind="missing")

        stored_as = f"{FILES_DIR}/{path.lstrip('/')}"
        dest = snap_dir / stored_as
        dest.parent.mkdir(parents=True, exist_ok=True)
        mode = stat.S_IMODE(st.st_mode)

        if stat.S_ISLNK(st.st_mode):
            return SnapshotEntry(path=path, kind="symlink", link_target=os.readlink(path))
        if stat.S_ISDIR(st.st_mode):
            # A file listed before its parent directory is already in place
            shutil.copytree(path, dest, symlinks=True, dirs_exist_ok=True)
            return SnapshotEntry(path=path, kind="dir", stored_as=stored_as, mode=mode)
        shutil.copy2(path, dest, follow_symlinks=False)
        return SnapshotEntry(path=path, kind="file", stored_as=stored_as, mode=mode)

    # ── Restore ─────────────────────────────────────────────────

    def restore(self, snapshot: Snapshot) -> Snapshot:
        """Put every path of ``snapshot`` back the way it was.

        Entries are restored in reverse order. A path that did not exist
        before the step is removed.

        Returns:
            The Snapshot, marked restored.

        Raises:
            RestoreConflictError: A later, not-yet-restored snapshot of the
                same run also owns one of these paths.
            BackupIOError: The backup copy could not be read back.
        """
        manifest = self._load(snapshot.run_id)
        current = next(
            (s for s in manifest.snapshots if s.snapshot_id == snapshot.snapshot_id), None,
        )
        if current is None:
            raise BackupIOError(
                f"Snapshot {snapshot.snapshot_id} not found in run {snapshot.run_id}",
                step_id=snapshot.step_id,
            )
        if current.restored:
            logger.info("Snapshot %s already restored", current.snapshot_id)
            return current

        conflicts: dict[str, str] = {}
        for later in manifest.snapshots:
            if later.seq <= current.seq or later.restored:
                continue
            for path in set(later.paths) & set(current.paths):
                conflicts.setdefault(path, later.snapshot_id)
        if conflicts:
            raise RestoreConflictError(current.snapshot_id, conflicts)

        snap_dir = self._run_dir(current.run_id) / current.snapshot_id
        try:
            for entry in reversed(current.entries):
                self._put_back(entry, snap_dir)
        except OSError as e:
            raise BackupIOError(
                f"Cannot restore {current.snapshot_id}: {e}", step_id=current.step_id,
            ) from e

        restored = current.model_copy(
            update={"restored": True, "restored_at": datetime.now(UTC).isoformat()},
        )
        manifest.snapshots[manifest.snapshots.index(current)] = restored
        self._save(manifest, step_id=current.step_id)
        logger.info("Restored %s (%d paths)", current.snapshot_id, len(current.entries))
        return restored

    @staticmethod
    def _put_back(entry: SnapshotEntry, snap_dir: Path) -> None:
        target = Path(entry.path)
        _remove(target)
        if entry.kind == "missing":
            return

        target.parent.mkdir(parents=True, exist_ok=True)
        if entry.kind == "symlink":
            os.symlink(entry.link_target or "", target)
            return

        source = snap_dir / (entry.stored_as or "")
        if entry.kind == "dir":
            shutil.copytree(source, target, symlinks=True)
        else:
            shutil.copy2(source, target, follow_symlinks=False)
        if entry.mode is not None:
            os.chmod(target, entry.mode)

    # ── Queries ─────────────────────────────────────────────────

    def snapshots(self, run_id: str) -> list[Snapshot]:
        """All snapshots of a run, oldest first."""
        return list(self._load(run_id).snapshots)

    def get(self, run_id: str, snapshot_id: str) -> Snapshot | None:
        for snap in self._load(run_id).snapshots:
            if snap.snapshot_id == snapshot_id:
                return snap
        return None

    def list_runs(self) -> list[str]:
        """Run ids with a backup manifest, oldest first."""
        if not self._root.is_dir():
            return []
        return sorted(
            d.name for d in self._root.iterdir()
            if d.is_dir() and (d / MANIFEST_FILE).is_file()
        )

    def size_bytes(self, run_id: str) -> int:
        total = 0
        for dirpath, _dirs, files in os.walk(self._run_dir(run_id)):
            for name in files:
                try:
                    total += os.lstat(os.path.join(dirpath, name)).st_size
                except OSError:
                    continue
        return total

    # ── Prune ───────────────────────────────────────────────────

    def prune(self, run_id: str) -> bool:
        """Delete every snapshot of one run. Returns False if none existed."""
        run_dir = self._run_dir(run_id)
        if not run_dir.is_dir():
            return False
        shutil.rmtree(run_dir)
        logger.info("Pruned backups of run %s", run_id)
        return True

    def prune_keep(self, keep: int) -> list[str]:
        """Delete all but the ``keep`` newest runs. Returns the pruned ids."""
        if keep < 0:
            raise ValueError("keep must be >= 0")
        runs = self.list_runs()
        doomed = runs[: max(len(runs) - keep, 0)]
        for run_id in doomed:
            self.prune(run_id)
        return doomed

    # ── Manifest I/O ────────────────────────────────────────────

    def _run_dir(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or run_id in (".", ".."):
            raise ConfigurationError(f"Invalid run id: '{run_id}'")
        return self._root / run_id

    def _load(self, run_id: str) -> BackupManifest:
        path = self._run_dir(run_id) / MANIFEST_FILE
        if not path.is_file():
            return BackupManifest(run_id=run_id)
        try:
            return BackupManifest.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as e:
            raise BackupIOError(f"Corrupt backup manifest {path}: {e}") from e

    def _save(self, manifest: BackupManifest, step_id: str = "") -> None:
        run_dir = self._run_dir(manifest.run_id)
        content = json.dumps(manifest.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
            _fd, tmp_path = tempfile.mkstemp(dir=run_dir, prefix=".manifest_", suffix=".tmp")
            os.close(_fd)
            tmp = Path(tmp_path)
            try:
                tmp.write_text(content, encoding="utf-8")
                tmp.rename(run_dir / MANIFEST_FILE)
            except OSError:
                tmp.unlink(missing_ok=True)
                raise
        except OSError as e:
            raise BackupIOError(f"Cannot write backup manifest: {e}", step_id=step_id) from e


def _remove(target: Path) -> None:
    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.is_dir():
        shutil.rmtree(target)
    elif os.path.lexists(target):
        target.unlink()
