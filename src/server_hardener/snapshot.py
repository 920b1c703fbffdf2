"""Pre-mutation snapshots and their restore artifacts.

Layout of a backup area::

    server-backup-YYYYmmdd-HHMMSS/
        backup/<original path without leading />   captured copies
        manifest.json                              run parameters
        restore.json                               restore descriptor
        restore.sh                                 executable launcher
"""

import os
import shutil
import stat
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, NamedTuple, Optional, Set

import structlog
from pydantic import BaseModel

from server_hardener.deployer import write_atomic
from server_hardener.exceptions import SnapshotError
from server_hardener.restore import (
    BACKUP_SUBDIR,
    DESCRIPTOR_NAME,
    RestoreAction,
    RestoreDescriptor,
    RestoreReport,
    execute,
)
from server_hardener.subsystems import ServiceCommand, Subsystem, systemd_command
from server_hardener.utils.command import CommandExecutor

logger = structlog.get_logger(__name__)

MANIFEST_NAME = "manifest.json"
SCRIPT_NAME = "restore.sh"

RESTORE_SCRIPT = """#!/bin/sh
# Restore the configuration captured in this directory by server-hardener.
set -e
DIR="$(cd "$(dirname "$0")" && pwd)"
if [ "$(id -u)" -ne 0 ]; then
    exec sudo "$DIR/{script}" "$@"
fi
PY="{interpreter}"
if [ ! -x "$PY" ]; then
    PY="$(command -v python3)"
fi
PYTHONPATH="{package_parent}${{PYTHONPATH:+:$PYTHONPATH}}"
export PYTHONPATH
exec "$PY" -m server_hardener.restore "$DIR" "$@"
"""


class RunManifest(BaseModel):
    """Run parameters recorded next to the captured files."""

    timestamp: str
    hostname: str = ""
    profile: str
    mode: str
    server_type: str
    ssh_port: int
    current_ssh_port: int
    dry_run: bool = False
    self_lockout_hazard: bool = False
    interpreter: str = sys.executable


class RestoreArtifact(NamedTuple):
    """Files a finalized snapshot leaves on disk."""

    backup_dir: Path
    descriptor: Path
    script: Path
    manifest: Path


class Snapshot:
    """Handle of a snapshot being captured; read-only once finalized."""

    def __init__(
        self,
        directory: Path,
        root: Path,
        manifest: RunManifest,
        subsystems: Mapping[str, Subsystem],
        service_command: ServiceCommand = systemd_command,
    ) -> None:
        self.directory = directory
        self.root = root
        self.manifest = manifest
        self.subsystems = subsystems
        self.service_command = service_command
        self.actions: List[RestoreAction] = []
        self._captured: Set[Path] = set()
        self._touched: Set[str] = set()
        self.artifact: Optional[RestoreArtifact] = None

    @property
    def finalized(self) -> bool:
        return self.artifact is not None

    @property
    def restore_script(self) -> Path:
        return self.directory / SCRIPT_NAME

    def is_captured(self, path: Path) -> bool:
        return Path(path) in self._captured

    def _relative(self, path: Path) -> Path:
        try:
            return path.relative_to(self.root)
        except ValueError as e:
            raise SnapshotError(f"{path} is outside the managed root {self.root}") from e

    def capture(self, path: Path, subsystem: Optional[str] = None) -> None:
        """Record the current state of ``path``; repeated calls are no-ops.

        Raises:
            SnapshotError: If the snapshot is finalized or the copy fails
        """
        if self.finalized:
            raise SnapshotError("Snapshot already finalized")

        path = Path(path)
        if path in self._captured:
            return

        relative = self._relative(path)
        backup_copy = self.directory / BACKUP_SUBDIR / relative

        try:
            action = self._capture_one(path, relative, backup_copy, subsystem)
        except OSError as e:
            raise SnapshotError(f"Failed to capture {path}: {e}") from e

        self.actions.append(action)
        self._captured.add(path)
        if subsystem:
            self._touched.add(subsystem)
        logger.debug("captured", path=str(path), kind=action.kind)

    def _capture_one(
        self, path: Path, relative: Path, backup_copy: Path, subsystem: Optional[str]
    ) -> RestoreAction:
        if not (path.exists() or path.is_symlink()):
            return RestoreAction(kind="remove", path=str(path), subsystem=subsystem)

        info = path.lstat()
        common = dict(
            path=str(path),
            mode=stat.S_IMODE(info.st_mode),
            uid=info.st_uid,
            gid=info.st_gid,
            subsystem=subsystem,
        )

        if path.is_symlink():
            return RestoreAction(kind="restore_link", link_target=os.readlink(path), **common)

        backup_copy.parent.mkdir(parents=True, exist_ok=True)

        if path.is_dir():
            shutil.copytree(path, backup_copy, symlinks=True)
            return RestoreAction(
                kind="restore_tree",
                backup=str(relative),
                owners=self._tree_owners(path),
                **common,
            )

        shutil.copy2(path, backup_copy, follow_symlinks=False)
        return RestoreAction(kind="restore_file", backup=str(relative), **common)

    @staticmethod
    def _tree_owners(path: Path) -> Dict[str, tuple]:
        owners: Dict[str, tuple] = {}
        for current, dirs, files in os.walk(path):
            for name in [None, *dirs, *files]:
                entry = Path(current) if name is None else Path(current) / name
                info = entry.lstat()
                owners[str(entry.relative_to(path))] = (info.st_uid, info.st_gid)
        return owners

    def _restart_actions(self) -> List[RestoreAction]:
        """Restart commands in the fixed safe order, SSH last."""
        touched = [self.subsystems[name] for name in self._touched if name in self.subsystems]
        touched.sort(key=lambda s: (s.restart_order, s.name))

        actions: List[RestoreAction] = []
        seen: Set[tuple] = set()
        for subsystem in touched:
            for argv in subsystem.restore_commands(self.service_command):
                if not argv or tuple(argv) in seen:
                    continue
                seen.add(tuple(argv))
                actions.append(RestoreAction(kind="command", argv=argv, subsystem=subsystem.name))
        return actions

    def finalize(self) -> RestoreArtifact:
        """Write the descriptor and launcher; the snapshot is frozen afterwards."""
        if self.artifact is not None:
            return self.artifact

        descriptor = RestoreDescriptor(
            created=self.manifest.timestamp,
            actions=[*self.actions, *self._restart_actions()],
        )
        descriptor_path = self.directory / DESCRIPTOR_NAME
        script_path = self.directory / SCRIPT_NAME
        manifest_path = self.directory / MANIFEST_NAME

        script = RESTORE_SCRIPT.format(
            script=SCRIPT_NAME,
            interpreter=self.manifest.interpreter,
            package_parent=Path(__file__).resolve().parent.parent,
        )

        try:
            write_atomic(descriptor.model_dump_json(indent=2).encode(), descriptor_path, 0o600)
            write_atomic(self.manifest.model_dump_json(indent=2).encode(), manifest_path, 0o600)
            write_atomic(script.encode(), script_path, 0o755)
        except OSError as e:
            raise SnapshotError(f"Failed to write restore artifact in {self.directory}: {e}") from e

        self.artifact = RestoreArtifact(self.directory, descriptor_path, script_path, manifest_path)
        logger.info(
            "snapshot_finalized",
            backup_dir=str(self.directory),
            captured=len(self.actions),
            restore=str(script_path),
        )
        return self.artifact

    def restore_paths(
        self, paths: List[Path], executor: Optional[CommandExecutor] = None
    ) -> RestoreReport:
        """Put back the captured state of ``paths`` without restarting anything."""
        if not self.finalized:
            raise SnapshotError("Snapshot must be finalized before restoring from it")
        return execute(self.directory, executor=executor, paths=paths)


class SnapshotManager:
    """Create timestamped backup areas."""

    def __init__(
        self,
        base_dir: Path,
        root: Path = Path("/"),
        subsystems: Optional[Mapping[str, Subsystem]] = None,
        service_command: ServiceCommand = systemd_command,
    ) -> None:
        self.base_dir = base_dir
        self.root = root
        self.subsystems = subsystems or {}
        self.service_command = service_command

    def begin(self, manifest: RunManifest) -> Snapshot:
        """Create the backup area before anything else runs.

        Raises:
            SnapshotError: If the directory cannot be created
        """
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        directory = self.base_dir / f"server-backup-{stamp}"
        suffix = 1
        while directory.exists():
            directory = self.base_dir / f"server-backup-{stamp}-{suffix}"
            suffix += 1

        try:
            (directory / BACKUP_SUBDIR).mkdir(parents=True, mode=0o700)
            os.chmod(directory, 0o700)
        except OSError as e:
            raise SnapshotError(f"Cannot create backup area {directory}: {e}") from e

        logger.info("snapshot_started", backup_dir=str(directory))
        return Snapshot(directory, self.root, manifest, self.subsystems, self.service_command)
