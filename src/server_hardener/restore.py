"""Restore descriptor and its generic executor.

A backup directory holds ``restore.json``: an ordered list of actions that
reverses every deployment of a run. This module executes such a descriptor
without any state from the run that produced it, and is what ``restore.sh``
invokes::

    python -m server_hardener.restore /root/server-backup-20260101-120000
"""

import argparse
import os
import shutil
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Literal, NoReturn, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from server_hardener.deployer import write_atomic
from server_hardener.exceptions import RestoreError
from server_hardener.utils.command import CommandExecutor

logger = structlog.get_logger(__name__)

DESCRIPTOR_NAME = "restore.json"
BACKUP_SUBDIR = "backup"


class RestoreAction(BaseModel):
    """One step of a restore."""

    kind: Literal["restore_file", "restore_link", "restore_tree", "remove", "command"]
    path: Optional[str] = None
    backup: Optional[str] = None
    link_target: Optional[str] = None
    mode: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    owners: Dict[str, Tuple[int, int]] = Field(default_factory=dict)
    argv: List[str] = Field(default_factory=list)
    subsystem: Optional[str] = None


class RestoreDescriptor(BaseModel):
    """Everything needed to undo a run, relative to its backup directory."""

    version: int = 1
    created: str
    actions: List[RestoreAction] = Field(default_factory=list)

    @classmethod
    def load(cls, backup_dir: Path) -> "RestoreDescriptor":
        path = backup_dir / DESCRIPTOR_NAME
        try:
            return cls.model_validate_json(path.read_text())
        except OSError as e:
            raise RestoreError(f"Restore descriptor not found: {path}") from e
        except ValueError as e:
            raise RestoreError(f"Invalid restore descriptor {path}: {e}") from e


class RestoreReport(BaseModel):
    """What a restore did."""

    restored: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)
    failed_commands: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed_commands


def _chown(path: Path, uid: Optional[int], gid: Optional[int]) -> None:
    if uid is None and gid is None:
        return
    os.chown(path, -1 if uid is None else uid, -1 if gid is None else gid, follow_symlinks=False)


def _remove(path: Path) -> bool:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
        return True
    if path.exists() or path.is_symlink():
        path.unlink()
        return True
    return False


def _restore_tree(source: Path, destination: Path, action: RestoreAction, as_root: bool) -> None:
    """Swap ``destination`` for a fresh copy of ``source``."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    staging = destination.with_name(f".{destination.name}.restore")
    previous = destination.with_name(f".{destination.name}.previous")
    for leftover in (staging, previous):
        _remove(leftover)

    shutil.copytree(source, staging, symlinks=True)
    if as_root:
        for relative, (uid, gid) in action.owners.items():
            _chown(staging / relative if relative != "." else staging, uid, gid)
    if action.mode is not None:
        os.chmod(staging, action.mode)

    if destination.exists() or destination.is_symlink():
        os.replace(destination, previous)
    os.replace(staging, destination)
    _remove(previous)


def _apply_file_action(action: RestoreAction, backup_dir: Path, as_root: bool) -> Optional[str]:
    """Apply a non-command action; returns "restored", "removed" or None."""
    path = Path(action.path or "")

    if action.kind == "remove":
        return "removed" if _remove(path) else None

    if action.kind == "restore_link":
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        staging = path.with_name(f".{path.name}.restore")
        _remove(staging)
        os.symlink(action.link_target or "", staging)
        if as_root:
            _chown(staging, action.uid, action.gid)
        os.replace(staging, path)
        return "restored"

    source = backup_dir / BACKUP_SUBDIR / (action.backup or "")
    if not source.exists():
        raise RestoreError(f"Backup copy missing: {source}")

    if action.kind == "restore_tree":
        _restore_tree(source, path, action, as_root)
        return "restored"

    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    write_atomic(
        source.read_bytes(),
        path,
        action.mode if action.mode is not None else 0o644,
        uid=action.uid if as_root else None,
        gid=action.gid if as_root else None,
    )
    return "restored"


def execute(
    backup_dir: Path,
    executor: Optional[CommandExecutor] = None,
    paths: Optional[Iterable[Path]] = None,
    run_commands: bool = True,
    dry_run: bool = False,
) -> RestoreReport:
    """Execute the descriptor stored in ``backup_dir``.

    Args:
        backup_dir: Directory containing restore.json and backup/
        executor: Runs service commands
        paths: Restrict file actions to these paths; commands are skipped
        run_commands: Whether to issue the service restart commands
        dry_run: Report what would be restored without touching anything

    Returns:
        Report of restored, removed and failed items

    Raises:
        RestoreError: If the descriptor or a backup copy is unusable
    """
    descriptor = RestoreDescriptor.load(backup_dir)
    executor = executor or CommandExecutor(dry_run=dry_run)
    wanted = None if paths is None else {Path(p).resolve() for p in paths}
    as_root = os.geteuid() == 0
    report = RestoreReport()

    for action in descriptor.actions:
        if action.kind == "command":
            continue
        if wanted is not None and Path(action.path or "").resolve() not in wanted:
            continue
        if dry_run:
            logger.info("restore_planned", kind=action.kind, path=action.path)
            continue
        try:
            done = _apply_file_action(action, backup_dir, as_root)
        except OSError as e:
            raise RestoreError(f"Failed to restore {action.path}: {e}") from e
        if done == "restored":
            report.restored.append(action.path or "")
        elif done == "removed":
            report.removed.append(action.path or "")
        logger.info("restore_action", kind=action.kind, path=action.path, result=done)

    if wanted is not None or not run_commands:
        return report

    for action in descriptor.actions:
        if action.kind != "command" or not action.argv:
            continue
        printable = " ".join(action.argv)
        if dry_run:
            logger.info("restore_planned", command=printable)
            report.commands.append(printable)
            continue
        result = executor.execute(action.argv, check=False, timeout=120)
        report.commands.append(printable)
        if not result.success:
            report.failed_commands.append(printable)
            logger.error("restore_command_failed", command=printable, output=result.output)
        else:
            logger.info("restore_command", command=printable)

    return report


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Restore configuration captured by server-hardener",
    )
    parser.add_argument("backup_dir", type=Path, help="Backup directory of the run to undo")
    parser.add_argument(
        "--only",
        type=Path,
        action="append",
        help="Restore only this path (repeatable); service commands are skipped",
    )
    parser.add_argument(
        "--no-restart",
        action="store_true",
        help="Restore files without restarting services",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be restored without changing anything",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Entry point for restore.sh and server-hardener-restore."""
    from server_hardener.log import configure_logging

    args = parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "INFO")

    if os.geteuid() != 0:
        print("Warning: not running as root; ownership will not be restored", file=sys.stderr)

    try:
        report = execute(
            args.backup_dir.resolve(),
            paths=args.only,
            run_commands=not args.no_restart,
            dry_run=args.dry_run,
        )
    except RestoreError as e:
        print(f"\n❌ Restore failed: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user", file=sys.stderr)
        sys.exit(130)

    print(f"\n📦 Restored {len(report.restored)} path(s), removed {len(report.removed)}")
    for command in report.failed_commands:
        print(f"  ⚠️  Command failed: {command}", file=sys.stderr)
    sys.exit(0 if report.success else 1)


if __name__ == "__main__":
    main()
