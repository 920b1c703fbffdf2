"""Atomic file installation."""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Tuple

import structlog

from server_hardener.exceptions import InstallError
from server_hardener.registry import PathRegistry

logger = structlog.get_logger(__name__)


def parse_owner(owner: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split ``user:group`` into its parts; either part may be empty."""
    if not owner:
        return None, None
    user, _, group = owner.partition(":")
    return user or None, group or None


def write_atomic(
    content: bytes,
    destination: Path,
    mode: int,
    owner: Optional[str] = None,
    uid: Optional[int] = None,
    gid: Optional[int] = None,
) -> None:
    """Stage ``content`` next to ``destination`` and rename it into place.

    Ownership is given either as a ``user:group`` string or as numeric ids.
    On any failure the temporary file is removed and the destination is left
    as it was.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        dir=str(destination.parent), prefix=f".{destination.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        if owner:
            user, group = parse_owner(owner)
            shutil.chown(tmp_name, user=user, group=group)
        elif uid is not None or gid is not None:
            os.chown(tmp_name, -1 if uid is None else uid, -1 if gid is None else gid)
        os.replace(tmp_name, destination)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class AtomicDeployer:
    """Install rendered content with stage-then-rename semantics."""

    def __init__(
        self,
        dry_run: bool = False,
        apply_ownership: bool = True,
        registry: Optional[PathRegistry] = None,
    ) -> None:
        """Initialize deployer.

        Args:
            dry_run: If True, only log intended installs
            apply_ownership: Change owners (requires root)
            registry: If given, only paths it manages may be written
        """
        self.dry_run = dry_run
        self.apply_ownership = apply_ownership
        self.registry = registry

    def install(
        self, content: bytes, destination: Path, mode: int = 0o644, owner: Optional[str] = None
    ) -> Path:
        """Install ``content`` at ``destination``.

        Raises:
            InstallError: If any step fails; the destination is untouched
        """
        if self.registry is not None and not self.registry.manages(destination):
            raise InstallError(f"Refusing to write unmanaged path: {destination}")

        if self.dry_run:
            logger.info(
                "dry_run_install",
                destination=str(destination),
                mode=oct(mode),
                owner=owner,
                size=len(content),
            )
            return destination

        effective_owner = owner if self.apply_ownership else None
        try:
            write_atomic(content, destination, mode, owner=effective_owner)
        except (OSError, LookupError) as e:
            raise InstallError(f"Failed to install {destination}: {e}") from e

        logger.info("installed", destination=str(destination), mode=oct(mode), owner=effective_owner)
        return destination

