"""Custom exceptions for Server Hardener."""

from pathlib import Path
from typing import Iterable, Optional


class HardenerError(Exception):
    """Base exception for all hardener errors."""

    pass


class ConfigurationError(HardenerError):
    """Raised when configuration is invalid."""

    pass


class SystemRequirementError(HardenerError):
    """Raised when system requirements are not met."""

    pass


class CommandExecutionError(HardenerError):
    """Raised when command execution fails."""

    pass


class ServiceControlError(HardenerError):
    """Raised when service control operation fails."""

    pass


class TemplateError(HardenerError):
    """Base class for template rendering failures."""

    pass


class TemplateNotFoundError(TemplateError):
    """Raised when a template cannot be read from the catalog."""

    pass


class MissingVariableError(TemplateError):
    """Raised when a template's required variables are not all supplied."""

    def __init__(self, template: str, missing: Iterable[str]) -> None:
        self.template = template
        self.missing = sorted(missing)
        super().__init__(
            f"Required variable(s) {', '.join(self.missing)} not set for template {template}"
        )


class InstallError(HardenerError):
    """Raised when a file cannot be installed; the destination is left untouched."""

    pass


class ValidationError(HardenerError):
    """Raised when a subsystem rejects a rendered configuration."""

    def __init__(self, message: str, subsystem: str = "", output: str = "") -> None:
        self.subsystem = subsystem
        self.output = output
        super().__init__(message)


class SnapshotError(HardenerError):
    """Raised when the backup area cannot be created or is used out of order."""

    pass


class RestoreError(HardenerError):
    """Raised when a restore descriptor cannot be executed."""

    pass


class ProfileApplicationError(HardenerError):
    """Raised when a profile group failed after earlier groups were committed.

    Earlier groups are deliberately left in place; the snapshot's restore
    artifact is the recovery path.
    """

    def __init__(self, group: str, output: str = "") -> None:
        self.group = group
        self.output = output
        message = f"Profile group '{group}' failed"
        if output:
            message = f"{message}: {output.strip()}"
        super().__init__(message)


class CutoverDegradedError(HardenerError):
    """Raised when SSH could not be confirmed listening after a restart.

    No automatic rollback is attempted for this error.
    """

    def __init__(self, port: int, restore_path: Optional[Path] = None, detail: str = "") -> None:
        self.port = port
        self.restore_path = restore_path
        self.detail = detail
        message = f"SSH service not confirmed listening on port {port}"
        if detail:
            message = f"{message} ({detail})"
        if restore_path is not None:
            message = f"{message}. Recover from a separate session with: {restore_path}"
        super().__init__(message)
