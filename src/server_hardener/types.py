"""Type definitions for Server Hardener."""

from enum import Enum
from typing import NamedTuple, Optional, Tuple


class InitSystem(str, Enum):
    """Supported init systems."""

    SYSTEMD = "systemd"
    SYSVINIT = "sysvinit"
    OPENRC = "openrc"
    UNKNOWN = "unknown"


class FirewallType(str, Enum):
    """Supported firewall types."""

    UFW = "ufw"
    FIREWALLD = "firewalld"
    NONE = "none"


class SecurityProfile(str, Enum):
    """Cumulative security levels, lowest first."""

    MINIMAL = "minimal"
    STANDARD = "standard"
    HARDENED = "hardened"

    @property
    def rank(self) -> int:
        return list(SecurityProfile).index(self)


class SetupMode(str, Enum):
    """Which half of the host participates in a run."""

    SYSTEM = "system"
    SSH = "ssh"
    BOTH = "both"


class ServerType(str, Enum):
    """Runtime the host is being prepared for."""

    BARE = "bare"
    DOCKER = "docker"
    WEB = "web"


class OutcomeStatus(str, Enum):
    """Result recorded for an item or a group."""

    PLANNED = "planned"
    INSTALLED = "installed"
    COMMITTED = "committed"
    DEFERRED = "deferred"
    FAILED = "failed"


class CutoverState(str, Enum):
    """States of the SSH reconfiguration state machine."""

    STAGED = "staged"
    VALIDATED = "validated"
    DEFERRED = "deferred"
    FORCED_CUTOVER = "forced_cutover"
    CONFIRMED = "confirmed"
    DEGRADED = "degraded"
    FAILED = "failed"


class CommandResult(NamedTuple):
    """Result of command execution."""

    success: bool
    stdout: str
    stderr: str
    return_code: int = 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class ValidationResult(NamedTuple):
    """Outcome of a subsystem's test-without-applying operation."""

    passed: bool
    output: str = ""


class ConfigurationItem(NamedTuple):
    """A single file deployed from a template.

    ``condition`` names a template variable that must be "yes" for the item
    to take part in a run. An item with ``edit`` set has no template: the named
    editor rewrites the target's current content instead.
    """

    template: str
    target: str
    required_vars: Tuple[str, ...] = ()
    mode: int = 0o644
    owner: Optional[str] = "root:root"
    validate: Optional[Tuple[str, ...]] = None
    condition: Optional[str] = None
    edit: Optional[str] = None


class ConfigurationGroup(NamedTuple):
    """Items committed together and validated by one subsystem.

    ``commands`` run after the subsystem's own activation, with ``${NAME}``
    placeholders from ``command_vars`` rendered in. ``state_paths`` are the
    host files those commands change; they are captured like item targets.
    """

    name: str
    tier: SecurityProfile
    subsystem: str
    items: Tuple[ConfigurationItem, ...]
    modes: Tuple[SetupMode, ...] = (SetupMode.SYSTEM, SetupMode.SSH)
    server_types: Tuple[ServerType, ...] = ()
    commands: Tuple[Tuple[str, ...], ...] = ()
    command_vars: Tuple[str, ...] = ()
    state_paths: Tuple[str, ...] = ()


class Outcome(NamedTuple):
    """One entry of a run's result list."""

    group: str
    item: Optional[ConfigurationItem]
    status: OutcomeStatus
    detail: str = ""
    cutover_state: Optional[CutoverState] = None
