"""Subsystems touched by profile groups.

Each subsystem exposes one synchronous "test without applying" operation, the
commands that commit a validated configuration to the live service, and the
commands a restore needs to make restored files take effect.
"""

from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from server_hardener.types import FirewallType, ValidationResult
from server_hardener.utils.command import CommandExecutor

ServiceCommand = Callable[[str, str], List[str]]

KERNEL = "kernel"
LIMITS = "limits"
MODPROBE = "modprobe"
UPDATES = "updates"
MAC = "mac"
CONTAINER = "container"
WEB = "web"
FIREWALL = "firewall"
PACKET_FILTER = "packet_filter"
ACCOUNTING = "accounting"
MOUNTS = "mounts"
INTRUSION = "intrusion"
REMOTE_ACCESS = "remote_access"


def systemd_command(service: str, action: str) -> List[str]:
    return ["systemctl", action, service]


class Subsystem:
    """A configuration area with its own validation and activation."""

    name = ""
    restart_order = 50
    service: Optional[str] = None
    validate_command: Optional[Tuple[str, ...]] = None
    activate_actions: Tuple[str, ...] = ()
    restore_actions: Tuple[str, ...] = ()
    remote_access = False
    defer_on_hazard = False
    # Groups of an optional subsystem are skipped when its tools are absent
    optional = False

    @property
    def required_commands(self) -> Tuple[str, ...]:
        if self.validate_command:
            return (self.validate_command[0],)
        return ()

    def validate(
        self, executor: CommandExecutor, paths: Sequence[Path], root: Path = Path("/")
    ) -> ValidationResult:
        """Test the installed files without applying them."""
        if not self.validate_command:
            return ValidationResult(True, "")

        binary = self.validate_command[0]
        if not executor.check_command_available(binary):
            return ValidationResult(False, f"{binary} not found; cannot validate {self.name}")

        outputs: List[str] = []
        for argv in self._expand(self.validate_command, paths):
            result = executor.execute(argv, check=False, mutating=False, timeout=60)
            if result.output:
                outputs.append(result.output)
            if not result.success:
                return ValidationResult(False, "\n".join(outputs))
        return ValidationResult(True, "\n".join(outputs))

    def activation_commands(
        self, paths: Sequence[Path], service_command: ServiceCommand = systemd_command
    ) -> List[List[str]]:
        """Commands that make validated files live."""
        if self.service is None:
            return []
        return [service_command(self.service, action) for action in self.activate_actions]

    def restore_commands(self, service_command: ServiceCommand = systemd_command) -> List[List[str]]:
        """Commands that make restored files take effect."""
        if self.service is None:
            return []
        return [service_command(self.service, action) for action in self.restore_actions]

    @staticmethod
    def _expand(template: Sequence[str], paths: Sequence[Path]) -> List[List[str]]:
        if any("{path}" in part for part in template):
            return [[part.replace("{path}", str(path)) for part in template] for path in paths]
        return [list(template)]


class KernelParameters(Subsystem):
    """sysctl drop-ins; every key must exist under /proc/sys."""

    name = KERNEL
    restart_order = 10

    @property
    def required_commands(self) -> Tuple[str, ...]:
        return ("sysctl",)

    def validate(
        self, executor: CommandExecutor, paths: Sequence[Path], root: Path = Path("/")
    ) -> ValidationResult:
        proc_sys = root / "proc" / "sys"
        problems: List[str] = []

        for path in paths:
            try:
                lines = path.read_text().splitlines()
            except OSError as e:
                problems.append(f"{path}: {e}")
                continue

            for number, raw in enumerate(lines, start=1):
                line = raw.strip()
                if not line or line.startswith(("#", ";")):
                    continue
                if "=" not in line:
                    problems.append(f"{path}:{number}: not a key = value line: {line}")
                    continue
                key = line.split("=", 1)[0].strip()
                optional = key.startswith("-")
                key = key.lstrip("-")
                if not (proc_sys / key.replace(".", "/")).exists() and not optional:
                    problems.append(f"{path}:{number}: unknown kernel parameter {key}")

        return ValidationResult(not problems, "\n".join(problems))

    def activation_commands(
        self, paths: Sequence[Path], service_command: ServiceCommand = systemd_command
    ) -> List[List[str]]:
        return [["sysctl", "-p", str(path)] for path in paths]

    def restore_commands(self, service_command: ServiceCommand = systemd_command) -> List[List[str]]:
        return [["sysctl", "--system"]]


class ResourceLimits(Subsystem):
    name = LIMITS
    restart_order = 20


class KernelModules(Subsystem):
    name = MODPROBE
    restart_order = 25


class AutomaticUpdates(Subsystem):
    name = UPDATES
    restart_order = 30
    service = "unattended-upgrades"
    validate_command = ("apt-config", "dump")
    activate_actions = ("enable", "restart")


class MandatoryAccessControl(Subsystem):
    """AppArmor profiles, loaded one by one."""

    name = MAC
    restart_order = 40
    service = "apparmor"
    validate_command = ("apparmor_parser", "--skip-kernel-load", "--skip-cache", "{path}")
    restore_actions = ("reload",)

    def activation_commands(
        self, paths: Sequence[Path], service_command: ServiceCommand = systemd_command
    ) -> List[List[str]]:
        return [["apparmor_parser", "-r", str(path)] for path in paths]


class ContainerRuntime(Subsystem):
    name = CONTAINER
    restart_order = 50
    service = "docker"
    validate_command = ("dockerd", "--validate", "--config-file={path}")
    activate_actions = ("restart",)
    restore_actions = ("restart",)


class WebServer(Subsystem):
    name = WEB
    restart_order = 60
    service = "nginx"
    validate_command = ("nginx", "-t")
    activate_actions = ("reload",)
    restore_actions = ("reload",)


class HostFirewall(Subsystem):
    """Rule files of the active firewall; only captured, never templated."""

    name = FIREWALL
    restart_order = 70

    def __init__(self, firewall_type: FirewallType = FirewallType.NONE) -> None:
        self.firewall_type = firewall_type

    def restore_commands(self, service_command: ServiceCommand = systemd_command) -> List[List[str]]:
        if self.firewall_type == FirewallType.UFW:
            return [["ufw", "reload"]]
        if self.firewall_type == FirewallType.FIREWALLD:
            return [["firewall-cmd", "--reload"]]
        return []


class PacketFilter(Subsystem):
    """The basic ufw policy; its rules come from the group's commands."""

    name = PACKET_FILTER
    restart_order = 75
    defer_on_hazard = True
    optional = True

    @property
    def required_commands(self) -> Tuple[str, ...]:
        return ("ufw",)

    def restore_commands(self, service_command: ServiceCommand = systemd_command) -> List[List[str]]:
        return [["ufw", "reload"]]


class ProcessAccounting(Subsystem):
    name = ACCOUNTING
    restart_order = 35
    service = "acct"
    activate_actions = ("enable", "start")
    optional = True

    @property
    def required_commands(self) -> Tuple[str, ...]:
        return ("accton",)


class MountOptions(Subsystem):
    """fstab edits; they take effect at the next mount."""

    name = MOUNTS
    restart_order = 15
    validate_command = ("findmnt", "--verify", "--tab-file", "{path}")


class IntrusionPrevention(Subsystem):
    """fail2ban jails; restarting is deferred while connected over SSH."""

    name = INTRUSION
    restart_order = 80
    service = "fail2ban"
    validate_command = ("fail2ban-client", "-t")
    activate_actions = ("enable", "restart")
    restore_actions = ("restart",)
    defer_on_hazard = True


class RemoteAccess(Subsystem):
    """The SSH daemon; its live cutover belongs to the connection coordinator."""

    name = REMOTE_ACCESS
    restart_order = 100
    restore_actions = ("restart",)
    remote_access = True

    def __init__(self, service: str = "ssh", config_path: Path = Path("/etc/ssh/sshd_config")) -> None:
        self.service = service
        self.config_path = config_path

    @property
    def validate_command(self) -> Tuple[str, ...]:  # type: ignore[override]
        return ("sshd", "-t", "-f", str(self.config_path))

    def activation_commands(
        self, paths: Sequence[Path], service_command: ServiceCommand = systemd_command
    ) -> List[List[str]]:
        return []


def default_subsystems(
    ssh_service: str = "ssh",
    sshd_config: Path = Path("/etc/ssh/sshd_config"),
    firewall_type: FirewallType = FirewallType.NONE,
) -> Dict[str, Subsystem]:
    """Build the subsystem table for one run."""
    subsystems: List[Subsystem] = [
        KernelParameters(),
        ResourceLimits(),
        KernelModules(),
        AutomaticUpdates(),
        MandatoryAccessControl(),
        ContainerRuntime(),
        WebServer(),
        HostFirewall(firewall_type),
        PacketFilter(),
        ProcessAccounting(),
        MountOptions(),
        IntrusionPrevention(),
        RemoteAccess(ssh_service, sshd_config),
    ]
    return {subsystem.name: subsystem for subsystem in subsystems}
