"""Service control and the remote-access service contract."""

import re
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from server_hardener.exceptions import ServiceControlError
from server_hardener.system_info import SystemInfo
from server_hardener.types import CommandResult, FirewallType, InitSystem
from server_hardener.utils.command import CommandExecutor

logger = structlog.get_logger(__name__)

DEFAULT_SSH_PORT = 22
SSH_SERVICE_CANDIDATES = ("ssh", "sshd", "openssh")
SSH_SOCKET_UNIT = "ssh.socket"
SSHD_BINARIES = ("sshd", "/usr/sbin/sshd", "/usr/local/sbin/sshd")

_LISTEN_ADDRESS = re.compile(r"[:\]](\d+)$")
_OPENSSH_VERSION = re.compile(r"OpenSSH_(\d+)\.(\d+)")


class ServiceManager:
    """Start, stop and query services through the detected init system."""

    def __init__(self, system: SystemInfo, executor: CommandExecutor) -> None:
        self.system = system
        self.executor = executor

    def command(self, service: str, action: str) -> List[str]:
        return self.system.get_service_command(service, action)

    def control(self, service: str, action: str) -> CommandResult:
        """Control system service.

        Args:
            service: Service name
            action: Action to perform (start, stop, restart, reload, enable)

        Raises:
            ServiceControlError: If service control fails
        """
        cmd = self.command(service, action)
        if not cmd:
            raise ServiceControlError(f"Cannot control service on {self.system.init_system.value}")

        result = self.executor.execute(cmd, check=False, timeout=90)
        if not result.success:
            raise ServiceControlError(f"Service {service} {action} failed: {result.output}")
        logger.info("service_control", service=service, action=action)
        return result

    def is_active(self, service: str) -> bool:
        cmd = self.command(service, "is-active")
        if not cmd:
            return False
        return self.executor.execute(cmd, check=False, mutating=False).success


class RemoteAccessService:
    """The SSH daemon as seen by the connection-safety coordinator.

    Exposes a configuration-syntax test, a restart, and the port the daemon
    is bound to, plus the socket-activation handling a port change needs.
    """

    def __init__(
        self,
        services: ServiceManager,
        executor: CommandExecutor,
        config_path: Path = Path("/etc/ssh/sshd_config"),
        service_name: Optional[str] = None,
    ) -> None:
        self.services = services
        self.executor = executor
        self.config_path = config_path
        self._service_name = service_name
        self._sshd: Optional[str] = None

    @property
    def name(self) -> str:
        """Detect SSH service name."""
        if self._service_name:
            return self._service_name

        for candidate in SSH_SERVICE_CANDIDATES:
            cmd = self.services.command(candidate, "status")
            if not cmd:
                break
            result = self.executor.execute(cmd, check=False, mutating=False)
            if result.success or "loaded" in result.stdout.lower():
                self._service_name = candidate
                return candidate

        self._service_name = SSH_SERVICE_CANDIDATES[0]
        return self._service_name

    def sshd_binary(self) -> Optional[str]:
        if self._sshd is None:
            for candidate in SSHD_BINARIES:
                if self.executor.check_command_available(candidate):
                    self._sshd = candidate
                    break
        return self._sshd

    def openssh_version(self) -> Optional[Tuple[int, int]]:
        """``(major, minor)`` reported by ``ssh -V``, or None if it cannot be read."""
        result = self.executor.execute(["ssh", "-V"], check=False, mutating=False)
        # ssh -V prints its banner on stderr
        match = _OPENSSH_VERSION.search(result.output)
        if match is None:
            return None
        return int(match.group(1)), int(match.group(2))

    def test_configuration(self) -> CommandResult:
        """Syntax-check the on-disk configuration, including drop-ins."""
        sshd = self.sshd_binary()
        if sshd is None:
            return CommandResult(False, "", "sshd not found; cannot validate configuration", 127)
        return self.executor.execute(
            [sshd, "-t", "-f", str(self.config_path)], check=False, mutating=False
        )

    def restart(self) -> None:
        self.services.control(self.name, "restart")

    def is_active(self) -> bool:
        return self.services.is_active(self.name)

    def listening_port(self) -> int:
        """Port the daemon is bound to now, falling back to its configuration."""
        result = self.executor.execute(["ss", "-Htlnp"], check=False, mutating=False)
        if result.success:
            for line in result.stdout.splitlines():
                if '"sshd"' not in line and '"sshd-session"' not in line:
                    continue
                fields = line.split()
                if len(fields) < 4:
                    continue
                match = _LISTEN_ADDRESS.search(fields[3])
                if match:
                    return int(match.group(1))

        return self.configured_port()

    def configured_port(self) -> int:
        sshd = self.sshd_binary()
        if sshd is not None:
            result = self.executor.execute(
                [sshd, "-T", "-f", str(self.config_path)], check=False, mutating=False
            )
            if result.success:
                for line in result.stdout.splitlines():
                    key, _, value = line.strip().partition(" ")
                    if key.lower() == "port" and value.strip().isdigit():
                        return int(value.strip())
        return DEFAULT_SSH_PORT

    def socket_activation_active(self) -> bool:
        if self.services.system.init_system != InitSystem.SYSTEMD:
            return False
        return self.services.is_active(SSH_SOCKET_UNIT)

    def disable_socket_activation(self) -> None:
        """Stop ssh.socket so it no longer holds the old port, and let the service own it."""
        self.services.control(SSH_SOCKET_UNIT, "stop")
        self.services.control(SSH_SOCKET_UNIT, "disable")
        self.services.control(self.name, "enable")


class Firewall:
    """Open ports in the active host firewall before the daemon moves."""

    UFW_RULE_FILES = ("/etc/ufw/user.rules", "/etc/ufw/user6.rules")
    FIREWALLD_ZONES = ("/etc/firewalld/zones",)

    def __init__(self, firewall_type: FirewallType, executor: CommandExecutor) -> None:
        self.firewall_type = firewall_type
        self.executor = executor

    def state_paths(self) -> List[str]:
        """Files that hold the firewall's persistent rules."""
        if self.firewall_type == FirewallType.UFW:
            return list(self.UFW_RULE_FILES)
        if self.firewall_type == FirewallType.FIREWALLD:
            return list(self.FIREWALLD_ZONES)
        return []

    def _run(self, commands: List[List[str]], failure: str) -> List[CommandResult]:
        results = []
        for cmd in commands:
            result = self.executor.execute(cmd, check=False)
            if not result.success:
                raise ServiceControlError(f"{failure} in {self.firewall_type.value}: {result.output}")
            results.append(result)
        return results

    def allow_port(self, port: int) -> bool:
        """Permit TCP ``port``; existing rules, including the old SSH port, stay.

        Returns:
            True if a new rule was added, False if it already existed or no
            firewall is active
        """
        if self.firewall_type == FirewallType.UFW:
            commands = [["ufw", "limit", f"{port}/tcp", "comment", "SSH-hardened"]]
        elif self.firewall_type == FirewallType.FIREWALLD:
            commands = [
                ["firewall-cmd", "--permanent", f"--add-port={port}/tcp"],
                ["firewall-cmd", "--reload"],
            ]
        else:
            return False

        first = self._run(commands, f"Failed to open port {port}")[0]
        added = not any(marker in first.output for marker in ("Skipping", "ALREADY_ENABLED"))
        logger.info(
            "firewall_port_opened", port=port, firewall=self.firewall_type.value, added=added
        )
        return added

    def remove_port(self, port: int) -> None:
        """Withdraw the rule :meth:`allow_port` added for ``port``."""
        if self.firewall_type == FirewallType.UFW:
            commands = [["ufw", "delete", "limit", f"{port}/tcp"]]
        elif self.firewall_type == FirewallType.FIREWALLD:
            commands = [
                ["firewall-cmd", "--permanent", f"--remove-port={port}/tcp"],
                ["firewall-cmd", "--reload"],
            ]
        else:
            return

        self._run(commands, f"Failed to close port {port}")
        logger.info("firewall_port_closed", port=port, firewall=self.firewall_type.value)
