"""System information detection for Server Hardener."""

import os
import shutil
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from server_hardener.types import FirewallType, InitSystem
from server_hardener.utils.command import CommandExecutor

SSH_SESSION_VARS = ("SSH_CONNECTION", "SSH_CLIENT", "SSH_TTY")
SSH_DAEMON_NAMES = ("sshd", "sshd-session")
CONTAINER_TYPES = (
    "docker",
    "podman",
    "lxc",
    "lxc-libvirt",
    "openvz",
    "systemd-nspawn",
    "rkt",
    "wsl",
    "container-other",
)
DEBIAN_FAMILY = ("debian", "ubuntu", "raspbian", "linuxmint", "pop")


class SystemInfo:
    """Detect and store system capabilities."""

    def __init__(
        self,
        executor: Optional[CommandExecutor] = None,
        environ: Optional[Mapping[str, str]] = None,
        proc_root: Path = Path("/proc"),
        etc_root: Path = Path("/etc"),
    ) -> None:
        """Initialize system information detection.

        Args:
            executor: Runs the detection commands
            environ: Environment of the invoking process
            proc_root: Location of the proc filesystem
            etc_root: Location of /etc
        """
        self.executor = executor or CommandExecutor()
        self.environ = os.environ if environ is None else environ
        self.proc_root = proc_root
        self.etc_root = etc_root

        self.distro = self._detect_distro()
        self.init_system = self._detect_init_system()
        self.firewall_type = self._detect_firewall()
        self.virtualization = self._detect_virtualization()
        self.is_root = os.geteuid() == 0

    def _detect_distro(self) -> str:
        """Detect Linux distribution."""
        os_release = self.etc_root / "os-release"
        if not os_release.exists():
            return "unknown"

        with open(os_release) as f:
            for line in f:
                if line.startswith("ID="):
                    return line.split("=")[1].strip().strip('"').lower()
        return "unknown"

    def _detect_init_system(self) -> InitSystem:
        """Detect init system."""
        checks = [
            (["systemctl", "--version"], InitSystem.SYSTEMD),
            (["rc-service", "--version"], InitSystem.OPENRC),
            (["service", "--version"], InitSystem.SYSVINIT),
        ]

        for cmd, system in checks:
            result = self.executor.execute(cmd, check=False, mutating=False)
            if result.success:
                return system

        return InitSystem.UNKNOWN

    def _detect_firewall(self) -> FirewallType:
        """Detect the active firewall front-end."""
        if self.executor.check_command_available("ufw"):
            result = self.executor.execute(["ufw", "status"], check=False, mutating=False)
            if result.success and "status: active" in result.stdout.lower():
                return FirewallType.UFW
        if self.executor.check_command_available("firewall-cmd"):
            result = self.executor.execute(["firewall-cmd", "--state"], check=False, mutating=False)
            if result.success and "running" in result.stdout.lower():
                return FirewallType.FIREWALLD
        return FirewallType.NONE

    def _detect_virtualization(self) -> str:
        """Detect hypervisor or container type ("none" on bare metal)."""
        result = self.executor.execute(["systemd-detect-virt"], check=False, mutating=False)
        value = result.stdout.strip()
        return value or "none"

    def is_container(self) -> bool:
        """Whether the host is a container, where kernel settings may not apply."""
        if self.virtualization in CONTAINER_TYPES:
            return True
        try:
            environ = (self.proc_root / "1" / "environ").read_bytes()
        except OSError:
            return False
        return any(entry.startswith(b"container=") for entry in environ.split(b"\0"))

    def is_debian_family(self) -> bool:
        return self.distro in DEBIAN_FAMILY

    def free_space(self, path: Path) -> int:
        """Bytes available on the filesystem holding ``path`` or its nearest parent."""
        path = Path(path)
        while not path.exists() and path != path.parent:
            path = path.parent
        return shutil.disk_usage(path).free

    def is_remote_session(self) -> bool:
        """Whether the invoking session is carried by the SSH daemon.

        sudo resets the environment by default, so the process ancestry is
        checked as well as the SSH_* variables.
        """
        if any(self.environ.get(var) for var in SSH_SESSION_VARS):
            return True
        return any(name in SSH_DAEMON_NAMES for name in self._ancestor_names())

    def _ancestor_names(self, pid: Optional[int] = None) -> List[str]:
        """Command names of every ancestor of ``pid`` (default: this process)."""
        names: List[str] = []
        current = os.getppid() if pid is None else pid
        seen = set()

        while current > 1 and current not in seen:
            seen.add(current)
            stat = self._read_stat(current)
            if stat is None:
                break
            name, parent = stat
            names.append(name)
            current = parent

        return names

    def _read_stat(self, pid: int) -> Optional[tuple]:
        """Parse ``(comm, ppid)`` from /proc/<pid>/stat."""
        try:
            raw = (self.proc_root / str(pid) / "stat").read_text()
        except OSError:
            return None

        # comm may contain spaces and parentheses; it ends at the last ")"
        start = raw.find("(")
        end = raw.rfind(")")
        if start == -1 or end == -1:
            return None
        fields = raw[end + 2 :].split()
        if len(fields) < 2 or not fields[1].isdigit():
            return None
        return raw[start + 1 : end], int(fields[1])

    def get_service_command(self, service: str, action: str) -> List[str]:
        """Get service control command for this init system."""
        if self.init_system == InitSystem.SYSTEMD:
            return ["systemctl", action, service]
        elif self.init_system == InitSystem.SYSVINIT:
            if action == "enable":
                return ["update-rc.d", service, "defaults"]
            if action == "is-active":
                return ["service", service, "status"]
            return ["service", service, action]
        elif self.init_system == InitSystem.OPENRC:
            if action == "enable":
                return ["rc-update", "add", service]
            if action == "is-active":
                return ["rc-service", service, "status"]
            return ["rc-service", service, action]
        return []

    def check_requirements(self, dry_run: bool = False) -> List[str]:
        """Check if system meets minimum requirements."""
        issues: List[str] = []

        if not self.is_root and not dry_run:
            issues.append("Root privileges required (run with sudo, or use --dry-run)")

        if self.init_system == InitSystem.UNKNOWN:
            issues.append("Cannot detect init system")

        return issues

    def to_dict(self) -> Dict[str, str]:
        """Convert system info to dictionary."""
        return {
            "distro": self.distro,
            "init_system": self.init_system.value,
            "firewall": self.firewall_type.value,
            "virtualization": self.virtualization,
            "is_root": str(self.is_root),
        }
