"""Pytest configuration and fixtures."""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from server_hardener.config import PACKAGE_ROOT, HardenerConfig
from server_hardener.context import RunContext
from server_hardener.exceptions import CommandExecutionError
from server_hardener.profiles import ProfileLayeringController, build_registry
from server_hardener.services import ServiceManager
from server_hardener.snapshot import RunManifest, SnapshotManager
from server_hardener.subsystems import REMOTE_ACCESS, default_subsystems
from server_hardener.system_info import SystemInfo
from server_hardener.template import TemplateRenderer
from server_hardener.types import CommandResult, FirewallType, InitSystem, SecurityProfile
from server_hardener.utils.command import CommandExecutor

ORIGINAL_SSHD_CONFIG = "Port 22\nPermitRootLogin yes\nSubsystem sftp /usr/lib/openssh/sftp-server\n"


class FakeExecutor(CommandExecutor):
    """Record argv lists and answer from programmed responses."""

    def __init__(self, dry_run: bool = False) -> None:
        super().__init__(dry_run=dry_run)
        self.calls: List[List[str]] = []
        self.responses: Dict[Tuple[str, ...], CommandResult] = {}
        self.missing: Set[str] = set()

    def respond(
        self, prefix: Sequence[str], success: bool = True, stdout: str = "", stderr: str = ""
    ) -> None:
        self.responses[tuple(prefix)] = CommandResult(success, stdout, stderr, 0 if success else 1)

    def execute(
        self,
        cmd: Sequence[str],
        check: bool = True,
        timeout: int = 30,
        mutating: bool = True,
    ) -> CommandResult:
        argv = [str(part) for part in cmd]
        if self.dry_run and mutating:
            return CommandResult(True, f"[DRY RUN] {' '.join(argv)}", "", 0)

        self.calls.append(argv)
        if argv[0] == "which":
            found = argv[1] not in self.missing
            return CommandResult(found, f"/usr/bin/{argv[1]}" if found else "", "", 0 if found else 1)

        result = CommandResult(True, "", "", 0)
        best = -1
        for prefix, response in self.responses.items():
            if tuple(argv[: len(prefix)]) == prefix and len(prefix) > best:
                result, best = response, len(prefix)

        if check and not result.success:
            raise CommandExecutionError(f"Command failed: {' '.join(argv)}")
        return result

    def ran(self, *prefix: str) -> bool:
        return any(tuple(call[: len(prefix)]) == prefix for call in self.calls)

    def index(self, *prefix: str) -> int:
        for position, call in enumerate(self.calls):
            if tuple(call[: len(prefix)]) == prefix:
                return position
        raise ValueError(f"{prefix} was not run")


class FakeSystemInfo(SystemInfo):
    """Host facts fixed up front instead of detected."""

    def __init__(
        self,
        executor: CommandExecutor,
        remote: bool = False,
        firewall: FirewallType = FirewallType.NONE,
        is_root: bool = False,
        virtualization: str = "none",
        free: int = 8 * 1024**3,
    ) -> None:
        self.executor = executor
        self.environ = {"SSH_CONNECTION": "203.0.113.7 50022 198.51.100.1 22"} if remote else {}
        self.proc_root = Path("/nonexistent")
        self.etc_root = Path("/nonexistent")
        self.distro = "debian"
        self.init_system = InitSystem.SYSTEMD
        self.firewall_type = firewall
        self.virtualization = virtualization
        self.is_root = is_root
        self.free = free

    def _ancestor_names(self, pid: Optional[int] = None) -> List[str]:
        return []

    def check_requirements(self, dry_run: bool = False) -> List[str]:
        return []

    def free_space(self, path: Path) -> int:
        return self.free


def make_sysctl_keys(root: Path) -> None:
    """Create /proc/sys entries for every key the catalog sets."""
    for template in (PACKAGE_ROOT / "templates" / "system" / "sysctl").glob("*.conf"):
        for line in template.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key = line.split("=", 1)[0].strip().lstrip("-")
            entry = root / "proc" / "sys" / key.replace(".", "/")
            entry.parent.mkdir(parents=True, exist_ok=True)
            entry.write_text("0\n")


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_root(tmp_path: Path) -> Path:
    """Minimal host filesystem with an sshd_config and kernel parameters."""
    root = tmp_path / "root"
    sshd_config = root / "etc" / "ssh" / "sshd_config"
    sshd_config.parent.mkdir(parents=True)
    sshd_config.write_text(ORIGINAL_SSHD_CONFIG)
    sshd_config.chmod(0o644)
    make_sysctl_keys(root)
    return root


@pytest.fixture
def temp_backup_dir(tmp_path: Path) -> Path:
    """Create temporary backup directory."""
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    return backup_dir


@pytest.fixture
def test_config(fake_root: Path, temp_backup_dir: Path) -> HardenerConfig:
    """Create test configuration rooted in the fake filesystem."""
    config = HardenerConfig.from_env()
    config.ssh.port = 22
    config.run.root_dir = fake_root
    config.backup.directory = temp_backup_dir
    return config


@pytest.fixture
def context_factory(fake_root: Path, temp_backup_dir: Path):
    """Build a RunContext over the fake root, snapshotted unless dry run."""

    def make(
        groups,
        dry_run: bool = False,
        hazard: bool = False,
        ssh_port: int = 22,
        current_ssh_port: int = 22,
        variables: Optional[Dict[str, str]] = None,
        snapshot: bool = True,
    ) -> RunContext:
        config = HardenerConfig.from_env()
        config.ssh.port = ssh_port
        registry = build_registry(
            groups, fake_root, [("/etc/ssh/sshd_config", REMOTE_ACCESS)]
        )
        context = RunContext(
            profile=SecurityProfile.HARDENED,
            ssh_port=ssh_port,
            current_ssh_port=current_ssh_port,
            dry_run=dry_run,
            self_lockout_hazard=hazard,
            root=fake_root,
            variables=config.template_variables() if variables is None else variables,
            registry=registry,
        )
        if snapshot and not dry_run:
            manifest = RunManifest(
                timestamp="2026-01-01T12:00:00",
                profile="hardened",
                mode="both",
                server_type="bare",
                ssh_port=ssh_port,
                current_ssh_port=current_ssh_port,
            )
            taken = SnapshotManager(temp_backup_dir, fake_root, default_subsystems()).begin(
                manifest
            )
            for path, subsystem in registry.items():
                taken.capture(path, subsystem)
            taken.finalize()
            context.snapshot = taken
        return context

    return make


@pytest.fixture
def services(executor: FakeExecutor) -> ServiceManager:
    return ServiceManager(FakeSystemInfo(executor), executor)


@pytest.fixture
def controller(executor: FakeExecutor, services: ServiceManager) -> ProfileLayeringController:
    return ProfileLayeringController(
        TemplateRenderer(PACKAGE_ROOT / "templates"),
        executor,
        default_subsystems(),
        services,
    )
