"""Main server hardening implementation."""

import socket
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Tuple

import structlog

from server_hardener.config import HardenerConfig
from server_hardener.connection import ConnectionSafetyCoordinator, PortCheck
from server_hardener.context import RunContext
from server_hardener.exceptions import (
    ConfigurationError,
    CutoverDegradedError,
    ProfileApplicationError,
    SystemRequirementError,
    ValidationError,
)
from server_hardener.profiles import ProfileLayeringController, build_registry, resolve
from server_hardener.registry import host_path
from server_hardener.services import Firewall, RemoteAccessService, ServiceManager
from server_hardener.snapshot import RunManifest, Snapshot, SnapshotManager
from server_hardener.subsystems import (
    FIREWALL,
    INTRUSION,
    REMOTE_ACCESS,
    UPDATES,
    default_subsystems,
)
from server_hardener.system_info import SystemInfo
from server_hardener.template import TemplateRenderer
from server_hardener.types import ConfigurationGroup, CutoverState, Outcome, OutcomeStatus
from server_hardener.utils.command import CommandExecutor
from server_hardener.utils.validation import Validator

logger = structlog.get_logger(__name__)

MINIMUM_OPENSSH = (7, 9)
LOW_DISK_SPACE = 1024 * 1024 * 1024


class RunReport(NamedTuple):
    """What a completed run did."""

    outcomes: List[Outcome]
    backup_dir: Optional[Path]
    restore_script: Optional[Path]
    self_lockout_hazard: bool
    cutover_state: Optional[CutoverState]

    @property
    def deferred(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.DEFERRED]


class ServerHardener:
    """Main server hardening orchestrator."""

    def __init__(
        self,
        config: HardenerConfig,
        dry_run: bool = False,
        verbose: bool = False,
        executor: Optional[CommandExecutor] = None,
        system: Optional[SystemInfo] = None,
        port_check: Optional[PortCheck] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        """Initialize server hardener.

        Args:
            config: Configuration object
            dry_run: If True, only simulate changes
            verbose: Enable verbose logging
            executor: Command runner (built from dry_run if omitted)
            system: Host facts (detected if omitted)
            port_check: Port check used to confirm an SSH cutover
            sleep: Countdown clock used before a forced cutover
        """
        self.config = config
        self.dry_run = dry_run
        self.verbose = verbose
        self.root = config.run.root_dir

        # Initialize components
        self.executor = executor or CommandExecutor(dry_run=dry_run)
        self.system = system or SystemInfo(self.executor)
        self.services = ServiceManager(self.system, self.executor)
        self.remote = RemoteAccessService(
            self.services,
            self.executor,
            host_path(self.root, config.ssh.config_path),
            config.ssh.service_name,
        )
        self.firewall = Firewall(self.system.firewall_type, self.executor)

        ssh_service = self.remote.name if config.ssh_enabled else "ssh"
        self.subsystems = default_subsystems(
            ssh_service, self.remote.config_path, self.system.firewall_type
        )
        self.renderer = TemplateRenderer(config.run.templates_dir)

        self.coordinator = ConnectionSafetyCoordinator(
            self.remote,
            self.firewall,
            config_target=str(config.ssh.config_path),
            sleep=sleep or time.sleep,
            port_check=port_check,
        )
        self.controller = ProfileLayeringController(
            self.renderer,
            self.executor,
            self.subsystems,
            self.services,
            self.coordinator,
        )

    def resolve(self) -> List[ConfigurationGroup]:
        return resolve(
            self.config.security.profile,
            self.config.run.mode,
            self.config.run.server_type,
            self.config.template_variables(),
        )

    def available(self, groups: List[ConfigurationGroup]) -> List[ConfigurationGroup]:
        """Drop groups of optional subsystems whose tools are not installed."""
        kept: List[ConfigurationGroup] = []
        for group in groups:
            subsystem = self.subsystems[group.subsystem]
            absent = [
                command
                for command in subsystem.required_commands
                if not self.executor.check_command_available(command)
            ]
            if subsystem.optional and absent:
                logger.warning("group_skipped", group=group.name, missing=absent)
                print(f"  ⚠️  {group.name} skipped: {', '.join(absent)} not installed")
                continue
            kept.append(group)
        return kept

    def preflight_checks(self, groups: List[ConfigurationGroup]) -> bool:
        """Run preflight safety checks.

        Returns:
            True if all checks pass

        Raises:
            SystemRequirementError: If the host cannot carry out the run
            ConfigurationError: If the configuration is invalid
        """
        logger.info("preflight_started", groups=len(groups))
        logger.info("system_detected", **self.system.to_dict())
        issues: List[str] = []
        warnings: List[str] = []
        subsystems = {group.subsystem for group in groups}

        # System requirements
        issues.extend(self.system.check_requirements(dry_run=self.dry_run))

        # Commands the participating subsystems validate with
        missing: List[str] = []
        for name in sorted(subsystems):
            subsystem = self.subsystems[name]
            if subsystem.remote_access:
                if self.remote.sshd_binary() is None:
                    missing.append("sshd")
                continue
            for command in subsystem.required_commands:
                if not self.executor.check_command_available(command):
                    missing.append(command)
        for command in missing:
            message = f"Required command not found: {command}"
            # A dry run validates nothing, so it can proceed without the tools
            (warnings if self.dry_run else issues).append(message)

        if REMOTE_ACCESS in subsystems:
            sshd_config = host_path(self.root, self.config.ssh.config_path)
            if not sshd_config.is_file():
                message = f"SSH server configuration not found: {sshd_config}"
                (warnings if self.dry_run else issues).append(message)

            version = self.remote.openssh_version()
            if version is None:
                warnings.append("Cannot determine the OpenSSH version")
            elif version < MINIMUM_OPENSSH:
                issues.append(
                    "OpenSSH {}.{} is too old; {}.{} or newer is required".format(
                        *version, *MINIMUM_OPENSSH
                    )
                )

        if self.system.is_container() and subsystems - {REMOTE_ACCESS, INTRUSION}:
            warnings.append("Running in a container; kernel and service settings may not apply")
        if UPDATES in subsystems and not self.system.is_debian_family():
            warnings.append(f"Automatic updates use apt; {self.system.distro} may not support them")
        if not self.dry_run:
            free = self.system.free_space(self.config.backup.directory)
            if free < LOW_DISK_SPACE:
                warnings.append(f"Low disk space: {free // (1024 * 1024)} MiB free for backups")

        for warning in warnings:
            logger.warning("preflight_warning", warning=warning)
            print(f"  ⚠️  {warning}")

        if issues:
            for issue in issues:
                logger.error("preflight_issue", issue=issue)
            raise SystemRequirementError("; ".join(issues))

        # Configuration validation
        problems = list(self.config.validate_config())
        try:
            Validator.validate_port(self.config.ssh.port)
        except ValidationError as e:
            problems.append(str(e))
        if problems:
            for problem in problems:
                logger.error("preflight_issue", issue=problem)
            raise ConfigurationError("; ".join(problems))

        logger.info("preflight_passed", warnings=len(warnings))
        return True

    def _extra_paths(self, groups: List[ConfigurationGroup]) -> List[Tuple[str, str]]:
        """Paths outside the catalog that a run may change."""
        if not any(group.subsystem == REMOTE_ACCESS for group in groups):
            return []
        extra = [(str(self.config.ssh.config_path), REMOTE_ACCESS)]
        extra.extend((path, FIREWALL) for path in self.firewall.state_paths())
        return extra

    def build_context(self, groups: List[ConfigurationGroup]) -> RunContext:
        """Collect the facts a run decides on; each is computed exactly once."""
        ssh_groups = any(group.subsystem == REMOTE_ACCESS for group in groups)
        hazard = self.system.is_remote_session()
        current_port = self.remote.listening_port() if ssh_groups else self.config.ssh.port

        context = RunContext(
            profile=self.config.security.profile,
            ssh_port=self.config.ssh.port,
            mode=self.config.run.mode,
            server_type=self.config.run.server_type,
            current_ssh_port=current_port,
            dry_run=self.dry_run,
            is_root=self.system.is_root,
            self_lockout_hazard=hazard,
            root=self.root,
            variables=self.config.template_variables(),
            registry=build_registry(groups, self.root, self._extra_paths(groups)),
        )
        logger.info(
            "run_context",
            hazard=hazard,
            current_ssh_port=current_port,
            ssh_port=context.ssh_port,
            managed_paths=len(context.registry),
        )
        return context

    def take_snapshot(self, context: RunContext) -> Snapshot:
        """Capture every managed path and write the restore artifact."""
        manager = SnapshotManager(
            self.config.backup.directory,
            self.root,
            self.subsystems,
            self.services.command,
        )
        snapshot = manager.begin(
            RunManifest(
                timestamp=datetime.now().isoformat(timespec="seconds"),
                hostname=socket.gethostname(),
                profile=context.profile.value,
                mode=context.mode.value,
                server_type=context.server_type.value,
                ssh_port=context.ssh_port,
                current_ssh_port=context.current_ssh_port,
                dry_run=context.dry_run,
                self_lockout_hazard=context.self_lockout_hazard,
            )
        )
        for path, subsystem in context.registry.items():
            snapshot.capture(path, subsystem)
        snapshot.finalize()
        return snapshot

    def run(self) -> RunReport:
        """Execute the hardening process.

        Raises:
            SystemRequirementError: If the host fails preflight checks
            ConfigurationError: If the configuration fails preflight checks
            SnapshotError: If the backup area cannot be written
            ProfileApplicationError: If a group failed
            CutoverDegradedError: If SSH could not be confirmed after a restart
        """
        logger.info(
            "hardening_started",
            profile=self.config.security.profile.value,
            mode=self.config.run.mode.value,
            server_type=self.config.run.server_type.value,
            port=self.config.ssh.port,
            dry_run=self.dry_run,
        )

        groups = self.available(self.resolve())
        self.preflight_checks(groups)

        context = self.build_context(groups)

        if not self.dry_run:
            context.snapshot = self.take_snapshot(context)
            print(f"📦 Backup created: {context.snapshot.directory}")
        else:
            print("📦 Backup skipped (dry run)")

        try:
            self.controller.apply(groups, context)
        except (CutoverDegradedError, KeyboardInterrupt):
            self._report_recovery(context)
            raise

        failures = context.failures
        if failures:
            self._report_recovery(context)
            raise ProfileApplicationError(failures[0].group, failures[0].detail)

        report = RunReport(
            outcomes=list(context.results),
            backup_dir=context.snapshot.directory if context.snapshot else None,
            restore_script=context.restore_script,
            self_lockout_hazard=context.self_lockout_hazard,
            cutover_state=self.coordinator.state,
        )
        logger.info(
            "hardening_completed",
            outcomes=len(report.outcomes),
            deferred=len(report.deferred),
            cutover=report.cutover_state.value if report.cutover_state else None,
        )
        return report

    def _report_recovery(self, context: RunContext) -> None:
        restore = context.restore_script
        if restore is None:
            return
        print("\n" + "=" * 60)
        print("⚠️  RECOVERY")
        print("=" * 60)
        print(f"  Backup directory: {restore.parent}")
        print(f"  Undo every change of this run with: sudo {restore}")
        print("=" * 60)
