"""Profile catalog and the layering controller that applies it."""

from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog

from server_hardener.connection import ConnectionSafetyCoordinator
from server_hardener.context import RunContext
from server_hardener.deployer import AtomicDeployer
from server_hardener.edits import EDITORS
from server_hardener.exceptions import InstallError, ServiceControlError, TemplateError
from server_hardener.registry import PathRegistry
from server_hardener.services import ServiceManager
from server_hardener.subsystems import (
    ACCOUNTING,
    CONTAINER,
    INTRUSION,
    KERNEL,
    LIMITS,
    MAC,
    MODPROBE,
    MOUNTS,
    PACKET_FILTER,
    REMOTE_ACCESS,
    UPDATES,
    WEB,
    Subsystem,
)
from server_hardener.template import TemplateRenderer, render_text
from server_hardener.types import (
    ConfigurationGroup,
    ConfigurationItem,
    Outcome,
    OutcomeStatus,
    SecurityProfile,
    ServerType,
    SetupMode,
    ValidationResult,
)
from server_hardener.utils.command import CommandExecutor

logger = structlog.get_logger(__name__)

SSH_VARS = (
    "SSH_PORT",
    "MAX_AUTH_TRIES",
    "CLIENT_ALIVE_INTERVAL",
    "CLIENT_ALIVE_COUNT_MAX",
    "LOGIN_GRACE_TIME",
    "ALLOW_AGENT_FORWARDING",
    "ALLOW_TCP_FORWARDING",
    "MODERN_KEXALGORITHMS",
    "MODERN_CIPHERS",
    "MODERN_MACS",
    "MODERN_HOSTKEY_ALGORITHMS",
    "MODERN_PUBKEY_ALGORITHMS",
)
FAIL2BAN_VARS = ("SSH_PORT", "FAIL2BAN_BANTIME", "FAIL2BAN_FINDTIME", "FAIL2BAN_MAXRETRY")

SSH_ONLY = (SetupMode.SSH,)

CATALOG: Tuple[ConfigurationGroup, ...] = (
    # minimal
    ConfigurationGroup(
        "kernel-minimal",
        SecurityProfile.MINIMAL,
        KERNEL,
        (
            ConfigurationItem(
                "system/sysctl/20-security-minimal.conf",
                "/etc/sysctl.d/20-security-minimal.conf",
            ),
        ),
    ),
    ConfigurationGroup(
        "limits-core",
        SecurityProfile.MINIMAL,
        LIMITS,
        (
            ConfigurationItem(
                "security/limits/limits-disable-core.conf",
                "/etc/security/limits.d/10-disable-core.conf",
            ),
        ),
    ),
    ConfigurationGroup(
        "ssh-server",
        SecurityProfile.MINIMAL,
        REMOTE_ACCESS,
        (
            ConfigurationItem(
                "ssh/server/01-security.conf",
                "/etc/ssh/sshd_config.d/01-security.conf",
                SSH_VARS,
            ),
            ConfigurationItem(
                "ssh/server/02-sftp.conf",
                "/etc/ssh/sshd_config.d/02-sftp.conf",
                condition="ENABLE_SFTP",
            ),
        ),
        modes=SSH_ONLY,
    ),
    ConfigurationGroup(
        "fail2ban-basic",
        SecurityProfile.MINIMAL,
        INTRUSION,
        (
            ConfigurationItem(
                "security/fail2ban/jail.d/ssh-basic.conf",
                "/etc/fail2ban/jail.d/ssh-basic.conf",
                FAIL2BAN_VARS,
            ),
        ),
        modes=SSH_ONLY,
    ),
    ConfigurationGroup(
        "docker-daemon",
        SecurityProfile.MINIMAL,
        CONTAINER,
        (ConfigurationItem("docker/daemon/daemon.json", "/etc/docker/daemon.json"),),
        server_types=(ServerType.DOCKER,),
    ),
    ConfigurationGroup(
        "nginx-security",
        SecurityProfile.MINIMAL,
        WEB,
        (ConfigurationItem("nginx/conf.d/security.conf", "/etc/nginx/conf.d/security.conf"),),
        server_types=(ServerType.WEB,),
    ),
    # standard
    ConfigurationGroup(
        "kernel-standard",
        SecurityProfile.STANDARD,
        KERNEL,
        (
            ConfigurationItem(
                "system/sysctl/21-security-standard.conf",
                "/etc/sysctl.d/21-security-standard.conf",
            ),
        ),
    ),
    ConfigurationGroup(
        "unattended-upgrades",
        SecurityProfile.STANDARD,
        UPDATES,
        (
            ConfigurationItem(
                "applications/apt/unattended-upgrades.conf",
                "/etc/apt/apt.conf.d/50-unattended-upgrades",
            ),
        ),
    ),
    ConfigurationGroup(
        "process-accounting",
        SecurityProfile.STANDARD,
        ACCOUNTING,
        (),
        state_paths=("/etc/systemd/system/multi-user.target.wants/acct.service",),
    ),
    ConfigurationGroup(
        "firewall-basic",
        SecurityProfile.STANDARD,
        PACKET_FILTER,
        (),
        modes=SSH_ONLY,
        commands=(
            ("ufw", "default", "deny", "incoming"),
            ("ufw", "default", "allow", "outgoing"),
            ("ufw", "limit", "${SSH_PORT}/tcp"),
            ("ufw", "allow", "80/tcp"),
            ("ufw", "allow", "443/tcp"),
            ("ufw", "--force", "enable"),
        ),
        command_vars=("SSH_PORT",),
        state_paths=(
            "/etc/default/ufw",
            "/etc/ufw/ufw.conf",
            "/etc/ufw/user.rules",
            "/etc/ufw/user6.rules",
        ),
    ),
    # hardened
    ConfigurationGroup(
        "secure-mounts",
        SecurityProfile.HARDENED,
        MOUNTS,
        (ConfigurationItem("", "/etc/fstab", edit="secure_mount_options"),),
    ),
    ConfigurationGroup(
        "kernel-hardened",
        SecurityProfile.HARDENED,
        KERNEL,
        (
            ConfigurationItem(
                "system/sysctl/22-security-hardened.conf",
                "/etc/sysctl.d/22-security-hardened.conf",
            ),
        ),
    ),
    ConfigurationGroup(
        "fail2ban-advanced",
        SecurityProfile.HARDENED,
        INTRUSION,
        (
            ConfigurationItem(
                "security/fail2ban/sshd-aggressive.conf",
                "/etc/fail2ban/filter.d/sshd-aggressive.conf",
            ),
            ConfigurationItem(
                "security/fail2ban/jail.d/ssh.conf",
                "/etc/fail2ban/jail.d/ssh-hardened.conf",
                FAIL2BAN_VARS,
            ),
        ),
        modes=SSH_ONLY,
    ),
    ConfigurationGroup(
        "modprobe-blacklist",
        SecurityProfile.HARDENED,
        MODPROBE,
        (
            ConfigurationItem(
                "security/hardening/blacklist-protocols.conf",
                "/etc/modprobe.d/blacklist-protocols.conf",
            ),
        ),
    ),
    ConfigurationGroup(
        "apparmor-docker",
        SecurityProfile.HARDENED,
        MAC,
        (
            ConfigurationItem(
                "docker/security/apparmor/docker-hardened.profile",
                "/etc/apparmor.d/docker-hardened",
            ),
        ),
        server_types=(ServerType.DOCKER,),
    ),
    ConfigurationGroup(
        "apparmor-nginx",
        SecurityProfile.HARDENED,
        MAC,
        (ConfigurationItem("web/apparmor/nginx.profile", "/etc/apparmor.d/nginx"),),
        server_types=(ServerType.WEB,),
    ),
)


def _participates(group: ConfigurationGroup, mode: SetupMode, server_type: ServerType) -> bool:
    if mode != SetupMode.BOTH and mode not in group.modes:
        return False
    return not group.server_types or server_type in group.server_types


def resolve(
    profile: SecurityProfile,
    mode: SetupMode = SetupMode.BOTH,
    server_type: ServerType = ServerType.BARE,
    variables: Optional[Mapping[str, str]] = None,
    catalog: Sequence[ConfigurationGroup] = CATALOG,
) -> List[ConfigurationGroup]:
    """Groups of every tier up to and including ``profile``, lowest tier first.

    Conditional items whose variable is not "yes" are dropped, and groups
    left without items are skipped. Groups declared without items run on
    their commands alone and are always kept.
    """
    variables = variables or {}
    selected = [
        group
        for group in catalog
        if group.tier.rank <= profile.rank and _participates(group, mode, server_type)
    ]
    selected.sort(key=lambda group: group.tier.rank)

    groups: List[ConfigurationGroup] = []
    for group in selected:
        items = tuple(
            item
            for item in group.items
            if item.condition is None or variables.get(item.condition) == "yes"
        )
        if items or not group.items:
            groups.append(group._replace(items=items))
    return groups


def build_registry(
    groups: Iterable[ConfigurationGroup],
    root: Path = Path("/"),
    extra: Iterable[Tuple[str, str]] = (),
) -> PathRegistry:
    """Register every target of ``groups`` plus ``(target, subsystem)`` extras."""
    registry = PathRegistry(root)
    for group in groups:
        for item in group.items:
            registry.add(item.target, group.subsystem)
        for target in group.state_paths:
            registry.add(target, group.subsystem)
    for target, subsystem in extra:
        registry.add(target, subsystem)
    return registry


class ProfileLayeringController:
    """Apply resolved groups in order, one committed group at a time."""

    def __init__(
        self,
        renderer: TemplateRenderer,
        executor: CommandExecutor,
        subsystems: Mapping[str, Subsystem],
        services: ServiceManager,
        coordinator: Optional[ConnectionSafetyCoordinator] = None,
    ) -> None:
        """Initialize controller.

        Args:
            renderer: Catalog template renderer
            executor: Runs validation and activation commands
            subsystems: Subsystem table keyed by name
            services: Init-system service control
            coordinator: Handles remote-access groups; without one they are
                applied like any other group
        """
        self.renderer = renderer
        self.executor = executor
        self.subsystems = subsystems
        self.services = services
        self.coordinator = coordinator

    def deployer_for(self, context: RunContext) -> AtomicDeployer:
        return AtomicDeployer(
            dry_run=context.dry_run,
            apply_ownership=context.is_root,
            registry=context.registry,
        )

    def apply(self, groups: Iterable[ConfigurationGroup], context: RunContext) -> List[Outcome]:
        """Apply ``groups`` in order, stopping at the first failed group.

        Returns:
            Outcomes recorded by this call
        """
        start = len(context.results)
        for group in groups:
            subsystem = self.subsystems[group.subsystem]
            logger.info("group_started", group=group.name, tier=group.tier.value)

            if subsystem.remote_access and self.coordinator is not None:
                outcome = self.coordinator.reconfigure(
                    group, context, self.stage_group, self.unstage
                )
            else:
                outcome = self._apply_group(group, subsystem, context)

            if outcome.status == OutcomeStatus.FAILED:
                logger.error("group_failed", group=group.name, detail=outcome.detail)
                break
            logger.info("group_finished", group=group.name, status=outcome.status.value)

        return context.results[start:]

    def stage_group(self, group: ConfigurationGroup, context: RunContext) -> List[Path]:
        """Render every item of ``group``, then install them in order.

        Nothing is written unless every item renders. If an install fails,
        items of this group installed before it are put back.

        Raises:
            TemplateError: If an item cannot be rendered
            InstallError: If an item cannot be installed
        """
        rendered = []
        for item in group.items:
            content = self.render_item(item, context)
            if content is not None:
                rendered.append((item, content))

        deployer = self.deployer_for(context)
        installed: List[Path] = []
        for item, content in rendered:
            destination = context.host_path(item.target)
            try:
                self._require_snapshot(destination, context)
                deployer.install(content, destination, item.mode, item.owner)
            except InstallError:
                self.unstage(installed, context)
                raise
            installed.append(destination)
            status = OutcomeStatus.PLANNED if context.dry_run else OutcomeStatus.INSTALLED
            context.record(Outcome(group.name, item, status, str(destination)))

        return installed

    def render_item(self, item: ConfigurationItem, context: RunContext) -> Optional[bytes]:
        """Content to install for ``item``; None when an edit leaves the file as is."""
        if item.edit is None:
            return self.renderer.render(item.template, context.variables, item.required_vars)

        destination = context.host_path(item.target)
        try:
            current = destination.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("edit_skipped", target=item.target, reason="absent")
            return None
        except OSError as e:
            raise InstallError(f"Cannot read {destination}: {e}") from e

        edited = EDITORS[item.edit](current)
        if edited == current:
            logger.info("edit_skipped", target=item.target, reason="unchanged")
            return None
        return edited.encode("utf-8")

    def group_commands(self, group: ConfigurationGroup, context: RunContext) -> List[List[str]]:
        """The group's own commands with its variables rendered in.

        Raises:
            TemplateError: If a variable is unset or an argument is malformed
        """
        return [
            [
                render_text(part, context.variables, group.command_vars, template=group.name)
                for part in argv
            ]
            for argv in group.commands
        ]

    def unstage(self, paths: List[Path], context: RunContext) -> None:
        """Put the captured state of ``paths`` back without restarting anything."""
        if not paths or context.snapshot is None or context.dry_run:
            return
        report = context.snapshot.restore_paths(paths, self.executor)
        logger.warning(
            "group_unstaged",
            restored=report.restored,
            removed=report.removed,
        )

    @staticmethod
    def _require_snapshot(destination: Path, context: RunContext) -> None:
        if context.dry_run:
            return
        snapshot = context.snapshot
        if snapshot is None or not snapshot.finalized or not snapshot.is_captured(destination):
            raise InstallError(f"No finalized snapshot covers {destination}")

    def _fail(self, group: ConfigurationGroup, context: RunContext, detail: str) -> Outcome:
        return context.record(Outcome(group.name, None, OutcomeStatus.FAILED, detail))

    def _apply_group(
        self, group: ConfigurationGroup, subsystem: Subsystem, context: RunContext
    ) -> Outcome:
        try:
            extra = self.group_commands(group, context)
            paths = self.stage_group(group, context)
        except (TemplateError, InstallError) as e:
            return self._fail(group, context, str(e))

        if context.dry_run:
            return context.record(
                Outcome(group.name, None, OutcomeStatus.PLANNED, "validation and activation skipped")
            )

        validation = self.validate(group, subsystem, paths, context)
        if not validation.passed:
            self.unstage(paths, context)
            return self._fail(
                group, context, validation.output or f"{subsystem.name} validation failed"
            )

        commands = [
            argv for argv in subsystem.activation_commands(paths, self.services.command) if argv
        ]
        commands.extend(extra)
        if subsystem.defer_on_hazard and context.self_lockout_hazard and commands:
            manual = "; ".join(" ".join(argv) for argv in commands)
            print(f"  ⚠️  Connected via SSH - {group.name} not activated now")
            print(f"     Run after confirming access: {manual}")
            return context.record(Outcome(group.name, None, OutcomeStatus.DEFERRED, manual))

        try:
            self._activate(commands)
        except ServiceControlError as e:
            return self._fail(group, context, str(e))

        return context.record(Outcome(group.name, None, OutcomeStatus.COMMITTED))

    def validate(
        self,
        group: ConfigurationGroup,
        subsystem: Subsystem,
        paths: Sequence[Path],
        context: RunContext,
    ) -> ValidationResult:
        """Run per-item checks, then the subsystem's own validation."""
        for item in group.items:
            path = context.host_path(item.target)
            if not item.validate or path not in paths:
                continue
            argv = [part.replace("{path}", str(path)) for part in item.validate]
            result = self.executor.execute(argv, check=False, mutating=False, timeout=60)
            if not result.success:
                return ValidationResult(False, result.output)

        return subsystem.validate(self.executor, paths, context.root)

    def _activate(self, commands: List[List[str]]) -> None:
        for argv in commands:
            result = self.executor.execute(argv, check=False, timeout=90)
            if not result.success:
                raise ServiceControlError(f"{' '.join(argv)} failed: {result.output}")

