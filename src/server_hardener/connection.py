"""Safe SSH reconfiguration.

The coordinator moves the SSH daemon through::

    STAGED -> VALIDATED -> DEFERRED | FORCED_CUTOVER -> CONFIRMED | DEGRADED

A configuration that fails ``sshd -t`` is never restarted (FAILED). Without a
self-lockout hazard the daemon is restarted directly. With a hazard and an
unchanged port the restart is left to the operator; with a hazard and a new
port the restart happens after a visible countdown, because the new port
cannot be reached until the daemon is restarted.
"""

import re
import stat
import time
from pathlib import Path
from typing import Callable, List, NoReturn, Optional

import structlog

from server_hardener.context import RunContext
from server_hardener.deployer import AtomicDeployer
from server_hardener.exceptions import (
    CutoverDegradedError,
    InstallError,
    ServiceControlError,
    TemplateError,
)
from server_hardener.services import Firewall, RemoteAccessService
from server_hardener.types import ConfigurationGroup, CutoverState, Outcome, OutcomeStatus
from server_hardener.utils.validation import Validator

logger = structlog.get_logger(__name__)

Stager = Callable[[ConfigurationGroup, RunContext], List[Path]]
Unstager = Callable[[List[Path], RunContext], None]
PortCheck = Callable[[int], bool]

CUTOVER_COUNTDOWN = 10

INCLUDE_COMMENT = "# Drop-in files are read first so their values take precedence"


def include_directive(config_target: str) -> str:
    return f"Include {Path(config_target).parent}/sshd_config.d/*.conf"


def ensure_include(text: str, config_target: str = "/etc/ssh/sshd_config") -> Optional[str]:
    """Return ``text`` with the drop-in Include as its first directive.

    Returns None when an equivalent Include line is already present.
    """
    directive = include_directive(config_target)
    pattern = re.compile(
        r"^\s*Include\s+%s\s*$" % re.escape(directive.split(None, 1)[1]),
        re.IGNORECASE | re.MULTILINE,
    )
    if pattern.search(text):
        return None
    return f"{INCLUDE_COMMENT}\n{directive}\n\n{text}"


class ConnectionSafetyCoordinator:
    """Apply the remote-access group without cutting off the operator."""

    def __init__(
        self,
        remote: RemoteAccessService,
        firewall: Firewall,
        config_target: str = "/etc/ssh/sshd_config",
        sleep: Callable[[float], None] = time.sleep,
        port_check: Optional[PortCheck] = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            remote: The SSH daemon
            firewall: Active host firewall
            config_target: Host path of the main sshd configuration
            sleep: Called once per countdown second
            port_check: Returns True if something accepts connections on a port
        """
        self.remote = remote
        self.firewall = firewall
        self.config_target = config_target
        self.sleep = sleep
        self.port_check: PortCheck = port_check or Validator.check_port_listening
        self.state: Optional[CutoverState] = None

    def _transition(self, state: CutoverState, **details: object) -> None:
        logger.info("cutover_state", previous=self.state, state=state.value, **details)
        self.state = state

    def reconfigure(
        self,
        group: ConfigurationGroup,
        context: RunContext,
        stage: Stager,
        unstage: Unstager,
    ) -> Outcome:
        """Stage, validate and cut over the SSH configuration of ``group``.

        Raises:
            CutoverDegradedError: If the daemon was restarted but could not be
                confirmed serving on the configured port
        """
        self.state = None
        try:
            paths = stage(group, context)
        except (TemplateError, InstallError) as e:
            return self._failed(group, context, str(e))
        try:
            paths += self._install_include(context)
        except InstallError as e:
            unstage(paths, context)
            return self._failed(group, context, str(e))
        self._transition(CutoverState.STAGED, files=[str(p) for p in paths])

        if context.dry_run:
            return context.record(
                Outcome(
                    group.name,
                    None,
                    OutcomeStatus.PLANNED,
                    self.planned_action(context),
                    CutoverState.STAGED,
                )
            )

        result = self.remote.test_configuration()
        if not result.success:
            unstage(paths, context)
            self._transition(CutoverState.FAILED, output=result.output)
            print("  ❌ SSH configuration rejected by sshd -t; previous files restored")
            return context.record(
                Outcome(
                    group.name,
                    None,
                    OutcomeStatus.FAILED,
                    result.output or "sshd configuration test failed",
                    CutoverState.FAILED,
                )
            )
        self._transition(CutoverState.VALIDATED)

        if not context.self_lockout_hazard:
            return self._restart_and_confirm(group, context, paths, unstage)
        if not context.port_changed:
            return self._defer(group, context)
        return self._forced_cutover(group, context, paths, unstage)

    def planned_action(self, context: RunContext) -> str:
        """Describe what a real run would do with the daemon."""
        if not context.self_lockout_hazard:
            return f"would restart {self.remote.name}"
        if not context.port_changed:
            return "would defer restart (connected via SSH)"
        return (
            f"would move SSH from port {context.current_ssh_port} to {context.ssh_port} "
            f"after a {CUTOVER_COUNTDOWN}s countdown"
        )

    def _install_include(self, context: RunContext) -> List[Path]:
        """Make the main configuration read the drop-in directory first."""
        path = context.host_path(self.config_target)
        try:
            text = path.read_text()
        except FileNotFoundError:
            if context.dry_run:
                logger.info("dry_run_include", path=str(path))
                return []
            raise InstallError(f"SSH server configuration not found: {path}")
        except OSError as e:
            raise InstallError(f"Cannot read {path}: {e}") from e

        updated = ensure_include(text, self.config_target)
        if updated is None:
            return []

        mode = stat.S_IMODE(path.stat().st_mode)
        snapshot = context.snapshot
        if not context.dry_run and (snapshot is None or not snapshot.is_captured(path)):
            raise InstallError(f"No finalized snapshot covers {path}")
        AtomicDeployer(
            dry_run=context.dry_run,
            apply_ownership=False,
            registry=context.registry,
        ).install(updated.encode(), path, mode)
        return [path]

    def _open_port(self, context: RunContext) -> bool:
        """Open the new port; True when this run added the rule."""
        if not context.port_changed:
            return False
        return self.firewall.allow_port(context.ssh_port)

    def _close_port(self, context: RunContext) -> None:
        try:
            self.firewall.remove_port(context.ssh_port)
        except ServiceControlError as e:
            logger.error("firewall_port_not_closed", port=context.ssh_port, error=str(e))
            print(f"     ⚠️  Port {context.ssh_port} is still open in the firewall: {e}")

    def _prepare_port_change(self, context: RunContext) -> None:
        if context.port_changed and self.remote.socket_activation_active():
            logger.info("socket_activation_disabled", port=context.current_ssh_port)
            self.remote.disable_socket_activation()

    def _restart_and_confirm(
        self,
        group: ConfigurationGroup,
        context: RunContext,
        paths: List[Path],
        unstage: Unstager,
    ) -> Outcome:
        try:
            self._open_port(context)
        except ServiceControlError as e:
            unstage(paths, context)
            return self._failed(group, context, str(e))

        try:
            self._prepare_port_change(context)
            self.remote.restart()
        except ServiceControlError as e:
            return self._degraded(group, context, str(e))

        if not self.remote.is_active():
            return self._degraded(group, context, f"{self.remote.name} is not active after restart")
        if context.port_changed and not self.port_check(context.ssh_port):
            return self._degraded(group, context, "nothing accepts connections on the new port")

        return self._confirmed(group, context)

    def _defer(self, group: ConfigurationGroup, context: RunContext) -> Outcome:
        self._transition(CutoverState.DEFERRED)
        restart = " ".join(self.remote.services.command(self.remote.name, "restart"))

        print("\n  ⚠️  Connected via SSH: the SSH service was NOT restarted")
        print("     The new configuration is installed and passed sshd -t")
        print(f"     From a second session run: sudo {restart}")
        print(f"     Keep this session open and verify with: ssh -p {context.ssh_port} <user>@<host>")

        return context.record(
            Outcome(
                group.name,
                None,
                OutcomeStatus.DEFERRED,
                f"restart manually: {restart}",
                CutoverState.DEFERRED,
            )
        )

    def _forced_cutover(
        self,
        group: ConfigurationGroup,
        context: RunContext,
        paths: List[Path],
        unstage: Unstager,
    ) -> Outcome:
        self._transition(
            CutoverState.FORCED_CUTOVER,
            old_port=context.current_ssh_port,
            new_port=context.ssh_port,
        )
        try:
            opened = self._open_port(context)
        except ServiceControlError as e:
            unstage(paths, context)
            return self._failed(group, context, str(e))

        print(
            f"\n  ⚠️  SSH is moving from port {context.current_ssh_port} to {context.ssh_port}"
        )
        print("     This session may drop. Reconnect with:")
        print(f"       ssh -p {context.ssh_port} <user>@<host>")
        print("     Press Ctrl+C now to abort and keep the current configuration")

        try:
            for remaining in range(CUTOVER_COUNTDOWN, 0, -1):
                logger.warning("cutover_countdown", remaining=remaining)
                print(f"     Restarting in {remaining}...")
                self.sleep(1)
        except KeyboardInterrupt:
            unstage(paths, context)
            if opened:
                self._close_port(context)
            self._transition(CutoverState.FAILED, reason="aborted")
            context.record(
                Outcome(
                    group.name,
                    None,
                    OutcomeStatus.FAILED,
                    "cutover aborted by operator; previous configuration restored",
                    CutoverState.FAILED,
                )
            )
            raise

        try:
            self._prepare_port_change(context)
            self.remote.restart()
        except ServiceControlError as e:
            return self._degraded(group, context, str(e))

        # A single check: a dead daemon does not come back by waiting
        if not self.port_check(context.ssh_port):
            return self._degraded(group, context, "nothing accepts connections on the new port")

        return self._confirmed(group, context)

    def _confirmed(self, group: ConfigurationGroup, context: RunContext) -> Outcome:
        self._transition(CutoverState.CONFIRMED, port=context.ssh_port)
        print(f"  ✅ SSH confirmed on port {context.ssh_port}")
        return context.record(
            Outcome(
                group.name,
                None,
                OutcomeStatus.COMMITTED,
                f"listening on port {context.ssh_port}",
                CutoverState.CONFIRMED,
            )
        )

    def _failed(self, group: ConfigurationGroup, context: RunContext, detail: str) -> Outcome:
        self._transition(CutoverState.FAILED, reason=detail)
        return context.record(
            Outcome(group.name, None, OutcomeStatus.FAILED, detail, CutoverState.FAILED)
        )

    def _degraded(self, group: ConfigurationGroup, context: RunContext, detail: str) -> NoReturn:
        """Record DEGRADED and raise; nothing is rolled back automatically."""
        self._transition(CutoverState.DEGRADED, reason=detail)
        context.record(
            Outcome(group.name, None, OutcomeStatus.FAILED, detail, CutoverState.DEGRADED)
        )
        restore = context.restore_script
        logger.critical(
            "cutover_degraded",
            port=context.ssh_port,
            detail=detail,
            restore=str(restore) if restore else None,
        )
        raise CutoverDegradedError(context.ssh_port, restore, detail)
