"""Command execution utilities."""

import shlex
import subprocess
from typing import List, Sequence

import structlog

from server_hardener.exceptions import CommandExecutionError
from server_hardener.types import CommandResult

logger = structlog.get_logger(__name__)


class CommandExecutor:
    """Execute system commands with proper error handling."""

    def __init__(self, dry_run: bool = False) -> None:
        """Initialize command executor.

        Args:
            dry_run: If True, only log commands without executing
        """
        self.dry_run = dry_run
        self.history: List[List[str]] = []

    def execute(
        self,
        cmd: Sequence[str],
        check: bool = True,
        timeout: int = 30,
        mutating: bool = True,
    ) -> CommandResult:
        """Execute command without a shell.

        Args:
            cmd: Argument vector
            check: Whether to raise exception on failure
            timeout: Command timeout in seconds
            mutating: Read-only queries still run in dry-run mode

        Returns:
            CommandResult with execution details

        Raises:
            CommandExecutionError: If command fails and check=True
        """
        argv = [str(part) for part in cmd]
        printable = shlex.join(argv)

        if self.dry_run and mutating:
            logger.info("dry_run_command", command=printable)
            return CommandResult(True, f"[DRY RUN] {printable}", "", 0)

        self.history.append(argv)
        logger.debug("run_command", command=printable)

        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            error_msg = f"Command timed out after {timeout}s: {printable}"
            if check:
                raise CommandExecutionError(error_msg) from e
            return CommandResult(False, "", error_msg, -1)
        except OSError as e:
            error_msg = f"Command execution failed: {printable}\nError: {e}"
            if check:
                raise CommandExecutionError(error_msg) from e
            return CommandResult(False, "", error_msg, -1)

        cmd_result = CommandResult(
            success=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            return_code=result.returncode,
        )

        if check and not cmd_result.success:
            raise CommandExecutionError(f"Command failed: {printable}\nError: {result.stderr}")

        return cmd_result

    def check_command_available(self, command: str) -> bool:
        """Check if command is available on system."""
        result = self.execute(["which", command], check=False, mutating=False)
        return result.success
