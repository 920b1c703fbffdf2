"""CLI entry point for Server Hardener."""

import argparse
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from server_hardener import __version__
from server_hardener.config import HardenerConfig
from server_hardener.exceptions import CutoverDegradedError, HardenerError
from server_hardener.hardener import ServerHardener
from server_hardener.log import configure_logging
from server_hardener.types import SecurityProfile, ServerType, SetupMode

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_DEGRADED = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Server Hardener - transactional Linux host hardening",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Standard profile, SSH moved to port 2222
  sudo server-hardener --security standard --port 2222

  # Docker host, system settings only
  sudo server-hardener --mode system --type docker

  # Show what would change
  server-hardener --security hardened --dry-run

Environment variables:
  SSH_PORT              - SSH port number
  SECURITY_PROFILE      - minimal, standard or hardened
  HARDENER_MODE         - system, ssh or both
  HARDENER_SERVER_TYPE  - bare, docker or web
  BACKUP_DIRECTORY      - Where backup directories are created
  LOG_LEVEL, LOG_FILE, LOG_JSON_FORMAT

Every run that changes files leaves a server-backup-* directory with a
restore.sh that undoes it.
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    parser.add_argument(
        "-s",
        "--security",
        choices=[p.value for p in SecurityProfile],
        help="Security profile (overrides config/env)",
    )

    parser.add_argument(
        "-p",
        "--port",
        type=int,
        help="SSH port number (overrides config/env)",
    )

    parser.add_argument(
        "-m",
        "--mode",
        choices=[m.value for m in SetupMode],
        help="Configure the system, the SSH server, or both",
    )

    parser.add_argument(
        "-t",
        "--type",
        dest="server_type",
        choices=[t.value for t in ServerType],
        help="Server type",
    )

    parser.add_argument(
        "-d",
        "--dry-run",
        action="store_true",
        help="Simulate changes without applying them",
    )

    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Do not ask for confirmation",
    )

    parser.add_argument(
        "--backup-dir",
        type=Path,
        help="Custom backup directory",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress non-error output",
    )

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> HardenerConfig:
    """Load configuration from the environment and apply CLI overrides.

    Args:
        args: Parsed command-line arguments

    Returns:
        Configuration object
    """
    config = HardenerConfig.from_env()

    if args.security:
        config.security.profile = SecurityProfile(args.security)

    if args.port:
        config.ssh.port = args.port

    if args.mode:
        config.run.mode = SetupMode(args.mode)

    if args.server_type:
        config.run.server_type = ServerType(args.server_type)

    if args.backup_dir:
        config.backup.directory = args.backup_dir

    if args.verbose:
        config.logging.level = "DEBUG"
    elif args.quiet:
        config.logging.level = "ERROR"

    return config


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for CLI.

    Raises:
        SystemExit: Always exits with appropriate code
    """
    args = parse_args(argv)

    # Basic sanity checks
    if not sys.platform.startswith("linux"):
        print("Error: This tool only supports Linux systems", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    try:
        config = load_config(args)
        configure_logging(config.logging.level, config.logging.file, config.logging.json_format)

        if not args.quiet:
            print("╔══════════════════════════════════════╗")
            print("║  SERVER HARDENER                     ║")
            print(f"║  Version {__version__:<28} ║")
            print("╚══════════════════════════════════════╝\n")

            if args.dry_run:
                print("🔍 DRY RUN MODE - No changes will be applied\n")

        hardener = ServerHardener(config, dry_run=args.dry_run, verbose=args.verbose)

        if not args.dry_run and not args.yes:
            print("📋 Configuration Summary:")
            print(f"  Security Profile: {config.security.profile.value}")
            print(f"  Mode: {config.run.mode.value}")
            print(f"  Server Type: {config.run.server_type.value}")
            if config.ssh_enabled:
                print(f"  SSH Port: {config.ssh.port}")
            print(f"  Backup Directory: {config.backup.directory}\n")

            response = input("Proceed with hardening? (yes/no): ")
            if response.strip().lower() != "yes":
                print("Aborted.")
                sys.exit(EXIT_OK)

        report = hardener.run()

        if not args.quiet:
            print("\n╔══════════════════════════════════════╗")
            if args.dry_run:
                print("║      🔍 DRY RUN COMPLETE             ║")
            else:
                print("║      ✅ HARDENING COMPLETE!          ║")
            print("╚══════════════════════════════════════╝")
            for outcome in report.outcomes:
                if outcome.item is None:
                    print(f"  • {outcome.group}: {outcome.status.value} {outcome.detail}".rstrip())
            if report.deferred:
                print("\n📌 Pending manual steps:")
                for outcome in report.deferred:
                    print(f"  • {outcome.group}: {outcome.detail}")
            if report.restore_script is not None:
                print(f"\n  • Undo this run with: sudo {report.restore_script}\n")

        sys.exit(EXIT_OK)

    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user", file=sys.stderr)
        sys.exit(EXIT_INTERRUPTED)

    except CutoverDegradedError as e:
        print(f"\n🚨 SSH CUTOVER DEGRADED: {e}", file=sys.stderr)
        sys.exit(EXIT_DEGRADED)

    except HardenerError as e:
        print(f"\n❌ Error: {e}", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    except Exception as e:
        print(f"\n❌ Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
