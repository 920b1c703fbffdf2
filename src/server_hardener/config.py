"""Configuration management for Server Hardener."""

import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from server_hardener.types import SecurityProfile, ServerType, SetupMode

PACKAGE_ROOT = Path(__file__).resolve().parent

MODERN_KEXALGORITHMS = "sntrup761x25519-sha512@openssh.com,curve25519-sha256"
MODERN_CIPHERS = "chacha20-poly1305@openssh.com,aes256-gcm@openssh.com"
MODERN_MACS = "hmac-sha2-512-etm@openssh.com,hmac-sha2-256-etm@openssh.com"
MODERN_HOSTKEY_ALGORITHMS = "ssh-ed25519"
MODERN_PUBKEY_ALGORITHMS = "ssh-ed25519"


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


class SSHConfig(BaseSettings):
    """SSH server settings."""

    port: int = Field(default=22, ge=1, le=65535, description="SSH port number")
    config_path: Path = Field(default=Path("/etc/ssh/sshd_config"))
    max_auth_tries: int = Field(default=3, ge=1, le=10)
    client_alive_interval: int = Field(default=300, ge=0)
    client_alive_count_max: int = Field(default=2, ge=0)
    login_grace_time: int = Field(default=30, ge=10)
    allow_agent_forwarding: bool = Field(default=True)
    allow_tcp_forwarding: bool = Field(default=True)
    enable_sftp: bool = Field(default=False)
    kex_algorithms: str = Field(default=MODERN_KEXALGORITHMS)
    ciphers: str = Field(default=MODERN_CIPHERS)
    macs: str = Field(default=MODERN_MACS)
    hostkey_algorithms: str = Field(default=MODERN_HOSTKEY_ALGORITHMS)
    pubkey_algorithms: str = Field(default=MODERN_PUBKEY_ALGORITHMS)
    service_name: Optional[str] = Field(default=None, description="Override ssh unit name")

    model_config = SettingsConfigDict(
        env_prefix="SSH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class SecurityConfig(BaseSettings):
    """Security profile configuration."""

    profile: SecurityProfile = Field(default=SecurityProfile.STANDARD)
    fail2ban_bantime: int = Field(default=3600, ge=60)
    fail2ban_findtime: int = Field(default=600, ge=60)
    fail2ban_maxretry: int = Field(default=3, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="SECURITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("profile", mode="before")
    @classmethod
    def parse_profile(cls, v: object) -> object:
        """Accept profile names in any case."""
        if isinstance(v, str):
            return v.strip().lower()
        return v


class RunConfig(BaseSettings):
    """Settings that shape a single invocation."""

    mode: SetupMode = Field(default=SetupMode.BOTH)
    server_type: ServerType = Field(default=ServerType.BARE)
    root_dir: Path = Field(default=Path("/"))
    templates_dir: Path = Field(default=PACKAGE_ROOT / "templates")

    model_config = SettingsConfigDict(
        env_prefix="HARDENER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class BackupConfig(BaseSettings):
    """Backup configuration."""

    directory: Path = Field(default=Path("/root"))

    model_config = SettingsConfigDict(
        env_prefix="BACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def __init__(self, **data: object) -> None:
        """Initialize backup configuration."""
        super().__init__(**data)
        # Use user home if not root
        if os.geteuid() != 0 and "directory" not in data and "BACKUP_DIRECTORY" not in os.environ:
            self.directory = Path.home() / "server-backups"


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    file: Optional[Path] = Field(default=None)
    json_format: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: object) -> str:
        """Upper-case log level names."""
        return str(v).strip().upper()


class HardenerConfig(BaseSettings):
    """Main configuration container."""

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def from_env(cls) -> "HardenerConfig":
        """Create configuration from environment variables."""
        return cls(
            ssh=SSHConfig(),
            security=SecurityConfig(),
            run=RunConfig(),
            backup=BackupConfig(),
            logging=LoggingConfig(),
        )

    @property
    def ssh_enabled(self) -> bool:
        return self.run.mode in (SetupMode.SSH, SetupMode.BOTH)

    def validate_config(self) -> List[str]:
        """Validate configuration and return list of issues."""
        issues: List[str] = []

        if self.ssh_enabled and self.ssh.port in (80, 443):
            issues.append(f"Port {self.ssh.port} is reserved for web traffic")

        if not self.run.templates_dir.is_dir():
            issues.append(f"Template directory not found: {self.run.templates_dir}")

        if not self.run.root_dir.is_absolute():
            issues.append(f"Root directory must be absolute: {self.run.root_dir}")

        return issues

    def template_variables(self) -> Dict[str, str]:
        """Variables available to every template."""
        return {
            "SSH_PORT": str(self.ssh.port),
            "MAX_AUTH_TRIES": str(self.ssh.max_auth_tries),
            "CLIENT_ALIVE_INTERVAL": str(self.ssh.client_alive_interval),
            "CLIENT_ALIVE_COUNT_MAX": str(self.ssh.client_alive_count_max),
            "LOGIN_GRACE_TIME": str(self.ssh.login_grace_time),
            "ALLOW_AGENT_FORWARDING": _yes_no(self.ssh.allow_agent_forwarding),
            "ALLOW_TCP_FORWARDING": _yes_no(self.ssh.allow_tcp_forwarding),
            "ENABLE_SFTP": _yes_no(self.ssh.enable_sftp),
            "MODERN_KEXALGORITHMS": self.ssh.kex_algorithms,
            "MODERN_CIPHERS": self.ssh.ciphers,
            "MODERN_MACS": self.ssh.macs,
            "MODERN_HOSTKEY_ALGORITHMS": self.ssh.hostkey_algorithms,
            "MODERN_PUBKEY_ALGORITHMS": self.ssh.pubkey_algorithms,
            "FAIL2BAN_BANTIME": str(self.security.fail2ban_bantime),
            "FAIL2BAN_FINDTIME": str(self.security.fail2ban_findtime),
            "FAIL2BAN_MAXRETRY": str(self.security.fail2ban_maxretry),
        }
