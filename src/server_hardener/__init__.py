"""Server Hardener - transactional Linux host hardening tool."""

__version__ = "1.0.0"
__license__ = "MIT"

from server_hardener.exceptions import (
    ConfigurationError,
    CutoverDegradedError,
    HardenerError,
    ProfileApplicationError,
    SystemRequirementError,
    ValidationError,
)
from server_hardener.hardener import RunReport, ServerHardener
from server_hardener.system_info import SystemInfo

__all__ = [
    "ServerHardener",
    "RunReport",
    "SystemInfo",
    "HardenerError",
    "ConfigurationError",
    "CutoverDegradedError",
    "ProfileApplicationError",
    "SystemRequirementError",
    "ValidationError",
]
