"""Utility modules for Server Hardener."""

from server_hardener.utils.command import CommandExecutor
from server_hardener.utils.validation import Validator

__all__ = ["CommandExecutor", "Validator"]
