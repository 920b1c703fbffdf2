"""Input validation utilities."""

import socket

from server_hardener.exceptions import ValidationError


class Validator:
    """Validate inputs and network state."""

    @staticmethod
    def validate_port(port: int) -> None:
        """Validate port number.

        Args:
            port: Port number to validate

        Raises:
            ValidationError: If port is invalid
        """
        if not (1 <= port <= 65535):
            raise ValidationError(f"Invalid port: {port}. Must be between 1-65535")

    @staticmethod
    def check_port_listening(port: int, host: str = "127.0.0.1", timeout: float = 2.0) -> bool:
        """Single connection attempt against a local port.

        Args:
            port: Port number to check
            host: Address to connect to
            timeout: Connect timeout in seconds

        Returns:
            True if something accepted the connection
        """
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False
