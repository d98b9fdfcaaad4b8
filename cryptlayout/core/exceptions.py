"""
Base exceptions for cryptlayout.

This module defines the hierarchy of exceptions used by cryptlayout.
Planning errors (ConfigError, DiskTooSmall, InvalidSpec) are raised before
any disk mutation; the others may occur once provisioning has started.
"""
from typing import List, Optional


class CryptLayoutError(Exception):
    """Base exception for cryptlayout errors"""
    pass


class ConfigError(CryptLayoutError):
    """Exception raised when the deployment configuration is invalid"""
    pass


class DiskTooSmall(CryptLayoutError):
    """Exception raised when the layout does not fit on the target disk"""

    def __init__(self, required_mib: int, available_mib: int):
        self.required_mib = required_mib
        self.available_mib = available_mib
        super().__init__(
            f"Disk too small: {available_mib} MiB available, "
            f"at least {required_mib} MiB required"
        )


class InvalidSpec(CryptLayoutError):
    """Exception raised when a partition specification is malformed"""
    pass


class DeviceNotFound(CryptLayoutError):
    """Exception raised when a block device does not exist"""

    def __init__(self, device: str, reason: Optional[str] = None):
        self.device = device
        message = f"Device not found: {device}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class CommandFailed(CryptLayoutError):
    """Exception raised when an external tool exits with a non-zero status"""

    def __init__(self, command: List[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(
            f"Command failed ({returncode}): {' '.join(self.command)}"
            + (f"\n{self.stderr.strip()}" if self.stderr.strip() else "")
        )


class ValidationError(CryptLayoutError):
    """Exception raised on mount point conflicts or identity mismatches"""
    pass


class PartitioningError(CryptLayoutError):
    """Exception raised when there's an error in partitioning"""
    pass


class EncryptionError(CryptLayoutError):
    """Exception raised when there's an error in encryption setup"""
    pass


class IncorrectPassphrase(EncryptionError):
    """Exception raised when the passphrase was rejected too many times"""

    def __init__(self, device: str, attempts: int):
        self.device = device
        self.attempts = attempts
        super().__init__(f"Incorrect passphrase for {device} after {attempts} attempt(s)")


class FilesystemError(CryptLayoutError):
    """Exception raised when there's an error in filesystem creation"""
    pass


class MountError(CryptLayoutError):
    """Exception raised when there's an error in mounting"""
    pass
