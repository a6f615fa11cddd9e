"""
Exception taxonomy for the installer.
"""

from __future__ import annotations


class InstallerError(Exception):
    """Base class for failures that abort an install run."""


class EnvironmentCheckError(InstallerError):
    pass


class ConfigValidationError(InstallerError, ValueError):
    pass


class SecretFileError(InstallerError):
    pass


class ProvisioningError(InstallerError):
    pass


class ProxyConfigError(InstallerError):
    pass


class CommandError(InstallerError):
    def __init__(self, cmd: str, returncode: int, hint: str = "") -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.hint = hint
        msg = f"Command failed (exit {returncode}): {cmd}"
        if hint:
            msg += f". {hint}"
        super().__init__(msg)
