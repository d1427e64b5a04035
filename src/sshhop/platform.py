"""
Cross-platform path handling and local account discovery.

Provides:
- Platform-appropriate SSH directory and config file paths
- Path expansion
- Local username and privileged-account detection
- SSH agent socket discovery
"""
from __future__ import annotations

import getpass
import os
import sys
from pathlib import Path


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def get_ssh_dir() -> Path:
    """
    Get the platform-appropriate SSH directory.

    Returns:
        ~/.ssh on Unix, %USERPROFILE%\\.ssh on Windows
    """
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile) / ".ssh"
    return Path.home() / ".ssh"


def get_config_path() -> Path:
    """
    Get the per-user SSH config file path.

    Returns:
        Path to SSH config file inside get_ssh_dir()
    """
    return get_ssh_dir() / "config"


def get_system_config_path() -> Path:
    """
    Get the system-wide SSH config file path.

    Returns:
        Path to system SSH config file (/etc/ssh/ssh_config on Unix)
    """
    if is_windows():
        program_data = os.environ.get("ProgramData", "C:\\ProgramData")
        return Path(program_data) / "ssh" / "ssh_config"
    return Path("/etc/ssh/ssh_config")


def expand_path(path: str | Path) -> Path:
    """
    Expand a path, handling ~ and environment variables.

    On Unix: expands ~ to $HOME
    On Windows: expands ~ to %USERPROFILE%, also expands %VAR% syntax

    Args:
        path: Path string or Path object to expand

    Returns:
        Expanded Path object
    """
    path_str = str(path)
    if is_windows():
        path_str = os.path.expandvars(path_str)
    return Path(path_str).expanduser()


def local_username() -> str:
    """
    Get the name of the local OS user.

    Returns:
        Login name from the environment or the password database
    """
    return getpass.getuser()


def is_privileged_user() -> bool:
    """
    Check if running as the privileged local account.

    The privileged account only trusts global known_hosts files.

    Returns:
        True for root on Unix; always False on Windows
    """
    if is_windows():
        return False
    return local_username() == "root"


def default_agent_path() -> str:
    """
    Get the agent socket advertised by the environment.

    Returns:
        Value of SSH_AUTH_SOCK, or the empty string when it is unset
    """
    return os.environ.get("SSH_AUTH_SOCK", "")
