"""
Tests for cross-platform paths and local account discovery.

Tests cover:
- Platform-appropriate SSH directory and config paths
- Path expansion with ~ and environment variables
- Privileged account detection
- SSH agent socket discovery
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from unittest.mock import patch

from sshhop import platform
from sshhop.platform import (
    default_agent_path,
    expand_path,
    get_config_path,
    get_ssh_dir,
    get_system_config_path,
    is_privileged_user,
    is_windows,
)


# ---------------------------------------------------------------------------
# Platform Detection Tests
# ---------------------------------------------------------------------------

class TestPlatformDetection:

    def test_is_windows_matches_sys_platform(self) -> None:
        """is_windows() matches sys.platform check."""
        assert is_windows() == (sys.platform == "win32")


# ---------------------------------------------------------------------------
# SSH Directory Tests
# ---------------------------------------------------------------------------

class TestSSHDirectory:
    """Test SSH directory path functions."""

    def test_get_ssh_dir_unix(self) -> None:
        """On Unix, get_ssh_dir() uses HOME."""
        with patch("sshhop.platform.is_windows", return_value=False):
            assert get_ssh_dir() == Path.home() / ".ssh"

    def test_get_ssh_dir_windows_with_userprofile(self) -> None:
        """On Windows, get_ssh_dir() uses USERPROFILE."""
        with patch("sshhop.platform.is_windows", return_value=True):
            with patch.dict(os.environ, {"USERPROFILE": "C:\\Users\\Test"}):
                assert get_ssh_dir() == Path("C:\\Users\\Test") / ".ssh"

    def test_get_config_path(self) -> None:
        assert get_config_path() == get_ssh_dir() / "config"

    def test_get_system_config_path_unix(self) -> None:
        with patch("sshhop.platform.is_windows", return_value=False):
            assert get_system_config_path() == Path("/etc/ssh/ssh_config")


# ---------------------------------------------------------------------------
# Path Expansion Tests
# ---------------------------------------------------------------------------

class TestPathExpansion:
    """Test path expansion with ~ and environment variables."""

    def test_expand_path_handles_tilde(self) -> None:
        """expand_path() expands ~ to home directory."""
        result = expand_path("~/.ssh/id_rsa")
        assert "~" not in str(result)
        assert result == Path.home() / ".ssh" / "id_rsa"

    def test_expand_path_handles_path_object(self) -> None:
        assert "~" not in str(expand_path(Path("~/.ssh")))

    def test_expand_path_absolute_unchanged(self) -> None:
        assert expand_path("/absolute/path/to/file") == Path("/absolute/path/to/file")

    def test_expand_path_windows_expands_vars(self) -> None:
        """On Windows, environment variables are expanded as well."""
        with patch.object(platform, "is_windows", lambda: True):
            with patch.dict(os.environ, {"TEST_DIR": "/expanded/path"}):
                assert "expanded" in str(expand_path("$TEST_DIR/file.txt"))


# ---------------------------------------------------------------------------
# Account Tests
# ---------------------------------------------------------------------------

class TestAccounts:

    def test_root_is_privileged(self) -> None:
        with patch("sshhop.platform.is_windows", return_value=False), \
             patch("sshhop.platform.local_username", return_value="root"):
            assert is_privileged_user()

    def test_ordinary_user_is_not_privileged(self) -> None:
        with patch("sshhop.platform.is_windows", return_value=False), \
             patch("sshhop.platform.local_username", return_value="alice"):
            assert not is_privileged_user()

    def test_never_privileged_on_windows(self) -> None:
        with patch("sshhop.platform.is_windows", return_value=True), \
             patch("sshhop.platform.local_username", return_value="root"):
            assert not is_privileged_user()


# ---------------------------------------------------------------------------
# Agent Discovery Tests
# ---------------------------------------------------------------------------

class TestAgentDiscovery:

    def test_agent_path_from_environment(self, tmp_path: Path) -> None:
        sock = str(tmp_path / "agent.sock")
        with patch.dict(os.environ, {"SSH_AUTH_SOCK": sock}):
            assert default_agent_path() == sock

    def test_no_agent_in_environment(self) -> None:
        env = {k: v for k, v in os.environ.items() if k != "SSH_AUTH_SOCK"}
        with patch.dict(os.environ, env, clear=True):
            assert default_agent_path() == ""
