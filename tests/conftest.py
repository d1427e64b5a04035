"""
Pytest fixtures for sshhop tests.

Provides:
- SSH server fixtures (MockSSHServer-based, no Docker required)
- ssh_config writer pointing every hop at temporary known_hosts files
- Event capture fixture for asserting event sequences
- Key generation helpers
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator, Callable, Generator
from unittest.mock import patch

import asyncssh
import pytest

if TYPE_CHECKING:
    from sshhop.events import EventCollector
    from sshhop.testing.mock_server import MockSSHServer


@pytest.fixture(autouse=True)
def unprivileged_user() -> Generator[None, None, None]:
    """Run every test as an ordinary account so user known_hosts files apply."""
    with patch("sshhop.host_key.is_privileged_user", return_value=False):
        yield


@pytest.fixture
def known_hosts_path(tmp_path: Path) -> Path:
    """A known_hosts file that exists and is empty."""
    path = tmp_path / "known_hosts"
    path.write_text("")
    return path


@pytest.fixture
def write_ssh_config(tmp_path: Path, known_hosts_path: Path) -> Callable[[str], Path]:
    """
    Write an ssh_config whose global section isolates the test machine.

    The preamble points known_hosts at tmp files, disables the agent and
    the default identity files, so only what the test configures is used.
    """
    def write(body: str, name: str = "ssh_config") -> Path:
        path = tmp_path / name
        path.write_text(
            f"UserKnownHostsFile {known_hosts_path}\n"
            f"GlobalKnownHostsFile {tmp_path / 'global_known_hosts'}\n"
            "IdentityAgent none\n"
            "IdentityFile none\n"
            + body
        )
        return path

    return write


@pytest.fixture
async def mock_ssh_server() -> AsyncGenerator["MockSSHServer", None]:
    """
    Fixture providing a password-auth MockSSHServer.

    Usage:
        async def test_example(mock_ssh_server):
            port = mock_ssh_server.port
    """
    from sshhop.testing.mock_server import MockServerConfig, MockSSHServer

    async with MockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server


@pytest.fixture
async def jump_server() -> AsyncGenerator["MockSSHServer", None]:
    """A second password-auth server used as a ProxyJump host."""
    from sshhop.testing.mock_server import MockServerConfig, MockSSHServer

    async with MockSSHServer(MockServerConfig(username="jumper", password="jumppw")) as server:
        yield server


@pytest.fixture
def event_collector() -> Generator["EventCollector", None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(event_collector):
            connection = SSHConnection(..., event_collector=event_collector)
            ...
            assert event_collector.get_by_type("CONNECT")
    """
    from sshhop.events import EventCollector

    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"


@pytest.fixture
def host_key() -> asyncssh.SSHKey:
    """A public host key as presented by a server."""
    return asyncssh.generate_private_key("ssh-ed25519").convert_to_public()


@pytest.fixture
def other_host_key() -> asyncssh.SSHKey:
    return asyncssh.generate_private_key("ssh-ed25519").convert_to_public()

