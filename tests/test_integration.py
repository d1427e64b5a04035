"""
End-to-end tests against in-process MockSSHServer instances.

Tests cover:
- Password, keyboard-interactive and public key authentication
- Learning an unknown host key and redialling
- ProxyJump through a second server
- Failures naming the hop they happened on
- JSONL event log output
"""
from __future__ import annotations

import socket
from pathlib import Path
from typing import Callable

import asyncssh
import pytest

from sshhop.config import SSHConfig
from sshhop.connection import SSHConnection
from sshhop.errors import (
    AuthFailed,
    ConnectionRefused,
    HostKeyMismatch,
    SSHConnectionError,
    UserInputCancelled,
)
from sshhop.events import read_jsonl_events
from sshhop.testing import MockServerConfig, MockSSHServer, ScriptedUserInput


def host_block(name: str, server: MockSSHServer, user: str, methods: str = "password",
               extra: str = "") -> str:
    return (
        f"Host {name}\n"
        f"    HostName 127.0.0.1\n"
        f"    Port {server.port}\n"
        f"    User {user}\n"
        f"    PreferredAuthentications {methods}\n"
        + extra
    )


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ---------------------------------------------------------------------------
# Single Hop Tests
# ---------------------------------------------------------------------------

class TestSingleHop:

    async def test_password_with_known_host(
        self, mock_ssh_server: MockSSHServer, write_ssh_config: Callable,
        known_hosts_path: Path,
    ) -> None:
        mock_ssh_server.write_known_hosts(known_hosts_path)
        config = SSHConfig([write_ssh_config(host_block("target", mock_ssh_server, "test"))])
        prompts = ScriptedUserInput("test")

        async with SSHConnection("target", ssh_config=config, user_input=prompts) as conn:
            result = await conn.exec("echo hello")

        assert result.stdout == "hello\n"
        assert result.exit_code == 0
        assert prompts.titles == ["Password Authentication"]
        assert f"test@[127.0.0.1]:{mock_ssh_server.port}" in prompts.requests[0].query_text

    async def test_unknown_host_key_learned(
        self, mock_ssh_server: MockSSHServer, write_ssh_config: Callable,
        known_hosts_path: Path,
    ) -> None:
        config = SSHConfig([write_ssh_config(host_block("target", mock_ssh_server, "test"))])
        prompts = ScriptedUserInput(True, "test")

        async with SSHConnection("target", ssh_config=config, user_input=prompts) as conn:
            result = await conn.exec("whoami")

        assert result.stdout == "test\n"
        assert prompts.titles == ["Known Hosts", "Password Authentication"]
        assert known_hosts_path.read_text() == mock_ssh_server.known_hosts_line()
        assert len(mock_ssh_server.events_of("SERVER_CONNECT")) == 2

    async def test_changed_host_key_refused(
        self, mock_ssh_server: MockSSHServer, write_ssh_config: Callable,
        known_hosts_path: Path, other_host_key,
    ) -> None:
        public = other_host_key.export_public_key("openssh").decode().split()
        known_hosts_path.write_text(
            f"[127.0.0.1]:{mock_ssh_server.port} {public[0]} {public[1]}\n")
        config = SSHConfig([write_ssh_config(host_block("target", mock_ssh_server, "test"))])
        prompts = ScriptedUserInput("test")

        with pytest.raises(HostKeyMismatch):
            async with SSHConnection("target", ssh_config=config, user_input=prompts):
                pass
        assert prompts.requests == []

    async def test_wrong_password(
        self, mock_ssh_server: MockSSHServer, write_ssh_config: Callable,
        known_hosts_path: Path,
    ) -> None:
        mock_ssh_server.write_known_hosts(known_hosts_path)
        config = SSHConfig([write_ssh_config(host_block("target", mock_ssh_server, "test"))])

        with pytest.raises(AuthFailed) as exc_info:
            async with SSHConnection("target", ssh_config=config,
                                     user_input=ScriptedUserInput("wrong")):
                pass

        assert str(exc_info.value).startswith(
            f"Connecting to test@[127.0.0.1]:{mock_ssh_server.port}, Error: "
        )
        failures = [e for e in mock_ssh_server.events_of("SERVER_AUTH") if not e["success"]]
        assert len(failures) == 1

    async def test_cancelled_password_prompt(
        self, mock_ssh_server: MockSSHServer, write_ssh_config: Callable,
        known_hosts_path: Path,
    ) -> None:
        mock_ssh_server.write_known_hosts(known_hosts_path)
        config = SSHConfig([write_ssh_config(host_block("target", mock_ssh_server, "test"))])

        with pytest.raises(UserInputCancelled):
            async with SSHConnection("target", ssh_config=config,
                                     user_input=ScriptedUserInput()):
                pass

    async def test_keyboard_interactive(
        self, write_ssh_config: Callable, known_hosts_path: Path,
    ) -> None:
        server_config = MockServerConfig(
            password=None,
            kbdint_prompts=[("Verification code: ", True), ("Password: ", False)],
            kbdint_answers=["123456", "secret"],
        )
        async with MockSSHServer(server_config) as server:
            server.write_known_hosts(known_hosts_path)
            config = SSHConfig([write_ssh_config(
                host_block("target", server, "test", "keyboard-interactive"))])
            prompts = ScriptedUserInput("123456", "secret")

            async with SSHConnection("target", ssh_config=config, user_input=prompts) as conn:
                result = await conn.exec("echo ok")

        assert result.stdout == "ok\n"
        assert [r.public_text for r in prompts.requests] == [True, False]
        assert prompts.requests[0].query_text.endswith("Verification code: ")

    async def test_encrypted_identity_file(
        self, write_ssh_config: Callable, known_hosts_path: Path, tmp_path: Path,
    ) -> None:
        key = asyncssh.generate_private_key("ssh-ed25519")
        key_path = tmp_path / "id_ed25519"
        key_path.write_bytes(key.export_private_key("openssh", "hunter2"))

        server_config = MockServerConfig(password=None, authorized_keys=[key.convert_to_public()])
        async with MockSSHServer(server_config) as server:
            server.write_known_hosts(known_hosts_path)
            config = SSHConfig([write_ssh_config(host_block(
                "target", server, "test", "publickey", f"    IdentityFile {key_path}\n",
            ))])
            prompts = ScriptedUserInput("hunter2")

            async with SSHConnection("target", ssh_config=config, user_input=prompts) as conn:
                result = await conn.exec("whoami")

        assert result.stdout == "test\n"
        assert prompts.titles == ["Publickey Auth + Passphrase"]

    async def test_connection_refused(
        self, write_ssh_config: Callable,
    ) -> None:
        port = free_port()
        config = SSHConfig([write_ssh_config(
            f"Host dead\n    HostName 127.0.0.1\n    Port {port}\n    User test\n")])

        with pytest.raises(ConnectionRefused) as exc_info:
            async with SSHConnection("dead", ssh_config=config):
                pass
        assert exc_info.value.context.target == f"test@[127.0.0.1]:{port}"


# ---------------------------------------------------------------------------
# ProxyJump Tests
# ---------------------------------------------------------------------------

class TestProxyJump:

    async def test_jump_to_target(
        self, mock_ssh_server: MockSSHServer, jump_server: MockSSHServer,
        write_ssh_config: Callable, known_hosts_path: Path, event_collector,
    ) -> None:
        mock_ssh_server.write_known_hosts(known_hosts_path)
        jump_server.write_known_hosts(known_hosts_path)
        config = SSHConfig([write_ssh_config(
            host_block("jump", jump_server, "jumper")
            + host_block("target", mock_ssh_server, "test", extra="    ProxyJump jump\n")
        )])
        prompts = ScriptedUserInput("jumppw", "test")

        async with SSHConnection(
            "target", ssh_config=config, user_input=prompts, event_collector=event_collector,
        ) as conn:
            assert conn.chain == [
                f"jumper@[127.0.0.1]:{jump_server.port}",
                f"test@[127.0.0.1]:{mock_ssh_server.port}",
            ]
            result = await conn.exec("whoami")

        assert result.stdout == "test\n"
        tunnels = jump_server.events_of("SERVER_TUNNEL")
        assert [t["dest_port"] for t in tunnels] == [mock_ssh_server.port]

        jump_events = event_collector.get_by_type("JUMP")
        assert [e.data["jump"] for e in jump_events] == ["jump"]
        connect = event_collector.get_by_type("CONNECT")[-1]
        assert connect.data["via"] == f"jumper@[127.0.0.1]:{jump_server.port}"
        assert connect.data["depth"] == 0

    async def test_both_host_keys_learned(
        self, mock_ssh_server: MockSSHServer, jump_server: MockSSHServer,
        write_ssh_config: Callable, known_hosts_path: Path,
    ) -> None:
        config = SSHConfig([write_ssh_config(
            host_block("jump", jump_server, "jumper")
            + host_block("target", mock_ssh_server, "test", extra="    ProxyJump jump\n")
        )])
        prompts = ScriptedUserInput(True, "jumppw", True, "test")

        async with SSHConnection("target", ssh_config=config, user_input=prompts):
            pass

        assert known_hosts_path.read_text() == (
            jump_server.known_hosts_line() + mock_ssh_server.known_hosts_line()
        )

    async def test_target_failure_names_jump(
        self, mock_ssh_server: MockSSHServer, jump_server: MockSSHServer,
        write_ssh_config: Callable, known_hosts_path: Path,
    ) -> None:
        mock_ssh_server.write_known_hosts(known_hosts_path)
        jump_server.write_known_hosts(known_hosts_path)
        config = SSHConfig([write_ssh_config(
            host_block("jump", jump_server, "jumper")
            + host_block("target", mock_ssh_server, "test", extra="    ProxyJump jump\n")
        )])

        with pytest.raises(AuthFailed) as exc_info:
            async with SSHConnection("target", ssh_config=config,
                                     user_input=ScriptedUserInput("jumppw", "nope")):
                pass

        assert str(exc_info.value).startswith(
            f"Connecting from jumper@[127.0.0.1]:{jump_server.port} "
            f"to test@[127.0.0.1]:{mock_ssh_server.port} (jump number 0), Error: "
        )

    async def test_tunnel_refused(
        self, mock_ssh_server: MockSSHServer, write_ssh_config: Callable,
        known_hosts_path: Path,
    ) -> None:
        jump_config = MockServerConfig(username="jumper", password="jumppw", allow_tunnels=False)
        async with MockSSHServer(jump_config) as jump:
            jump.write_known_hosts(known_hosts_path)
            config = SSHConfig([write_ssh_config(
                host_block("jump", jump, "jumper")
                + host_block("target", mock_ssh_server, "test", extra="    ProxyJump jump\n")
            )])

            with pytest.raises(SSHConnectionError) as exc_info:
                async with SSHConnection("target", ssh_config=config,
                                         user_input=ScriptedUserInput("jumppw")):
                    pass

        assert exc_info.value.context.via == f"jumper@[127.0.0.1]:{jump.port}"
        assert exc_info.value.context.jump_depth == 0


# ---------------------------------------------------------------------------
# Event Log Tests
# ---------------------------------------------------------------------------

class TestEventLog:

    async def test_jsonl_written(
        self, mock_ssh_server: MockSSHServer, write_ssh_config: Callable,
        known_hosts_path: Path, temp_jsonl_path: Path,
    ) -> None:
        mock_ssh_server.write_known_hosts(known_hosts_path)
        config = SSHConfig([write_ssh_config(host_block("target", mock_ssh_server, "test"))])

        async with SSHConnection(
            "target", ssh_config=config, user_input=ScriptedUserInput("test"),
            event_log_path=temp_jsonl_path,
        ) as conn:
            await conn.exec("echo hi")

        types = [e.event_type for e in read_jsonl_events(temp_jsonl_path)]
        assert types.index("AUTH") < types.index("CONNECT") < types.index("EXEC")
        assert types[-1] == "DISCONNECT"
        assert types.count("PROMPT") == 1
