"""
Tests for the sshhop CLI interface.

Tests the command-line interface for:
- Argument parsing (user@host, port, identity files, config file)
- -G printing of resolved parameters
- Command execution and exit code propagation
- Event output with --events
- Exit status 255 for connection errors
"""
from __future__ import annotations

import json
import socket
import subprocess
import sys
from pathlib import Path
from typing import Callable
from unittest.mock import patch

import pytest

from sshhop.__main__ import (
    EXIT_CONNECTION_ERROR,
    build_options,
    create_parser,
    main,
    run_command,
)
from sshhop.testing import MockServerConfig, MockSSHServer, ScriptedUserInput


def run_module(*argv: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "sshhop", *argv],
        capture_output=True,
        text=True,
        cwd=Path(__file__).parent.parent,
        env={
            **subprocess.os.environ,
            "PYTHONPATH": str(Path(__file__).parent.parent / "src"),
        },
    )


def server_block(server: MockSSHServer, name: str = "target") -> str:
    return (
        f"Host {name}\n"
        f"    HostName 127.0.0.1\n"
        f"    Port {server.port}\n"
        f"    User test\n"
        f"    PreferredAuthentications password\n"
    )


# ---------------------------------------------------------------------------
# Argument Parsing Tests
# ---------------------------------------------------------------------------

class TestArgumentParsing:
    """Tests for CLI argument parsing."""

    def test_defaults(self) -> None:
        args = create_parser().parse_args(["host.example.com", "echo", "test"])

        assert args.target == "host.example.com"
        assert args.command == ["echo", "test"]
        assert args.port == 0
        assert args.login is None
        assert args.identity == []
        assert args.config_file is None
        assert args.events is None
        assert args.timeout is None
        assert args.print_config is False

    def test_command_options_not_parsed(self) -> None:
        """Options after the target belong to the remote command."""
        args = create_parser().parse_args(["host", "ls", "-la"])
        assert args.command == ["ls", "-la"]

    def test_repeated_identity(self) -> None:
        args = create_parser().parse_args(["-i", "a", "-i", "b", "host"])
        assert args.identity == ["a", "b"]

    def test_verbosity(self) -> None:
        args = create_parser().parse_args(["-vv", "host"])
        assert args.verbose == 2

    def test_config_options(self) -> None:
        args = create_parser().parse_args(["-F", "./cfg", "-G", "host"])
        assert args.config_file == "./cfg"
        assert args.print_config is True

    def test_build_options(self) -> None:
        args = create_parser().parse_args(["-l", "bob", "-p", "2222", "-i", "key", "host"])
        options = build_options(args)

        assert options.user == "bob"
        assert options.port == 2222
        assert options.identity_files == ["key"]


class TestHelpOutput:
    """Tests for help and version output."""

    def test_help_output(self) -> None:
        result = run_module("--help")

        assert result.returncode == 0
        assert "sshhop" in result.stdout
        assert "[user@]host[:port]" in result.stdout
        assert "--config-file" in result.stdout
        assert "--print-config" in result.stdout
        assert "--events" in result.stdout

    def test_version_output(self) -> None:
        result = run_module("--version")

        assert result.returncode == 0
        assert "0.1.0" in result.stdout


# ---------------------------------------------------------------------------
# Print Config Tests
# ---------------------------------------------------------------------------

class TestPrintConfig:

    def test_resolved_parameters(self, write_ssh_config: Callable, tmp_path: Path,
                                 capsys) -> None:
        config = write_ssh_config(
            "Host myserver\n"
            "    HostName actual.server.com\n"
            "    Port 2222\n"
            "    User admin\n"
            "    ProxyJump bastion\n"
            "    BatchMode yes\n"
        )
        exit_code = main([
            "-F", str(config), "--settings", str(tmp_path / "settings.json"),
            "-G", "myserver",
        ])

        assert exit_code == 0
        lines = capsys.readouterr().out.splitlines()
        assert "user admin" in lines
        assert "hostname actual.server.com" in lines
        assert "port 2222" in lines
        assert "proxyjump bastion" in lines
        assert "batchmode yes" in lines
        assert "identityagent none" in lines
        assert not any(line.startswith("identityfile") for line in lines)

    def test_target_user_and_port_win(self, write_ssh_config: Callable, tmp_path: Path,
                                      capsys) -> None:
        config = write_ssh_config("Host myserver\n    User admin\n    Port 2222\n")
        main([
            "-F", str(config), "--settings", str(tmp_path / "settings.json"),
            "-G", "root@myserver:22022",
        ])

        lines = capsys.readouterr().out.splitlines()
        assert "user root" in lines
        assert "port 22022" in lines

    def test_invalid_target(self, write_ssh_config: Callable, tmp_path: Path,
                            capsys) -> None:
        config = write_ssh_config("")
        exit_code = main([
            "-F", str(config), "--settings", str(tmp_path / "settings.json"),
            "-G", "@host",
        ])

        assert exit_code == EXIT_CONNECTION_ERROR
        assert capsys.readouterr().err.startswith("Error: ")


# ---------------------------------------------------------------------------
# Execution Tests
# ---------------------------------------------------------------------------

class TestRunCommand:

    async def test_exec_command(self, mock_ssh_server: MockSSHServer,
                                write_ssh_config: Callable, known_hosts_path: Path,
                                tmp_path: Path, capsys) -> None:
        mock_ssh_server.write_known_hosts(known_hosts_path)
        config = write_ssh_config(server_block(mock_ssh_server))
        args = create_parser().parse_args([
            "-F", str(config), "--settings", str(tmp_path / "settings.json"),
            "target", "echo", "hello",
        ])

        with patch("sshhop.user_input.TerminalUserInput",
                   return_value=ScriptedUserInput("test")):
            exit_code = await run_command(args)

        assert exit_code == 0
        assert capsys.readouterr().out == "hello\n"

    async def test_exit_code_propagation(self, write_ssh_config: Callable,
                                         known_hosts_path: Path, tmp_path: Path) -> None:
        server_config = MockServerConfig(
            command_exit_codes={"false": 1},
            command_outputs={"false": ("", "failed\n")},
        )
        async with MockSSHServer(server_config) as server:
            server.write_known_hosts(known_hosts_path)
            config = write_ssh_config(server_block(server))
            args = create_parser().parse_args([
                "-F", str(config), "--settings", str(tmp_path / "settings.json"),
                "target", "false",
            ])
            with patch("sshhop.user_input.TerminalUserInput",
                       return_value=ScriptedUserInput("test")):
                exit_code = await run_command(args)

        assert exit_code == 1

    async def test_events_to_stderr(self, mock_ssh_server: MockSSHServer,
                                    write_ssh_config: Callable, known_hosts_path: Path,
                                    tmp_path: Path, capsys) -> None:
        mock_ssh_server.write_known_hosts(known_hosts_path)
        config = write_ssh_config(server_block(mock_ssh_server))
        args = create_parser().parse_args([
            "-F", str(config), "--settings", str(tmp_path / "settings.json"),
            "--events", "-", "target", "echo", "hi",
        ])

        with patch("sshhop.user_input.TerminalUserInput",
                   return_value=ScriptedUserInput("test")):
            await run_command(args)

        err_lines = [line for line in capsys.readouterr().err.splitlines()
                     if line.startswith("{")]
        types = [json.loads(line)["event_type"] for line in err_lines]
        assert "CONNECT" in types
        assert "EXEC" in types
        assert "PROMPT" in types

    async def test_command_required(self, write_ssh_config: Callable, tmp_path: Path,
                                    capsys) -> None:
        args = create_parser().parse_args([
            "-F", str(write_ssh_config("")),
            "--settings", str(tmp_path / "settings.json"),
            "target",
        ])
        assert await run_command(args) == 2
        assert "a command is required" in capsys.readouterr().err


class TestConnectionErrors:

    def test_refused_exits_255(self, write_ssh_config: Callable, tmp_path: Path,
                               capsys) -> None:
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        config = write_ssh_config(
            f"Host dead\n    HostName 127.0.0.1\n    Port {port}\n    User test\n")

        exit_code = main([
            "-F", str(config), "--settings", str(tmp_path / "settings.json"),
            "dead", "true",
        ])

        assert exit_code == EXIT_CONNECTION_ERROR
        assert capsys.readouterr().err.startswith(
            f"Error: Connecting to test@[127.0.0.1]:{port}, Error: Connection refused"
        )

    def test_bad_settings_file(self, write_ssh_config: Callable, tmp_path: Path,
                               capsys) -> None:
        settings = tmp_path / "settings.json"
        settings.write_text("{not json")

        exit_code = main([
            "-F", str(write_ssh_config("")), "--settings", str(settings), "host", "true",
        ])

        assert exit_code == EXIT_CONNECTION_ERROR
        assert "Malformed" in capsys.readouterr().err


@pytest.mark.parametrize("argv", [["--bogus-flag", "host"], []])
def test_usage_errors_exit_2(argv: list[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        create_parser().parse_args(argv)
    assert exc_info.value.code == 2
