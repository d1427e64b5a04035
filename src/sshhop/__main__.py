"""
CLI interface for sshhop.

Usage:
    python -m sshhop user@host command           # Execute command
    python -m sshhop -p 2222 user@host command
    python -m sshhop -i keyfile user@host command
    python -m sshhop -F ./ssh_config target uname -a   # ProxyJump from config
    python -m sshhop --events events.jsonl user@host command
    python -m sshhop -G target                   # Print resolved parameters
    python -m sshhop --help
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sshhop import __version__
from sshhop.config import SSHConfig
from sshhop.errors import SSHError
from sshhop.events import EventCollector
from sshhop.hop import parse_hop
from sshhop.resolver import ConfigResolver, ConnectionOptions
from sshhop.settings import ConnectionSettings

log = logging.getLogger(__name__)

# Exit status for failures that happen before the remote command runs
EXIT_CONNECTION_ERROR = 255


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the sshhop CLI."""
    parser = argparse.ArgumentParser(
        prog="sshhop",
        description="Run a command over SSH, through any ProxyJump chain",
        epilog="Example: python -m sshhop user@host 'echo hello'",
    )

    parser.add_argument(
        "target",
        metavar="[user@]host[:port]",
        help="Target host (optionally with username and port)",
    )

    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Command to execute on the final host",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        default=0,
        help="SSH port (default: from ssh_config, else 22)",
    )

    parser.add_argument(
        "-l", "--login",
        metavar="USER",
        help="Login username (alternative to user@host)",
    )

    parser.add_argument(
        "-i", "--identity",
        metavar="FILE",
        action="append",
        default=[],
        help="Private key file, tried before those from ssh_config (repeatable)",
    )

    parser.add_argument(
        "-F", "--config-file",
        metavar="FILE",
        dest="config_file",
        help="Use specified config file instead of ~/.ssh/config",
    )

    parser.add_argument(
        "--settings",
        metavar="FILE",
        help="Saved connection settings (default: ~/.ssh/sshhop-connections.json)",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Overall deadline for establishing the whole chain",
    )

    parser.add_argument(
        "--events",
        metavar="PATH",
        help="Append JSONL diagnostic events to PATH ('-' prints them to stderr)",
    )

    parser.add_argument(
        "-G", "--print-config",
        action="store_true",
        dest="print_config",
        help="Print the resolved parameters for the target and exit",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug, -vvv asyncssh debug)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log errors",
    )

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    if quiet:
        logging.basicConfig(level=logging.ERROR, format=fmt, stream=sys.stderr)
        logging.getLogger("asyncssh").setLevel(logging.ERROR)
        return

    level = logging.WARNING
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)

    if verbose >= 3:
        logging.getLogger("asyncssh").setLevel(logging.DEBUG)
    else:
        # asyncssh logs every channel at INFO
        logging.getLogger("asyncssh").setLevel(logging.WARNING)


def build_options(args: argparse.Namespace) -> ConnectionOptions:
    return ConnectionOptions(
        user=args.login or "",
        port=args.port,
        identity_files=list(args.identity),
    )


def print_config(
    args: argparse.Namespace,
    ssh_config: SSHConfig,
    settings: ConnectionSettings,
) -> None:
    """Print resolved parameters as `keyword value` lines, like ssh -G."""
    hop = parse_hop(args.target)
    options = build_options(args)
    options.user = hop.user or options.user
    options.port = hop.port or options.port
    params = ConfigResolver(ssh_config, settings).resolve(options, hop.host)

    def yes_no(value: bool) -> str:
        return "yes" if value else "no"

    lines = [
        ("user", params.user),
        ("hostname", params.hostname),
        ("port", str(params.port)),
        ("batchmode", yes_no(params.batch_mode)),
        ("pubkeyauthentication", yes_no(params.pubkey_authentication)),
        ("passwordauthentication", yes_no(params.password_authentication)),
        ("kbdinteractiveauthentication", yes_no(params.kbd_interactive_authentication)),
        ("preferredauthentications", ",".join(params.preferred_authentications)),
        ("addkeystoagent", yes_no(params.add_keys_to_agent)),
        ("identityagent", params.identity_agent or "none"),
    ]
    lines += [("identityfile", path) for path in params.identity_files]
    if params.proxy_jump:
        lines.append(("proxyjump", ",".join(params.proxy_jump)))
    lines += [("userknownhostsfile", " ".join(params.user_known_hosts_files))]
    lines += [("globalknownhostsfile", " ".join(params.global_known_hosts_files))]
    if params.connect_timeout is not None:
        lines.append(("connecttimeout", f"{params.connect_timeout:g}"))

    for keyword, value in lines:
        print(f"{keyword} {value}")


async def run_command(args: argparse.Namespace) -> int:
    """
    Connect, execute the command and return its exit code.

    Returns:
        Exit code from the remote command, or 255 on a connection error
    """
    from sshhop.connection import SSHConnection
    from sshhop.user_input import TerminalUserInput

    if args.config_file:
        ssh_config = SSHConfig(config_files=[args.config_file], load_system_config=False)
    else:
        ssh_config = SSHConfig()
    settings = ConnectionSettings.load(args.settings)

    if args.print_config:
        print_config(args, ssh_config, settings)
        return 0

    command = " ".join(args.command)
    if not command:
        print("Error: a command is required", file=sys.stderr)
        return 2

    event_collector = EventCollector() if args.events == "-" else None
    event_log_path = args.events if args.events not in (None, "-") else None

    try:
        async with SSHConnection(
            args.target,
            build_options(args),
            ssh_config=ssh_config,
            settings=settings,
            user_input=TerminalUserInput(),
            event_collector=event_collector,
            event_log_path=event_log_path,
            timeout=args.timeout,
        ) as conn:
            log.info("Connected via %s", " -> ".join(conn.chain))
            result = await conn.exec(command)
    finally:
        if event_collector is not None:
            for event in event_collector.events:
                print(event.to_json(), file=sys.stderr)

    if result.stdout:
        sys.stdout.write(result.stdout)
    if result.stderr:
        sys.stderr.write(result.stderr)
    return result.exit_code


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet)

    try:
        return asyncio.run(run_command(args))
    except SSHError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONNECTION_ERROR
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONNECTION_ERROR


if __name__ == "__main__":
    sys.exit(main())
