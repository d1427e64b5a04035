"""
Hop identities: parsed "user@host:port" references.

A HopIdentity is produced from the top-level target string or from one
ProxyJump entry. Port 0 and an empty user mean "unspecified".

Parsing rejects control characters and shell metacharacters, since hop
strings come from config files and callers and end up in prompts, logs and
known_hosts lines.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Final

MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_USERNAME_LENGTH: Final[int] = 256

DANGEROUS_CHARS: Final[frozenset[str]] = frozenset(
    "\x00"
    "\n\r\t"
    "`$(){}|;&<>\\'\" "
)


def _check_dangerous_chars(value: str, field_name: str) -> None:
    for char in value:
        if char in DANGEROUS_CHARS:
            if char == "\x00":
                desc = "null byte"
            elif char == "\n":
                desc = "newline"
            elif char == "\r":
                desc = "carriage return"
            elif char == "\t":
                desc = "tab"
            else:
                desc = repr(char)
            raise ValueError(f"{field_name} contains forbidden character: {desc}")


def validate_hostname(hostname: str) -> str:
    """
    Validate a hostname, alias or address literal.

    Aliases defined in ssh_config need not be DNS names, so only length and
    forbidden characters are checked.

    Raises:
        ValueError: If the hostname is invalid
    """
    if not hostname:
        raise ValueError("hostname must not be empty")
    _check_dangerous_chars(hostname, "hostname")
    if "[" in hostname or "]" in hostname:
        raise ValueError("hostname must not contain brackets")
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ValueError(
            f"hostname exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(hostname)})"
        )
    return hostname


def validate_username(username: str) -> str:
    """
    Validate a remote username. The empty string means "unspecified".

    Raises:
        ValueError: If the username is invalid
    """
    if not username:
        return username
    _check_dangerous_chars(username, "username")
    if "@" in username:
        raise ValueError("username must not contain '@'")
    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters"
        )
    return username


def validate_port(port: int | str) -> int:
    """
    Validate a TCP port. 0 means "unspecified".

    Raises:
        ValueError: If the port is out of range or not an integer
    """
    if isinstance(port, bool):
        raise ValueError(f"port must be an integer, got {port!r}")
    if isinstance(port, str):
        if not port.isdigit():
            raise ValueError(f"port must be an integer, got {port!r}")
        port = int(port)
    if not 0 <= port <= 65535:
        raise ValueError(f"port must be between 0 and 65535, got {port}")
    return port


def format_host_port(host: str, port: int) -> str:
    """Format host and port the way OpenSSH does in known_hosts and prompts."""
    if port in (0, 22):
        return host
    return f"[{host}]:{port}"


@dataclass(frozen=True)
class HopIdentity:
    """A parsed "user@host:port" reference to one hop."""
    host: str
    user: str = ""
    port: int = 0

    def __post_init__(self) -> None:
        validate_hostname(self.host)
        validate_username(self.user)
        validate_port(self.port)

    def __str__(self) -> str:
        """
        Canonical form: empty user and port 0 are omitted.

        IPv6 literals are bracketed only when a port follows.
        """
        result = f"{self.user}@" if self.user else ""
        if self.port:
            if ":" in self.host:
                return f"{result}[{self.host}]:{self.port}"
            return f"{result}{self.host}:{self.port}"
        return result + self.host


def parse_hop(value: str) -> HopIdentity:
    """
    Parse "[user@]host[:port]" into a HopIdentity.

    IPv6 literals may be bracketed ("[::1]:2222"); a bare IPv6 literal with
    no brackets is taken as a host with no port.

    Raises:
        ValueError: If the string is not a valid hop reference
    """
    value = value.strip()
    if not value:
        raise ValueError("hop reference must not be empty")

    user = ""
    if "@" in value:
        user, _, value = value.rpartition("@")
        if not user:
            raise ValueError("user before '@' must not be empty")

    port: int | str = 0
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep:
            raise ValueError(f"unterminated '[' in {value!r}")
        if rest:
            if not rest.startswith(":"):
                raise ValueError(f"unexpected text after ']' in {value!r}")
            port = rest[1:]
    elif value.count(":") == 1:
        host, _, port = value.partition(":")
    else:
        host = value

    return HopIdentity(host=host, user=user, port=validate_port(port))
