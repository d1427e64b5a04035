"""
Error taxonomy for hop-by-hop connection establishment.

Every error carries an ErrorContext so the final report can say which link
in a ProxyJump chain broke, what was being attempted, and at what depth.

Error hierarchy:
- SSHError (base)
  - SSHConfigError (malformed ssh_config / settings)
    - KnownHostsFormatError (malformed known_hosts line)
  - TrustStoreUnavailable (no usable known_hosts source)
  - HostKeyError
    - HostKeyMismatch (changed host key, never overridable)
    - HostKeyRevoked (@revoked entry matched)
    - HostKeyRejected (user declined every known_hosts file)
  - AuthenticationError
    - AuthFailed (server rejected every offered method)
    - CredentialsExhausted (all candidates for a method tried)
    - AuthProtocolError (malformed keyboard-interactive challenge)
  - UserInputCancelled (prompt dismissed or timed out)
  - SSHConnectionError
    - ConnectionRefused
    - ConnectionTimeout
    - HostUnreachable
  - ProxyJumpDepthExceeded
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass
class ErrorContext:
    """
    Structured context for connection errors.

    The hop fields (jump_depth, via, target) form the debug context that is
    attached by the hop where an error first surfaces.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    key_path: str | None = None
    jump_depth: int | None = None
    via: str | None = None
    target: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )
        if self.jump_depth is not None:
            assert self.jump_depth >= 0, (
                f"jump_depth must be non-negative, got {self.jump_depth}"
            )

    @property
    def has_hop(self) -> bool:
        return self.target is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra":
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: "
                    f"{collisions}. Use distinct key names in extra."
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHError(Exception):
    """
    Base exception for all connection-engine errors.

    str() of an error with hop context attached names the failing hop in
    the form used for operator diagnostics:

        Connecting from alice@jump:22 to bob@target (jump number 1), Error: ...
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def attach_hop(self, target: str, via: str | None, jump_depth: int) -> None:
        """
        Record which hop this error belongs to.

        Only the first hop to see the error records itself; errors
        propagating out of a nested jump keep the innermost context.
        """
        if self.context.has_hop:
            return
        self.context.target = target
        self.context.via = via
        self.context.jump_depth = jump_depth

    def __str__(self) -> str:
        ctx = self.context
        if not ctx.has_hop:
            return self.message
        if ctx.via:
            return (
                f"Connecting from {ctx.via} to {ctx.target} "
                f"(jump number {ctx.jump_depth}), Error: {self.message}"
            )
        return f"Connecting to {ctx.target}, Error: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Configuration Errors
# ---------------------------------------------------------------------------

class SSHConfigError(SSHError):
    """
    Malformed configuration input.

    Raised for ssh_config lines that cannot be parsed, invalid keyword
    values, and unreadable persisted settings.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        line_number: int | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if path:
            context.extra["config_path"] = path
        if line_number is not None:
            context.extra["line_number"] = line_number
        super().__init__(message, context)


class KnownHostsFormatError(SSHConfigError):
    """A known_hosts file exists and is readable but contains a bad entry."""
    pass


class TrustStoreUnavailable(SSHError):
    """No known_hosts file is configured, so no host can be verified."""
    pass


# ---------------------------------------------------------------------------
# Host Key Errors
# ---------------------------------------------------------------------------

class HostKeyError(SSHError):
    """Base class for host key verification failures."""

    def __init__(
        self,
        message: str,
        fingerprint: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if fingerprint:
            context.extra["fingerprint"] = fingerprint
        super().__init__(message, context)


class HostKeyMismatch(HostKeyError):
    """
    The server presented a key different from the one on record.

    This could indicate a man-in-the-middle attack or server
    reconfiguration. There is no interactive override.
    """
    pass


class HostKeyRevoked(HostKeyError):
    """The server presented a key marked @revoked in a known_hosts file."""
    pass


class HostKeyRejected(HostKeyError):
    """The host key was unknown and no known_hosts file accepted it."""
    pass


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationError(SSHError):
    """Base class for authentication-related errors."""
    pass


class AuthFailed(AuthenticationError):
    """
    Authentication failed.

    Raised when the server rejected every method the client offered.
    """
    pass


class CredentialsExhausted(AuthenticationError):
    """Every candidate credential for a method was tried and none was accepted."""
    pass


class AuthProtocolError(AuthenticationError):
    """The server sent a malformed authentication request."""
    pass


class UserInputCancelled(SSHError):
    """
    A prompt was declined or left unanswered past its deadline.

    Distinct from every other kind so callers stop the whole chain instead
    of falling back to another method or file.
    """
    pass


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """Base class for dial and handshake failures."""
    pass


class ConnectionRefused(SSHConnectionError):
    """Server actively refused the connection."""
    pass


class ConnectionTimeout(SSHConnectionError):
    """Connection attempt timed out."""
    pass


class HostUnreachable(SSHConnectionError):
    """Host could not be reached (network error)."""
    pass


class ProxyJumpDepthExceeded(SSHError):
    """The ProxyJump chain is deeper than the connector allows."""
    pass
