"""sshhop: hop-by-hop SSH connections through ProxyJump chains."""

__version__ = "0.1.0"

from sshhop.auth import (
    AuthMethod,
    AuthMethods,
    CredentialState,
    HopClient,
    KeyboardInteractiveProbe,
    PasswordProbe,
    PublicKeyProbe,
    build_auth_methods,
)
from sshhop.config import SSHConfig, expand_tokens
from sshhop.connection import (
    PROXY_JUMP_MAX_DEPTH,
    ExecResult,
    HopConnector,
    HopState,
    SSHConnection,
)
from sshhop.errors import (
    AuthenticationError,
    AuthFailed,
    AuthProtocolError,
    ConnectionRefused,
    ConnectionTimeout,
    CredentialsExhausted,
    ErrorContext,
    HostKeyError,
    HostKeyMismatch,
    HostKeyRejected,
    HostKeyRevoked,
    HostUnreachable,
    KnownHostsFormatError,
    ProxyJumpDepthExceeded,
    SSHConfigError,
    SSHConnectionError,
    SSHError,
    TrustStoreUnavailable,
    UserInputCancelled,
)
from sshhop.events import Event, EventCollector, EventEmitter, EventType
from sshhop.hop import HopIdentity, parse_hop
from sshhop.host_key import (
    HostKeyVerifier,
    KnownHostsStore,
    TrustDecision,
    build_host_key_verifier,
    get_key_fingerprint,
)
from sshhop.resolver import ConfigResolver, ConnectionOptions, ConnectionParameters
from sshhop.settings import ConnectionSettings
from sshhop.user_input import (
    EmittingUserInput,
    TerminalUserInput,
    UserInputProvider,
    UserInputRequest,
    UserInputResponse,
)

__all__ = [
    # Connection
    "SSHConnection",
    "HopConnector",
    "HopState",
    "ExecResult",
    "PROXY_JUMP_MAX_DEPTH",
    # Config
    "SSHConfig",
    "expand_tokens",
    "ConfigResolver",
    "ConnectionOptions",
    "ConnectionParameters",
    "ConnectionSettings",
    "HopIdentity",
    "parse_hop",
    # Host keys
    "HostKeyVerifier",
    "KnownHostsStore",
    "TrustDecision",
    "build_host_key_verifier",
    "get_key_fingerprint",
    # Auth
    "AuthMethod",
    "AuthMethods",
    "CredentialState",
    "HopClient",
    "PublicKeyProbe",
    "KeyboardInteractiveProbe",
    "PasswordProbe",
    "build_auth_methods",
    # User input
    "EmittingUserInput",
    "TerminalUserInput",
    "UserInputProvider",
    "UserInputRequest",
    "UserInputResponse",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Errors
    "SSHError",
    "ErrorContext",
    "SSHConfigError",
    "KnownHostsFormatError",
    "TrustStoreUnavailable",
    "HostKeyError",
    "HostKeyMismatch",
    "HostKeyRevoked",
    "HostKeyRejected",
    "AuthenticationError",
    "AuthFailed",
    "CredentialsExhausted",
    "AuthProtocolError",
    "UserInputCancelled",
    "SSHConnectionError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "HostUnreachable",
    "ProxyJumpDepthExceeded",
]
