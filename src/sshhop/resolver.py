"""
Config resolution: merge caller options, ssh_config and persisted settings
into the effective parameters for one hop.

Precedence, field by field:
- user: caller > ssh_config User > local OS user
- hostname: ssh_config HostName > caller hostname > host pattern
- port: caller unless 0/22, then ssh_config Port unless 22, then 22
- identity files: persisted + caller + ssh_config, duplicates kept
- everything else: ssh_config only. Caller values for policy fields are
  accepted but ignored, so neither a UI nor a remote request can weaken
  batch mode, auth method selection, agent use, ProxyJump or the trust store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sshhop.config import SSHConfig, expand_tokens, unquote
from sshhop.errors import SSHConfigError
from sshhop.hop import HopIdentity, format_host_port
from sshhop.platform import default_agent_path, expand_path, local_username

if TYPE_CHECKING:
    from sshhop.settings import ConnectionSettings

log = logging.getLogger(__name__)

DEFAULT_PORT = 22

# ConnectionOptions fields that ssh_config alone controls
POLICY_FIELDS = (
    "batch_mode",
    "pubkey_authentication",
    "password_authentication",
    "kbd_interactive_authentication",
    "preferred_authentications",
    "add_keys_to_agent",
    "identity_agent",
    "proxy_jump",
    "user_known_hosts_files",
    "global_known_hosts_files",
)


@dataclass
class ConnectionOptions:
    """
    Caller-supplied options for one connection. Every field is optional.

    Only user, hostname, port and identity_files take part in resolution.
    The policy fields exist so saved or UI-supplied option sets can be
    passed through unchanged; they never override ssh_config.
    """
    user: str = ""
    hostname: str = ""
    port: int = 0
    identity_files: list[str] = field(default_factory=list)

    batch_mode: bool | None = None
    pubkey_authentication: bool | None = None
    password_authentication: bool | None = None
    kbd_interactive_authentication: bool | None = None
    preferred_authentications: list[str] | None = None
    add_keys_to_agent: bool | None = None
    identity_agent: str | None = None
    proxy_jump: list[str] | None = None
    user_known_hosts_files: list[str] | None = None
    global_known_hosts_files: list[str] | None = None

    def ignored_fields(self) -> list[str]:
        return [name for name in POLICY_FIELDS if getattr(self, name) is not None]


@dataclass(frozen=True)
class ConnectionParameters:
    """Effective settings for one hop. Immutable once resolved."""
    user: str
    hostname: str
    port: int
    identity_files: tuple[str, ...] = ()
    batch_mode: bool = False
    pubkey_authentication: bool = True
    password_authentication: bool = True
    kbd_interactive_authentication: bool = True
    preferred_authentications: tuple[str, ...] = ()
    add_keys_to_agent: bool = False
    identity_agent: str = ""
    proxy_jump: tuple[str, ...] = ()
    user_known_hosts_files: tuple[str, ...] = ()
    global_known_hosts_files: tuple[str, ...] = ()
    connect_timeout: float | None = None

    def __post_init__(self) -> None:
        assert self.hostname, "hostname must be resolved"
        assert 1 <= self.port <= 65535, f"Port must be 1-65535, got {self.port}"

    @property
    def identity(self) -> HopIdentity:
        return HopIdentity(host=self.hostname, user=self.user, port=self.port)

    @property
    def remote_name(self) -> str:
        """user@host for port 22, user@[host]:port otherwise."""
        return f"{self.user}@{format_host_port(self.hostname, self.port)}"

    def __str__(self) -> str:
        return self.remote_name


def _parse_yes(value: str) -> bool:
    """True only for an explicit yes."""
    return unquote(value).strip().lower() == "yes"


def _parse_not_no(value: str) -> bool:
    """True unless explicitly disabled."""
    return unquote(value).strip().lower() != "no"


def _split_list(value: str, sep: str | None) -> list[str]:
    items = [unquote(item.strip()) for item in unquote(value).split(sep)]
    return [item for item in items if item and item.lower() != "none"]


class ConfigResolver:
    """
    Resolves ConnectionParameters for a host pattern.

    The ssh_config source is an explicit instance owned by the caller;
    resolve() does not reload it.
    """

    def __init__(
        self,
        ssh_config: SSHConfig,
        settings: ConnectionSettings | None = None,
    ) -> None:
        self._config = ssh_config
        self._settings = settings

    @property
    def ssh_config(self) -> SSHConfig:
        return self._config

    def resolve(
        self,
        options: ConnectionOptions | None,
        host_pattern: str,
    ) -> ConnectionParameters:
        """
        Merge all sources into the parameters for one hop.

        Raises:
            SSHConfigError: If ssh_config or a resolved value is malformed
        """
        options = options or ConnectionOptions()
        cfg = self._config
        ignored = options.ignored_fields()
        if ignored:
            log.debug(
                "Ignoring caller-supplied policy options for %s: %s",
                host_pattern, ", ".join(ignored),
            )

        user = options.user or unquote(cfg.get(host_pattern, "User")) or local_username()
        port = self._resolve_port(options.port, cfg.get(host_pattern, "Port"))

        config_hostname = unquote(cfg.get(host_pattern, "HostName"))
        if config_hostname:
            hostname = expand_tokens(config_hostname, host_pattern, user, port)
        else:
            hostname = options.hostname or host_pattern

        identity_files: list[str] = []
        saved = self._saved_options(options, host_pattern)
        if saved is not None:
            identity_files.extend(str(expand_path(p)) for p in saved.identity_files)
        identity_files.extend(str(expand_path(p)) for p in options.identity_files)
        for raw in cfg.get_all(host_pattern, "IdentityFile"):
            if unquote(raw).lower() == "none":
                continue
            expanded = expand_tokens(unquote(raw), hostname, user, port, host_pattern)
            identity_files.append(str(expand_path(expanded)))

        return ConnectionParameters(
            user=user,
            hostname=hostname,
            port=port,
            identity_files=tuple(identity_files),
            batch_mode=_parse_yes(cfg.get(host_pattern, "BatchMode")),
            pubkey_authentication=_parse_not_no(
                cfg.get(host_pattern, "PubkeyAuthentication")),
            password_authentication=_parse_not_no(
                cfg.get(host_pattern, "PasswordAuthentication")),
            kbd_interactive_authentication=_parse_not_no(
                cfg.get(host_pattern, "KbdInteractiveAuthentication")),
            preferred_authentications=tuple(
                _split_list(cfg.get(host_pattern, "PreferredAuthentications"), ",")),
            add_keys_to_agent=_parse_yes(cfg.get(host_pattern, "AddKeysToAgent")),
            identity_agent=self._resolve_agent(cfg.get(host_pattern, "IdentityAgent")),
            proxy_jump=tuple(_split_list(cfg.get(host_pattern, "ProxyJump"), ",")),
            user_known_hosts_files=self._known_hosts(host_pattern, "UserKnownHostsFile"),
            global_known_hosts_files=self._known_hosts(host_pattern, "GlobalKnownHostsFile"),
            connect_timeout=self._resolve_timeout(cfg.get(host_pattern, "ConnectTimeout")),
        )

    def _saved_options(
        self, options: ConnectionOptions, host_pattern: str,
    ) -> ConnectionOptions | None:
        if self._settings is None:
            return None
        name = str(HopIdentity(host=host_pattern, user=options.user, port=options.port))
        return self._settings.get(name)

    @staticmethod
    def _resolve_port(caller_port: int, config_port: str) -> int:
        if caller_port not in (0, DEFAULT_PORT):
            return caller_port
        config_port = unquote(config_port)
        if config_port and config_port != str(DEFAULT_PORT):
            if not config_port.isdigit():
                raise SSHConfigError(f"bad port {config_port!r} in ssh config")
            return int(config_port)
        return DEFAULT_PORT

    @staticmethod
    def _resolve_agent(value: str) -> str:
        value = unquote(value)
        if value.lower() == "none":
            return ""
        if not value or value == "SSH_AUTH_SOCK":
            return default_agent_path()
        return str(expand_path(value))

    @staticmethod
    def _resolve_timeout(value: str) -> float | None:
        value = unquote(value)
        if not value or value.lower() == "none":
            return None
        if not value.isdigit():
            raise SSHConfigError(f"bad ConnectTimeout {value!r} in ssh config")
        return float(value) or None

    def _known_hosts(self, host_pattern: str, keyword: str) -> tuple[str, ...]:
        files: list[str] = []
        for raw in self._config.get_all(host_pattern, keyword):
            files.extend(str(expand_path(p)) for p in _split_list(raw, None))
        return tuple(files)

