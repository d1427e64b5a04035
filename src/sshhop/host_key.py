"""
Host key verification against OpenSSH known_hosts files, with interactive
learning of new hosts.

Provides:
- TrustDecision: outcome of checking a presented host key
- KnownHostsStore: composite, read-only view over several known_hosts files
- HostKeyVerifier: classification during the handshake, then asynchronous
  verification that may prompt and append a new entry
- build_host_key_verifier: pick the known_hosts files for a hop

known_hosts format:
- hostname[,hostname2] key_type key_data [comment]
- [hostname]:port key_type key_data (for non-standard ports)
- @revoked hostname key_type key_data
- @cert-authority lines are read but never used for host matching
- |1|salt|hash hashed hostnames, * ? wildcards and !negation

A changed host key is always fatal. There is no prompt that overrides it:
the operator must edit known_hosts by hand.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import asyncssh

from sshhop.config import match_pattern
from sshhop.errors import (
    HostKeyMismatch,
    HostKeyRejected,
    HostKeyRevoked,
    KnownHostsFormatError,
    TrustStoreUnavailable,
)
from sshhop.events import EventEmitter, EventType
from sshhop.hop import format_host_port
from sshhop.platform import expand_path, is_privileged_user
from sshhop.user_input import (
    PROMPT_TIMEOUT,
    UserInputProvider,
    confirm_request,
    get_user_input,
)

if TYPE_CHECKING:
    from sshhop.resolver import ConnectionParameters

log = logging.getLogger(__name__)

MARKER_REVOKED = "@revoked"
MARKER_CERT_AUTHORITY = "@cert-authority"


class TrustDecision(str, Enum):
    """Result of checking a presented host key against the store."""
    VERIFIED = "verified"
    UNKNOWN_HOST = "unknown_host"
    CHANGED_HOST = "changed_host"
    REVOKED = "revoked"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class KnownHostsEntry:
    """One parsed known_hosts line."""
    hostnames: tuple[str, ...]
    key_type: str
    key_data: str
    path: str
    line_number: int
    marker: str = ""

    @property
    def is_revoked(self) -> bool:
        return self.marker == MARKER_REVOKED

    @property
    def is_cert_authority(self) -> bool:
        return self.marker == MARKER_CERT_AUTHORITY

    @property
    def fingerprint(self) -> str:
        return _fingerprint(base64.b64decode(self.key_data))


def _fingerprint(public_data: bytes) -> str:
    digest = hashlib.sha256(public_data).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def get_key_fingerprint(key: asyncssh.SSHKey) -> str:
    """SHA256 fingerprint in OpenSSH notation."""
    return _fingerprint(key.public_data)


def _key_type(key: asyncssh.SSHKey) -> str:
    key_type = key.algorithm
    return key_type.decode("ascii") if isinstance(key_type, bytes) else key_type


def _key_data(key: asyncssh.SSHKey) -> str:
    return base64.b64encode(key.public_data).decode("ascii")


def _check_hashed_hostname(pattern: str, hostname: str) -> bool:
    """Check if a hostname matches a hashed |1|salt|hash pattern."""
    parts = pattern.split("|")
    if len(parts) != 4:
        return False
    try:
        salt = base64.b64decode(parts[2], validate=True)
        stored_hash = base64.b64decode(parts[3], validate=True)
    except (ValueError, binascii.Error):
        return False
    computed = hmac.new(salt, hostname.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(stored_hash, computed)


def hostnames_match(patterns: tuple[str, ...], host: str, port: int) -> bool:
    """
    Check if host:port is named by a known_hosts hostname field.

    At least one positive pattern must match and no negated pattern may.
    """
    target = format_host_port(host, port)
    matched = False
    for pattern in patterns:
        negated = pattern.startswith("!")
        if negated:
            pattern = pattern[1:]
        if pattern.startswith("|1|"):
            hit = _check_hashed_hostname(pattern, target)
        else:
            hit = match_pattern(target, pattern)
        if hit and negated:
            return False
        matched = matched or hit
    return matched


def parse_known_hosts_line(line: str, path: str, line_number: int) -> KnownHostsEntry:
    """
    Parse one non-comment known_hosts line.

    Raises:
        KnownHostsFormatError: If the line is malformed
    """
    fields = line.split()
    marker = ""
    if fields[0].startswith("@"):
        marker = fields.pop(0)
        if marker not in (MARKER_REVOKED, MARKER_CERT_AUTHORITY):
            raise KnownHostsFormatError(
                f"unknown marker {marker!r}", path=path, line_number=line_number,
            )
    if len(fields) < 3:
        raise KnownHostsFormatError(
            "expected hostnames, key type and key", path=path, line_number=line_number,
        )
    try:
        base64.b64decode(fields[2], validate=True)
    except (ValueError, binascii.Error):
        raise KnownHostsFormatError(
            f"invalid base64 key data for {fields[1]}", path=path, line_number=line_number,
        ) from None

    return KnownHostsEntry(
        hostnames=tuple(h for h in fields[0].split(",") if h),
        key_type=fields[1],
        key_data=fields[2],
        path=path,
        line_number=line_number,
        marker=marker,
    )


class KnownHostsStore:
    """
    Read-only union of several known_hosts files.

    Files that cannot be opened are left out and listed in `unreadable`;
    a file that opens but holds a malformed line aborts loading.
    """

    def __init__(
        self,
        entries: list[KnownHostsEntry],
        readable: list[Path],
        unreadable: list[Path],
    ) -> None:
        self.entries = entries
        self.readable = readable
        self.unreadable = unreadable

    @classmethod
    def load(cls, paths: list[Path]) -> "KnownHostsStore":
        """
        Load every file in order.

        Raises:
            KnownHostsFormatError: If a readable file contains a bad entry
        """
        entries: list[KnownHostsEntry] = []
        readable: list[Path] = []
        unreadable: list[Path] = []

        for path in paths:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    lines = f.readlines()
            except (OSError, UnicodeDecodeError) as e:
                log.debug("known_hosts file %s unusable: %s", path, e)
                unreadable.append(path)
                continue

            for line_number, line in enumerate(lines, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                entries.append(parse_known_hosts_line(line, str(path), line_number))
            readable.append(path)

        return cls(entries, readable, unreadable)

    def matching(self, host: str, port: int) -> list[KnownHostsEntry]:
        """Plain (unmarked) entries naming host:port."""
        return [
            e for e in self.entries
            if not e.marker and hostnames_match(e.hostnames, host, port)
        ]

    def lookup(self, host: str, port: int, key_type: str, key_data: str) -> TrustDecision:
        for entry in self.entries:
            if entry.is_revoked and entry.key_data == key_data:
                return TrustDecision.REVOKED

        candidates = self.matching(host, port)
        for entry in candidates:
            if entry.key_type == key_type and entry.key_data == key_data:
                return TrustDecision.VERIFIED
        if candidates:
            return TrustDecision.CHANGED_HOST
        if not self.readable:
            return TrustDecision.STORE_UNAVAILABLE
        return TrustDecision.UNKNOWN_HOST


class HostKeyVerifier:
    """
    Verifies host keys for one hop and learns new ones interactively.

    The SSH handshake callback is synchronous, so verification happens in
    two steps:
    - check() classifies the key during the handshake without prompting
    - verify() runs afterwards, may prompt and write, and raises on failure

    Usage:
        verifier = build_host_key_verifier(params, user_input)
        decision = verifier.check(host, port, key)
        if decision != TrustDecision.VERIFIED:
            await verifier.verify(host, port, remote_addr, key)
    """

    def __init__(
        self,
        known_hosts_files: list[Path],
        user_input: UserInputProvider | None = None,
        emitter: EventEmitter | None = None,
        prompt_timeout: float = PROMPT_TIMEOUT,
    ) -> None:
        assert known_hosts_files, "at least one known_hosts file is required"
        self._files = list(known_hosts_files)
        self._user_input = user_input
        self._emitter = emitter
        self._prompt_timeout = prompt_timeout
        self._store = KnownHostsStore.load(self._files)
        for path in self._store.unreadable:
            log.debug("Dropped unreadable known_hosts file %s", path)

    @property
    def files(self) -> list[Path]:
        return list(self._files)

    @property
    def store(self) -> KnownHostsStore:
        return self._store

    def rebuild(self) -> None:
        """Re-read the current file set."""
        self._store = KnownHostsStore.load(self._files)

    def check(self, host: str, port: int, key: asyncssh.SSHKey) -> TrustDecision:
        """Classify a presented key. Never prompts, never writes."""
        return self._store.lookup(host, port, _key_type(key), _key_data(key))

    def host_key_algorithms(self, host: str, port: int) -> list[str]:
        """Key types on record for host:port, in file order, without repeats."""
        algorithms: list[str] = []
        for entry in self._store.matching(host, port):
            if entry.key_type not in algorithms:
                algorithms.append(entry.key_type)
        return algorithms

    def known_hosts_for(
        self, host: str, port: int,
    ) -> tuple[list[asyncssh.SSHKey], list[asyncssh.SSHKey], list[asyncssh.SSHKey]]:
        """
        Trusted keys for host:port in asyncssh's known_hosts tuple form.

        Keys outside this list are passed to check() through the client's
        validate_host_public_key hook.
        """
        trusted: list[asyncssh.SSHKey] = []
        for entry in self._store.matching(host, port):
            try:
                trusted.append(
                    asyncssh.import_public_key(f"{entry.key_type} {entry.key_data}")
                )
            except asyncssh.KeyImportError as e:
                log.debug(
                    "Skipping unsupported key %s:%d (%s): %s",
                    entry.path, entry.line_number, entry.key_type, e,
                )
        return trusted, [], []

    async def verify(
        self,
        host: str,
        port: int,
        remote_addr: str,
        key: asyncssh.SSHKey,
    ) -> None:
        """
        Verify a host key, learning it if the host is unknown.

        Raises:
            HostKeyRevoked: Key matches an @revoked entry
            HostKeyMismatch: Host is known with a different key
            UserInputCancelled: A prompt was dismissed or timed out
            HostKeyRejected: No known_hosts file accepted the new key
        """
        fingerprint = get_key_fingerprint(key)
        decision = self.check(host, port, key)
        self._emit(host, port, decision, fingerprint)

        if decision == TrustDecision.VERIFIED:
            return
        if decision == TrustDecision.REVOKED:
            raise HostKeyRevoked(
                f"{_key_type(key)} host key for {format_host_port(host, port)} "
                f"is marked as revoked",
                fingerprint=fingerprint,
            )
        if decision == TrustDecision.CHANGED_HOST:
            log.warning(self._changed_warning(host, port, key))
            raise HostKeyMismatch(
                f"remote host identification has changed for "
                f"{format_host_port(host, port)} ({fingerprint})",
                fingerprint=fingerprint,
            )

        await self._learn(host, port, remote_addr, key)
        self.rebuild()
        decision = self.check(host, port, key)
        self._emit(host, port, decision, fingerprint)
        if decision != TrustDecision.VERIFIED:
            raise HostKeyRejected(
                f"host key for {format_host_port(host, port)} still "
                f"{decision.value} after writing it",
                fingerprint=fingerprint,
            )

    async def _learn(
        self, host: str, port: int, remote_addr: str, key: asyncssh.SSHKey,
    ) -> None:
        store = self._store
        for path in store.readable:
            query = self._unknown_host_query(host, port, remote_addr, key, path)
            if await self._offer(path, host, port, key, query, "Known Hosts"):
                return

        for path in store.unreadable:
            query = self._missing_file_query(host, port, remote_addr, key, path)
            if await self._offer(path, host, port, key, query, "Known Hosts File Missing"):
                log.info("Using %s as the only known_hosts file", path)
                self._files = [path]
                return

        raise HostKeyRejected(
            f"host key for {format_host_port(host, port)} was not accepted "
            f"into any known_hosts file",
            fingerprint=get_key_fingerprint(key),
        )

    async def _offer(
        self,
        path: Path,
        host: str,
        port: int,
        key: asyncssh.SSHKey,
        query: str,
        title: str,
    ) -> bool:
        """Prompt to add the key to one file. False moves on to the next file."""
        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            f = open(path, "a", encoding="utf-8")
        except OSError as e:
            log.warning("Cannot open %s for writing: %s", path, e)
            return False

        with f:
            response = await get_user_input(
                self._user_input, confirm_request(query, title), self._prompt_timeout,
            )
            if not response.confirm:
                log.info("Host key not added to %s", path)
                return False
            f.write(f"{format_host_port(host, port)} {_key_type(key)} {_key_data(key)}\n")

        log.info("Added %s host key for %s to %s", _key_type(key), host, path)
        return True

    @staticmethod
    def _unknown_host_query(
        host: str, port: int, remote_addr: str, key: asyncssh.SSHKey, path: Path,
    ) -> str:
        return (
            f"The authenticity of host '{format_host_port(host, port)} ({remote_addr})' "
            f"can't be established.\n"
            f"{_key_type(key)} key fingerprint is {get_key_fingerprint(key)}.\n"
            f"Key: `{_key_type(key)} {_key_data(key)}`\n"
            f"The key will be added to **{path}**."
        )

    @staticmethod
    def _missing_file_query(
        host: str, port: int, remote_addr: str, key: asyncssh.SSHKey, path: Path,
    ) -> str:
        return (
            f"The known_hosts file **{path}** could not be read, so the "
            f"authenticity of host '{format_host_port(host, port)} ({remote_addr})' "
            f"can't be established.\n"
            f"{_key_type(key)} key fingerprint is {get_key_fingerprint(key)}.\n"
            f"Key: `{_key_type(key)} {_key_data(key)}`\n"
            f"Create **{path}** and add the key to it?"
        )

    def _changed_warning(self, host: str, port: int, key: asyncssh.SSHKey) -> str:
        lines = [
            "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
            "@    WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED!     @",
            "@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@",
            "IT IS POSSIBLE THAT SOMEONE IS DOING SOMETHING NASTY!",
            f"The {_key_type(key)} host key for {format_host_port(host, port)} has changed.",
            f"Server's current key fingerprint: {get_key_fingerprint(key)}",
            f"Server's current key: {_key_type(key)} {_key_data(key)}",
            "Offending keys:",
        ]
        for entry in self._store.matching(host, port):
            lines.append(
                f"  - {entry.path}:{entry.line_number} {entry.key_type} {entry.fingerprint}"
            )
        lines.append("Remove the offending entries from one of these known_hosts files:")
        lines.extend(f"  - {path}" for path in self._files)
        return "\n".join(lines)

    def _emit(self, host: str, port: int, decision: TrustDecision, fingerprint: str) -> None:
        if self._emitter is None:
            return
        self._emitter.emit(
            EventType.HOST_KEY,
            host=host,
            port=port,
            decision=decision.value,
            fingerprint=fingerprint,
        )


def select_known_hosts_files(params: ConnectionParameters) -> list[Path]:
    """
    Known_hosts files for a hop, in lookup order.

    The privileged account uses global files only; everyone else tries
    user files first.
    """
    if is_privileged_user():
        names = list(params.global_known_hosts_files)
    else:
        names = list(params.user_known_hosts_files) + list(params.global_known_hosts_files)
    return [expand_path(name) for name in names]


def build_host_key_verifier(
    params: ConnectionParameters,
    user_input: UserInputProvider | None = None,
    emitter: EventEmitter | None = None,
) -> HostKeyVerifier:
    """
    Build the verifier for one hop.

    Raises:
        TrustStoreUnavailable: No known_hosts files are configured
        KnownHostsFormatError: A known_hosts file holds a malformed entry
    """
    files = select_known_hosts_files(params)
    if not files:
        raise TrustStoreUnavailable(
            f"no known_hosts files configured for {params.remote_name}"
        )
    return HostKeyVerifier(files, user_input=user_input, emitter=emitter)
