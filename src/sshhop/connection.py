"""
Hop-by-hop connection establishment through ProxyJump chains.

Provides:
- HopConnector: resolves, authenticates and verifies one hop at a time,
  recursing depth-first through ProxyJump entries
- SSHConnection: async context manager owning a whole chain
- ExecResult: result of running a command on the final hop

Each hop moves through an explicit state machine:

    RESOLVE_CONFIG -> JUMP* -> BUILD_TRUST -> BUILD_AUTH -> DIAL -> HANDSHAKE -> DONE
                                                                     \\-> FAILED

Any error is tagged with the hop it happened on (transport it was dialled
through, parameters being attempted, jump depth) before it propagates.
Errors coming out of a nested jump already carry their own hop and are
passed up unchanged.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

import asyncssh

from sshhop.auth import AuthMethod, AuthMethods, HopClient, build_auth_methods
from sshhop.config import SSHConfig
from sshhop.errors import (
    AuthFailed,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyRejected,
    HostUnreachable,
    ProxyJumpDepthExceeded,
    SSHConfigError,
    SSHConnectionError,
    SSHError,
)
from sshhop.events import EventCollector, EventEmitter, EventType
from sshhop.hop import HopIdentity, parse_hop
from sshhop.host_key import HostKeyVerifier, build_host_key_verifier
from sshhop.resolver import ConfigResolver, ConnectionOptions, ConnectionParameters
from sshhop.settings import ConnectionSettings
from sshhop.user_input import EmittingUserInput, UserInputProvider

log = logging.getLogger(__name__)

PROXY_JUMP_MAX_DEPTH = 10


class HopState(str, Enum):
    RESOLVE_CONFIG = "resolve_config"
    JUMP = "jump"
    BUILD_TRUST = "build_trust"
    BUILD_AUTH = "build_auth"
    DIAL = "dial"
    HANDSHAKE = "handshake"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ConnectionAttempt:
    """Transient state for connecting one hop."""
    target: HopIdentity
    depth: int
    parent: asyncssh.SSHClientConnection | None = None
    via: str | None = None
    params: ConnectionParameters | None = None
    state: HopState = HopState.RESOLVE_CONFIG
    debug: ErrorContext = field(default_factory=ErrorContext)

    def advance(self, state: HopState) -> None:
        log.debug("%s (depth %d): %s -> %s",
                  self.target, self.depth, self.state.value, state.value)
        self.state = state

    @property
    def attempted(self) -> str:
        """What this hop is trying to reach, as precisely as currently known."""
        if self.params is not None:
            return self.params.remote_name
        return str(self.target)


@dataclass
class ExecResult:
    """Result of a command execution."""
    stdout: str
    stderr: str
    exit_code: int


def map_exception(exc: BaseException, ctx: ErrorContext) -> SSHError:
    """Map asyncssh and socket exceptions to the error taxonomy."""
    if isinstance(exc, SSHError):
        return exc

    ctx.original_error = str(exc) or type(exc).__name__

    if isinstance(exc, asyncssh.PermissionDenied):
        return AuthFailed(f"Authentication failed: {exc}", context=ctx)
    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return HostKeyRejected(f"Host key verification failed: {exc}", context=ctx)
    if isinstance(exc, asyncssh.ConnectionLost):
        return SSHConnectionError(f"Connection lost: {exc}", context=ctx)
    if isinstance(exc, asyncssh.ChannelOpenError):
        return SSHConnectionError(f"Tunnel channel open failed: {exc}", context=ctx)
    if isinstance(exc, asyncssh.Error):
        return SSHConnectionError(f"Handshake failed: {exc}", context=ctx)

    if isinstance(exc, ConnectionRefusedError):
        return ConnectionRefused(f"Connection refused: {exc}", context=ctx)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)
    if isinstance(exc, OSError):
        error_str = str(exc).lower()
        if "connection refused" in error_str:
            return ConnectionRefused(f"Connection refused: {exc}", context=ctx)
        if "timed out" in error_str:
            return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)
        if "unreachable" in error_str or "no route" in error_str:
            return HostUnreachable(f"Host unreachable: {exc}", context=ctx)
        return SSHConnectionError(f"Connection failed: {exc}", context=ctx)

    return SSHError(f"Unexpected error: {exc}", context=ctx)


class HopConnector:
    """
    Connects to a target through any ProxyJump chain it is configured with.

    Only ssh_config settings apply to jump hosts; caller options are used
    for the final target alone. Every transport opened is recorded in
    `opened`, outermost first, so a failed chain can be torn down.

    Usage:
        connector = HopConnector(ssh_config=SSHConfig(), user_input=prompts)
        conn, depth = await connector.connect("alice@target")
    """

    def __init__(
        self,
        ssh_config: SSHConfig | None = None,
        settings: ConnectionSettings | None = None,
        user_input: UserInputProvider | None = None,
        emitter: EventEmitter | None = None,
        max_depth: int = PROXY_JUMP_MAX_DEPTH,
        connect_timeout: float | None = None,
    ) -> None:
        self._config = ssh_config if ssh_config is not None else SSHConfig()
        self._resolver = ConfigResolver(self._config, settings)
        self._emitter = emitter or EventEmitter()
        self._user_input: UserInputProvider | None = None
        if user_input is not None:
            self._user_input = EmittingUserInput(user_input, self._emitter)
        self._max_depth = max_depth
        self._connect_timeout = connect_timeout
        self.opened: list[asyncssh.SSHClientConnection] = []
        self._names: dict[int, str] = {}

    def name_of(self, conn: asyncssh.SSHClientConnection | None) -> str | None:
        if conn is None:
            return None
        return self._names.get(id(conn))

    async def open_chain(
        self,
        target: HopIdentity | str,
        options: ConnectionOptions | None = None,
    ) -> asyncssh.SSHClientConnection:
        """
        Connect to a target from scratch.

        On failure every transport opened along the way is closed before
        the error propagates.
        """
        try:
            conn, _ = await self.connect(target, options=options)
        except BaseException:
            await self.close_all()
            raise
        return conn

    async def connect(
        self,
        target: HopIdentity | str,
        parent: asyncssh.SSHClientConnection | None = None,
        depth: int = 0,
        options: ConnectionOptions | None = None,
    ) -> tuple[asyncssh.SSHClientConnection, int]:
        """
        Connect one hop, first connecting any jump hosts it needs.

        Returns the connection and the jump depth reached, which the caller
        continues counting from for the next jump.

        Raises:
            ProxyJumpDepthExceeded: depth is beyond the maximum
            SSHError: any other failure, tagged with this hop's context
        """
        if isinstance(target, str):
            target = self._parse(target)

        attempt = ConnectionAttempt(
            target=target,
            depth=depth,
            parent=parent,
            via=self.name_of(parent),
        )
        attempt.debug = ErrorContext(host=target.host, jump_depth=depth)

        try:
            conn, depth = await self._run(attempt, options)
        except SSHError as e:
            self._fail(attempt, e)
            raise
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            mapped = map_exception(e, attempt.debug)
            self._fail(attempt, mapped)
            raise mapped from e

        attempt.advance(HopState.DONE)
        return conn, depth

    def _fail(self, attempt: ConnectionAttempt, error: SSHError) -> None:
        failed_in = attempt.state
        attempt.advance(HopState.FAILED)
        if error.context.has_hop:
            return
        error.attach_hop(attempt.attempted, attempt.via, attempt.depth)
        self._emitter.emit(EventType.ERROR, state=failed_in.value, **error.to_dict())

    @staticmethod
    def _parse(value: str) -> HopIdentity:
        try:
            return parse_hop(value)
        except ValueError as e:
            raise SSHConfigError(f"invalid host {value!r}: {e}") from e

    async def _run(
        self,
        attempt: ConnectionAttempt,
        options: ConnectionOptions | None,
    ) -> tuple[asyncssh.SSHClientConnection, int]:
        depth = attempt.depth
        if depth > self._max_depth:
            raise ProxyJumpDepthExceeded(
                f"ProxyJump {depth} exceeds the max depth of {self._max_depth}"
            )

        attempt.advance(HopState.RESOLVE_CONFIG)
        self._config.reload()
        caller = options or ConnectionOptions()
        caller = replace(
            caller,
            user=attempt.target.user or caller.user,
            port=attempt.target.port or caller.port,
        )
        params = self._resolver.resolve(caller, attempt.target.host)
        attempt.params = params
        attempt.debug.host = params.hostname
        attempt.debug.port = params.port
        attempt.debug.username = params.user

        current = attempt.parent
        for entry in params.proxy_jump:
            attempt.advance(HopState.JUMP)
            hop = self._parse(entry)
            depth += 1
            self._emitter.emit(
                EventType.JUMP, target=params.remote_name, jump=str(hop), depth=depth,
            )
            current, depth = await self.connect(hop, current, depth)
            attempt.parent = current
            attempt.via = self.name_of(current)

        attempt.advance(HopState.BUILD_TRUST)
        verifier = build_host_key_verifier(params, self._user_input, self._emitter)
        log.debug("Host key algorithms on record for %s: %s", params.remote_name,
                  verifier.host_key_algorithms(params.hostname, params.port))

        attempt.advance(HopState.BUILD_AUTH)
        methods = await build_auth_methods(params, attempt.debug, self._user_input)
        try:
            with self._emitter.timed_event(
                EventType.CONNECT,
                target=params.remote_name,
                via=attempt.via,
                depth=attempt.depth,
            ) as event_data:
                conn = await self._handshake(attempt, verifier, methods)
                event_data["status"] = "connected"
        finally:
            methods.close()

        self.opened.append(conn)
        self._names[id(conn)] = params.remote_name
        return conn, depth

    def _connect_options(
        self,
        attempt: ConnectionAttempt,
        verifier: HostKeyVerifier,
        methods: AuthMethods,
        client: HopClient,
    ) -> dict[str, Any]:
        params = attempt.params
        assert params is not None
        options: dict[str, Any] = {
            "host": params.hostname,
            "port": params.port,
            "username": params.user,
            "client_factory": lambda: client,
            "known_hosts": verifier.known_hosts_for(params.hostname, params.port),
            # Policy comes from our own resolution, not asyncssh's
            "config": [],
            "client_keys": None,
            "agent_path": None,
            "preferred_auth": methods.names,
            "public_key_auth": AuthMethod.PUBLICKEY in methods.order,
            "kbdint_auth": AuthMethod.KEYBOARD_INTERACTIVE in methods.order,
            "password_auth": AuthMethod.PASSWORD in methods.order,
            "gss_auth": False,
            "gss_kex": False,
            "host_based_auth": False,
        }
        timeout = self._connect_timeout or params.connect_timeout
        if timeout:
            options["connect_timeout"] = timeout
        if attempt.parent is not None:
            options["tunnel"] = attempt.parent
        return options

    async def _handshake(
        self,
        attempt: ConnectionAttempt,
        verifier: HostKeyVerifier,
        methods: AuthMethods,
    ) -> asyncssh.SSHClientConnection:
        """
        Dial and run the SSH handshake.

        An unverified host key aborts the first handshake; once verify()
        has learned the key the handshake is retried exactly once.
        """
        params = attempt.params
        assert params is not None

        for retry in (False, True):
            client = HopClient(methods, verifier, params.hostname, params.port, self._emitter)
            attempt.advance(HopState.DIAL)
            try:
                return await asyncssh.connect(
                    **self._connect_options(attempt, verifier, methods, client)
                )
            except asyncssh.HostKeyNotVerifiable:
                if client.failure is not None:
                    raise client.failure from None
                if retry or client.server_key is None:
                    raise
                attempt.advance(HopState.HANDSHAKE)
                await verifier.verify(
                    params.hostname, params.port, client.remote_addr, client.server_key,
                )
            except Exception as e:
                attempt.advance(HopState.HANDSHAKE)
                if client.failure is not None and client.failure is not e:
                    raise client.failure from e
                if isinstance(e, asyncssh.PermissionDenied) and client.exhausted:
                    raise client.exhausted from e
                raise

        raise AssertionError("unreachable")

    async def close_all(self) -> None:
        """Close every opened transport, innermost first."""
        while self.opened:
            conn = self.opened.pop()
            name = self._names.pop(id(conn), None)
            conn.close()
            await conn.wait_closed()
            self._emitter.emit(EventType.DISCONNECT, target=name)


class SSHConnection:
    """
    Async SSH connection to a target, through its ProxyJump chain if any.

    Usage:
        async with SSHConnection("alice@target", user_input=TerminalUserInput()) as conn:
            result = await conn.exec("uname -a")

    Closing the connection closes every hop, innermost first.
    """

    def __init__(
        self,
        target: HopIdentity | str,
        options: ConnectionOptions | None = None,
        *,
        ssh_config: SSHConfig | None = None,
        settings: ConnectionSettings | None = None,
        user_input: UserInputProvider | None = None,
        event_collector: EventCollector | None = None,
        event_log_path: Path | str | None = None,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        max_depth: int = PROXY_JUMP_MAX_DEPTH,
    ) -> None:
        assert timeout is None or timeout > 0, f"timeout must be positive, got {timeout}"
        self._target = target
        self._options = options
        self._timeout = timeout
        self._emitter = EventEmitter(collector=event_collector, jsonl_path=event_log_path)
        self._connector = HopConnector(
            ssh_config=ssh_config,
            settings=settings,
            user_input=user_input,
            emitter=self._emitter,
            max_depth=max_depth,
            connect_timeout=connect_timeout,
        )
        self._conn: asyncssh.SSHClientConnection | None = None

    @property
    def connection(self) -> asyncssh.SSHClientConnection:
        assert self._conn is not None, "Not connected. Use async with SSHConnection(...):"
        return self._conn

    @property
    def chain(self) -> list[str]:
        """Names of the connected hops, outermost first."""
        return [self._connector.name_of(c) or "?" for c in self._connector.opened]

    async def __aenter__(self) -> "SSHConnection":
        try:
            await self.connect()
        except BaseException:
            self._emitter.close()
            raise
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """
        Establish the whole chain.

        Raises:
            ConnectionTimeout: The overall timeout expired
            SSHError: Any hop failed
        """
        chain = self._connector.open_chain(self._target, self._options)
        if self._timeout is None:
            self._conn = await chain
            return
        try:
            self._conn = await asyncio.wait_for(chain, self._timeout)
        except asyncio.TimeoutError:
            raise ConnectionTimeout(
                f"Connecting to {self._target} timed out after {self._timeout:g}s"
            ) from None

    async def close(self) -> None:
        self._conn = None
        await self._connector.close_all()
        self._emitter.close()

    async def exec(self, command: str) -> ExecResult:
        """Run a command on the final hop and collect its output."""
        conn = self.connection
        with self._emitter.timed_event(EventType.EXEC, command=command) as event_data:
            result = await conn.run(command, check=False)
            exit_code = result.exit_status if result.exit_status is not None else -1
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            if isinstance(stdout, bytes):
                stdout = stdout.decode("utf-8", errors="replace")
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", errors="replace")
            event_data["exit_code"] = exit_code
            event_data["stdout_len"] = len(stdout)
            event_data["stderr_len"] = len(stderr)

        return ExecResult(stdout=stdout, stderr=stderr, exit_code=exit_code)
