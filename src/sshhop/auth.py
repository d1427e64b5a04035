"""
Authentication for one hop: ordered, budgeted probes driven by asyncssh.

Provides:
- AuthMethod: the methods this client offers
- CredentialState: per-attempt queues of agent keys and identity files
- PublicKeyProbe, KeyboardInteractiveProbe, PasswordProbe
- AuthMethods / build_auth_methods: the enabled probes in preferred order
- HopClient: asyncssh.SSHClient that feeds the probes into the handshake
  and classifies the host key

Each probe step has an explicit outcome: a key to offer, SKIP (this
candidate is unusable, try the next one) or EXHAUSTED. Nothing fake is ever
sent to the server to keep negotiation going.

A UserInputCancelled raised by any prompt ends the whole handshake; it is
never absorbed as "try the next key".
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

import asyncssh

from sshhop.errors import (
    AuthProtocolError,
    CredentialsExhausted,
    ErrorContext,
    SSHError,
)
from sshhop.events import EventEmitter, EventType
from sshhop.host_key import HostKeyVerifier, TrustDecision
from sshhop.resolver import ConnectionParameters
from sshhop.user_input import UserInputProvider, get_user_input, text_request

log = logging.getLogger(__name__)


class AuthMethod(str, Enum):
    """Authentication methods, named as on the wire."""
    PUBLICKEY = "publickey"
    KEYBOARD_INTERACTIVE = "keyboard-interactive"
    PASSWORD = "password"


KeyCandidate = asyncssh.SSHKey | asyncssh.SSHKeyPair


class CredentialState:
    """
    Mutable candidate queues for one connection attempt.

    Identity files are read up front and cached, so a file that cannot be
    read is reported once and never offered. Never shared between hops.
    """

    def __init__(
        self,
        identity_files: Sequence[str],
        agent_keys: Sequence[asyncssh.SSHKeyPair] = (),
    ) -> None:
        self.agent_keys: deque[asyncssh.SSHKeyPair] = deque(agent_keys)
        self.identity_files: deque[str] = deque()
        self._contents: dict[str, bytes] = {}
        unreadable: set[str] = set()

        for path in identity_files:
            if path in self._contents:
                self.identity_files.append(path)
                continue
            if path in unreadable:
                continue
            try:
                with open(path, "rb") as f:
                    self._contents[path] = f.read()
            except OSError as e:
                log.debug("Skipping identity file %s: %s", path, e)
                unreadable.add(path)
                continue
            self.identity_files.append(path)

    def contents(self, path: str) -> bytes:
        return self._contents[path]

    @property
    def candidate_count(self) -> int:
        return len(self.agent_keys) + len(self.identity_files)


class ProbeOutcome(str, Enum):
    KEY = "key"
    SKIP = "skip"
    EXHAUSTED = "exhausted"


@dataclass
class ProbeStep:
    outcome: ProbeOutcome
    key: KeyCandidate | None = None
    source: str = ""


def _needs_passphrase(error: Exception) -> bool:
    return "passphrase" in str(error).lower()


class PublicKeyProbe:
    """
    Offers agent keys first, in agent order, then each identity file once.

    An encrypted file gets one passphrase prompt unless batch mode is on.
    A file that fails to parse, or is given a wrong passphrase, is skipped.
    """

    def __init__(
        self,
        state: CredentialState,
        params: ConnectionParameters,
        debug: ErrorContext,
        user_input: UserInputProvider | None = None,
        agent: Any | None = None,
    ) -> None:
        self._state = state
        self._params = params
        self._debug = debug
        self._user_input = user_input
        self._agent = agent
        self.budget = state.candidate_count
        self.offered: list[str] = []
        self.exhausted = False

    async def step(self) -> ProbeStep:
        state = self._state
        if state.agent_keys:
            key = state.agent_keys.popleft()
            return ProbeStep(ProbeOutcome.KEY, key, source="agent")
        if not state.identity_files:
            return ProbeStep(ProbeOutcome.EXHAUSTED)

        path = state.identity_files.popleft()
        data = state.contents(path)
        try:
            key = asyncssh.import_private_key(data)
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            if not _needs_passphrase(e):
                log.debug("Skipping identity file %s: %s", path, e)
                return ProbeStep(ProbeOutcome.SKIP, source=path)
            if self._params.batch_mode:
                log.debug("Skipping encrypted identity file %s in batch mode", path)
                return ProbeStep(ProbeOutcome.SKIP, source=path)

            response = await get_user_input(
                self._user_input,
                text_request(
                    f"Enter passphrase for the SSH key: {path}",
                    "Publickey Auth + Passphrase",
                ),
            )
            try:
                key = asyncssh.import_private_key(data, response.text or "")
            except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
                log.info("Could not decrypt identity file %s: %s", path, e)
                return ProbeStep(ProbeOutcome.SKIP, source=path)

        await self._add_to_agent(key, path)
        return ProbeStep(ProbeOutcome.KEY, key, source=path)

    async def next_key(self) -> KeyCandidate | None:
        """
        Return the next key to offer, or None once every candidate is used.

        Raises:
            UserInputCancelled: A passphrase prompt was cancelled
        """
        while True:
            step = await self.step()
            if step.outcome == ProbeOutcome.KEY:
                self.offered.append(step.source)
                log.debug("Offering public key from %s", step.source)
                return step.key
            if step.outcome == ProbeOutcome.EXHAUSTED:
                self.exhausted = True
                return None

    def exhausted_error(self) -> CredentialsExhausted:
        context = ErrorContext(
            host=self._debug.host,
            port=self._debug.port,
            username=self._debug.username,
            auth_method=AuthMethod.PUBLICKEY.value,
            extra={"offered": list(self.offered)},
        )
        return CredentialsExhausted("no identity files remaining", context)

    async def _add_to_agent(self, key: asyncssh.SSHKey, path: str) -> None:
        if not (self._params.add_keys_to_agent and self._agent is not None):
            return
        try:
            await self._agent.add_keys([key])
        except (asyncssh.Error, OSError, ValueError) as e:
            log.warning("Could not add %s to the agent: %s", path, e)


class KeyboardInteractiveProbe:
    """Answers keyboard-interactive challenges. One attempt per hop."""

    def __init__(
        self,
        remote_name: str,
        user_input: UserInputProvider | None = None,
    ) -> None:
        self._remote_name = remote_name
        self._user_input = user_input
        self.budget = 1

    def start(self) -> bool:
        """Consume one attempt. False once the budget is spent."""
        if self.budget <= 0:
            return False
        self.budget -= 1
        return True

    async def answer_challenge(
        self,
        name: str,
        instruction: str,
        questions: Sequence[str],
        echos: Sequence[bool],
    ) -> list[str]:
        """
        Prompt for each question in order.

        Raises:
            AuthProtocolError: questions and echos differ in length
            UserInputCancelled: A prompt was cancelled
        """
        if len(questions) != len(echos):
            raise AuthProtocolError(
                f"bad response from server: questions has len {len(questions)}, "
                f"echos has len {len(echos)}"
            )
        answers = []
        for question, echo in zip(questions, echos):
            request = text_request(
                f"Keyboard Interactive Authentication requested from connection  \n"
                f"{self._remote_name}\n\n{question}",
                "Keyboard Interactive Authentication",
                public=echo,
                markdown=True,
            )
            response = await get_user_input(self._user_input, request)
            answers.append(response.text or "")
        return answers


class PasswordProbe:
    """Prompts for a password once per hop."""

    def __init__(
        self,
        remote_name: str,
        user_input: UserInputProvider | None = None,
    ) -> None:
        self._remote_name = remote_name
        self._user_input = user_input
        self.budget = 1

    async def password(self) -> str | None:
        """
        Return the password, or None once the budget is spent.

        Raises:
            UserInputCancelled: The prompt was cancelled
        """
        if self.budget <= 0:
            return None
        self.budget -= 1
        request = text_request(
            f"Password Authentication requested from connection  \n"
            f"{self._remote_name}\n\nPassword:",
            "Password Authentication",
            markdown=True,
        )
        response = await get_user_input(self._user_input, request)
        return response.text or ""


@dataclass
class AuthMethods:
    """The enabled probes for one hop, in the order they are offered."""
    order: list[AuthMethod] = field(default_factory=list)
    publickey: PublicKeyProbe | None = None
    keyboard_interactive: KeyboardInteractiveProbe | None = None
    password: PasswordProbe | None = None
    agent: Any | None = None

    @property
    def names(self) -> list[str]:
        return [m.value for m in self.order]

    def budgets(self) -> dict[str, int]:
        result = {}
        for method in self.order:
            probe = self._probe(method)
            result[method.value] = probe.budget
        return result

    def _probe(self, method: AuthMethod) -> Any:
        if method == AuthMethod.PUBLICKEY:
            return self.publickey
        if method == AuthMethod.KEYBOARD_INTERACTIVE:
            return self.keyboard_interactive
        return self.password

    def close(self) -> None:
        if self.agent is not None:
            self.agent.close()
            self.agent = None


async def connect_agent(path: str) -> tuple[Any | None, list[asyncssh.SSHKeyPair]]:
    """
    Open the agent socket and list its keys.

    Any failure is logged and treated as "no agent".
    """
    if not path:
        return None, []
    agent = None
    try:
        agent = await asyncssh.connect_agent(path)
        keys = await agent.get_keys()
    except (asyncssh.Error, OSError, ValueError) as e:
        log.warning("SSH agent at %s unavailable: %s", path, e)
        if agent is not None:
            agent.close()
        return None, []
    log.debug("Agent at %s offered %d keys", path, len(keys))
    return agent, list(keys)


async def build_auth_methods(
    params: ConnectionParameters,
    debug: ErrorContext,
    user_input: UserInputProvider | None = None,
) -> AuthMethods:
    """
    Build the ordered probes for one hop.

    Methods follow PreferredAuthentications order. Keyboard-interactive and
    password are only offered outside batch mode.
    """
    methods = AuthMethods()
    enabled = {
        AuthMethod.PUBLICKEY: params.pubkey_authentication,
        AuthMethod.KEYBOARD_INTERACTIVE: (
            params.kbd_interactive_authentication and not params.batch_mode
        ),
        AuthMethod.PASSWORD: params.password_authentication and not params.batch_mode,
    }

    for name in params.preferred_authentications:
        try:
            method = AuthMethod(name)
        except ValueError:
            log.debug("Ignoring unsupported auth method %s", name)
            continue
        if not enabled[method] or method in methods.order:
            continue
        methods.order.append(method)

    if AuthMethod.PUBLICKEY in methods.order:
        agent, agent_keys = await connect_agent(params.identity_agent)
        methods.agent = agent
        state = CredentialState(params.identity_files, agent_keys)
        methods.publickey = PublicKeyProbe(state, params, debug, user_input, agent)
    if AuthMethod.KEYBOARD_INTERACTIVE in methods.order:
        methods.keyboard_interactive = KeyboardInteractiveProbe(
            params.remote_name, user_input)
    if AuthMethod.PASSWORD in methods.order:
        methods.password = PasswordProbe(params.remote_name, user_input)

    log.debug("Auth methods for %s: %s", params.remote_name, methods.budgets())
    return methods


class HopClient(asyncssh.SSHClient):
    """
    asyncssh client for one hop.

    Records the first engine error raised inside a callback in `failure`,
    because asyncssh reports callback exceptions as a generic connection
    loss. Running out of public keys is not a failure by itself and is
    kept in `exhausted` in case no other method succeeds.
    """

    def __init__(
        self,
        methods: AuthMethods,
        verifier: HostKeyVerifier,
        host: str,
        port: int,
        emitter: EventEmitter | None = None,
    ) -> None:
        super().__init__()
        self._methods = methods
        self._verifier = verifier
        self._host = host
        self._port = port
        self._emitter = emitter
        self.failure: SSHError | None = None
        self.exhausted: CredentialsExhausted | None = None
        self.trust_decision: TrustDecision | None = None
        self.server_key: asyncssh.SSHKey | None = None
        self.remote_addr = ""

    def _record(self, error: SSHError) -> None:
        if self.failure is None:
            self.failure = error

    def _emit_auth(self, method: AuthMethod, **data: Any) -> None:
        if self._emitter is not None:
            self._emitter.emit(
                EventType.AUTH, host=self._host, port=self._port,
                method=method.value, **data,
            )

    def validate_host_public_key(
        self,
        host: str,
        addr: tuple[str, int],
        port: int,
        key: asyncssh.SSHKey,
    ) -> bool:
        self.server_key = key
        self.remote_addr = f"{addr[0]}:{addr[1]}" if addr else host
        self.trust_decision = self._verifier.check(self._host, self._port, key)
        log.debug("Host key for %s:%d: %s", self._host, self._port,
                  self.trust_decision.value)
        return self.trust_decision == TrustDecision.VERIFIED

    async def public_key_auth_requested(self) -> KeyCandidate | None:
        probe = self._methods.publickey
        if probe is None:
            return None
        try:
            key = await probe.next_key()
        except SSHError as e:
            self._record(e)
            raise
        if key is None:
            self.exhausted = probe.exhausted_error()
            return None
        self._emit_auth(AuthMethod.PUBLICKEY, source=probe.offered[-1])
        return key

    def kbdint_auth_requested(self) -> str | None:
        probe = self._methods.keyboard_interactive
        if probe is None or not probe.start():
            return None
        self._emit_auth(AuthMethod.KEYBOARD_INTERACTIVE)
        return ""

    async def kbdint_challenge_received(
        self,
        name: str,
        instructions: str,
        lang: str,
        prompts: Sequence[tuple[str, bool]],
    ) -> list[str] | None:
        probe = self._methods.keyboard_interactive
        if probe is None:
            return None
        if not prompts:
            return []
        try:
            return await probe.answer_challenge(
                name, instructions,
                [p[0] for p in prompts], [p[1] for p in prompts],
            )
        except SSHError as e:
            self._record(e)
            raise

    async def password_auth_requested(self) -> str | None:
        probe = self._methods.password
        if probe is None:
            return None
        try:
            password = await probe.password()
        except SSHError as e:
            self._record(e)
            raise
        if password is not None:
            self._emit_auth(AuthMethod.PASSWORD)
        return password
