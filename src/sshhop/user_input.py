"""
Interactive input: the one way the connection engine talks to a human.

Every suspension point (host key confirmation, key passphrase, password,
keyboard-interactive answers) goes through get_user_input(), which applies
one bounded wait. An unanswered prompt, or one the human dismisses, raises
UserInputCancelled. Because the wait runs inside the connecting task, a
caller cancelling that task cancels any pending prompt as well.

Providers:
- TerminalUserInput: stdin/stderr prompts for the CLI
- sshhop.testing.ScriptedUserInput: canned answers for tests

EmittingUserInput wraps any provider to record each question as a PROMPT
event.
"""
from __future__ import annotations

import asyncio
import getpass
import logging
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TextIO

from sshhop.errors import UserInputCancelled
from sshhop.events import EventEmitter, EventType

log = logging.getLogger(__name__)

# Seconds a prompt waits for an answer
PROMPT_TIMEOUT = 60.0


class ResponseType(str, Enum):
    TEXT = "text"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class UserInputRequest:
    """A question for the human."""
    response_type: ResponseType
    query_text: str
    title: str
    markdown: bool = False
    # Echo the answer while typing (False for secrets)
    public_text: bool = False

    def __post_init__(self) -> None:
        assert self.query_text, "query_text must not be empty"
        assert self.title, "title must not be empty"


@dataclass(frozen=True)
class UserInputResponse:
    text: str | None = None
    confirm: bool = False


class UserInputProvider(Protocol):
    """
    Anything that can put a question to a human.

    Implementations raise UserInputCancelled when the human dismisses the
    prompt. A "no" to a confirmation is an answer, not a cancellation.
    """

    async def request(self, request: UserInputRequest) -> UserInputResponse:
        ...


async def get_user_input(
    provider: UserInputProvider | None,
    request: UserInputRequest,
    timeout: float = PROMPT_TIMEOUT,
) -> UserInputResponse:
    """
    Ask the human a question with a bounded wait.

    Raises:
        UserInputCancelled: No provider, prompt dismissed, or timed out
    """
    if provider is None:
        raise UserInputCancelled(f"{request.title}: no interactive input available")

    log.debug("Prompting: %s", request.title)
    try:
        return await asyncio.wait_for(provider.request(request), timeout)
    except asyncio.TimeoutError:
        raise UserInputCancelled(
            f"{request.title}: timed out after {timeout:g}s waiting for input"
        ) from None


def text_request(
    query: str, title: str, public: bool = False, markdown: bool = False,
) -> UserInputRequest:
    return UserInputRequest(
        response_type=ResponseType.TEXT,
        query_text=query,
        title=title,
        markdown=markdown,
        public_text=public,
    )


def confirm_request(query: str, title: str) -> UserInputRequest:
    return UserInputRequest(
        response_type=ResponseType.CONFIRM,
        query_text=query,
        title=title,
        markdown=True,
    )


class TerminalUserInput:
    """
    Prompts on the controlling terminal.

    Each read runs in its own daemon thread that hands the answer back to
    the event loop, so other connection attempts keep running while one
    waits for the human. A blocking read cannot be interrupted: when the
    prompt times out or is cancelled the thread is abandoned, and it never
    holds up interpreter or event loop shutdown. EOF or Ctrl-C cancels the
    prompt.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stderr

    async def request(self, request: UserInputRequest) -> UserInputResponse:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[UserInputResponse] = loop.create_future()

        def deliver(response: UserInputResponse | None, error: Exception | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(response)

        def read() -> None:
            try:
                response = self._ask(request)
            except Exception as e:
                result: tuple[UserInputResponse | None, Exception | None] = (None, e)
            else:
                result = (response, None)
            try:
                loop.call_soon_threadsafe(deliver, *result)
            except RuntimeError:
                log.debug("Answer to %r arrived after the event loop closed", request.title)

        threading.Thread(target=read, name="sshhop-prompt", daemon=True).start()
        return await future

    def _ask(self, request: UserInputRequest) -> UserInputResponse:
        print(f"\n{request.title}", file=self._stream)
        try:
            if request.response_type == ResponseType.CONFIRM:
                print(request.query_text, file=self._stream)
                while True:
                    self._stream.write("Are you sure you want to continue (yes/no)? ")
                    self._stream.flush()
                    answer = input().strip().lower()
                    if answer in ("yes", "no"):
                        return UserInputResponse(confirm=answer == "yes")
                    print("Please type 'yes' or 'no'.", file=self._stream)
            if request.public_text:
                self._stream.write(request.query_text)
                self._stream.flush()
                return UserInputResponse(text=input())
            return UserInputResponse(
                text=getpass.getpass(request.query_text, stream=self._stream)
            )
        except (EOFError, KeyboardInterrupt):
            raise UserInputCancelled(f"{request.title}: input cancelled") from None


class EmittingUserInput:
    """Wraps a provider so every question is logged as a PROMPT event. Answers never are."""

    def __init__(self, provider: UserInputProvider, emitter: EventEmitter) -> None:
        self._provider = provider
        self._emitter = emitter

    async def request(self, request: UserInputRequest) -> UserInputResponse:
        self._emitter.emit(
            EventType.PROMPT,
            title=request.title,
            response_type=request.response_type.value,
        )
        return await self._provider.request(request)
