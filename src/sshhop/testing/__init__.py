"""
Testing utilities for sshhop.

Provides MockSSHServer for falsifiable integration testing without Docker,
and ScriptedUserInput for driving prompts from tests.
"""
from sshhop.testing.mock_server import MockServerConfig, MockSSHServer
from sshhop.testing.scripted_input import HANG, ScriptedUserInput

__all__ = ["MockSSHServer", "MockServerConfig", "ScriptedUserInput", "HANG"]
