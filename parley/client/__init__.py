"""
Conversation client: HTTP transport, turn-taking state machine and
console capture/playback.
"""
from parley.client.chat_client import ChatClient
from parley.client.console import ConsoleCapture, ConsolePlayback
from parley.client.turn_taking import Controls, State, TurnTakingMachine

__all__ = [
    "ChatClient",
    "ConsoleCapture",
    "ConsolePlayback",
    "Controls",
    "State",
    "TurnTakingMachine",
]
