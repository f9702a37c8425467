"""
Shared pytest fixtures for the room fanout core.
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock

import pytest

# Ensure project root importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from connection import ConnectionHandle
from registry import RoomRegistry


def _make_ws(*, fail_send=False, gate=None):
    """Create a mock WebSocket transport.

    ``gate`` is an asyncio.Event every send waits on, to simulate a stalled peer.
    """
    ws = AsyncMock()
    if fail_send:
        ws.send_json.side_effect = RuntimeError("connection closed")
    elif gate is not None:
        async def _stalled(payload):
            await gate.wait()
        ws.send_json.side_effect = _stalled
    return ws


@pytest.fixture
def make_ws():
    return _make_ws


@pytest.fixture
def make_handle():
    def factory(*, fail_send=False, gate=None, **kwargs):
        return ConnectionHandle(_make_ws(fail_send=fail_send, gate=gate), **kwargs)
    return factory


@pytest.fixture
def registry():
    return RoomRegistry()


async def settle(rounds: int = 5):
    """Let writer tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def sent(handle):
    """Payloads written to a handle's transport, in order."""
    return [call.args[0] for call in handle.transport.send_json.await_args_list]


def pytest_configure(config):
    config.addinivalue_line("markers", "ws: mark test as WebSocket endpoint test")
