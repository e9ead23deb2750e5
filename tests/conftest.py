"""
Shared fixtures for the automaton test suite.

Provides an in-memory store, a scripted sandbox and a scripted inference
client so individual test modules can focus on behavior rather than setup.
No test touches the network.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from automaton.api.conway import CreditBalance, ExecResult
from automaton.errors import SandboxError
from automaton.state.store import SharedStore, StateStore
from automaton.types import InferenceResponse


FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeSandbox:
    """
    In-memory stand-in for ConwayClient.

    Files live in a dict. ``exec`` results are scripted per command
    substring; anything unscripted succeeds with empty output.
    """

    def __init__(self, credits: float = 5.0):
        self.files: dict[str, str] = {}
        self.exec_results: dict[str, ExecResult] = {}
        self.commands: list[str] = []
        self.credits = credits
        self.closed = False

    async def exec(self, command: str, timeout_ms: Optional[int] = None) -> ExecResult:
        self.commands.append(command)
        for needle, result in self.exec_results.items():
            if needle in command:
                return result
        return ExecResult(stdout="", stderr="", exit_code=0)

    async def read_file(self, path: str) -> str:
        if path not in self.files:
            raise SandboxError(f"File not found: {path}", status_code=404)
        return self.files[path]

    async def write_file(self, path: str, content: str) -> None:
        self.files[path] = content

    async def expose_port(self, port: int) -> str:
        return f"https://sandbox.example/{port}"

    async def create_sandbox(self, name: str) -> str:
        return f"sbx-{name}"

    async def check_credits(self) -> CreditBalance:
        return CreditBalance(credits=self.credits)

    async def close(self) -> None:
        self.closed = True


class ScriptedInference:
    """Returns pre-scripted responses in order; exceptions are raised."""

    def __init__(self, responses: list[Any]):
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def chat(self, model, messages, tools=None, max_tokens=4096) -> InferenceResponse:
        self.calls.append({"model": model, "messages": list(messages), "tools": tools})
        if not self._responses:
            return InferenceResponse()
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def store() -> StateStore:
    s = StateStore.in_memory()
    yield s
    s.close()


@pytest.fixture()
def shared(store: StateStore) -> SharedStore:
    return SharedStore(store)


@pytest.fixture()
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture()
def clock():
    """A settable clock: ``clock.now`` is returned on every call."""

    class _Clock:
        def __init__(self):
            self.now = FIXED_NOW

        def __call__(self) -> datetime:
            return self.now

    return _Clock()
