from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from agent_manager import AgentManager
from rules_loader import RulesStore

RULES_TEXT = "# Test rules\n\nBe brief."


class FakeEngine:
    """Stands in for claude_agent_sdk.query; records every call."""

    def __init__(self, messages: list[Any] | None = None, *, error: BaseException | None = None, hang: bool = False):
        self.messages = list(messages or [])
        self.error = error
        self.hang = hang
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def __call__(self, *, prompt, options):
        self.calls.append({"prompt": prompt, "options": options})
        try:
            for message in self.messages:
                yield message
            if self.error is not None:
                raise self.error
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed = True

    @property
    def prompt(self) -> str:
        return self.calls[-1]["prompt"]

    @property
    def options(self):
        return self.calls[-1]["options"]


@pytest.fixture
def rules_file(tmp_path: Path) -> Path:
    path = tmp_path / "RULES.md"
    path.write_text(RULES_TEXT, encoding="utf-8")
    return path


@pytest.fixture
def rules(rules_file: Path) -> RulesStore:
    store = RulesStore(rules_file)
    store.load()
    return store


@pytest.fixture
def make_manager(rules: RulesStore):
    def _make(engine: FakeEngine, **kwargs) -> AgentManager:
        return AgentManager(cli_path="/usr/local/bin/claude", rules=rules, query_fn=engine, **kwargs)

    return _make


async def collect(events) -> list[dict]:
    return [event async for event in events]
