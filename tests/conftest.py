"""Shared fixtures: an in-memory stand-in for the database connector.

``FakeConnector`` answers SQL by substring match against a script.  Each
scripted entry holds a list of responses consumed in order; the last one
repeats.  A response is a list of row dicts, a single row dict, ``None`` (no
rows) or an exception instance (raised).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import pytest


@dataclass
class Call:
    connection: int
    method: str
    sql: str
    params: dict[str, Any] | None


class FakeSession:
    def __init__(self, connector: "FakeConnector", index: int) -> None:
        self._connector = connector
        self.index = index

    async def fetch_one(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        rows = self._connector.respond(self.index, "fetch_one", sql, params)
        return rows[0] if rows else None

    async def fetch_all(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        return self._connector.respond(self.index, "fetch_all", sql, params)

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        self._connector.respond(self.index, "execute", sql, params)

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'


class FakeConnector:
    def __init__(self) -> None:
        self._script: list[tuple[str, list[Any]]] = []
        self.calls: list[Call] = []
        self.connections_opened = 0
        self.connections_closed = 0
        self.connect_error: Exception | None = None
        self.closed = False

    def script(self, sql_fragment: str, *responses: Any) -> "FakeConnector":
        """Answer statements containing ``sql_fragment`` with ``responses``."""
        self._script.append((sql_fragment, list(responses)))
        return self

    def respond(
        self, index: int, method: str, sql: str, params: dict[str, Any] | None
    ) -> list[dict[str, Any]]:
        self.calls.append(Call(index, method, sql, params))
        for fragment, responses in self._script:
            if fragment not in sql:
                continue
            response = responses.pop(0) if len(responses) > 1 else responses[0]
            if isinstance(response, Exception):
                raise response
            if response is None:
                return []
            if isinstance(response, dict):
                return [response]
            return list(response)
        return []

    def calls_matching(self, sql_fragment: str) -> list[Call]:
        return [c for c in self.calls if sql_fragment in c.sql]

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[FakeSession]:
        if self.connect_error is not None:
            raise self.connect_error
        index = self.connections_opened
        self.connections_opened += 1
        try:
            yield FakeSession(self, index)
        finally:
            self.connections_closed += 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
