from __future__ import annotations

import sqlite3
from typing import Any

import pytest

from hyperstats.db import store


class FakeDune:
    """Scripted stand-in for DuneClient.

    `results` maps execution id -> list of payloads (or exceptions) returned
    in order; the last entry repeats once the list is exhausted.
    """

    def __init__(self, results: dict[str, list[Any]] | None = None, execution_ids: list[str] | None = None) -> None:
        self.results = results or {}
        self.execution_ids = list(execution_ids or [])
        self.executed: list[int] = []
        self.result_calls: list[str] = []

    def execute_query(self, query_id: int) -> str:
        self.executed.append(query_id)
        outcome = self.execution_ids.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get_results(self, execution_id: str) -> dict[str, Any]:
        self.result_calls.append(execution_id)
        queue = self.results[execution_id]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, headers: dict[str, str] | None = None, text: str | None = None) -> None:
        self.status_code = status_code
        self.payload = payload
        self.headers = headers or {}
        self.text = text if text is not None else str(payload)

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("No JSON object could be decoded")
        return self.payload


class FakeSession:
    """Stands in for requests.Session; `route(method, url, params)` picks the response."""

    def __init__(self, route) -> None:
        self.route = route
        self.calls: list[dict[str, Any]] = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        outcome = self.route(method, url, params)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def completed(rows: list[dict[str, Any]]) -> dict[str, Any]:
    return {"state": "QUERY_STATE_COMPLETED", "result": {"rows": rows}}


def running(state: str = "QUERY_STATE_EXECUTING") -> dict[str, Any]:
    return {"state": state}


@pytest.fixture
def conn() -> sqlite3.Connection:
    connection = sqlite3.connect(":memory:")
    connection.row_factory = sqlite3.Row
    store.init_db(connection)
    yield connection
    connection.close()
