from __future__ import annotations

import copy
import itertools
import json

import pytest

import config
from auth import Principal
from errors import PersistenceError, ProviderCallError
from providers import ProviderClient


class InMemoryStore:
    """RecordStore stand-in with the same filter conventions."""

    def __init__(self, tables=None):
        self.tables = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.fail_on = set()
        self._ids = itertools.count(1)

    def _check(self, op, table):
        if (op, table) in self.fail_on:
            raise PersistenceError(f"{op} on {table} failed", details="simulated")

    @staticmethod
    def _matches(row, filters):
        for key, expected in (filters or {}).items():
            column, _, op = key.partition("__")
            actual = row.get(column)
            if op == "gte":
                if actual is None or actual < expected:
                    return False
            elif op == "lte":
                if actual is None or actual > expected:
                    return False
            elif actual != expected:
                return False
        return True

    def get(self, table, filters=None, limit=None):
        self._check("get", table)
        rows = [copy.deepcopy(r) for r in self.tables.get(table, []) if self._matches(r, filters)]
        return rows[:limit] if limit else rows

    def insert(self, table, record):
        self._check("insert", table)
        row = copy.deepcopy(record)
        row.setdefault("id", f"{table}-{next(self._ids)}")
        self.tables.setdefault(table, []).append(row)
        return copy.deepcopy(row)

    def update(self, table, values, filters):
        self._check("update", table)
        count = 0
        for row in self.tables.get(table, []):
            if self._matches(row, filters):
                row.update(copy.deepcopy(values))
                count += 1
        return count


def openai_frame(text: str) -> bytes:
    return f"data: {json.dumps({'choices': [{'delta': {'content': text}}]})}\n\n".encode("utf-8")


DONE_FRAME = b"data: [DONE]\n\n"


class FakeProvider(ProviderClient):
    """Scripted provider: returns `reply`, or raises `error`, for both modes."""

    def __init__(self, provider_id, reply="", error=None, configured=True, chunks=None):
        self.provider_id = provider_id
        self.reply = reply
        self.error = error
        self.configured = configured
        self.chunks = chunks
        self.calls = 0
        self.requests = []
        self.closed = False

    def is_configured(self):
        return self.configured

    def complete(self, request):
        self.calls += 1
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.reply

    def open_stream(self, request):
        from providers import ProviderStream

        self.calls += 1
        self.requests.append(request)
        if self.error is not None:
            raise self.error

        def close():
            self.closed = True

        return ProviderStream(self.provider_id, iter(self.chunks or []), self.extract_stream_delta, close)

    def extract_stream_delta(self, frame):
        choices = frame.get("choices") or [{}]
        return (choices[0].get("delta") or {}).get("content") or ""


def failing(provider_id, status=500):
    return FakeProvider(provider_id, error=ProviderCallError(provider_id, f"HTTP {status}", status=status))


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    monkeypatch.setattr(config, "langfuse_client", False)
    monkeypatch.setattr(config, "KEYWORD_CONFIDENCE_THRESHOLD", 0.8)
    monkeypatch.setattr(config, "REVENUECAT_WEBHOOK_SECRET", "whsec-test")
    monkeypatch.setattr(config, "WEBHOOK_ALLOW_UNSIGNED", False)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def principal():
    return Principal(user_id="user-1", email="user@example.com", claims={"sub": "user-1"})
