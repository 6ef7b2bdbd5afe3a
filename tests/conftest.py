"""Shared pytest fixtures for roomledger tests."""
import sys
sys.dont_write_bytecode = True

import os  # noqa: E402
from contextlib import contextmanager  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

# Deterministic AES key for the credentials vault in every test.
os.environ.setdefault("CHANNEL_CREDENTIALS_KEY", "00" * 32)


@pytest.fixture(autouse=True)
def _reset_process_singletons():
    """The event bus and tasks client are process-wide; isolate each test."""
    from roomledger.domain.events import get_event_bus
    from roomledger.tasks.client import TasksClient, set_tasks_client

    get_event_bus().clear()
    set_tasks_client(TasksClient(backend="inline"))
    yield
    get_event_bus().clear()
    set_tasks_client(None)


@pytest.fixture
def cur():
    """Mocked psycopg2 cursor."""
    return MagicMock()


@pytest.fixture
def fake_txn(cur):
    """Factory patching `txn` in a module so every transaction yields `cur`."""

    @contextmanager
    def _txn(conn=None):
        yield cur

    def _apply(monkeypatch, *module_paths):
        for path in module_paths:
            monkeypatch.setattr(f"{path}.txn", _txn)
        return cur

    return _apply
