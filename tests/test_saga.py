"""
Saga: compensations in best-effort mode, commit/abort in transactional mode.
"""

import logging

import pytest

from dealerledger.config.database import db_config
from dealerledger.services.saga import Saga


class FakeSession:
    def __init__(self):
        self.calls = []

    def start_transaction(self):
        self.calls.append("start")

    async def commit_transaction(self):
        self.calls.append("commit")

    async def abort_transaction(self):
        self.calls.append("abort")

    async def end_session(self):
        self.calls.append("end")


class FakeClient:
    def __init__(self):
        self.session = FakeSession()

    async def start_session(self):
        return self.session


def recorder(log, label):
    async def action(session):
        log.append(("do", label, session))
        return label

    async def compensate(result):
        log.append(("undo", result))

    return action, compensate


@pytest.mark.asyncio
async def test_best_effort_compensates_newest_first():
    log = []
    first, undo_first = recorder(log, "entry")
    second, undo_second = recorder(log, "booking")

    with pytest.raises(RuntimeError):
        async with Saga("allocate") as saga:
            assert saga.session is None
            await saga.step(first, compensate=undo_first)
            await saga.step(second, compensate=undo_second)
            raise RuntimeError("receipt write failed")

    assert log == [
        ("do", "entry", None),
        ("do", "booking", None),
        ("undo", "booking"),
        ("undo", "entry"),
    ]


@pytest.mark.asyncio
async def test_success_runs_no_compensation():
    log = []
    action, undo = recorder(log, "entry")

    async with Saga("record_payment") as saga:
        result = await saga.step(action, compensate=undo)

    assert result == "entry"
    assert log == [("do", "entry", None)]


@pytest.mark.asyncio
async def test_failed_compensation_is_logged_and_original_error_wins(caplog):
    log = []
    action, undo = recorder(log, "entry")

    async def broken_undo(result):
        raise ConnectionError("store unreachable")

    with caplog.at_level(logging.ERROR, logger="dealerledger.services.saga"):
        with pytest.raises(ValueError, match="original"):
            async with Saga("deallocate") as saga:
                await saga.step(action, compensate=undo, name="first")
                await saga.step(action, compensate=broken_undo, name="second")
                raise ValueError("original")

    # the earlier compensation still ran
    assert ("undo", "entry") in log
    assert "compensation for step 'second' failed" in caplog.text


@pytest.mark.asyncio
async def test_transactional_mode_commits(monkeypatch):
    client = FakeClient()
    monkeypatch.setattr(db_config, "client", client)
    monkeypatch.setattr(db_config, "supports_transactions", True)
    log = []
    action, undo = recorder(log, "entry")

    async with Saga("approve") as saga:
        await saga.step(action, compensate=undo)

    assert log == [("do", "entry", client.session)]
    assert client.session.calls == ["start", "commit", "end"]


@pytest.mark.asyncio
async def test_transactional_mode_aborts_without_compensating(monkeypatch):
    client = FakeClient()
    monkeypatch.setattr(db_config, "client", client)
    monkeypatch.setattr(db_config, "supports_transactions", True)
    log = []
    action, undo = recorder(log, "entry")

    with pytest.raises(RuntimeError):
        async with Saga("approve") as saga:
            await saga.step(action, compensate=undo)
            raise RuntimeError("boom")

    assert ("undo", "entry") not in log
    assert client.session.calls == ["start", "abort", "end"]
