import pytest

from crm.core import database


class RecordingSession:
    def __init__(self):
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def rollback(self):
        self.calls.append("rollback")

    async def close(self):
        self.calls.append("close")


@pytest.fixture
def session(monkeypatch):
    recording = RecordingSession()
    monkeypatch.setattr(database, "AsyncSessionLocal", lambda: recording)
    return recording


async def test_get_db_rolls_back_when_request_fails(session):
    dependency = database.get_db()
    assert await dependency.__anext__() is session

    with pytest.raises(RuntimeError):
        await dependency.athrow(RuntimeError("handler failed"))

    assert session.calls == ["rollback", "close"]


async def test_get_db_only_closes_on_success(session):
    dependency = database.get_db()
    await dependency.__anext__()

    with pytest.raises(StopAsyncIteration):
        await dependency.__anext__()

    assert session.calls == ["close"]


def test_utcnow_is_naive():
    assert database.utcnow().tzinfo is None
