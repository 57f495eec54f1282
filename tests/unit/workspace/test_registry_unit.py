# tests/unit/workspace/test_registry_unit.py

from unittest.mock import AsyncMock, MagicMock

import pytest

from r_lsp_shim.workspace.registry import SessionRegistry


def _session(running=True):
    session = MagicMock()
    session.needs_stop.return_value = running
    session.stop = AsyncMock()
    return session


def test_first_claim_wins_and_marks_key():
    registry = SessionRegistry()

    assert registry.claim("untitled") is True
    assert registry.is_initializing("untitled")
    assert registry.claim("untitled") is False


def test_claim_for_running_session_is_refused_but_marks_key():
    registry = SessionRegistry()
    registry.store("k", _session(running=True))

    assert registry.claim("k") is False
    # The marker is speculative and stays until pop() or release().
    assert registry.is_initializing("k")


def test_claim_for_stopped_session_allows_restart():
    registry = SessionRegistry()
    registry.store("k", _session(running=False))

    assert registry.claim("k") is True


def test_release_clears_marker_only():
    registry = SessionRegistry()
    session = _session()
    registry.claim("k")
    registry.store("k", session)
    registry.release("k")

    assert not registry.is_initializing("k")
    assert registry.get("k") is session
    assert "k" in registry
    assert len(registry) == 1


def test_pop_removes_session_and_marker():
    registry = SessionRegistry()
    session = _session()
    registry.store("k", session)
    registry.claim("k")

    assert registry.pop("k") is session
    assert registry.get("k") is None
    assert not registry.is_initializing("k")
    assert registry.pop("k") is None


def test_keys_and_sessions_are_snapshots():
    registry = SessionRegistry()
    a, b = _session(), _session()
    registry.store("a", a)
    registry.store("b", b)

    keys = registry.keys()
    registry.pop("a")

    assert sorted(keys) == ["a", "b"]
    assert registry.sessions() == [b]
    assert list(registry) == ["b"]


@pytest.mark.asyncio
async def test_stop_all_stops_everything_and_drains():
    registry = SessionRegistry()
    sessions = [_session() for _ in range(3)]
    for i, session in enumerate(sessions):
        registry.store(f"k{i}", session)
    registry.claim("pending")

    await registry.stop_all()

    for session in sessions:
        session.stop.assert_awaited_once()
    assert len(registry) == 0
    assert registry.initializing == set()


@pytest.mark.asyncio
async def test_stop_all_continues_past_failures():
    registry = SessionRegistry()
    failing = _session()
    failing.stop.side_effect = ConnectionError("boom")
    healthy = _session()
    registry.store("bad", failing)
    registry.store("good", healthy)

    await registry.stop_all()

    healthy.stop.assert_awaited_once()
    assert len(registry) == 0
