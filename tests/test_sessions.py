"""Tests for the in-memory session store."""

import re

import pytest

from privateagent.agent import Agent
from privateagent.sessions import SessionNotFoundError, SessionStore


@pytest.fixture
def store(ollama_client):
    return SessionStore(agent_factory=lambda **options: Agent(client=ollama_client, **options))


class TestSessionStore:
    """Test creating, looking up and closing sessions."""

    def test_create_generates_id(self, store):
        """Sessions without an id get a generated one."""
        session = store.create()
        assert re.fullmatch(r"sess-[0-9a-f]{12}", session.session_id)
        assert store.get(session.session_id) is session
        assert len(store) == 1

    def test_create_passes_agent_options(self, store):
        """Options reach the agent factory."""
        session = store.create("s1", model="mistral", max_context_tokens=1024)
        assert session.agent.model == "mistral"
        assert session.agent.max_context_tokens == 1024

    def test_create_replaces_existing(self, store):
        """Re-creating an id gives a fresh agent."""
        first = store.create("s1")
        second = store.create("s1")
        assert store.get("s1") is second
        assert second.agent is not first.agent
        assert len(store) == 1

    def test_sessions_are_independent(self, store):
        """Each session owns its own conversation."""
        a = store.create("a")
        b = store.create("b")
        a.agent.conversation.add_message("user", "only in a")
        assert len(b.agent.history()) == 0

    def test_require_unknown(self, store):
        """Unknown ids raise SessionNotFoundError."""
        with pytest.raises(SessionNotFoundError):
            store.require("nope")
        assert store.get("nope") is None

    def test_close(self, store):
        """Closed sessions are gone; closing twice reports False."""
        store.create("s1")
        assert store.close("s1") is True
        assert "s1" not in store
        assert store.close("s1") is False


class TestIdleExpiry:
    """Test the optional idle TTL."""

    def test_no_ttl_never_expires(self, store):
        """Without a TTL nothing expires."""
        session = store.create("s1")
        assert store.expire_idle(now=session.last_used + 10**9) == []
        assert "s1" in store

    def test_idle_sessions_expire(self, ollama_client):
        """Sessions idle past the TTL are removed; active ones stay."""
        store = SessionStore(agent_factory=lambda **o: Agent(client=ollama_client, **o), ttl_seconds=60)
        old = store.create("old")
        fresh = store.create("fresh")
        old.last_used -= 120

        expired = store.expire_idle(now=fresh.last_used + 1)

        assert expired == ["old"]
        assert store.ids() == ["fresh"]

    def test_get_refreshes_last_used(self, ollama_client):
        """Looking a session up counts as use."""
        store = SessionStore(agent_factory=lambda **o: Agent(client=ollama_client, **o), ttl_seconds=60)
        session = store.create("s1")
        session.last_used -= 120

        store.get("s1")

        assert store.expire_idle() == []
