"""In-memory session store: one agent per session id."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

from privateagent.agent import Agent

logger = logging.getLogger(__name__)

AgentFactory = Callable[..., Agent]


class SessionNotFoundError(Exception):
    """Raised when a session id is not known to the store."""

    pass


def new_session_id() -> str:
    return f"sess-{uuid.uuid4().hex[:12]}"


@dataclass
class Session:
    """A chat session and the agent that owns its conversation."""

    session_id: str
    agent: Agent
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_used = time.time()

    def idle_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.last_used


class SessionStore:
    """Maps session ids to sessions.

    Sessions live until closed, or until idle longer than ``ttl_seconds``
    when a TTL is set and :meth:`expire_idle` runs.
    """

    def __init__(self, agent_factory: AgentFactory, ttl_seconds: float | None = None):
        self._agent_factory = agent_factory
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, Session] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def create(self, session_id: str | None = None, **agent_options: Any) -> Session:
        """Create a session with a fresh agent.

        An existing session with the same id is replaced.

        Args:
            session_id: Id to use; generated when omitted
            **agent_options: Passed to the agent factory

        Returns:
            The new session
        """
        if session_id is None:
            session_id = new_session_id()

        session = Session(session_id=session_id, agent=self._agent_factory(**agent_options))
        with self._lock:
            replaced = session_id in self._sessions
            self._sessions[session_id] = session

        logger.info(f"{'Replaced' if replaced else 'Created'} session {session_id}")
        return session

    def get(self, session_id: str) -> Session | None:
        """Look up a session, marking it used."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def require(self, session_id: str) -> Session:
        """Look up a session.

        Raises:
            SessionNotFoundError: No session with that id
        """
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def close(self, session_id: str) -> bool:
        """Remove a session. Returns False if it did not exist."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info(f"Closed session {session_id}")
        return True

    def expire_idle(self, now: float | None = None) -> list[str]:
        """Remove and return ids of sessions idle longer than the TTL.

        Sessions with a turn in progress are never expired.
        """
        if self.ttl_seconds is None:
            return []

        now = now if now is not None else time.time()
        expired = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.idle_seconds(now) > self.ttl_seconds and not session.agent.busy:
                    expired.append(session_id)
                    del self._sessions[session_id]

        if expired:
            logger.info(f"Expired {len(expired)} idle session(s)")
        return expired

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)
