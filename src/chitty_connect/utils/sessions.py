"""Session bookkeeping and the SSE connection registry."""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from cachetools import LRUCache

logger = logging.getLogger("chitty-connect.utils.sessions")


@dataclass(frozen=True)
class Session:
    id: str
    created_at: float
    is_new: bool = False


class SessionRegistry:
    """Resolves the session id carried by MCP requests.

    A session id is a correlation token, not a credential: any supplied id is
    accepted verbatim. Bookkeeping is bounded; an evicted session keeps working,
    only its creation time is forgotten.
    """

    def __init__(self, maxsize: int = 10000) -> None:
        self._sessions: LRUCache[str, Session] = LRUCache(maxsize=maxsize)

    def resolve(self, header_value: str | None) -> Session:
        """Return the session for ``header_value``, minting a new id when absent."""
        session_id = (header_value or "").strip()
        if session_id:
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing
            session = Session(id=session_id, created_at=time.time())
        else:
            session = Session(id=str(uuid.uuid4()), created_at=time.time(), is_new=True)
            logger.debug(f"Created session {session.id}")
        self._sessions[session.id] = session
        return session

    def terminate(self, session_id: str | None) -> bool:
        """Forget a session. Returns True when it was known."""
        if not session_id:
            return False
        return self._sessions.pop(session_id, None) is not None

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass(eq=False)
class SSEConnection:
    """One open push stream and the messages waiting to be written to it."""

    session_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    closed: bool = False

    def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(None)


class SSEConnectionRegistry:
    """Owns the open push streams, at most one per session."""

    def __init__(self) -> None:
        self._connections: dict[str, SSEConnection] = {}

    def register(self, session_id: str) -> SSEConnection:
        """Open a connection for ``session_id``, closing any stale one it replaces."""
        connection = SSEConnection(session_id=session_id)
        stale = self._connections.get(session_id)
        self._connections[session_id] = connection
        if stale is not None:
            logger.debug(f"Replacing SSE connection for session {session_id}")
            stale.close()
        return connection

    def unregister(self, session_id: str, connection: SSEConnection) -> bool:
        """Remove ``connection``. A no-op when it was already replaced or removed."""
        if self._connections.get(session_id) is not connection:
            return False
        del self._connections[session_id]
        logger.debug(f"SSE connection closed for session {session_id}")
        return True

    def close(self, session_id: str) -> bool:
        """Close and remove the connection of a terminated session."""
        connection = self._connections.pop(session_id, None)
        if connection is None:
            return False
        connection.close()
        return True

    def publish(self, session_id: str, message: dict[str, Any]) -> bool:
        """Queue a JSON-RPC message on the session's stream.

        Returns:
            False when the session has no open stream
        """
        connection = self._connections.get(session_id)
        if connection is None or connection.closed:
            return False
        connection.queue.put_nowait(message)
        return True

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
