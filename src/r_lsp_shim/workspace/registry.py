# File: r_lsp_shim/workspace/registry.py

"""Maps scope keys to sessions and guards against duplicate starts."""

import asyncio
import logging
from typing import Dict, Iterator, List, Optional, Set

from r_lsp_shim.server.session import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Scope key to session mapping plus the set of keys being initialized.

    `claim()` is the only way to decide that a session must be created. It
    checks and marks a key within one scheduling step, so of several
    overlapping open events for one scope only the first gets to spawn a
    server. The mark is set on every first check, whatever the outcome, and
    is cleared by `release()` once the winner has stored its session (or
    failed), or by `pop()` when the scope is torn down.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._initializing: Set[str] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def keys(self) -> List[str]:
        return list(self._sessions)

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def get(self, key: str) -> Optional[Session]:
        return self._sessions.get(key)

    def is_initializing(self, key: str) -> bool:
        return key in self._initializing

    @property
    def initializing(self) -> Set[str]:
        return set(self._initializing)

    def claim(self, key: str) -> bool:
        """Returns True if the caller must create and start a session for key.

        False means another activation is in flight, or a live session
        already serves the key. A stopped session left in the mapping (its
        server crashed) does not block a new one.
        """
        if key in self._initializing:
            logger.debug(f"Activation for {key} already in progress.")
            return False
        self._initializing.add(key)
        session = self._sessions.get(key)
        if session is not None and session.needs_stop():
            logger.debug(f"Session for {key} already running.")
            return False
        return True

    def store(self, key: str, session: Session) -> None:
        previous = self._sessions.get(key)
        if previous is not None and previous is not session and previous.needs_stop():
            logger.warning(f"Replacing live session for {key}: {previous!r}")
        self._sessions[key] = session

    def release(self, key: str) -> None:
        self._initializing.discard(key)

    def pop(self, key: str) -> Optional[Session]:
        """Removes key from the mapping and the initializing set."""
        self._initializing.discard(key)
        return self._sessions.pop(key, None)

    async def stop_all(self) -> None:
        """Stops every stored session concurrently and empties the registry."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._initializing.clear()
        if not sessions:
            return
        logger.info(f"Stopping {len(sessions)} language server session(s).")
        results = await asyncio.gather(
            *(session.stop() for session in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Error stopping {session!r}: {result}",
                    exc_info=(type(result), result, result.__traceback__),
                )
