"""
SessionManager - time-bounded, revocable capability grants.

Sessions live in memory only. Expiry is checked on every access, so a
session is unusable the instant its expiry is reached; the optional sweeper
task only reclaims memory. A revoked or expired session is reported exactly
like an unknown one.
"""

import asyncio
import logging
import secrets
import time
from threading import Lock
from typing import Callable, Optional

from capbroker.shared.constants import (
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    SESSION_ID_LOG_PREFIX,
    SESSION_ID_PREFIX,
    SESSION_TOKEN_BYTES,
)
from capbroker.shared.models import Session

logger = logging.getLogger(__name__)


def short_id(session_id: str) -> str:
    """Loggable prefix of a session id."""
    return f"{session_id[:SESSION_ID_LOG_PREFIX]}..."


class SessionManager:
    """
    In-process session table.

    Thread-safe. The lock guards only dictionary operations and is never
    held across I/O.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._sessions: dict[str, Session] = {}
        self._lock = Lock()
        self._clock = clock

    def create_session(
        self,
        capability: str,
        service: str,
        ttl_seconds: float,
        reason: Optional[str] = None,
    ) -> Session:
        if ttl_seconds <= 0:
            raise ValueError(f"Session TTL must be positive, got {ttl_seconds}")
        now = self._clock()
        with self._lock:
            session_id = f"{SESSION_ID_PREFIX}{secrets.token_urlsafe(SESSION_TOKEN_BYTES)}"
            while session_id in self._sessions:
                session_id = f"{SESSION_ID_PREFIX}{secrets.token_urlsafe(SESSION_TOKEN_BYTES)}"
            session = Session(
                id=session_id,
                capability=capability,
                service=service,
                created_at=now,
                expires_at=now + ttl_seconds,
                reason=reason,
            )
            self._sessions[session_id] = session

        logger.info(
            f"Session {short_id(session_id)} created for capability={capability} "
            f"service={service} (TTL={ttl_seconds:g}s)"
        )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        """The session if present, unexpired and unrevoked; otherwise None."""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if not session.is_valid(now):
                del self._sessions[session_id]
                return None
            return session

    def revoke_session(self, session_id: str) -> bool:
        """Revoke and remove. False if the session was not (or no longer) present."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            session.revoked = True
        logger.info(f"Session {short_id(session_id)} revoked")
        return True

    def list_sessions(self) -> list[Session]:
        """Currently valid sessions; expired ones are swept as a side effect."""
        self.sweep()
        with self._lock:
            return list(self._sessions.values())

    def sweep(self) -> int:
        """Remove expired and revoked sessions. Returns the number removed."""
        now = self._clock()
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if not s.is_valid(now)]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug(f"Swept {len(stale)} expired session(s)")
        return len(stale)

    async def run_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        """Background loop; cancel the task to stop it."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
