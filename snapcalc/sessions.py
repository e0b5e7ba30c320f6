from __future__ import annotations

import os
import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from snapcalc.session import CalculatorSession

DEFAULT_MAX_SESSIONS = 1000


class SessionStore:
    """In-memory sessions keyed by client-chosen id, evicted least-recently-used.

    ``lock(session_id)`` serializes every mutation of one session.
    ``pinned(session_id)`` keeps a session from being evicted while work that
    runs outside the lock (an OCR call) is in flight.
    """

    def __init__(
        self,
        factory: Callable[[], CalculatorSession],
        max_sessions: Optional[int] = None,
    ) -> None:
        self._factory = factory
        if max_sessions is None:
            max_sessions = int(os.getenv("SNAPCALC_MAX_SESSIONS", str(DEFAULT_MAX_SESSIONS)))
        if max_sessions < 1:
            raise ValueError(f"max_sessions must be positive: {max_sessions}")
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, tuple[CalculatorSession, threading.Lock]]" = OrderedDict()
        self._pins: Dict[str, int] = {}
        self._guard = threading.Lock()

    def _evict(self, keep: Optional[str] = None) -> None:
        # Caller holds the guard. Pinned sessions and ``keep`` survive.
        excess = len(self._sessions) - self.max_sessions
        if excess <= 0:
            return
        victims = [sid for sid in self._sessions if sid not in self._pins and sid != keep][:excess]
        for sid in victims:
            del self._sessions[sid]

    def _entry_unlocked(self, session_id: str) -> tuple[CalculatorSession, threading.Lock]:
        entry = self._sessions.get(session_id)
        if entry is None:
            entry = (self._factory(), threading.Lock())
            self._sessions[session_id] = entry
            self._evict(keep=session_id)
        else:
            self._sessions.move_to_end(session_id)
        return entry

    def _entry(self, session_id: str) -> tuple[CalculatorSession, threading.Lock]:
        with self._guard:
            return self._entry_unlocked(session_id)

    def get(self, session_id: str) -> CalculatorSession:
        return self._entry(session_id)[0]

    @contextmanager
    def lock(self, session_id: str) -> Iterator[CalculatorSession]:
        session, session_lock = self._entry(session_id)
        with session_lock:
            yield session

    @contextmanager
    def pinned(self, session_id: str) -> Iterator[CalculatorSession]:
        with self._guard:
            session = self._entry_unlocked(session_id)[0]
            self._pins[session_id] = self._pins.get(session_id, 0) + 1
        try:
            yield session
        finally:
            with self._guard:
                remaining = self._pins.get(session_id, 0) - 1
                if remaining > 0:
                    self._pins[session_id] = remaining
                else:
                    self._pins.pop(session_id, None)
                self._evict()

    def drop(self, session_id: str) -> bool:
        with self._guard:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._guard:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._guard:
            return session_id in self._sessions
