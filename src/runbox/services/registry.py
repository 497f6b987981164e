from __future__ import annotations

import threading
from typing import Dict, List, Optional

from ..core.models import Execution, Session, Status


class SessionRegistry:
    """
    Session id -> Session. Every read-modify-write happens under one lock;
    a missing id is reported as None, never as a placeholder entry.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def insert(self, session: Session) -> Session:
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"session already registered: {session.id}")
            self._sessions[session.id] = session
            return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def update(self, session_id: str, **changes) -> Optional[Session]:
        with self._lock:
            s = self._sessions.get(session_id)
            if s is None:
                return None
            for key, value in changes.items():
                if not hasattr(s, key):
                    raise AttributeError(f"Session has no field '{key}'")
                setattr(s, key, value)
            return s

    def delete(self, session_id: str) -> Optional[Session]:
        """Idempotent: deleting an absent id returns None."""
        with self._lock:
            s = self._sessions.pop(session_id, None)
            if s is not None:
                s.status = Status.CLOSED
            return s

    # ---------- execution ownership ----------

    def attach(self, session_id: str, execution: Execution) -> bool:
        """Install a new execution; refused while another one is still owned."""
        with self._lock:
            s = self._sessions.get(session_id)
            if s is None or s.execution is not None:
                return False
            s.execution = execution
            s.language = execution.language
            s.status = execution.status
            return True

    def mark(self, session_id: str, execution: Execution, status: Status) -> bool:
        with self._lock:
            s = self._sessions.get(session_id)
            if s is None or s.execution is not execution:
                return False
            execution.status = status
            s.status = status
            return True

    def release(self, session_id: str, execution: Optional[Execution] = None) -> Optional[Execution]:
        """
        Detach the session's execution and hand it to the caller. When
        `execution` is given, only that exact execution is released. Of several
        concurrent callers exactly one gets it back; the rest get None.
        """
        with self._lock:
            s = self._sessions.get(session_id)
            if s is None or s.execution is None:
                return None
            if execution is not None and s.execution is not execution:
                return None
            claimed = s.execution
            s.execution = None
            s.status = Status.IDLE
            return claimed

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
