from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, create_engine, select

log = structlog.get_logger(__name__)


class RunStatus(str, Enum):
    QUEUED="QUEUED"; RUNNING="RUNNING"
    FINISHED="FINISHED"; FAILED="FAILED"; TIMEOUT="TIMEOUT"; KILLED="KILLED"


class Run(SQLModel, table=True):
    id: str = Field(primary_key=True)
    session_id: str = Field(index=True)
    language: str = "python"
    status: RunStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunHistory:
    """Audit trail of runs. Write failures are logged, execution carries on."""

    def __init__(self, url: str = "sqlite:///./runbox.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        # Session factory with expire_on_commit=False
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def record(self, run_id: str, session_id: str, language: str) -> None:
        self._write(Run(id=run_id, session_id=session_id, language=language,
                        status=RunStatus.QUEUED, created_at=_now()))

    def started(self, run_id: str) -> None:
        # a run torn down mid-launch may already be finished
        self._patch(run_id, only_from=RunStatus.QUEUED, status=RunStatus.RUNNING, started_at=_now())

    def finished(self, run_id: str, status: RunStatus, exit_code: Optional[int], reason: Optional[str] = None) -> None:
        self._patch(run_id, status=status, exit_code=exit_code, reason=reason, finished_at=_now())

    def get(self, run_id: str) -> Optional[Run]:
        with self.SessionLocal() as s:
            return s.get(Run, run_id)

    def for_session(self, session_id: str) -> List[Run]:
        with self.SessionLocal() as s:
            stmt = select(Run).where(Run.session_id == session_id).order_by(Run.created_at)
            return list(s.exec(stmt).all())

    def _write(self, run: Run) -> None:
        try:
            with self.SessionLocal() as s:
                s.add(run)
                s.commit()
        except SQLAlchemyError as e:
            log.error("history.write_failed", run_id=run.id, err=str(e))

    def _patch(self, run_id: str, only_from: Optional[RunStatus] = None, **fields) -> None:
        try:
            with self.SessionLocal() as s:
                run = s.get(Run, run_id)
                if run is None or (only_from is not None and run.status != only_from):
                    return
                for key, value in fields.items():
                    setattr(run, key, value)
                s.add(run)
                s.commit()
        except SQLAlchemyError as e:
            log.error("history.write_failed", run_id=run_id, err=str(e))
