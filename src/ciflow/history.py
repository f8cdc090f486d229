"""Persistent run history.

Finished runs are written to a SQL database (SQLite by default, anything
SQLAlchemy can reach otherwise) so reports outlive the process that produced
them. One row per run and one row per job instance; the instance row keeps
the full per-step breakdown as JSON.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .model import Run
from .reporter import RunReport

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    exit_code: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    event: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    concurrency_group: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    duration: Mapped[Optional[float]] = mapped_column(sa.Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class JobRecord(Base):
    __tablename__ = "jobs"
    run_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(sa.Integer, primary_key=True)
    instance_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    payload_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)


def _utc(ts: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(ts, timezone.utc) if ts is not None else None


class RunHistory:
    """Writes finished run reports to a database and reads them back."""

    def __init__(self, database_url: str = "sqlite:///ciflow.db"):
        kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            # reports are written from scheduler worker threads
            kwargs["connect_args"] = {"check_same_thread": False}
        self.engine = sa.create_engine(database_url, **kwargs)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        self._lock = threading.Lock()
        Base.metadata.create_all(self.engine)

    def record(self, run: Run, report: RunReport) -> None:
        """Insert or replace the rows for one finished run."""
        with self._lock, self._sessions() as s, s.begin():
            s.execute(sa.delete(JobRecord).where(JobRecord.run_id == report.run_id))
            s.merge(
                RunRecord(
                    id=report.run_id,
                    workflow=report.workflow,
                    status=report.status.value,
                    exit_code=report.exit_code,
                    event=run.event.kind.value,
                    ref=run.event.ref,
                    concurrency_group=run.concurrency_group,
                    duration=report.duration,
                    created_at=_utc(run.created_at),
                    finished_at=_utc(run.finished_at),
                )
            )
            for position, job in enumerate(report.jobs):
                s.add(
                    JobRecord(
                        run_id=report.run_id,
                        position=position,
                        instance_id=job["id"],
                        job_name=job["job"],
                        status=job["status"],
                        payload_json=job,
                    )
                )
        logger.debug("recorded run %s (%s)", report.run_id, report.status.value)

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        """The stored report for `run_id` in `RunReport.to_dict` shape, or None."""
        with self._sessions() as s:
            row = s.get(RunRecord, run_id)
            if row is None:
                return None
            jobs = s.scalars(
                sa.select(JobRecord).where(JobRecord.run_id == run_id).order_by(JobRecord.position)
            ).all()
            return {
                "run_id": row.id,
                "workflow": row.workflow,
                "status": row.status,
                "exit_code": row.exit_code,
                "duration": round(row.duration, 3) if row.duration is not None else None,
                "jobs": [dict(j.payload_json) for j in jobs],
            }

    def list(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent runs first."""
        with self._sessions() as s:
            rows = s.scalars(
                sa.select(RunRecord).order_by(RunRecord.created_at.desc()).limit(limit)
            ).all()
            return [
                {
                    "run_id": r.id,
                    "workflow": r.workflow,
                    "status": r.status,
                    "exit_code": r.exit_code,
                    "event": r.event,
                    "ref": r.ref,
                    "concurrency_group": r.concurrency_group,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                }
                for r in rows
            ]

    def close(self) -> None:
        self.engine.dispose()
