# store.py
"""
Durable store for run history, the approval log and the release list.

SQLAlchemy ORM over any database URL (SQLite by default). Contract:
  - lookups by run id, (run id, job name), approval id, tag
  - a run is written while it is in flight; once its outcome is set the
    record is frozen (history is append-only)
  - releases are insert-only, one row per tag
  - a closed approval request is never reopened; approve/reject go
    through `update_approval`, a compare-and-swap on the row version, so
    concurrent approvers (threads, API workers, CLI processes) never
    overwrite each other
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import (
    ApprovalRequest,
    ApprovalState,
    JobRecord,
    JobStatus,
    Release,
    RunOutcome,
    RunRecord,
)
from .settings import DATABASE_URL

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a write would violate the append-only contract."""


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    run_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    started_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(sa.String(16), nullable=True)


class JobRunRow(Base):
    __tablename__ = "job_runs"
    run_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("runs.run_id", ondelete="CASCADE"), primary_key=True
    )
    name: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    log: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    approval_id: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)


class ApprovalRow(Base):
    __tablename__ = "approvals"
    request_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    job: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    environment: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    required: Mapped[list] = mapped_column(sa.JSON, nullable=False)
    granted: Mapped[list] = mapped_column(sa.JSON, nullable=False)
    state: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    rejected_by: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    # bumped on every write; conditional updates compare it
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)


class ReleaseRow(Base):
    __tablename__ = "releases"
    tag: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    commit: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    notes: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    artifacts: Mapped[list] = mapped_column(sa.JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything is stored in UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _create_engine(url: str) -> sa.Engine:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return sa.create_engine(url, pool_pre_ping=True)

    database = parsed.database
    if not database or database == ":memory:":
        return sa.create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return sa.create_engine(url, connect_args={"check_same_thread": False})


class Store:
    def __init__(self, url: str = DATABASE_URL):
        self.url = url
        self.engine = _create_engine(url)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    # -------------------- Runs --------------------

    def save_run(self, record: RunRecord) -> None:
        with self.Session() as s, s.begin():
            row = s.get(RunRow, record.run_id)
            if row is None:
                row = RunRow(run_id=record.run_id, pipeline=record.pipeline, started_at=record.started_at)
                s.add(row)
            elif row.outcome is not None:
                raise StoreError(f"run {record.run_id} is finished and cannot be modified")

            row.finished_at = record.finished_at
            row.outcome = record.outcome.value if record.outcome else None

            for position, rec in enumerate(record.jobs.values()):
                jrow = s.get(JobRunRow, (record.run_id, rec.name))
                if jrow is None:
                    jrow = JobRunRow(run_id=record.run_id, name=rec.name, position=position)
                    s.add(jrow)
                jrow.status = rec.status.value
                jrow.started_at = rec.started_at
                jrow.finished_at = rec.finished_at
                jrow.error_kind = rec.error_kind
                jrow.error = rec.error
                jrow.log = rec.log
                jrow.approval_id = rec.approval_id

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self.Session() as s:
            row = s.get(RunRow, run_id)
            if row is None:
                return None
            return self._run_from_row(s, row)

    def list_runs(self, limit: int = 50) -> List[RunRecord]:
        with self.Session() as s:
            rows = s.scalars(
                sa.select(RunRow).order_by(RunRow.started_at.desc()).limit(limit)
            ).all()
            return [self._run_from_row(s, row) for row in rows]

    def get_job(self, run_id: str, name: str) -> Optional[JobRecord]:
        with self.Session() as s:
            jrow = s.get(JobRunRow, (run_id, name))
            return self._job_from_row(jrow) if jrow else None

    def _run_from_row(self, s, row: RunRow) -> RunRecord:
        jrows = s.scalars(
            sa.select(JobRunRow).where(JobRunRow.run_id == row.run_id).order_by(JobRunRow.position)
        ).all()
        return RunRecord(
            run_id=row.run_id,
            pipeline=row.pipeline,
            jobs={j.name: self._job_from_row(j) for j in jrows},
            started_at=_aware(row.started_at),
            finished_at=_aware(row.finished_at),
            outcome=RunOutcome(row.outcome) if row.outcome else None,
        )

    @staticmethod
    def _job_from_row(j: JobRunRow) -> JobRecord:
        return JobRecord(
            name=j.name,
            status=JobStatus(j.status),
            started_at=_aware(j.started_at),
            finished_at=_aware(j.finished_at),
            error_kind=j.error_kind,
            error=j.error,
            log=j.log or "",
            approval_id=j.approval_id,
        )

    # -------------------- Approvals --------------------

    def save_approval(self, req: ApprovalRequest) -> None:
        with self.Session() as s, s.begin():
            row = s.get(ApprovalRow, req.request_id)
            if row is None:
                row = ApprovalRow(
                    request_id=req.request_id,
                    run_id=req.run_id,
                    job=req.job,
                    environment=req.environment,
                    created_at=req.created_at,
                )
                s.add(row)
            elif row.state != ApprovalState.OPEN.value:
                raise StoreError(f"approval {req.request_id} is already {row.state}")
            row.required = sorted(req.required)
            row.granted = sorted(req.granted)
            row.state = req.state.value
            row.rejected_by = req.rejected_by
            row.closed_at = req.closed_at
            row.version = (row.version or 0) + 1

    def update_approval(
        self,
        request_id: str,
        change: Callable[[ApprovalRequest], None],
        *,
        attempts: int = 10,
    ) -> Optional[ApprovalRequest]:
        """
        Apply `change` to the current request and write it back only if no
        one else wrote in between; on a conflict, re-read and apply again.

        `change` may raise to abort (nothing is written). Returns None for
        an unknown request id.
        """
        for attempt in range(attempts):
            with self.Session() as s:
                row = s.get(ApprovalRow, request_id)
                if row is None:
                    return None
                req = self._approval_from_row(row)
                seen = row.version or 0

            change(req)

            try:
                with self.Session() as s, s.begin():
                    result = s.execute(
                        sa.update(ApprovalRow)
                        .where(
                            ApprovalRow.request_id == request_id,
                            ApprovalRow.version == seen,
                            ApprovalRow.state == ApprovalState.OPEN.value,
                        )
                        .values(
                            granted=sorted(req.granted),
                            state=req.state.value,
                            rejected_by=req.rejected_by,
                            closed_at=req.closed_at,
                            version=seen + 1,
                        )
                    )
                    if result.rowcount == 1:
                        return req
            except OperationalError as e:
                # SQLite reports a concurrent writer as "database is locked"
                logger.debug("approval %s: write conflict (%s), retrying", request_id, e)

            logger.debug("approval %s changed concurrently, retrying (%d)", request_id, attempt + 1)
            time.sleep(0.01 * (attempt + 1))

        raise StoreError(f"approval {request_id} kept changing; gave up after {attempts} attempts")

    def get_approval(self, request_id: str) -> Optional[ApprovalRequest]:
        with self.Session() as s:
            row = s.get(ApprovalRow, request_id)
            return self._approval_from_row(row) if row else None

    def find_approval(self, run_id: str, job: str) -> Optional[ApprovalRequest]:
        with self.Session() as s:
            row = s.scalars(
                sa.select(ApprovalRow)
                .where(ApprovalRow.run_id == run_id, ApprovalRow.job == job)
                .order_by(ApprovalRow.created_at.desc())
            ).first()
            return self._approval_from_row(row) if row else None

    def list_approvals(self, state: Optional[ApprovalState] = None) -> List[ApprovalRequest]:
        with self.Session() as s:
            q = sa.select(ApprovalRow).order_by(ApprovalRow.created_at)
            if state is not None:
                q = q.where(ApprovalRow.state == state.value)
            return [self._approval_from_row(r) for r in s.scalars(q).all()]

    @staticmethod
    def _approval_from_row(row: ApprovalRow) -> ApprovalRequest:
        return ApprovalRequest(
            request_id=row.request_id,
            run_id=row.run_id,
            job=row.job,
            environment=row.environment,
            required=frozenset(row.required or []),
            granted=set(row.granted or []),
            state=ApprovalState(row.state),
            rejected_by=row.rejected_by,
            created_at=_aware(row.created_at),
            closed_at=_aware(row.closed_at),
        )

    # -------------------- Releases --------------------

    def add_release(self, release: Release) -> None:
        with self.Session() as s, s.begin():
            if s.get(ReleaseRow, release.tag) is not None:
                raise StoreError(f"release {release.tag} already exists")
            s.add(
                ReleaseRow(
                    tag=release.tag,
                    commit=release.commit,
                    notes=release.notes,
                    artifacts=list(release.artifacts),
                    created_at=release.created_at,
                )
            )
        logger.info("recorded release %s at %s", release.tag, release.commit[:12])

    def get_release(self, tag: str) -> Optional[Release]:
        with self.Session() as s:
            row = s.get(ReleaseRow, tag)
            return self._release_from_row(row) if row else None

    def list_releases(self) -> List[Release]:
        with self.Session() as s:
            rows = s.scalars(sa.select(ReleaseRow).order_by(ReleaseRow.created_at)).all()
            return [self._release_from_row(r) for r in rows]

    def releases_for_commit(self, commit: str) -> List[Release]:
        with self.Session() as s:
            rows = s.scalars(sa.select(ReleaseRow).where(ReleaseRow.commit == commit)).all()
            return [self._release_from_row(r) for r in rows]

    @staticmethod
    def _release_from_row(row: ReleaseRow) -> Release:
        return Release(
            tag=row.tag,
            commit=row.commit,
            notes=row.notes or "",
            artifacts=tuple(row.artifacts or ()),
            created_at=_aware(row.created_at),
        )
