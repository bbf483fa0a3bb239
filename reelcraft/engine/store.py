import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import PersistFailed
from .schemas import DONE, FAILED, QUEUED, RUNNING, TERMINAL_STATUSES, MediaItem, RenderJob, RenderOptions

logger = logging.getLogger(__name__)


def _now() -> datetime:
    # naive UTC so SQLite and Postgres compare the same way
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class RenderJobRow(Base):
    __tablename__ = "render_jobs"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    owner = Column(String(320), nullable=False)
    status = Column(String(16), nullable=False, default=QUEUED)
    items = Column(JSON, nullable=False)
    options = Column(JSON, nullable=False)
    output_url = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_now)
    updated_at = Column(DateTime, nullable=False, default=_now)

    __table_args__ = (
        Index("ix_render_jobs_status_created_at", status, created_at),
        Index("ix_render_jobs_owner_created_at", owner, created_at),
    )

    def __repr__(self):
        return f"<RenderJobRow id={self.id} owner={self.owner} status={self.status}>"


class RenderRow(Base):
    __tablename__ = "renders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String(320), nullable=False)
    file_name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    bytes = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_now)

    __table_args__ = (Index("ix_renders_owner_created_at", owner, created_at),)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "url": self.url,
            "bytes": self.bytes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<RenderRow id={self.id} owner={self.owner} file_name={self.file_name}>"


def make_engine(database_url: str):
    kwargs = {}
    if database_url.startswith("sqlite"):
        # the scheduler thread and request threads share the engine
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def _to_job(row: RenderJobRow) -> RenderJob:
    return RenderJob(
        id=row.id,
        owner=row.owner,
        status=row.status,
        items=[MediaItem.from_dict(raw) for raw in row.items or []],
        options=RenderOptions.from_dict(row.options),
        output_url=row.output_url,
        error=row.error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class JobStore:
    """
    Persisted job queue plus artifact bookkeeping.

    Every state change is a conditional UPDATE on the current status, so two
    workers (threads or processes) sharing one database can never both move
    the same job, and terminal jobs never move again.
    """

    def __init__(self, database_url: str, create_tables: bool = True):
        self.engine = make_engine(database_url)
        self._session = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # jobs

    def create_job(self, owner: str, items: List[MediaItem], options: RenderOptions) -> RenderJob:
        row = RenderJobRow(
            id=uuid.uuid4().hex,
            owner=owner,
            status=QUEUED,
            items=[it.to_dict() for it in items],
            options=options.to_dict(),
        )
        with self._session.begin() as s:
            s.add(row)
        logger.info(f"Queued job {row.id} for {owner} ({len(items)} items)")
        return _to_job(row)

    def get_job(self, job_id: str) -> Optional[RenderJob]:
        with self._session() as s:
            row = s.get(RenderJobRow, job_id)
            return _to_job(row) if row else None

    def get_job_for_owner(self, job_id: str, owner: str) -> Optional[RenderJob]:
        job = self.get_job(job_id)
        if job is None or job.owner != owner:
            return None
        return job

    def oldest_queued(self) -> Optional[RenderJob]:
        stmt = (
            select(RenderJobRow)
            .where(RenderJobRow.status == QUEUED)
            .order_by(RenderJobRow.created_at, RenderJobRow.id)
            .limit(1)
        )
        with self._session() as s:
            row = s.execute(stmt).scalars().first()
            return _to_job(row) if row else None

    def _transition(self, job_id: str, from_status: str, **values) -> bool:
        if from_status in TERMINAL_STATUSES:
            raise ValueError(f"jobs never leave {from_status}")
        stmt = (
            update(RenderJobRow)
            .where(RenderJobRow.id == job_id, RenderJobRow.status == from_status)
            .values(updated_at=_now(), **values)
        )
        with self._session.begin() as s:
            result = s.execute(stmt)
            return result.rowcount == 1

    def claim(self, job_id: str) -> bool:
        """QUEUED -> RUNNING. False means another worker got there first."""
        return self._transition(job_id, QUEUED, status=RUNNING)

    def mark_done(self, job_id: str, output_url: str) -> bool:
        return self._transition(job_id, RUNNING, status=DONE, output_url=output_url, error=None)

    def mark_failed(self, job_id: str, error: str) -> bool:
        return self._transition(job_id, RUNNING, status=FAILED, error=error[:500])

    def requeue_stale(self, older_than_sec: float) -> int:
        """Operator reset: RUNNING jobs untouched for `older_than_sec` go back to QUEUED."""
        cutoff = _now() - timedelta(seconds=older_than_sec)
        stmt = (
            update(RenderJobRow)
            .where(RenderJobRow.status == RUNNING, RenderJobRow.updated_at < cutoff)
            .values(status=QUEUED, updated_at=_now())
        )
        with self._session.begin() as s:
            count = s.execute(stmt).rowcount
        if count:
            logger.warning(f"Requeued {count} stale running job(s)")
        return count

    # artifacts

    def record_render(self, owner: str, file_name: str, url: str, size: int) -> int:
        try:
            with self._session.begin() as s:
                row = RenderRow(owner=owner, file_name=file_name, url=url, bytes=size)
                s.add(row)
                s.flush()
                return row.id
        except SQLAlchemyError as e:
            raise PersistFailed("record_render", detail=str(e))

    def list_renders(self, owner: str, limit: Optional[int] = None) -> List[RenderRow]:
        stmt = (
            select(RenderRow)
            .where(RenderRow.owner == owner)
            .order_by(RenderRow.created_at.desc(), RenderRow.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as s:
            return list(s.execute(stmt).scalars())

    def prune_renders(self, owner: str, keep: int, renders_dir: str | Path) -> List[str]:
        """
        Delete the owner's artifacts beyond the newest `keep`.

        The file goes first and the row only once the file is gone, so a
        file is never orphaned from its row. A file that is already missing
        counts as deleted. Returns the pruned file names.
        """
        pruned, failed = [], []
        try:
            with self._session.begin() as s:
                stmt = (
                    select(RenderRow)
                    .where(RenderRow.owner == owner)
                    .order_by(RenderRow.created_at.desc(), RenderRow.id.desc())
                    .offset(keep)
                )
                for row in s.execute(stmt).scalars().all():
                    path = Path(renders_dir) / row.file_name
                    try:
                        os.unlink(path)
                    except FileNotFoundError:
                        pass
                    except OSError as e:
                        logger.warning(f"Could not delete {path}: {e}")
                        failed.append(row.file_name)
                        continue
                    s.delete(row)
                    pruned.append(row.file_name)
        except SQLAlchemyError as e:
            raise PersistFailed("prune_renders", detail=str(e))
        if pruned:
            logger.info(f"Pruned {len(pruned)} old render(s) for {owner}")
        if failed:
            raise PersistFailed(f"could not delete {len(failed)} render file(s)")
        return pruned
