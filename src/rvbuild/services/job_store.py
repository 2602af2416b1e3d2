from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..core.models import BuildJob, JobStatus


class BuildRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    package: str = Field(index=True)
    status: JobStatus = JobStatus.PENDING
    sandbox: str = ""
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


def _ts(epoch: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(epoch) if epoch is not None else None


class JobStore:
    """Build history: one row per dispatch."""

    def __init__(self, url="sqlite:///./rvbuild.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def add(self, rec: BuildRecord) -> BuildRecord:
        with self.SessionLocal() as s:
            s.add(rec)
            s.commit()
            s.refresh(rec)
            return rec

    def get(self, record_id: int) -> Optional[BuildRecord]:
        with self.SessionLocal() as s:
            return s.get(BuildRecord, record_id)

    def update(self, rec: BuildRecord) -> BuildRecord:
        with self.SessionLocal() as s:
            db_rec = s.merge(rec)
            s.commit()
            return db_rec

    def latest(self, package: str) -> Optional[BuildRecord]:
        with self.SessionLocal() as s:
            stmt = (select(BuildRecord).where(BuildRecord.package == package)
                    .order_by(BuildRecord.id.desc()).limit(1))
            return s.exec(stmt).first()

    def list(self, limit: int = 100) -> List[BuildRecord]:
        with self.SessionLocal() as s:
            stmt = select(BuildRecord).order_by(BuildRecord.id.desc()).limit(limit)
            return list(s.exec(stmt).all())

    # ----- scheduler hooks -----

    def start(self, job: BuildJob) -> BuildRecord:
        rec = self.add(BuildRecord(
            package=job.package,
            status=JobStatus.RUNNING,
            sandbox=str(job.sandbox),
            pid=job.pid,
            started_at=_ts(job.started_at),
        ))
        job.record_id = rec.id
        return rec

    def finish(self, job: BuildJob, reason: Optional[str] = None) -> Optional[BuildRecord]:
        rec = self.get(job.record_id) if job.record_id is not None else None
        if rec is None:
            return None
        rec.status = job.status
        rec.exit_code = job.exit_code
        rec.reason = reason
        rec.finished_at = _ts(job.finished_at)
        return self.update(rec)
