from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from ..core.errors import ConfigurationError
from ..core.models import JobStatus
from ..core.utils import tail_file
from ..isolation.processes import iter_processes
from ..services.job_store import JobStore
from ..services.monitor import inspect_build_dir
from ..services.storage import BuildLayout, BuildStorage
from ..settings import Settings


class RecordOut(BaseModel):
    id: Optional[int] = None
    package: str
    status: str
    sandbox: str
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class BuildOut(BaseModel):
    package: str
    status: str
    build_dir: str
    artifacts: int
    last_line: str = ""
    reason: Optional[str] = None
    record: Optional[RecordOut] = None


class LogsOut(BaseModel):
    package: str
    path: str
    lines: List[str]


def _record_out(rec) -> RecordOut:
    return RecordOut(
        id=rec.id, package=rec.package, status=JobStatus(rec.status).value,
        sandbox=rec.sandbox, pid=rec.pid, exit_code=rec.exit_code, reason=rec.reason,
        started_at=rec.started_at, finished_at=rec.finished_at,
    )


def create_app(
    settings: Settings,
    store: Optional[JobStore] = None,
    storage: Optional[BuildStorage] = None,
    processes=iter_processes,
) -> FastAPI:
    app = FastAPI(title="rvbuild status")
    store = store or JobStore(settings.db_url)
    storage = storage or BuildStorage(settings.base_dir)

    def _layout(package: str) -> BuildLayout:
        try:
            layout = storage.layout(package)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return layout

    def _known(package: str) -> BuildLayout:
        layout = _layout(package)
        if not layout.root.is_dir() and store.latest(package) is None:
            raise HTTPException(status_code=404, detail=f"unknown package: {package}")
        return layout

    @app.get("/")
    def read_root():
        return {"message": "rvbuild status API", "base_dir": str(settings.base_dir)}

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/builds", response_model=List[RecordOut])
    def list_builds(limit: int = Query(100, ge=1, le=1000)):
        return [_record_out(r) for r in store.list(limit)]

    @app.get("/builds/{package}", response_model=BuildOut)
    def get_build(package: str):
        layout = _known(package)
        st = inspect_build_dir(layout, processes)
        rec = store.latest(package)
        return BuildOut(**st.to_dict(), record=_record_out(rec) if rec else None)

    @app.get("/builds/{package}/logs", response_model=LogsOut)
    def get_logs(package: str, lines: int = Query(50, ge=1, le=5000)):
        layout = _known(package)
        path = layout.build_log if layout.build_log.is_file() else layout.dispatch_log
        return LogsOut(package=package, path=str(path), lines=tail_file(path, lines))

    @app.get("/builds/{package}/failure")
    def get_failure(package: str):
        layout = _known(package)
        record = layout.load_failure()
        if record is None:
            raise HTTPException(status_code=404, detail=f"no failure recorded for {package}")
        return record.to_dict()

    return app
