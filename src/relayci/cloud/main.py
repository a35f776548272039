from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import sqlalchemy as sa
from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ..artifacts import LocalDiskBackend
from ..errors import PipelineError
from ..loader import find_pipeline_file, load_pipeline
from ..model import Event, Pipeline, PipelineRun
from ..notify import LogSink, WebhookSink
from ..scheduler import Scheduler
from ..secrets import EnvSecretProvider
from ..triggers import EVENT_KINDS, TickLedger, TriggerMatcher
from .db import make_engine, make_sessionmaker
from .models import Base, JobRecord, RunRecord, now_utc
from .redisq import make_ledger
from .settings import CloudSettings

log = logging.getLogger(__name__)

SchedulerFactory = Callable[[CloudSettings], Scheduler]

# -------------------- Schemas --------------------

class EventIn(BaseModel):
    kind: str
    ref: str = ""
    sha: str = ""
    base_ref: str = ""
    changed_files: list[str] = Field(default_factory=list)
    tick: Optional[datetime] = None
    inputs: dict[str, str] = Field(default_factory=dict)

    def to_event(self) -> Event:
        return Event(
            kind=self.kind,
            ref=self.ref,
            sha=self.sha,
            base_ref=self.base_ref,
            changed_files=list(self.changed_files),
            tick=self.tick,
            inputs=dict(self.inputs),
        )


class EventResponse(BaseModel):
    started: bool
    run_id: Optional[str] = None
    reason: Optional[str] = None


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


def default_scheduler(settings: CloudSettings) -> Scheduler:
    sinks = [LogSink()]
    if settings.webhook_url:
        sinks.append(WebhookSink(settings.webhook_url))
    return Scheduler(
        max_workers=settings.max_workers,
        fail_fast=settings.fail_fast,
        grace_period=settings.grace_period,
        isolate_workspaces=True,
        work_dir=settings.work_dir,
        artifact_backend=LocalDiskBackend(settings.artifact_dir),
        retention_days=settings.retention_days,
        secrets=EnvSecretProvider(settings.secret_prefix),
        sinks=sinks,
    )


def _job_rows(run: PipelineRun) -> list[JobRecord]:
    rows = []
    for jr in run.jobs.values():
        rows.append(JobRecord(
            run_id=run.run_id,
            job_name=jr.name,
            status=jr.status.value,
            reason=jr.reason,
            summary_json=jr.to_dict(),
            logs="\n".join(jr.log),
        ))
    return rows


def _finished_at(run: PipelineRun) -> Optional[datetime]:
    if run.finished_at is None:
        return None
    return datetime.fromtimestamp(run.finished_at, tz=timezone.utc)


def create_app(
    settings: Optional[CloudSettings] = None,
    *,
    pipeline: Optional[Pipeline] = None,
    ledger: Optional[TickLedger] = None,
    scheduler_factory: SchedulerFactory = default_scheduler,
) -> FastAPI:
    settings = settings or CloudSettings()
    if pipeline is None:
        pipeline = load_pipeline(settings.pipeline or find_pipeline_file("."))

    engine = make_engine(settings.database_url)
    SessionLocal = make_sessionmaker(engine)
    matcher = TriggerMatcher(
        pipeline.triggers,
        ledger or make_ledger(settings.redis_url, prefix=settings.tick_prefix, ttl_seconds=settings.tick_ttl_seconds),
    )
    # runs executing in this process, by run id
    live: Dict[str, PipelineRun] = {}

    app = FastAPI(title=settings.title)
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.live_runs = live

    @app.on_event("startup")
    async def startup() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        for run in live.values():
            run.cancel()
        await engine.dispose()

    async def execute(run: PipelineRun) -> None:
        scheduler = scheduler_factory(settings)
        try:
            await asyncio.to_thread(scheduler.run, run)
        except PipelineError as e:
            log.error("run %s could not start: %s", run.run_id, e)
        finally:
            async with SessionLocal() as s:
                async with s.begin():
                    record = await s.get(RunRecord, run.run_id)
                    if record is not None:
                        record.status = run.status.value
                        record.error = run.error
                        record.finished_at = _finished_at(run) or now_utc()
                        s.add_all(_job_rows(run))
            live.pop(run.run_id, None)

    # -------------------- Endpoints --------------------

    @app.post("/events", response_model=EventResponse, status_code=202)
    async def post_event(body: EventIn, background: BackgroundTasks):
        if body.kind not in EVENT_KINDS:
            raise HTTPException(status_code=422, detail=f"kind must be one of {list(EVENT_KINDS)}")
        event = body.to_event()
        if not matcher.should_start(event, pipeline.name):
            return EventResponse(started=False, reason="no matching trigger")

        run = PipelineRun(pipeline, event)
        async with SessionLocal() as s:
            async with s.begin():
                s.add(RunRecord(
                    id=run.run_id,
                    pipeline=pipeline.name,
                    status=run.status.value,
                    commit=run.commit,
                    event_json=event.to_dict(),
                ))
        live[run.run_id] = run
        background.add_task(execute, run)
        log.info("run %s queued for %s event", run.run_id, event.kind)
        return EventResponse(started=True, run_id=run.run_id)

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str) -> Dict[str, Any]:
        if run_id in live:
            return live[run_id].summary()
        async with SessionLocal() as s:
            record = await s.get(RunRecord, run_id)
            if record is None:
                raise HTTPException(status_code=404, detail="Run not found")
            jobs = (await s.execute(
                sa.select(JobRecord).where(JobRecord.run_id == run_id).order_by(JobRecord.id)
            )).scalars().all()
            return {
                "run_id": record.id,
                "pipeline": record.pipeline,
                "status": record.status,
                "commit": record.commit,
                "error": record.error,
                "event": record.event_json,
                "jobs": [j.summary_json for j in jobs],
            }

    @app.get("/runs/{run_id}/jobs/{job_name}/log", response_class=PlainTextResponse)
    async def get_job_log(run_id: str, job_name: str) -> str:
        if run_id in live:
            jr = live[run_id].jobs.get(job_name)
            if jr is None:
                raise HTTPException(status_code=404, detail="Job not found")
            return "\n".join(jr.log)
        async with SessionLocal() as s:
            job = (await s.execute(
                sa.select(JobRecord).where(JobRecord.run_id == run_id, JobRecord.job_name == job_name)
            )).scalar_one_or_none()
            if job is None:
                raise HTTPException(status_code=404, detail="Job not found")
            return job.logs

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    async def cancel_run(run_id: str):
        run = live.get(run_id)
        if run is not None:
            run.cancel()
            return CancelResponse(run_id=run_id, cancelled=True)
        async with SessionLocal() as s:
            record = await s.get(RunRecord, run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        raise HTTPException(status_code=409, detail=f"Run already {record.status}")

    return app
