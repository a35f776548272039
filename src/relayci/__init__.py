from .dsl import JobBuilder, build, download, job, matrix, pipeline, sh, triggers, upload, uses, wf
from .loader import load_pipeline
from .model import Event, Job, JobStatus, Pipeline, PipelineRun, RunStatus, Step
from .scheduler import Scheduler, run_pipeline

__all__ = [
    "Event",
    "Job",
    "JobBuilder",
    "JobStatus",
    "Pipeline",
    "PipelineRun",
    "RunStatus",
    "Scheduler",
    "Step",
    "build",
    "download",
    "job",
    "load_pipeline",
    "matrix",
    "pipeline",
    "run_pipeline",
    "sh",
    "triggers",
    "upload",
    "uses",
    "wf",
]
