from .dsl import job, sh, uses, matrix, pipeline, on_push, on_pull_request, wf, JobBuilder, build
from .model import Step, JobTemplate, JobInstance, JobStatus, Pipeline, RunVerdict, CorrelationPolicy
from .runner import run_pipeline, run_graph, Scheduler, CancelToken
from .config import RunConfig

__all__ = [
    "job", "sh", "uses", "matrix", "pipeline", "on_push", "on_pull_request", "wf", "JobBuilder", "build",
    "Step", "JobTemplate", "JobInstance", "JobStatus", "Pipeline", "RunVerdict", "CorrelationPolicy",
    "run_pipeline", "run_graph", "Scheduler", "CancelToken", "RunConfig",
]
