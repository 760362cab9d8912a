from .dsl import job, sh, action, call, environment, matrix, pipeline, JobBuilder, build
from .scheduler import PipelineScheduler, run_pipeline
from .model import Job, Step, Environment, PipelineDefinition, JobStatus, RunOutcome, RunRecord
from .release import ReleaseController, GitSourceControl, Version, next_version, release_step
from .rollout import RolloutController, RolloutPlan, HealthProbe, rollout_step

__all__ = [
    "job", "sh", "action", "call", "environment", "matrix", "pipeline", "JobBuilder", "build",
    "PipelineScheduler", "run_pipeline",
    "Job", "Step", "Environment", "PipelineDefinition", "JobStatus", "RunOutcome", "RunRecord",
    "ReleaseController", "GitSourceControl", "Version", "next_version", "release_step",
    "RolloutController", "RolloutPlan", "HealthProbe", "rollout_step",
]
