from .dsl import build_step, dependency_cache, gate, matrix, package_step, pipeline, platform_job, prerequisite, sh, verify
from .model import Pipeline, PipelineRun, PlatformBuildJob, Step
from .orchestrator import PipelineOrchestrator

__all__ = [
    "build_step",
    "dependency_cache",
    "gate",
    "matrix",
    "package_step",
    "pipeline",
    "platform_job",
    "prerequisite",
    "sh",
    "verify",
    "Pipeline",
    "PipelineRun",
    "PlatformBuildJob",
    "Step",
    "PipelineOrchestrator",
]
