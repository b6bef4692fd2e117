"""Pipeline orchestration for extraction jobs."""

from saga_extraction.pipeline.job_manager import JobManager, JobOptions, StartResult

__all__ = ["JobManager", "JobOptions", "StartResult"]
