"""Background workers for scheduled settlement jobs."""
from .job_runner import start_job_runner

__all__ = ["start_job_runner"]
