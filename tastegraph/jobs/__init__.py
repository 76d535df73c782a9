"""Jobs module for scheduled tasks."""

from tastegraph.jobs.scheduler import (
    get_scheduler,
    remove_job,
    setup_all_jobs,
    setup_sweep_job,
    shutdown_scheduler,
    start_scheduler,
)
from tastegraph.jobs.sweep import run_generation_sweep

__all__ = [
    "get_scheduler",
    "remove_job",
    "run_generation_sweep",
    "setup_all_jobs",
    "setup_sweep_job",
    "shutdown_scheduler",
    "start_scheduler",
]
