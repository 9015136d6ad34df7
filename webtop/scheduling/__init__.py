"""Periodic job scheduling."""

from webtop.scheduling.scheduler import JobContext, JobError, JobScheduler, JobStatus

__all__ = ["JobContext", "JobError", "JobScheduler", "JobStatus"]
