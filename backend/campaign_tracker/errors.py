"""
Domain exceptions for the campaign tracker.

Routes translate these into HTTP responses (see main.py); services raise
them and never build HTTPException themselves.
"""
from __future__ import annotations


class CampaignTrackerError(Exception):
    """Base exception for the campaign tracker."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(CampaignTrackerError):
    """Unknown campaign/post/job/task id."""

    def __init__(self, resource: str = "Resource", resource_id: object = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with id '{resource_id}' not found"
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message)


class ValidationError(CampaignTrackerError):
    """Malformed URL or missing/invalid field."""

    def __init__(self, message: str = "Validation failed", field: str | None = None):
        if field:
            message = f"Validation failed for field '{field}': {message}"
        self.field = field
        super().__init__(message)


class DuplicateResourceError(CampaignTrackerError):
    """A post with the same post key already exists in the campaign."""

    def __init__(self, resource: str = "Resource", field: str | None = None, value: str | None = None, existing_id: int | None = None):
        if field and value:
            message = f"{resource} with {field} '{value}' already exists"
        else:
            message = f"{resource} already exists"
        self.existing_id = existing_id
        super().__init__(message)


class AlreadyRunningError(CampaignTrackerError):
    """A non-terminal scrape job already exists for the campaign."""

    def __init__(self, campaign_id: int, job_id: int | None = None):
        self.campaign_id = campaign_id
        self.job_id = job_id
        super().__init__(f"A scrape job is already running for campaign {campaign_id}")


class FetchFailure(CampaignTrackerError):
    """Metric fetch failed. Retryable unless the cause is permanent."""

    def __init__(self, message: str = "Fetch failed", *, retryable: bool = True, provider: str | None = None):
        self.retryable = retryable
        self.provider = provider
        super().__init__(message)


class FetchTimeout(FetchFailure):
    """Metric fetch exceeded its deadline; handled like any retryable failure."""

    def __init__(self, timeout_sec: float, provider: str | None = None):
        self.timeout_sec = timeout_sec
        super().__init__(f"fetch timeout after {timeout_sec:g}s", retryable=True, provider=provider)


class RetriesExhausted(CampaignTrackerError):
    """Terminal task failure. Recorded on the task/post, not raised to callers."""

    def __init__(self, task_id: int, attempts: int, last_error: str | None = None):
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Task {task_id} failed after {attempts} attempts: {last_error or 'unknown error'}")


class AccessDeniedError(CampaignTrackerError):
    """Wrong or missing share password."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)
