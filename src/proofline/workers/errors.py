"""
Exceptions raised by the pipeline workers.

Errors marked permanent fail their job on the first attempt; retrying a job
whose integration or control does not exist cannot succeed.
"""


class WorkerError(Exception):
    """Base exception for worker errors."""

    pass


class IntegrationNotFoundError(WorkerError):
    """Raised when a job names an integration that is missing or not the customer's."""

    permanent = True


class ControlNotFoundError(WorkerError):
    """Raised when a job names a control that is not in the catalog."""

    permanent = True


class NoActiveIntegrationError(WorkerError):
    """Raised when evidence is missing and no integration can collect it."""

    pass
