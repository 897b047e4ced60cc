"""Typed exceptions raised by jobflow.

Every exception carries a machine readable ``code`` so callers can branch on
the kind of failure instead of parsing messages::

    JobflowError
    +-- TransitionRejected       (code = rejection reason)
    +-- JobNotFoundError         (JOB_NOT_FOUND)
    +-- StorageUnavailableError  (STORAGE_UNAVAILABLE)
    +-- ConfigurationError       (CONFIGURATION_ERROR)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .contracts import Rejection


class JobflowError(Exception):
    """Base class for all jobflow errors."""

    code: str = "JOBFLOW_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class TransitionRejected(JobflowError):
    """A requested transition was refused by the engine."""

    def __init__(self, rejection: "Rejection") -> None:
        self.rejection = rejection
        self.code = rejection.reason.value
        super().__init__(rejection.message)

    @property
    def reason(self):
        return self.rejection.reason


class JobNotFoundError(JobflowError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class StorageUnavailableError(JobflowError):
    """The workflow store could not be reached or failed mid-transaction."""

    code = "STORAGE_UNAVAILABLE"


class ConfigurationError(JobflowError):
    code = "CONFIGURATION_ERROR"
