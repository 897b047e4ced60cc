"""jobflow: multi-step job progress tracking with audited hand-offs."""

from .contracts import Rejection, RejectionReason, Transition, TransitionRequest
from .controller import JobLifecycleController
from .engine import TransitionEngine
from .errors import JobflowError, JobNotFoundError, StorageUnavailableError, TransitionRejected
from .models import Job, JobStatus, Step, StepStatus
from .notify import Notifier
from .persistence import get_repository
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "Job",
    "JobStatus",
    "Step",
    "StepStatus",
    "Transition",
    "TransitionRequest",
    "Rejection",
    "RejectionReason",
    "TransitionEngine",
    "JobLifecycleController",
    "Notifier",
    "JobflowError",
    "JobNotFoundError",
    "StorageUnavailableError",
    "TransitionRejected",
    "get_repository",
    "get_transport",
]
