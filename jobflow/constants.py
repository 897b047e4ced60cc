"""Default workflow constants for jobflow."""

DEFAULT_TERMINAL_STEP = "JMS Hard copy submitted"
DEFAULT_MIN_REASON_LENGTH = 10
DEFAULT_MIN_TITLE_LENGTH = 3
DEFAULT_STALE_AFTER_DAYS = 3
DEFAULT_CREATE_PERMISSION = "manage_job_progress"

DEFAULT_PRIVILEGED_ROLES = ["Admin", "Project Coordinator", "Document Controller"]

DEFAULT_STEP_CATALOGUE = [
    "JMS created",
    "Sent to site for measurement",
    "Measurement verified",
    "Sent to client for signature",
    "Signed by client",
    "JMS no created",
    "Sent to office",
    "Verified by office",
    DEFAULT_TERMINAL_STEP,
]

DEFAULT_REOPEN_STEPS = [
    "Revision requested by client",
    "Measurement correction",
    "Resubmission",
]

NOTIFICATION_TOPIC_PREFIX = "jobflow.notifications"
