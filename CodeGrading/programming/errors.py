# programming/errors.py
from django.core.exceptions import ValidationError


class PackageValidationError(ValidationError):
    """A package failed validation. ``message_dict`` maps field paths to messages,
    e.g. ``test_cases.public.0.expression``."""


class MalformedPackage(PackageValidationError):
    """The archive itself is unreadable, has no manifest, or breaks the manifest schema."""


class UnknownLanguage(KeyError):
    pass


class EnqueueFailed(Exception):
    """The evaluation could not be handed to the job queue; the previous package is kept."""


class EvaluatorCrashed(Exception):
    """The evaluator itself failed; no per-test result from the run can be trusted."""


class AlreadyTerminal(Exception):
    """The job already finished and can no longer be cancelled."""

    def __init__(self, job_id, status):
        super().__init__(f"job {job_id} is already {status}")
        self.job_id = job_id
        self.status = status
