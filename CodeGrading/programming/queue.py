# programming/queue.py
"""
Evaluation job queue.

A job row (EvaluationJob) is the durable handle; Celery only carries its id. Jobs are
created and dispatched after the transaction that changed the package has committed, so a
worker never sees an attachment id that is not yet visible to it.

The question's ``import_job`` column is the live handle. Enqueueing overwrites it; the
previous job is superseded: revoked if it has not started, otherwise left to finish and
be discarded by reconciliation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from attachments import store
from . import evaluator
from .errors import AlreadyTerminal, EnqueueFailed
from .package import MAX_TEST_CASES
from .models import EvaluationJob, ProgrammingAnswer, ProgrammingQuestion

logger = logging.getLogger(__name__)

Status = EvaluationJob.Status

# Time the worker gets on top of the test cases themselves (download, validation, reconcile).
TASK_SLACK_SECONDS = 60


@dataclass
class JobState:
    job_id: str
    status: str
    result: Optional[Any] = None
    error: str = ""
    discarded: bool = False


def enqueue(question_id: int, attachment_id: int, *, restore_on_failure: bool = True) -> str:
    """Create and dispatch a package evaluation for the question's current epoch.

    Idempotent: a live job for the same attachment and epoch is returned as is.
    Raises EnqueueFailed when the broker cannot take the job, after putting the question back
    to its applied package (or, with ``restore_on_failure`` off, leaving the package pending
    for the recovery sweep).
    """
    with transaction.atomic():
        question = ProgrammingQuestion.objects.select_for_update().get(pk=question_id)
        if question.current_package_id != attachment_id:
            raise ValueError(f"attachment {attachment_id} is not the current package of question {question_id}")

        live = question.import_job
        if (live is not None and not live.is_terminal and live.attachment_id == attachment_id
                and live.epoch == question.package_epoch):
            return str(live.id)

        job = EvaluationJob.objects.create(
            kind=EvaluationJob.Kind.PACKAGE, question=question,
            attachment_id=attachment_id, epoch=question.package_epoch,
        )
        superseded = live if live is not None and not live.is_terminal else None
        question.import_job = job
        question.save(update_fields=["import_job"])

    if superseded is not None:
        supersede(superseded)

    try:
        dispatch(job)
    except EnqueueFailed:
        if restore_on_failure:
            _restore_after_failed_enqueue(question_id, job)
        else:
            _finish(job.id, Status.FAILED, error="enqueue failed")
        raise
    logger.info("enqueue: question %s attachment %s -> job %s (epoch %s)",
                question_id, attachment_id, job.id, job.epoch)
    return str(job.id)


def enqueue_answer(answer_id: int) -> str:
    """Create and dispatch a grading job for an answer; a newer request supersedes older ones."""
    with transaction.atomic():
        answer = ProgrammingAnswer.objects.select_for_update().select_related("question").get(pk=answer_id)
        live = answer.grading_job
        job = EvaluationJob.objects.create(
            kind=EvaluationJob.Kind.ANSWER, question=answer.question, answer=answer,
            attachment_id=answer.question.package_id, epoch=answer.question.package_epoch,
        )
        answer.grading_job = job
        answer.grade_status = ProgrammingAnswer.GradeStatus.GRADING
        answer.grading_error = ""
        answer.save(update_fields=["grading_job", "grade_status", "grading_error"])

    if live is not None and not live.is_terminal:
        supersede(live)

    try:
        dispatch(job)
    except EnqueueFailed:
        _finish(job.id, Status.FAILED, error="enqueue failed")
        ProgrammingAnswer.objects.filter(pk=answer_id, grading_job_id=job.id).update(
            grading_job=None, grade_status=ProgrammingAnswer.GradeStatus.NOT_GRADED
        )
        raise
    logger.info("enqueue_answer: answer %s -> job %s", answer_id, job.id)
    return str(job.id)


def time_limits(job: EvaluationJob) -> Tuple[int, int]:
    """Soft and hard task time limits that let every test case use its whole allowance.

    An answer runs against the question's test cases; a package is not unpacked yet, so its
    bound is the most test cases a package may declare.
    """
    question = job.question
    cases = question.test_cases.count() if job.kind == EvaluationJob.Kind.ANSWER else MAX_TEST_CASES
    soft = evaluator.time_budget(evaluator.Limits.for_question(question), cases) + TASK_SLACK_SECONDS
    return soft, soft + TASK_SLACK_SECONDS


def dispatch(job: EvaluationJob) -> None:
    from .tasks import evaluate_job

    soft, hard = time_limits(job)
    EvaluationJob.objects.filter(pk=job.pk).update(time_limit=hard)
    job.time_limit = hard
    try:
        evaluate_job.apply_async(args=(str(job.id),), task_id=str(job.id),
                                 soft_time_limit=soft, time_limit=hard)
    except Exception as e:
        logger.error("dispatch: job %s could not be queued: %s", job.id, e)
        raise EnqueueFailed(f"evaluation job could not be queued: {e}") from e


def _restore_after_failed_enqueue(question_id: int, job: EvaluationJob) -> None:
    _finish(job.id, Status.FAILED, error="enqueue failed")
    with transaction.atomic():
        question = ProgrammingQuestion.objects.select_for_update().get(pk=question_id)
        if question.import_job_id != job.id:
            return
        pending = question.pending_package
        question.import_job = None
        question.pending_package = None
        question.save(update_fields=["import_job", "pending_package"])
        if pending is not None and pending.pk != question.package_id:
            store.detach(pending)
    logger.warning("enqueue: question %s restored to package %s after failed enqueue",
                   question_id, question.package_id)


def status(job_id) -> JobState:
    job = EvaluationJob.objects.get(pk=job_id)
    return JobState(job_id=str(job.id), status=job.status, result=job.result,
                    error=job.error, discarded=job.discarded)


def cancel(job_id) -> JobState:
    """Cancel a live job. The question (or answer) holding it goes back to its applied state."""
    with transaction.atomic():
        job = EvaluationJob.objects.select_for_update().get(pk=job_id)
        if job.is_terminal:
            raise AlreadyTerminal(job.id, job.status)
        job.status = Status.CANCELLED
        job.finished_at = timezone.now()
        job.save(update_fields=["status", "finished_at"])

        if job.kind == EvaluationJob.Kind.PACKAGE:
            question = ProgrammingQuestion.objects.select_for_update().get(pk=job.question_id)
            if question.import_job_id == job.id:
                pending = question.pending_package
                question.import_job = None
                question.pending_package = None
                question.save(update_fields=["import_job", "pending_package"])
                if pending is not None and pending.pk != question.package_id:
                    store.detach(pending)
        else:
            ProgrammingAnswer.objects.filter(pk=job.answer_id, grading_job_id=job.id).update(
                grading_job=None, grade_status=ProgrammingAnswer.GradeStatus.NOT_GRADED
            )

    _revoke(job.id)
    logger.info("cancel: job %s cancelled", job.id)
    return status(job.id)


def supersede(job: EvaluationJob) -> None:
    """A newer job replaced ``job``. If it never started, cancel and revoke it; if it is
    running, let it finish: reconciliation will discard its result."""
    updated = EvaluationJob.objects.filter(pk=job.pk, status=Status.PENDING).update(
        status=Status.CANCELLED, finished_at=timezone.now(), discarded=True
    )
    if updated:
        _revoke(job.pk)
        logger.info("supersede: job %s cancelled before it started", job.pk)


def mark_running(job_id) -> bool:
    """pending -> running; False if the job was cancelled or already picked up."""
    return bool(EvaluationJob.objects.filter(pk=job_id, status=Status.PENDING).update(
        status=Status.RUNNING, started_at=timezone.now()
    ))


def _finish(job_id, job_status: str, *, result=None, error: str = "", discarded: bool = False) -> None:
    EvaluationJob.objects.filter(pk=job_id).update(
        status=job_status, result=result, error=error, discarded=discarded, finished_at=timezone.now()
    )


def _revoke(job_id) -> None:
    from .tasks import evaluate_job

    try:
        evaluate_job.app.control.revoke(str(job_id))
    except Exception as e:
        # The job row is already terminal; the worker skips it even if the revoke is lost.
        logger.warning("_revoke: could not revoke job %s: %s", job_id, e)
