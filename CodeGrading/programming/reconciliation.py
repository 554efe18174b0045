# programming/reconciliation.py
"""
Apply a finished evaluation to the record that asked for it.

Package jobs: the question moves Clean -> PendingEvaluation when a package change commits,
and back to Clean here, either by applying the result (the job is still the question's
handle, for the same attachment and epoch) or by discarding it (anything else). Every write
is a compare-and-set under the question's row lock, and the question is saved with
``update_fields`` so its audit columns (updated_at, updater) keep the author's values.
"""
from __future__ import annotations

import logging

from django.db import transaction
from django.utils import timezone

from attachments import store
from .grading import EvaluationOutcome
from .models import EvaluationJob, ProgrammingAnswer, ProgrammingQuestion, TemplateFile, TestCase

logger = logging.getLogger(__name__)

APPLIED = "applied"
DISCARDED = "discarded"
ROLLED_BACK = "rolled_back"


def is_stale(job: EvaluationJob, question: ProgrammingQuestion) -> bool:
    return (
        question.import_job_id != job.id
        or job.epoch != question.package_epoch
        or job.attachment_id != question.pending_package_id
    )


def reconcile_package_job(job_id, outcome) -> str:
    with transaction.atomic():
        job = EvaluationJob.objects.select_for_update().get(pk=job_id)
        question = ProgrammingQuestion.objects.select_for_update().get(pk=job.question_id)

        if is_stale(job, question):
            _finish(job, outcome, discarded=True)
            if question.import_job_id == job.id:
                question.import_job = None
                question.save(update_fields=["import_job"])
            logger.info("reconcile: job %s superseded (job epoch %s, question epoch %s), result discarded",
                        job.id, job.epoch, question.package_epoch)
            return DISCARDED

        if outcome.ok:
            _replace_package_contents(question, outcome.package)
            previous = question.package
            question.package = question.pending_package
            question.pending_package = None
            question.import_job = None
            question.evaluation_failed = False
            question.evaluation_error = ""
            question.save(update_fields=["package", "pending_package", "import_job",
                                         "evaluation_failed", "evaluation_error"])
            if previous is not None and previous.pk != question.package_id:
                store.detach(previous)
            _finish(job, outcome)
            logger.info("reconcile: job %s applied to question %s", job.id, question.pk)
            return APPLIED

        rejected = question.pending_package
        question.pending_package = None
        question.import_job = None
        question.evaluation_failed = True
        question.evaluation_error = outcome.error
        question.save(update_fields=["pending_package", "import_job", "evaluation_failed", "evaluation_error"])
        if rejected is not None and rejected.pk != question.package_id:
            store.detach(rejected)
        _finish(job, outcome)
        logger.warning("reconcile: job %s failed, question %s keeps package %s: %s",
                       job.id, question.pk, question.package_id, outcome.error)
        return ROLLED_BACK


def reconcile_answer_job(job_id, outcome) -> str:
    with transaction.atomic():
        job = EvaluationJob.objects.select_for_update().get(pk=job_id)
        answer = ProgrammingAnswer.objects.select_for_update().get(pk=job.answer_id)
        if answer.grading_job_id != job.id:
            _finish(job, outcome, discarded=True)
            return DISCARDED

        answer.grading_job = None
        if outcome.ok:
            answer.grade_status = ProgrammingAnswer.GradeStatus.GRADED
            answer.passed_count = outcome.passed_count
            answer.total_count = len(outcome.results)
            answer.grade_report = outcome.as_result()
            answer.grading_error = ""
        else:
            answer.grade_status = ProgrammingAnswer.GradeStatus.FAILED
            answer.grading_error = outcome.error
        answer.save(update_fields=["grading_job", "grade_status", "passed_count", "total_count",
                                   "grade_report", "grading_error", "updated_at"])
        _finish(job, outcome)
    logger.info("reconcile: answer %s graded by job %s (%s)", answer.pk, job.id, answer.grade_status)
    return APPLIED if outcome.ok else ROLLED_BACK


def fail_job(job_id, error: str) -> str:
    """Terminal failure of a job that produced no outcome (crashed evaluator, retries spent)."""
    job = EvaluationJob.objects.get(pk=job_id)
    outcome = EvaluationOutcome(ok=False, error=error)
    if job.kind == EvaluationJob.Kind.ANSWER:
        return reconcile_answer_job(job_id, outcome)
    return reconcile_package_job(job_id, outcome)


def _replace_package_contents(question: ProgrammingQuestion, validated) -> None:
    question.template_files.all().delete()
    question.test_cases.all().delete()
    TemplateFile.objects.bulk_create([
        TemplateFile(question=question, filename=t.filename, content=t.content)
        for t in validated.template_files
    ])
    TestCase.objects.bulk_create([
        TestCase(question=question, identifier=t.identifier, test_case_type=t.test_case_type,
                 expression=t.expression, expected=t.expected, hint=t.hint)
        for t in validated.test_cases
    ])


def _finish(job: EvaluationJob, outcome, *, discarded: bool = False) -> None:
    # A cancelled job stays cancelled; only its result is recorded.
    if job.status in EvaluationJob.LIVE_STATUSES:
        job.status = EvaluationJob.Status.SUCCEEDED if outcome.ok else EvaluationJob.Status.FAILED
    job.result = outcome.as_result()
    job.error = outcome.error
    job.discarded = discarded or job.discarded
    job.finished_at = job.finished_at or timezone.now()
    job.save(update_fields=["status", "result", "error", "discarded", "finished_at"])
