# programming/tasks.py
from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings
from django.db.models import F, Q
from django.utils import timezone

from . import grading, queue, reconciliation
from .errors import EnqueueFailed, EvaluatorCrashed
from .models import EvaluationJob, ProgrammingAnswer, ProgrammingQuestion

logger = logging.getLogger(__name__)

WORKER_LOST = "The worker evaluating this job was lost before it finished."


def _redelivered(request) -> bool:
    return bool((getattr(request, "delivery_info", None) or {}).get("redelivered"))


@shared_task(bind=True, max_retries=2, default_retry_delay=10)
def evaluate_job(self, job_id: str) -> dict:
    """Evaluate one job (package or answer) and reconcile its result.

    A crashed evaluator is retried; once retries are spent the job fails and the question
    keeps its previous package. A job found running on first delivery was taken by a worker
    that died (redelivered message, or past its time limit) and fails the same way.
    """
    if self.request.retries == 0:
        started = queue.mark_running(job_id)
    else:
        # a retry starts a fresh time budget
        started = bool(EvaluationJob.objects.filter(pk=job_id, status=EvaluationJob.Status.RUNNING).update(
            started_at=timezone.now()
        ))
    if not started:
        job = EvaluationJob.objects.filter(pk=job_id).first()
        if job is not None and job.status == EvaluationJob.Status.RUNNING and (
                _redelivered(self.request) or job.is_overdue()):
            logger.error("evaluate_job: job %s was left running by a lost worker", job_id)
            return {"ok": False, "job": job_id, "reconciled": reconciliation.fail_job(job_id, WORKER_LOST)}
        logger.info("evaluate_job: job %s skipped (%s)", job_id, job.status if job else "missing")
        return {"ok": False, "status": job.status if job else "missing"}

    job = EvaluationJob.objects.select_related("question", "answer").get(pk=job_id)
    evaluate = grading.evaluate_answer if job.kind == EvaluationJob.Kind.ANSWER else grading.evaluate_package
    reconcile = (reconciliation.reconcile_answer_job if job.kind == EvaluationJob.Kind.ANSWER
                 else reconciliation.reconcile_package_job)

    try:
        outcome = evaluate(job)
    except EvaluatorCrashed as e:
        if self.request.retries < self.max_retries:
            logger.warning("evaluate_job: evaluator crashed on job %s, retrying: %s", job_id, e)
            raise self.retry(exc=e)
        logger.error("evaluate_job: evaluator crashed on job %s, giving up: %s", job_id, e)
        return {"ok": False, "job": job_id, "reconciled": reconciliation.fail_job(job_id, f"Evaluator crashed: {e}")}
    except SoftTimeLimitExceeded:
        logger.error("evaluate_job: job %s ran out of its time budget", job_id)
        return {"ok": False, "job": job_id,
                "reconciled": reconciliation.fail_job(job_id, "Evaluation exceeded its time budget.")}
    except Exception as e:
        logger.exception("evaluate_job: job %s failed", job_id)
        return {"ok": False, "job": job_id, "reconciled": reconciliation.fail_job(job_id, str(e) or type(e).__name__)}

    return {"ok": outcome.ok, "job": job_id, "reconciled": reconcile(job_id, outcome)}


@shared_task(bind=True)
def recover_pending_packages(self) -> dict:
    """Beat safety net for evaluations the queue lost.

    * running jobs past their time limit: the worker died, the job fails;
    * pending packages whose job never reached (or never left) the queue: a crash between
      the package commit and the enqueue, or a message the broker lost;
    * answers left grading on a job that was never picked up.
    """
    now = timezone.now()
    cutoff = now - timedelta(seconds=getattr(settings, "PROGRAMMING_RECOVERY_GRACE_SECONDS", 300))

    abandoned = 0
    for job in EvaluationJob.objects.filter(status=EvaluationJob.Status.RUNNING):
        if job.is_overdue(now):
            logger.error("recover_pending_packages: job %s overdue since %s, failing it", job.id, job.started_at)
            reconciliation.fail_job(job.id, WORKER_LOST)
            abandoned += 1

    candidates = (
        ProgrammingQuestion.objects
        .filter(pending_package__isnull=False, package_updated_at__lte=cutoff)
        .filter(Q(import_job__isnull=True) | ~Q(import_job__status__in=EvaluationJob.LIVE_STATUSES)
                | ~Q(import_job__epoch=F("package_epoch"))
                | Q(import_job__status=EvaluationJob.Status.PENDING, import_job__created_at__lte=cutoff))
        .select_related("import_job")
    )
    enqueued = redispatched = failed = 0
    for question in candidates:
        job = question.import_job
        try:
            if (job is not None and job.status == EvaluationJob.Status.PENDING
                    and not reconciliation.is_stale(job, question)):
                queue.dispatch(job)
                redispatched += 1
            else:
                queue.enqueue(question.pk, question.pending_package_id, restore_on_failure=False)
                enqueued += 1
        except EnqueueFailed as e:
            logger.warning("recover_pending_packages: question %s still not queued: %s", question.pk, e)
            failed += 1

    waiting = (
        ProgrammingAnswer.objects
        .filter(grade_status=ProgrammingAnswer.GradeStatus.GRADING,
                grading_job__status=EvaluationJob.Status.PENDING, grading_job__created_at__lte=cutoff)
        .select_related("grading_job__question")
    )
    for answer in waiting:
        try:
            queue.dispatch(answer.grading_job)
            redispatched += 1
        except EnqueueFailed as e:
            logger.warning("recover_pending_packages: answer %s still not queued: %s", answer.pk, e)
            failed += 1

    if abandoned or enqueued or redispatched or failed:
        logger.info("recover_pending_packages: %s abandoned, %s enqueued, %s re-dispatched, %s failed",
                    abandoned, enqueued, redispatched, failed)
    return {"ok": True, "abandoned": abandoned, "enqueued": enqueued, "redispatched": redispatched,
            "failed": failed}
