from datetime import timedelta

import pytest
from django.core.exceptions import ValidationError
from django.utils import timezone

from attachments.models import Attachment, AttachmentReference
from programming import evaluator, package, queue, reconciliation, services, tasks
from programming.errors import AlreadyTerminal, EnqueueFailed, EvaluatorCrashed
from programming.grading import EvaluationOutcome
from programming.models import EvaluationJob, ProgrammingQuestion
from programming.services import PackageAction

from .conftest import zip_package

pytestmark = pytest.mark.django_db

OTHER_TEMPLATE = "def add(a, b):\n    return 0\n"
OTHER_PACKAGE = zip_package(
    files={"submission/main.py": OTHER_TEMPLATE, "solution/main.py": "def add(a, b):\n    return b + a\n"},
    test_cases={"public": [{"expression": "add(5, 5)", "expected": "10"}]},
)


def upload(question, data, run_hooks, user=None):
    """Upload ``data``; returns the PackageChange with post-commit hooks run."""
    with run_hooks(execute=True):
        change = services.upload_package(question, data, "package.zip", user=user)
    question.refresh_from_db()
    return change


def success(data):
    return EvaluationOutcome(ok=True, package=package.validate_archive(data, "python3.11"))


# -----------------------
# Transition decision
# -----------------------
@pytest.mark.parametrize("kwargs, action", [
    ({"has_package": True, "package_replaced": True}, PackageAction.PROCESS_NEW),
    ({"has_package": False, "package_replaced": True}, PackageAction.PROCESS_NEW),
    ({"has_package": True, "package_removed": True}, PackageAction.REMOVE),
    ({"has_package": True, "settings_changed": True}, PackageAction.EVALUATE),
    ({"has_package": False, "settings_changed": True}, PackageAction.NONE),
    ({"has_package": True}, PackageAction.NONE),
])
def test_decide_package_action(kwargs, action):
    assert services.decide_package_action(**kwargs) is action


# -----------------------
# Enqueue
# -----------------------
def test_job_is_enqueued_only_after_commit(question, broker, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks() as hooks:
        change = services.upload_package(question, zip_package(), "package.zip")
        assert broker.dispatched == []
        assert not EvaluationJob.objects.exists()

    assert len(hooks) == 1
    hooks[0]()

    job = EvaluationJob.objects.get()
    question.refresh_from_db()
    assert change.action is PackageAction.PROCESS_NEW
    assert change.job_id == str(job.id)
    assert broker.dispatched == [str(job.id)]
    assert question.import_job_id == job.id
    assert question.package_state == "pending"
    assert job.attachment_id == question.pending_package_id
    assert job.epoch == question.package_epoch == 1


def test_enqueue_is_idempotent(question, broker, django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)

    again = queue.enqueue(question.pk, question.pending_package_id)

    assert again == change.job_id
    assert EvaluationJob.objects.count() == 1
    assert len(broker.dispatched) == 1


def test_time_limit_above_ceiling_rejected_before_any_job(question, broker, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True):
        with pytest.raises(ValidationError) as e:
            services.upload_package(question, zip_package(), "package.zip", changes={"time_limit": 31})

    assert "time_limit" in e.value.message_dict
    assert not EvaluationJob.objects.exists()
    assert not Attachment.objects.exists()
    assert broker.dispatched == []
    question.refresh_from_db()
    assert question.time_limit == 5


def test_rejected_change_leaves_the_instance_untouched(question, broker):
    with pytest.raises(ValidationError):
        services.update_settings(question, {"time_limit": 31, "title": "Renamed"})
    assert (question.time_limit, question.title) == (5, "Add two numbers")

    with pytest.raises(ValidationError):
        services.upload_package(question, zip_package(test_cases={}), "package.zip", changes={"time_limit": 10})
    assert question.time_limit == 5
    assert question.package_type == ProgrammingQuestion.PackageType.ZIP_UPLOAD


def test_invalid_package_is_rejected_synchronously(question, broker, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True):
        with pytest.raises(ValidationError):
            services.upload_package(question, zip_package(test_cases={}), "package.zip")
    assert not EvaluationJob.objects.exists()


def test_enqueue_failure_restores_previous_package(question, broker, django_capture_on_commit_callbacks):
    first = upload(question, zip_package(), django_capture_on_commit_callbacks)
    reconciliation.reconcile_package_job(first.job_id, success(zip_package()))
    question.refresh_from_db()
    applied = question.package_id

    broker.down = True
    with pytest.raises(EnqueueFailed):
        with django_capture_on_commit_callbacks(execute=True):
            services.upload_package(question, OTHER_PACKAGE, "other.zip")

    question.refresh_from_db()
    assert question.package_id == applied
    assert question.pending_package_id is None
    assert question.import_job_id is None
    assert list(question.template_files.values_list("filename", flat=True)) == ["template.py"]
    failed = EvaluationJob.objects.exclude(pk=first.job_id).get()
    assert failed.status == EvaluationJob.Status.FAILED
    assert AttachmentReference.objects.get(pk=failed.attachment_id).expires_at is not None


# -----------------------
# Reconciliation
# -----------------------
def test_successful_job_replaces_templates_and_test_cases(question, broker, django_capture_on_commit_callbacks):
    question.template_files.create(filename="old.py", content="")
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)
    reference = question.pending_package_id
    updated_at = question.updated_at

    assert reconciliation.reconcile_package_job(change.job_id, success(zip_package())) == reconciliation.APPLIED

    question.refresh_from_db()
    assert question.package_id == reference
    assert question.pending_package_id is None
    assert question.import_job_id is None
    assert question.updated_at == updated_at
    assert list(question.template_files.values_list("filename", flat=True)) == ["template.py"]
    assert [len(v) for v in question.test_cases_by_type().values()] == [1, 1, 1]
    assert question.is_auto_gradable()
    assert EvaluationJob.objects.get(pk=change.job_id).status == EvaluationJob.Status.SUCCEEDED


def test_failed_job_keeps_previous_package_and_flags_error(question, broker, django_capture_on_commit_callbacks):
    first = upload(question, zip_package(), django_capture_on_commit_callbacks)
    reconciliation.reconcile_package_job(first.job_id, success(zip_package()))
    question.refresh_from_db()
    applied = question.package_id

    second = upload(question, OTHER_PACKAGE, django_capture_on_commit_callbacks)
    rejected = question.pending_package_id
    outcome = EvaluationOutcome(ok=False, error="Evaluator crashed: docker unreachable")

    assert reconciliation.reconcile_package_job(second.job_id, outcome) == reconciliation.ROLLED_BACK

    question.refresh_from_db()
    assert question.package_id == applied
    assert question.pending_package_id is None
    assert question.import_job_id is None
    assert question.evaluation_failed
    assert "docker" in question.evaluation_error
    assert list(question.template_files.values_list("filename", flat=True)) == ["template.py"]
    assert AttachmentReference.objects.get(pk=rejected).is_orphaned


def test_stale_job_completing_late_is_discarded(question, broker, django_capture_on_commit_callbacks):
    j1 = upload(question, zip_package(), django_capture_on_commit_callbacks).job_id
    assert queue.mark_running(j1)
    j2 = upload(question, OTHER_PACKAGE, django_capture_on_commit_callbacks).job_id
    a2 = question.pending_package_id

    # J1 was already running: it is left to finish, not cancelled.
    assert EvaluationJob.objects.get(pk=j1).status == EvaluationJob.Status.RUNNING
    assert reconciliation.reconcile_package_job(j2, success(OTHER_PACKAGE)) == reconciliation.APPLIED
    assert reconciliation.reconcile_package_job(j1, success(zip_package())) == reconciliation.DISCARDED

    question.refresh_from_db()
    assert question.package_id == a2
    assert list(question.template_files.values_list("filename", flat=True)) == ["main.py"]
    assert question.test_cases.count() == 1
    assert EvaluationJob.objects.get(pk=j1).discarded


def test_stale_job_completing_first_leaves_newer_job_alone(question, broker, django_capture_on_commit_callbacks):
    j1 = upload(question, zip_package(), django_capture_on_commit_callbacks).job_id
    assert queue.mark_running(j1)
    j2 = upload(question, OTHER_PACKAGE, django_capture_on_commit_callbacks).job_id

    assert reconciliation.reconcile_package_job(j1, success(zip_package())) == reconciliation.DISCARDED

    question.refresh_from_db()
    assert str(question.import_job_id) == j2
    assert question.package_state == "pending"
    assert not question.template_files.exists()


def test_superseded_job_that_never_started_is_cancelled(question, broker, django_capture_on_commit_callbacks):
    j1 = upload(question, zip_package(), django_capture_on_commit_callbacks).job_id
    upload(question, OTHER_PACKAGE, django_capture_on_commit_callbacks)

    job = EvaluationJob.objects.get(pk=j1)
    assert job.status == EvaluationJob.Status.CANCELLED
    assert job.discarded
    assert broker.revoked == [j1]
    assert tasks.evaluate_job(j1)["status"] == EvaluationJob.Status.CANCELLED


# -----------------------
# Settings and package type
# -----------------------
def test_settings_change_re_evaluates_current_package(question, broker, django_capture_on_commit_callbacks):
    first = upload(question, zip_package(), django_capture_on_commit_callbacks)
    reconciliation.reconcile_package_job(first.job_id, success(zip_package()))
    question.refresh_from_db()
    applied = question.package_id

    with django_capture_on_commit_callbacks(execute=True):
        change = services.update_settings(question, {"time_limit": 10})

    question.refresh_from_db()
    assert change.action is PackageAction.EVALUATE
    job = EvaluationJob.objects.get(pk=change.job_id)
    assert job.attachment_id == applied
    assert question.pending_package_id == applied

    assert reconciliation.reconcile_package_job(change.job_id, success(zip_package())) == reconciliation.APPLIED
    question.refresh_from_db()
    assert question.package_id == applied
    assert not AttachmentReference.objects.get(pk=applied).is_orphaned


def test_settings_change_without_package_creates_no_job(question, broker, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True) as hooks:
        change = services.update_settings(question, {"memory_limit": 256, "title": "Renamed"})

    assert change.action is PackageAction.NONE
    assert hooks == []
    assert not EvaluationJob.objects.exists()
    question.refresh_from_db()
    assert question.memory_limit == 256


def test_switching_to_online_editor_clears_package_without_job(question, broker, django_capture_on_commit_callbacks):
    first = upload(question, zip_package(), django_capture_on_commit_callbacks)
    reconciliation.reconcile_package_job(first.job_id, success(zip_package()))
    question.refresh_from_db()
    old_package = question.package_id

    change = services.update_settings(question, {"package_type": ProgrammingQuestion.PackageType.ONLINE_EDITOR})

    question.refresh_from_db()
    assert change.action is PackageAction.REMOVE
    assert change.job_id is None
    assert not question.template_files.exists()
    assert not question.test_cases.exists()
    assert question.package_id is None
    assert question.import_job_id is None
    assert EvaluationJob.objects.count() == 1
    assert AttachmentReference.objects.get(pk=old_package).is_orphaned


def test_non_autograded_editor_sets_template_directly(question, broker, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=True):
        change = services.save_online_editor(question, {"submission": "print('hello')\n"}, autograded=False)

    question.refresh_from_db()
    assert change.action is PackageAction.REMOVE
    assert question.edit_online()
    assert list(question.template_files.values_list("filename", "content")) == [("template.py", "print('hello')\n")]
    assert not EvaluationJob.objects.exists()


def test_autograded_editor_goes_through_evaluation(question, broker, django_capture_on_commit_callbacks):
    editor = {"solution": "def add(a, b):\n    return a + b\n", "submission": "def add(a, b):\n    pass\n",
              "test_cases": {"public": [{"expression": "add(1, 2)", "expected": "3"}]}}
    with django_capture_on_commit_callbacks(execute=True):
        change = services.save_online_editor(question, editor)

    question.refresh_from_db()
    assert change.action is PackageAction.PROCESS_NEW
    assert question.package_state == "pending"
    assert broker.dispatched == [change.job_id]


# -----------------------
# Cancel and status
# -----------------------
def test_cancel_pending_job_reverts_question(question, broker, django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)
    pending = question.pending_package_id

    state = queue.cancel(change.job_id)

    question.refresh_from_db()
    assert state.status == EvaluationJob.Status.CANCELLED
    assert question.import_job_id is None
    assert question.pending_package_id is None
    assert broker.revoked == [change.job_id]
    assert AttachmentReference.objects.get(pk=pending).is_orphaned

    with pytest.raises(AlreadyTerminal):
        queue.cancel(change.job_id)


def test_status_reports_result(question, broker, django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)
    assert queue.status(change.job_id).status == EvaluationJob.Status.PENDING

    reconciliation.reconcile_package_job(change.job_id, success(zip_package()))

    state = queue.status(change.job_id)
    assert state.status == EvaluationJob.Status.SUCCEEDED
    assert state.result["ok"] is True


# -----------------------
# Worker and recovery
# -----------------------
def test_worker_evaluates_and_applies_package(question, broker, django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)

    result = tasks.evaluate_job(change.job_id)

    assert result["reconciled"] == reconciliation.APPLIED
    question.refresh_from_db()
    assert question.package_state == "clean"
    assert question.test_cases.count() == 3
    job = EvaluationJob.objects.get(pk=change.job_id)
    assert job.status == EvaluationJob.Status.SUCCEEDED
    assert job.result["passed"] == job.result["total"] == 3


def test_worker_exception_fails_job_and_keeps_question_usable(question, broker, monkeypatch,
                                                            django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)

    def explode(job):
        raise RuntimeError("disk full")

    monkeypatch.setattr("programming.grading.evaluate_package", explode)
    result = tasks.evaluate_job(change.job_id)

    assert result["ok"] is False
    assert result["reconciled"] == reconciliation.ROLLED_BACK
    job = EvaluationJob.objects.get(pk=change.job_id)
    assert job.status == EvaluationJob.Status.FAILED
    assert job.error == "disk full"
    question.refresh_from_db()
    assert question.evaluation_failed
    assert question.pending_package_id is None
    assert question.import_job_id is None


def test_cancelled_job_is_skipped_by_worker(question, broker, django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)
    queue.cancel(change.job_id)

    result = tasks.evaluate_job(change.job_id)

    assert result == {"ok": False, "status": EvaluationJob.Status.CANCELLED}
    assert not question.test_cases.exists()


def test_evaluator_crash_is_retried_without_touching_the_question(question, broker, monkeypatch,
                                                                 django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)

    def crash(job):
        raise EvaluatorCrashed("docker unreachable")

    monkeypatch.setattr("programming.grading.evaluate_package", crash)
    # called outside a worker, retry() re-raises the original error
    with pytest.raises(EvaluatorCrashed):
        tasks.evaluate_job(change.job_id)

    assert EvaluationJob.objects.get(pk=change.job_id).status == EvaluationJob.Status.RUNNING
    question.refresh_from_db()
    assert question.package_state == "pending"
    assert not question.evaluation_failed


def test_evaluator_crash_after_last_retry_fails_job_and_keeps_package(question, broker, monkeypatch,
                                                                     django_capture_on_commit_callbacks):
    first = upload(question, zip_package(), django_capture_on_commit_callbacks)
    reconciliation.reconcile_package_job(first.job_id, success(zip_package()))
    question.refresh_from_db()
    applied = question.package_id
    second = upload(question, OTHER_PACKAGE, django_capture_on_commit_callbacks)
    calls = []

    def crash(job):
        calls.append(job.id)
        raise EvaluatorCrashed("docker unreachable")

    monkeypatch.setattr("programming.grading.evaluate_package", crash)
    queue.mark_running(second.job_id)
    result = tasks.evaluate_job.apply(args=(second.job_id,), retries=tasks.evaluate_job.max_retries).result

    assert len(calls) == 1
    assert result["reconciled"] == reconciliation.ROLLED_BACK
    job = EvaluationJob.objects.get(pk=second.job_id)
    assert job.status == EvaluationJob.Status.FAILED
    assert "docker unreachable" in job.error
    question.refresh_from_db()
    assert question.package_id == applied
    assert question.pending_package_id is None
    assert question.import_job_id is None
    assert question.evaluation_failed
    assert list(question.template_files.values_list("filename", flat=True)) == ["template.py"]


def test_dispatch_sizes_time_limits_to_the_test_cases(question, broker, django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)

    options = broker.options[change.job_id]
    per_case = question.time_limit + evaluator.WALL_GRACE_SECONDS + evaluator.CASE_OVERHEAD_SECONDS
    assert options["soft_time_limit"] == package.MAX_TEST_CASES * per_case + queue.TASK_SLACK_SECONDS
    assert options["time_limit"] == options["soft_time_limit"] + queue.TASK_SLACK_SECONDS
    assert EvaluationJob.objects.get(pk=change.job_id).time_limit == options["time_limit"]


def test_job_left_running_by_a_lost_worker_fails_on_redelivery(question, broker,
                                                              django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)
    queue.mark_running(change.job_id)
    EvaluationJob.objects.filter(pk=change.job_id).update(started_at=timezone.now() - timedelta(days=1))

    result = tasks.evaluate_job(change.job_id)

    assert result["reconciled"] == reconciliation.ROLLED_BACK
    assert EvaluationJob.objects.get(pk=change.job_id).status == EvaluationJob.Status.FAILED
    question.refresh_from_db()
    assert question.package_state != "pending"
    assert question.evaluation_failed


def test_running_job_within_its_time_limit_is_left_alone(question, broker, django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)
    queue.mark_running(change.job_id)

    assert tasks.evaluate_job(change.job_id) == {"ok": False, "status": EvaluationJob.Status.RUNNING}
    assert tasks.recover_pending_packages()["abandoned"] == 0
    assert EvaluationJob.objects.get(pk=change.job_id).status == EvaluationJob.Status.RUNNING


def test_recovery_sweep_fails_jobs_whose_worker_was_lost(question, broker, django_capture_on_commit_callbacks):
    change = upload(question, zip_package(), django_capture_on_commit_callbacks)
    queue.mark_running(change.job_id)
    long_ago = timezone.now() - timedelta(days=1)
    EvaluationJob.objects.filter(pk=change.job_id).update(created_at=long_ago, started_at=long_ago)
    ProgrammingQuestion.objects.filter(pk=question.pk).update(package_updated_at=long_ago)

    swept = tasks.recover_pending_packages()

    assert swept["abandoned"] == 1
    assert swept["enqueued"] == 0
    job = EvaluationJob.objects.get(pk=change.job_id)
    assert job.status == EvaluationJob.Status.FAILED
    assert job.error == tasks.WORKER_LOST
    question.refresh_from_db()
    assert question.pending_package_id is None
    assert question.import_job_id is None
    assert question.evaluation_failed
    # the message that comes back after the worker restart finds nothing to do
    assert tasks.evaluate_job(change.job_id)["status"] == EvaluationJob.Status.FAILED


def test_recovery_sweep_enqueues_commits_that_never_reached_the_queue(question, broker,
                                                                    django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks():
        services.upload_package(question, zip_package(), "package.zip")
    # the post-commit hook never ran: crash between commit and enqueue
    ProgrammingQuestion.objects.filter(pk=question.pk).update(
        package_updated_at=timezone.now() - timedelta(hours=1)
    )

    assert tasks.recover_pending_packages()["enqueued"] == 1
    question.refresh_from_db()
    assert question.import_job_id is not None
    assert broker.dispatched == [str(question.import_job_id)]

    assert tasks.recover_pending_packages()["enqueued"] == 0
