import pytest

from attachments import store
from attachments.models import Attachment, AttachmentReference
from programming import duplication, reconciliation, services
from programming.models import EvaluationJob, ProgrammingQuestion
from programming.grading import EvaluationOutcome
from programming import package

from .conftest import zip_package

pytestmark = pytest.mark.django_db


@pytest.fixture
def packaged_question(question, broker, django_capture_on_commit_callbacks):
    data = zip_package()
    with django_capture_on_commit_callbacks(execute=True):
        change = services.upload_package(question, data, "package.zip")
    outcome = EvaluationOutcome(ok=True, package=package.validate_archive(data, "python3.11"))
    reconciliation.reconcile_package_job(change.job_id, outcome)
    question.refresh_from_db()
    return question


def test_duplicate_copies_package_without_copying_bytes(packaged_question):
    jobs = EvaluationJob.objects.count()

    copy = duplication.duplicate_question(packaged_question)

    assert copy.pk != packaged_question.pk
    assert copy.duplicated_from_id == packaged_question.pk
    assert copy.import_job_id is None
    assert not copy.evaluation_failed
    assert list(copy.template_files.values_list("filename", "content")) == \
        list(packaged_question.template_files.values_list("filename", "content"))
    assert list(copy.test_cases.values_list("identifier", "expression", "expected")) == \
        list(packaged_question.test_cases.values_list("identifier", "expression", "expected"))

    copy.refresh_from_db()
    assert copy.package_id != packaged_question.package_id
    assert copy.package.attachment_id == packaged_question.package.attachment_id
    assert copy.package.owner == copy
    assert copy.package.expires_at is None
    assert Attachment.objects.count() == 1
    assert EvaluationJob.objects.count() == jobs


def test_duplicate_keeps_audit_timestamps(packaged_question):
    copy = duplication.duplicate_question(packaged_question)
    copy.refresh_from_db()

    assert copy.created_at == packaged_question.created_at
    assert copy.updated_at == packaged_question.updated_at
    assert copy.package.created_at == packaged_question.package.created_at


def test_shared_objects_are_copied_once(packaged_question):
    duplicator = duplication.Duplicator()

    first = duplicator.duplicate(packaged_question)
    again = duplicator.duplicate([packaged_question, packaged_question.package])

    assert again == [first, first.package]
    assert ProgrammingQuestion.objects.count() == 2
    assert AttachmentReference.objects.filter(attachment_id=packaged_question.package.attachment_id).count() == 2


def test_reference_copied_alone_is_orphaned(packaged_question):
    ref = store.create_reference(packaged_question.package.attachment, "extra.zip", owner=packaged_question)

    copy = duplication.Duplicator().duplicate(ref)

    assert copy.attachment_id == ref.attachment_id
    assert copy.is_orphaned
    assert copy.expires_at is not None


def test_unknown_model_has_no_strategy(staff):
    with pytest.raises(TypeError):
        duplication.Duplicator().duplicate(staff)
