# programming/models.py
import uuid
from collections import OrderedDict
from datetime import timedelta

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone

from attachments import owners
from . import languages

# Maximum CPU time a question may allow before the evaluation gets killed.
CPU_TIMEOUT = 30


@owners.register("programming_question")
class ProgrammingQuestion(models.Model):
    class PackageType(models.TextChoices):
        ZIP_UPLOAD = "zip_upload", "Zip upload"
        ONLINE_EDITOR = "online_editor", "Online editor"

    title = models.CharField(max_length=255, blank=True)
    package_type = models.CharField(max_length=16, choices=PackageType.choices, default=PackageType.ZIP_UPLOAD)
    language = models.CharField(max_length=32, choices=languages.choices(), default=languages.DEFAULT_LANGUAGE)
    time_limit = models.PositiveIntegerField(
        null=True, blank=True, validators=[MinValueValidator(1), MaxValueValidator(CPU_TIMEOUT)],
        help_text="CPU seconds per test case",
    )
    memory_limit = models.PositiveIntegerField(
        null=True, blank=True, validators=[MinValueValidator(1)], help_text="MB; empty leaves it to the container"
    )
    attempt_limit = models.PositiveIntegerField(null=True, blank=True, validators=[MinValueValidator(1)])
    multiple_file_submission = models.BooleanField(default=False)

    # `package` is what the template files and test cases were built from; `pending_package`
    # is a newer package (or a re-evaluation of the same one) waiting for its job.
    package = models.ForeignKey("attachments.AttachmentReference", null=True, blank=True,
                                related_name="+", on_delete=models.SET_NULL)
    pending_package = models.ForeignKey("attachments.AttachmentReference", null=True, blank=True,
                                        related_name="+", on_delete=models.SET_NULL)
    import_job = models.OneToOneField("EvaluationJob", null=True, blank=True,
                                      related_name="+", on_delete=models.SET_NULL)
    package_epoch = models.PositiveIntegerField(default=0)
    package_updated_at = models.DateTimeField(null=True, blank=True)

    evaluation_failed = models.BooleanField(default=False)
    evaluation_error = models.TextField(blank=True)

    duplicated_from = models.ForeignKey("self", null=True, blank=True, related_name="duplicates",
                                        on_delete=models.SET_NULL)
    creator = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True,
                                related_name="+", on_delete=models.SET_NULL)
    updater = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True,
                                related_name="+", on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.title or f"Programming question {self.pk}"

    @property
    def current_package(self):
        """The newest package, applied or not; stale job results are judged against it."""
        return self.pending_package if self.pending_package_id else self.package

    @property
    def current_package_id(self):
        return self.pending_package_id or self.package_id

    @property
    def package_state(self) -> str:
        return "pending" if self.pending_package_id else "clean"

    def is_auto_gradable(self) -> bool:
        return self.test_cases.exists()

    def edit_online(self) -> bool:
        return self.package_type == self.PackageType.ONLINE_EDITOR

    def test_cases_by_type(self):
        """Test cases grouped by kind, in definition order."""
        grouped = OrderedDict((kind, []) for kind in TestCase.Kind.values)
        for test_case in self.test_cases.all():
            grouped[test_case.test_case_type].append(test_case)
        return grouped

    def copy_template_files_to(self, answer) -> None:
        for template_file in self.template_files.all():
            template_file.copy_template_to(answer)


class TemplateFile(models.Model):
    question = models.ForeignKey(ProgrammingQuestion, related_name="template_files", on_delete=models.CASCADE)
    filename = models.CharField(max_length=255)
    content = models.TextField(blank=True)

    class Meta:
        ordering = ["id"]
        unique_together = (("question", "filename"),)

    def __str__(self):
        return self.filename

    def copy_template_to(self, answer):
        return answer.files.create(filename=self.filename, content=self.content)


class TestCase(models.Model):
    class Kind(models.TextChoices):
        PUBLIC = "public", "Public"
        PRIVATE = "private", "Private"
        EVALUATION = "evaluation", "Evaluation"

    question = models.ForeignKey(ProgrammingQuestion, related_name="test_cases", on_delete=models.CASCADE)
    identifier = models.CharField(max_length=64)
    test_case_type = models.CharField(max_length=16, choices=Kind.choices)
    expression = models.TextField()
    expected = models.TextField()
    hint = models.TextField(blank=True)

    class Meta:
        ordering = ["id"]
        unique_together = (("question", "identifier"),)

    def __str__(self):
        return f"{self.identifier}: {self.expression[:60]}"


class EvaluationJob(models.Model):
    class Kind(models.TextChoices):
        PACKAGE = "package", "Package evaluation"
        ANSWER = "answer", "Answer grading"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        RUNNING = "running", "Running"
        SUCCEEDED = "succeeded", "Succeeded"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    LIVE_STATUSES = (Status.PENDING, Status.RUNNING)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    kind = models.CharField(max_length=16, choices=Kind.choices, default=Kind.PACKAGE)
    question = models.ForeignKey(ProgrammingQuestion, related_name="evaluation_jobs", on_delete=models.CASCADE)
    answer = models.ForeignKey("ProgrammingAnswer", null=True, blank=True, related_name="grading_jobs",
                               on_delete=models.CASCADE)
    attachment = models.ForeignKey("attachments.AttachmentReference", null=True, blank=True,
                                   related_name="+", on_delete=models.SET_NULL)
    epoch = models.PositiveIntegerField(default=0)

    status = models.CharField(max_length=12, choices=Status.choices, default=Status.PENDING)
    result = models.JSONField(blank=True, null=True)
    error = models.TextField(blank=True)
    discarded = models.BooleanField(default=False, help_text="Finished after being superseded; result not applied")

    created_at = models.DateTimeField(auto_now_add=True)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    time_limit = models.PositiveIntegerField(null=True, blank=True,
                                             help_text="Hard time limit in seconds the worker task was given")

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.get_kind_display()} {self.id} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status not in self.LIVE_STATUSES

    def is_overdue(self, now=None) -> bool:
        """Still running past its hard time limit, so the worker that took it is gone."""
        if self.status != self.Status.RUNNING or self.started_at is None:
            return False
        limit = self.time_limit or getattr(settings, "CELERY_TASK_TIME_LIMIT", 300)
        return self.started_at + timedelta(seconds=limit) <= (now or timezone.now())


class Submission(models.Model):
    class WorkflowState(models.TextChoices):
        ATTEMPTING = "attempting", "Attempting"
        SUBMITTED = "submitted", "Submitted"
        GRADED = "graded", "Graded"

    creator = models.ForeignKey(settings.AUTH_USER_MODEL, related_name="programming_submissions",
                                on_delete=models.CASCADE)
    workflow_state = models.CharField(max_length=12, choices=WorkflowState.choices,
                                      default=WorkflowState.ATTEMPTING)
    created_at = models.DateTimeField(auto_now_add=True)
    submitted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Submission {self.pk} by {self.creator}"


class ProgrammingAnswer(models.Model):
    class GradeStatus(models.TextChoices):
        NOT_GRADED = "not_graded", "Not graded"
        GRADING = "grading", "Grading"
        GRADED = "graded", "Graded"
        FAILED = "failed", "Failed"

    submission = models.ForeignKey(Submission, related_name="programming_answers", on_delete=models.CASCADE)
    question = models.ForeignKey(ProgrammingQuestion, related_name="answers", on_delete=models.CASCADE)
    grading_job = models.OneToOneField(EvaluationJob, null=True, blank=True, related_name="+",
                                       on_delete=models.SET_NULL)
    grade_status = models.CharField(max_length=12, choices=GradeStatus.choices, default=GradeStatus.NOT_GRADED)
    passed_count = models.PositiveIntegerField(default=0)
    total_count = models.PositiveIntegerField(default=0)
    grade_report = models.JSONField(blank=True, null=True)
    grading_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"Answer {self.pk} to {self.question}"


class AnswerFile(models.Model):
    answer = models.ForeignKey(ProgrammingAnswer, related_name="files", on_delete=models.CASCADE)
    filename = models.CharField(max_length=255)
    content = models.TextField(blank=True)

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return self.filename
