import django.core.validators
import django.db.models.deletion
import uuid
from django.conf import settings
from django.db import migrations, models


LANGUAGE_CHOICES = [("python3.10", "Python 3.10"), ("python3.11", "Python 3.11"), ("python3.12", "Python 3.12")]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("attachments", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ProgrammingQuestion",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(blank=True, max_length=255)),
                ("package_type", models.CharField(choices=[("zip_upload", "Zip upload"), ("online_editor", "Online editor")], default="zip_upload", max_length=16)),
                ("language", models.CharField(choices=LANGUAGE_CHOICES, default="python3.11", max_length=32)),
                ("time_limit", models.PositiveIntegerField(blank=True, help_text="CPU seconds per test case", null=True, validators=[django.core.validators.MinValueValidator(1), django.core.validators.MaxValueValidator(30)])),
                ("memory_limit", models.PositiveIntegerField(blank=True, help_text="MB; empty leaves it to the container", null=True, validators=[django.core.validators.MinValueValidator(1)])),
                ("attempt_limit", models.PositiveIntegerField(blank=True, null=True, validators=[django.core.validators.MinValueValidator(1)])),
                ("multiple_file_submission", models.BooleanField(default=False)),
                ("package_epoch", models.PositiveIntegerField(default=0)),
                ("package_updated_at", models.DateTimeField(blank=True, null=True)),
                ("evaluation_failed", models.BooleanField(default=False)),
                ("evaluation_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("creator", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
                ("duplicated_from", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="duplicates", to="programming.programmingquestion")),
                ("package", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="attachments.attachmentreference")),
                ("pending_package", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="attachments.attachmentreference")),
                ("updater", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.CreateModel(
            name="EvaluationJob",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("kind", models.CharField(choices=[("package", "Package evaluation"), ("answer", "Answer grading")], default="package", max_length=16)),
                ("epoch", models.PositiveIntegerField(default=0)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("running", "Running"), ("succeeded", "Succeeded"), ("failed", "Failed"), ("cancelled", "Cancelled")], default="pending", max_length=12)),
                ("result", models.JSONField(blank=True, null=True)),
                ("error", models.TextField(blank=True)),
                ("discarded", models.BooleanField(default=False, help_text="Finished after being superseded; result not applied")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("attachment", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="attachments.attachmentreference")),
                ("question", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="evaluation_jobs", to="programming.programmingquestion")),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddField(
            model_name="programmingquestion",
            name="import_job",
            field=models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="programming.evaluationjob"),
        ),
        migrations.CreateModel(
            name="TemplateFile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("filename", models.CharField(max_length=255)),
                ("content", models.TextField(blank=True)),
                ("question", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="template_files", to="programming.programmingquestion")),
            ],
            options={
                "ordering": ["id"],
                "unique_together": {("question", "filename")},
            },
        ),
        migrations.CreateModel(
            name="TestCase",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("identifier", models.CharField(max_length=64)),
                ("test_case_type", models.CharField(choices=[("public", "Public"), ("private", "Private"), ("evaluation", "Evaluation")], max_length=16)),
                ("expression", models.TextField()),
                ("expected", models.TextField()),
                ("hint", models.TextField(blank=True)),
                ("question", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="test_cases", to="programming.programmingquestion")),
            ],
            options={
                "ordering": ["id"],
                "unique_together": {("question", "identifier")},
            },
        ),
        migrations.CreateModel(
            name="Submission",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("workflow_state", models.CharField(choices=[("attempting", "Attempting"), ("submitted", "Submitted"), ("graded", "Graded")], default="attempting", max_length=12)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("creator", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="programming_submissions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="ProgrammingAnswer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("grade_status", models.CharField(choices=[("not_graded", "Not graded"), ("grading", "Grading"), ("graded", "Graded"), ("failed", "Failed")], default="not_graded", max_length=12)),
                ("passed_count", models.PositiveIntegerField(default=0)),
                ("total_count", models.PositiveIntegerField(default=0)),
                ("grade_report", models.JSONField(blank=True, null=True)),
                ("grading_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("grading_job", models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="+", to="programming.evaluationjob")),
                ("question", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="answers", to="programming.programmingquestion")),
                ("submission", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="programming_answers", to="programming.submission")),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="AnswerFile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("filename", models.CharField(max_length=255)),
                ("content", models.TextField(blank=True)),
                ("answer", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="files", to="programming.programminganswer")),
            ],
            options={
                "ordering": ["id"],
            },
        ),
        migrations.AddField(
            model_name="evaluationjob",
            name="answer",
            field=models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name="grading_jobs", to="programming.programminganswer"),
        ),
    ]
