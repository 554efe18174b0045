from django.contrib import admin

from .models import (
    AnswerFile, EvaluationJob, ProgrammingAnswer, ProgrammingQuestion, Submission, TemplateFile, TestCase,
)


class TemplateFileInline(admin.TabularInline):
    model = TemplateFile
    extra = 0


class TestCaseInline(admin.TabularInline):
    model = TestCase
    extra = 0
    fields = ("identifier", "test_case_type", "expression", "expected", "hint")


@admin.register(ProgrammingQuestion)
class ProgrammingQuestionAdmin(admin.ModelAdmin):
    list_display = ("__str__", "language", "package_type", "time_limit", "memory_limit",
                    "package_state", "import_job", "evaluation_failed", "updated_at")
    list_filter = ("language", "package_type", "evaluation_failed")
    search_fields = ("title",)
    readonly_fields = ("package", "pending_package", "import_job", "package_epoch", "package_updated_at",
                       "evaluation_failed", "evaluation_error", "duplicated_from", "created_at", "updated_at")
    raw_id_fields = ("creator", "updater")
    inlines = [TemplateFileInline, TestCaseInline]


@admin.register(EvaluationJob)
class EvaluationJobAdmin(admin.ModelAdmin):
    list_display = ("id", "kind", "question", "answer", "epoch", "status", "discarded", "created_at", "finished_at")
    list_filter = ("kind", "status", "discarded")
    readonly_fields = [f.name for f in EvaluationJob._meta.fields]
    date_hierarchy = "created_at"


class AnswerFileInline(admin.StackedInline):
    model = AnswerFile
    extra = 0


@admin.register(ProgrammingAnswer)
class ProgrammingAnswerAdmin(admin.ModelAdmin):
    list_display = ("id", "question", "submission", "grade_status", "passed_count", "total_count", "updated_at")
    list_filter = ("grade_status",)
    readonly_fields = ("grading_job", "grade_report", "grading_error")
    inlines = [AnswerFileInline]


@admin.register(Submission)
class SubmissionAdmin(admin.ModelAdmin):
    list_display = ("id", "creator", "workflow_state", "created_at", "submitted_at")
    list_filter = ("workflow_state",)
