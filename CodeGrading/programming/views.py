# programming/views.py
import json
import logging

from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET, require_POST

from . import answers, queue, services
from .errors import AlreadyTerminal, EnqueueFailed
from .models import EvaluationJob, ProgrammingAnswer, ProgrammingQuestion

logger = logging.getLogger(__name__)

INT_SETTINGS = ("time_limit", "memory_limit", "attempt_limit")


# -----------------------
# Helpers
# -----------------------
def _forbidden():
    return JsonResponse({"ok": False, "message": "Not allowed."}, status=403)


def _errors(e: ValidationError):
    errors = e.message_dict if hasattr(e, "error_dict") else {"__all__": e.messages}
    return JsonResponse({"ok": False, "errors": errors}, status=400)


def _unavailable(e: EnqueueFailed):
    logger.warning("enqueue failed: %s", e)
    return JsonResponse({"ok": False, "message": "Evaluation queue unavailable, package not changed.",
                         "detail": str(e)}, status=503)


def _settings_from(data) -> dict:
    """Pick question settings out of request data; blank numbers mean "no limit"."""
    changes = {}
    for name in services.EDITABLE_SETTINGS:
        if name not in data:
            continue
        value = data.get(name)
        if name in INT_SETTINGS:
            value = None if value in (None, "") else value
            if value is not None:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    raise ValidationError({name: "Enter a whole number."})
        elif name == "multiple_file_submission":
            value = value in (True, "1", "true", "on")
        changes[name] = value
    return changes


def _question_payload(question: ProgrammingQuestion, change=None) -> dict:
    payload = {
        "ok": True,
        "id": question.pk,
        "package_state": question.package_state,
        "package_type": question.package_type,
        "import_job": str(question.import_job_id) if question.import_job_id else None,
        "evaluation_failed": question.evaluation_failed,
    }
    if change is not None:
        payload["action"] = change.action.value
        payload["job_id"] = change.job_id
    return payload


def _json_body(request) -> dict:
    try:
        body = json.loads(request.body or b"{}")
    except ValueError:
        raise ValidationError({"__all__": "Request body must be JSON."})
    if not isinstance(body, dict):
        raise ValidationError({"__all__": "Request body must be a JSON object."})
    return body


# -----------------------
# Question package
# -----------------------
@login_required
@require_POST
def upload_package(request, pk: int):
    """Multipart upload: ``file`` (zip) plus optional settings fields."""
    if not request.user.is_staff:
        return _forbidden()
    question = get_object_or_404(ProgrammingQuestion, pk=pk)
    upload = request.FILES.get("file")
    if upload is None:
        return JsonResponse({"ok": False, "errors": {"file": ["No file uploaded."]}}, status=400)

    try:
        change = services.upload_package(question, upload.read(), upload.name,
                                         changes=_settings_from(request.POST), user=request.user)
    except ValidationError as e:
        return _errors(e)
    except EnqueueFailed as e:
        return _unavailable(e)
    question.refresh_from_db()
    return JsonResponse(_question_payload(question, change))


@login_required
@require_POST
def save_online_editor(request, pk: int):
    """JSON body: {"autograded": bool, "editor": {...}, "settings": {...}}."""
    if not request.user.is_staff:
        return _forbidden()
    question = get_object_or_404(ProgrammingQuestion, pk=pk)
    try:
        body = _json_body(request)
        change = services.save_online_editor(
            question, body.get("editor") or {}, autograded=bool(body.get("autograded", True)),
            changes=_settings_from(body.get("settings") or {}), user=request.user,
        )
    except ValidationError as e:
        return _errors(e)
    except EnqueueFailed as e:
        return _unavailable(e)
    question.refresh_from_db()
    return JsonResponse(_question_payload(question, change))


@login_required
@require_POST
def update_settings(request, pk: int):
    if not request.user.is_staff:
        return _forbidden()
    question = get_object_or_404(ProgrammingQuestion, pk=pk)
    try:
        data = _json_body(request) if request.content_type == "application/json" else request.POST
        change = services.update_settings(question, _settings_from(data), user=request.user)
    except ValidationError as e:
        return _errors(e)
    except EnqueueFailed as e:
        return _unavailable(e)
    question.refresh_from_db()
    return JsonResponse(_question_payload(question, change))


# -----------------------
# Jobs
# -----------------------
@login_required
@require_GET
def job_status(request, job_id):
    """Results name the expected values of private test cases: staff only, or the student
    whose answer the job graded."""
    job = get_object_or_404(EvaluationJob.objects.select_related("answer__submission"), pk=job_id)
    own_answer = job.answer is not None and job.answer.submission.creator_id == request.user.id
    if not (request.user.is_staff or own_answer):
        return _forbidden()
    state = queue.status(job_id)
    return JsonResponse({"ok": True, "job_id": state.job_id, "status": state.status, "result": state.result,
                         "error": state.error, "discarded": state.discarded})


@login_required
@require_POST
def cancel_job(request, job_id):
    if not request.user.is_staff:
        return _forbidden()
    get_object_or_404(EvaluationJob, pk=job_id)
    try:
        state = queue.cancel(job_id)
    except AlreadyTerminal as e:
        return JsonResponse({"ok": False, "reason": "already_terminal", "status": e.status,
                             "message": str(e)}, status=409)
    return JsonResponse({"ok": True, "job_id": state.job_id, "status": state.status})


# -----------------------
# Answers
# -----------------------
@login_required
@require_POST
def grade_answer(request, pk: int):
    answer = get_object_or_404(ProgrammingAnswer.objects.select_related("submission", "question"), pk=pk)
    if answer.submission.creator_id != request.user.id and not request.user.is_staff:
        return _forbidden()
    try:
        job_id = answers.grade_answer(answer)
    except ValidationError as e:
        return _errors(e)
    except EnqueueFailed as e:
        return JsonResponse({"ok": False, "message": "Grading queue unavailable.", "detail": str(e)}, status=503)
    return JsonResponse({"ok": True, "answer": answer.pk, "job_id": job_id})
