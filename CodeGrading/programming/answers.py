# programming/answers.py
import logging

from django.core.exceptions import ValidationError
from django.db import transaction

from . import queue
from .models import ProgrammingAnswer

logger = logging.getLogger(__name__)


def attempt(question, submission, last_attempt=None) -> ProgrammingAnswer:
    """Start a new answer: a copy of the last attempt's files, or the question's templates."""
    with transaction.atomic():
        answer = ProgrammingAnswer.objects.create(submission=submission, question=question)
        if last_attempt is not None:
            for f in last_attempt.files.all():
                answer.files.create(filename=f.filename, content=f.content)
        else:
            question.copy_template_files_to(answer)
    return answer


def grade_answer(answer: ProgrammingAnswer) -> str:
    """Queue auto-grading for ``answer`` and return the job id."""
    if not answer.question.is_auto_gradable():
        raise ValidationError({"question": "This question has no test cases and cannot be auto-graded."})
    if not answer.files.exists():
        raise ValidationError({"files": "The answer has no files to grade."})
    job_id = queue.enqueue_answer(answer.pk)
    logger.info("grade_answer: answer %s queued as job %s", answer.pk, job_id)
    return job_id
