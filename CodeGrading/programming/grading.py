# programming/grading.py
"""Run an evaluation job: read what it captured, execute it in the sandbox, report the outcome.

Nothing here writes to the question or the answer; reconciliation does that.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from attachments import store
from . import evaluator
from . import package as packages
from .errors import PackageValidationError
from .evaluator import Limits, TestCaseResult

logger = logging.getLogger(__name__)


@dataclass
class EvaluationOutcome:
    ok: bool
    package: Optional[packages.ValidatedPackage] = None
    results: List[TestCaseResult] = field(default_factory=list)
    error: str = ""

    @property
    def passed_count(self) -> int:
        return sum(r.passed for r in self.results)

    def as_result(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error,
            "passed": self.passed_count,
            "total": len(self.results),
            "test_cases": [r.as_dict() for r in self.results],
        }


def evaluate_package(job) -> EvaluationOutcome:
    """Validate the job's archive and run its reference solution against its test cases.

    Failing test cases do not fail the package: they are reported to the author. Only an
    invalid archive or a crashed evaluator does. EvaluatorCrashed propagates so the task can
    retry.
    """
    question = job.question
    data = store.read_reference(job.attachment_id)
    try:
        validated = packages.validate_archive(data, question.language)
    except PackageValidationError as e:
        logger.info("evaluate_package: job %s package invalid: %s", job.id, e.messages)
        return EvaluationOutcome(ok=False, error=_format_errors(e))

    results: List[TestCaseResult] = []
    if validated.solution:
        results = evaluator.run(
            question.language, validated.program(), validated.test_cases,
            Limits.for_question(question), files=validated.data_files,
        )
    return EvaluationOutcome(ok=True, package=validated, results=results)


def evaluate_answer(job) -> EvaluationOutcome:
    """Run the answer's files, wrapped in the package's prepend/append code, against the
    question's stored test cases."""
    answer = job.answer
    question = job.question
    test_cases = list(question.test_cases.all())
    if not test_cases:
        return EvaluationOutcome(ok=False, error="The question has no test cases.")

    prepend = append = ""
    files: Dict[str, bytes] = {}
    if job.attachment_id is not None:
        try:
            validated = packages.validate_archive(store.read_reference(job.attachment_id), question.language)
        except PackageValidationError as e:
            return EvaluationOutcome(ok=False, error=_format_errors(e))
        prepend, append, files = validated.prepend, validated.append, validated.data_files

    body = "\n".join(f.content for f in answer.files.all())
    code = "\n".join(part for part in (prepend, body, append) if part)
    results = evaluator.run(question.language, code, test_cases, Limits.for_question(question), files=files)
    return EvaluationOutcome(ok=True, results=results)


def _format_errors(error: PackageValidationError) -> str:
    if hasattr(error, "error_dict"):
        return "; ".join(f"{key}: {' '.join(msgs)}" for key, msgs in sorted(error.message_dict.items()))
    return " ".join(error.messages)
