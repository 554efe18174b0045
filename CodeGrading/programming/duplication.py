# programming/duplication.py
"""
Copying programming questions together with their package.

A Duplicator holds one strategy per model. ``strategy.copy(duplicator, source)`` saves a
copy and returns it with the child objects that still need copying; the duplicator works
through those children from a queue and remembers every copy by (model label, pk), so an
object reached twice (one attachment referenced from two places, a reference whose owner is
the question being copied) is copied once and the walk always ends.

Copies never trigger an evaluation and keep the source's audit timestamps.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from django.db import models, transaction

from attachments.models import AttachmentReference
from .models import ProgrammingQuestion, TemplateFile, TestCase

logger = logging.getLogger(__name__)


@dataclass
class Child:
    source: models.Model
    # Called with the child's copy once it exists.
    link: Optional[Callable[[models.Model], None]] = None


class DuplicationStrategy:
    model: type = None

    def copy(self, duplicator: "Duplicator", source) -> Tuple[models.Model, List[Child]]:
        raise NotImplementedError


class Duplicator:
    def __init__(self, strategies=None):
        self._strategies: Dict[str, DuplicationStrategy] = {}
        self._copies: Dict[Tuple[str, object], models.Model] = {}
        for strategy in strategies if strategies is not None else default_strategies():
            self.register(strategy)

    def register(self, strategy: DuplicationStrategy) -> None:
        self._strategies[strategy.model._meta.label] = strategy

    def copy_of(self, source):
        """The copy made of ``source`` so far, or None."""
        if source is None:
            return None
        return self._copies.get(self._key(source))

    def duplicate(self, source):
        """Copy ``source`` (a model instance, or an iterable of them) and everything it owns."""
        if source is None:
            return None
        if not isinstance(source, models.Model):
            return [self.duplicate(item) for item in source]

        with transaction.atomic():
            copy = self.copy_of(source)
            if copy is not None:
                return copy
            pending = deque([Child(source)])
            while pending:
                child = pending.popleft()
                existing = self.copy_of(child.source)
                if existing is None:
                    existing, children = self._strategy_for(child.source).copy(self, child.source)
                    self._copies[self._key(child.source)] = existing
                    pending.extend(children)
                if child.link is not None:
                    child.link(existing)
        return self.copy_of(source)

    def _strategy_for(self, source) -> DuplicationStrategy:
        try:
            return self._strategies[source._meta.label]
        except KeyError:
            raise TypeError(f"no duplication strategy for {source._meta.label}") from None

    @staticmethod
    def _key(source):
        return source._meta.label, source.pk


class ProgrammingQuestionStrategy(DuplicationStrategy):
    model = ProgrammingQuestion
    copied_fields = ("title", "package_type", "language", "time_limit", "memory_limit",
                     "attempt_limit", "multiple_file_submission", "creator", "updater")

    def copy(self, duplicator, source):
        copy = ProgrammingQuestion(duplicated_from=source)
        for name in self.copied_fields:
            setattr(copy, name, getattr(source, name))
        copy.save()
        _keep_timestamps(copy, source, ("created_at", "updated_at", "package_updated_at"))

        def link_package(reference):
            copy.package = reference
            ProgrammingQuestion.objects.filter(pk=copy.pk).update(package=reference)

        children = [Child(t) for t in source.template_files.all()]
        children += [Child(t) for t in source.test_cases.all()]
        if source.package is not None:
            children.append(Child(source.package, link_package))
        return copy, children


class TemplateFileStrategy(DuplicationStrategy):
    model = TemplateFile

    def copy(self, duplicator, source):
        question = _copied_parent(duplicator, source)
        return TemplateFile.objects.create(question=question, filename=source.filename,
                                           content=source.content), []


class TestCaseStrategy(DuplicationStrategy):
    model = TestCase

    def copy(self, duplicator, source):
        question = _copied_parent(duplicator, source)
        return TestCase.objects.create(
            question=question, identifier=source.identifier, test_case_type=source.test_case_type,
            expression=source.expression, expected=source.expected, hint=source.hint,
        ), []


class AttachmentReferenceStrategy(DuplicationStrategy):
    """A new reference to the same Attachment; the bytes are shared, never copied."""
    model = AttachmentReference

    def copy(self, duplicator, source):
        copy = AttachmentReference(name=source.name, attachment_id=source.attachment_id,
                                   creator=source.creator, updater=source.updater)
        # Owners that were not duplicated leave the copy orphaned.
        copy.owner = duplicator.copy_of(source.owner)
        copy.save()
        _keep_timestamps(copy, source, ("created_at", "updated_at"))
        return copy, []


def default_strategies():
    return [ProgrammingQuestionStrategy(), TemplateFileStrategy(), TestCaseStrategy(),
            AttachmentReferenceStrategy()]


def duplicate_question(question: ProgrammingQuestion) -> ProgrammingQuestion:
    copy = Duplicator().duplicate(question)
    logger.info("duplicate: question %s copied to %s", question.pk, copy.pk)
    return copy


def _keep_timestamps(copy, source, fields) -> None:
    values = {name: getattr(source, name) for name in fields}
    type(copy).objects.filter(pk=copy.pk).update(**values)
    for name, value in values.items():
        setattr(copy, name, value)


def _copied_parent(duplicator, source):
    question = duplicator.copy_of(source.question)
    if question is None:
        raise ValueError(f"{source._meta.label} is copied together with its question")
    return question
