# programming/services.py
"""
Package mutations on programming questions.

The request layer calls these functions; they validate, decide what the change means for
the package (``decide_package_action``), commit it under a row lock and, once the
transaction is durable, hand evaluation work to the queue.
"""
from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from django.db import transaction
from django.utils import timezone

from attachments import store
from . import package as packages
from . import queue
from .models import ProgrammingQuestion

logger = logging.getLogger(__name__)

# Changing any of these re-runs the evaluation of the current package.
EVALUATION_SETTINGS = ("time_limit", "memory_limit", "language")
EDITABLE_SETTINGS = EVALUATION_SETTINGS + ("package_type", "attempt_limit", "multiple_file_submission", "title")


class PackageAction(enum.Enum):
    NONE = "none"
    EVALUATE = "evaluate"          # re-run the current package
    PROCESS_NEW = "process_new"    # a new package waits for evaluation
    REMOVE = "remove"              # package cleared, nothing to evaluate


def decide_package_action(*, has_package: bool, package_replaced: bool = False,
                          package_removed: bool = False, settings_changed: bool = False) -> PackageAction:
    """What a question change means for its package.

    >>> decide_package_action(has_package=True, settings_changed=True)
    <PackageAction.EVALUATE: 'evaluate'>
    >>> decide_package_action(has_package=False, settings_changed=True)
    <PackageAction.NONE: 'none'>
    """
    if package_replaced:
        return PackageAction.PROCESS_NEW
    if package_removed:
        return PackageAction.REMOVE
    if settings_changed and has_package:
        return PackageAction.EVALUATE
    return PackageAction.NONE


@dataclass
class PackageChange:
    question_id: int
    action: PackageAction
    job_id: Optional[str] = None


def update_settings(question: ProgrammingQuestion, changes: Dict[str, Any], *, user=None) -> PackageChange:
    """Apply setting changes. A time/memory/language change re-evaluates the current package;
    switching to the online editor drops the uploaded package synchronously."""
    with _staged_settings(question, changes) as changed:
        question.full_clean()

    switched_to_editor = "package_type" in changed and question.edit_online()
    action = decide_package_action(
        has_package=question.current_package_id is not None,
        package_removed=switched_to_editor,
        settings_changed=bool(changed & set(EVALUATION_SETTINGS)),
    )
    return _commit_package_change(question, action, changed, user=user)


def upload_package(question: ProgrammingQuestion, data: bytes, filename: str, *,
                   changes: Optional[Dict[str, Any]] = None, user=None) -> PackageChange:
    """Accept a package archive. Settings are validated before anything is stored, so an
    invalid time limit rejects the upload without creating a job."""
    staged = dict(changes or {}, package_type=ProgrammingQuestion.PackageType.ZIP_UPLOAD)
    with _staged_settings(question, staged) as changed:
        question.full_clean()
        packages.validate_archive(data, question.language)

    reference = _store_orphan(data, filename, user)
    return _commit_package_change(question, PackageAction.PROCESS_NEW, changed, reference=reference, user=user)


def save_online_editor(question: ProgrammingQuestion, editor: Dict[str, Any], *, autograded: bool = True,
                       changes: Optional[Dict[str, Any]] = None, user=None) -> PackageChange:
    """Save online-editor input. Auto-graded input becomes a package archive and goes through
    evaluation like an upload; otherwise the template is set directly and no job is created."""
    staged = dict(changes or {}, package_type=ProgrammingQuestion.PackageType.ONLINE_EDITOR)
    with _staged_settings(question, staged) as changed:
        question.full_clean()
        validated = packages.validate_online_editor(question.language, editor, autograded=autograded)

    if autograded:
        data = packages.build_archive(validated)
        reference = _store_orphan(data, "online_editor.zip", user)
        return _commit_package_change(question, PackageAction.PROCESS_NEW, changed, reference=reference, user=user)
    return _commit_package_change(question, PackageAction.REMOVE, changed,
                                  template_files=validated.template_files, user=user)


def remove_package(question: ProgrammingQuestion, *, user=None) -> PackageChange:
    return _commit_package_change(question, PackageAction.REMOVE, set(), user=user)


def assign_imported_package(question: ProgrammingQuestion, reference, *, user=None) -> None:
    """Set the package of a question whose template files and test cases were imported with
    it. Nothing is evaluated."""
    with transaction.atomic():
        locked = ProgrammingQuestion.objects.select_for_update().get(pk=question.pk)
        previous = locked.package
        if reference is not None:
            store.attach(reference, locked, user=user)
        locked.package = reference
        locked.save(update_fields=["package"])
        if previous is not None and (reference is None or previous.pk != reference.pk):
            store.detach(previous)
    question.package = reference


@contextmanager
def _staged_settings(question: ProgrammingQuestion, changes: Dict[str, Any]):
    """Set ``changes`` on ``question`` for validation; the old values come back if the block raises."""
    unknown = set(changes) - set(EDITABLE_SETTINGS)
    if unknown:
        raise ValueError(f"not editable: {', '.join(sorted(unknown))}")
    original = {name: getattr(question, name) for name in changes}
    changed = {name for name, value in changes.items() if original[name] != value}
    for name in changed:
        setattr(question, name, changes[name])
    try:
        yield changed
    except Exception:
        for name in changed:
            setattr(question, name, original[name])
        raise


def _store_orphan(data: bytes, filename: str, user):
    # The reference starts orphaned: if the commit below never happens it simply expires.
    attachment = store.put(data, filename)
    return store.create_reference(attachment, filename, user=user)


def _commit_package_change(question: ProgrammingQuestion, action: PackageAction, changed: Iterable[str], *,
                           reference=None, template_files=None, user=None) -> PackageChange:
    change = PackageChange(question_id=question.pk, action=action)
    fields = set(changed)
    if action is PackageAction.NONE and not fields:
        return change

    with transaction.atomic():
        locked = ProgrammingQuestion.objects.select_for_update().get(pk=question.pk)
        for name in fields:
            setattr(locked, name, getattr(question, name))
        superseded = locked.import_job

        if action is PackageAction.EVALUATE:
            if locked.pending_package_id is None:
                locked.pending_package = locked.package
        elif action is PackageAction.PROCESS_NEW:
            store.attach(reference, locked, user=user)
            stale = locked.pending_package
            if stale is not None and stale.pk != locked.package_id:
                store.detach(stale)
            locked.pending_package = reference
        elif action is PackageAction.REMOVE:
            _remove_package_contents(locked, template_files or [])
            locked.import_job = None
            fields |= {"package", "pending_package", "import_job", "evaluation_failed", "evaluation_error"}

        if action is not PackageAction.NONE:
            locked.package_epoch += 1
            locked.package_updated_at = timezone.now()
            fields |= {"package_epoch", "package_updated_at", "pending_package"}
        if user is not None:
            locked.updater = user
            fields.add("updater")
        fields.add("updated_at")
        locked.save(update_fields=sorted(fields))

        question_id, epoch = locked.pk, locked.package_epoch
        if action in (PackageAction.EVALUATE, PackageAction.PROCESS_NEW):
            attachment_id = locked.pending_package_id

            def _enqueue():
                change.job_id = queue.enqueue(question_id, attachment_id)
            transaction.on_commit(_enqueue)
        elif action is PackageAction.REMOVE and superseded is not None and not superseded.is_terminal:
            transaction.on_commit(lambda: queue.supersede(superseded))

    logger.info("package change: question %s %s (epoch %s)", question_id, action.value, epoch)
    question.refresh_from_db()
    return change


def _remove_package_contents(question: ProgrammingQuestion, template_files) -> None:
    question.template_files.all().delete()
    question.test_cases.all().delete()
    for template in template_files:
        question.template_files.create(filename=template.filename, content=template.content)

    for ref in {question.package, question.pending_package} - {None}:
        store.detach(ref)
    question.package = None
    question.pending_package = None
    question.evaluation_failed = False
    question.evaluation_error = ""
