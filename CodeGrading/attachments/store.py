# attachments/store.py
"""
Content-addressed attachment store.

Blobs are keyed by the SHA-256 of their bytes: storing the same bytes twice yields the same
Attachment row and the same storage object. Owners never point at an Attachment directly;
they hold an AttachmentReference, which carries the display name and the owner.

A reference created without an owner is an orphan: it expires after
ATTACHMENT_ORPHAN_TTL_HOURS unless it is attached first. ``sweep_expired`` (run from
Celery beat) deletes expired orphans, then every Attachment left without references.
"""
from __future__ import annotations

import hashlib
import logging
from typing import Optional, Tuple

from django.core.exceptions import ObjectDoesNotExist
from django.core.files.base import ContentFile
from django.db import IntegrityError, transaction
from django.utils import timezone

from . import owners
from .models import Attachment, AttachmentReference, orphan_expiry

logger = logging.getLogger(__name__)


class AttachmentNotFound(ObjectDoesNotExist):
    pass


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def put(data: bytes, filename: Optional[str] = None) -> Attachment:
    """Store ``data`` and return its Attachment; identical bytes return the existing row."""
    digest = content_hash(data)
    existing = Attachment.objects.filter(name=digest).first()
    if existing is not None:
        return existing

    attachment = Attachment(name=digest, size=len(data), original_filename=(filename or "")[:255])
    try:
        with transaction.atomic():
            attachment.file.save(digest, ContentFile(data), save=False)
            attachment.save()
    except IntegrityError:
        # Lost a race with a concurrent put of the same bytes.
        if attachment.file.name:
            attachment.file.storage.delete(attachment.file.name)
        logger.info("put: attachment %s stored concurrently, reusing", digest[:12])
        return Attachment.objects.get(name=digest)

    logger.info("put: stored attachment %s (%s bytes)", digest[:12], len(data))
    return attachment


def get(attachment_id: int) -> bytes:
    try:
        attachment = Attachment.objects.get(pk=attachment_id)
    except Attachment.DoesNotExist:
        raise AttachmentNotFound(f"attachment {attachment_id} not found") from None
    return attachment.read()


def read_reference(reference_id: Optional[int]) -> bytes:
    if reference_id is None:
        raise AttachmentNotFound("no attachment reference")
    try:
        reference = AttachmentReference.objects.select_related("attachment").get(pk=reference_id)
    except AttachmentReference.DoesNotExist:
        raise AttachmentNotFound(f"attachment reference {reference_id} not found") from None
    return reference.read()


def create_reference(attachment: Attachment, name: str, owner=None, user=None) -> AttachmentReference:
    reference = AttachmentReference(name=name or attachment.original_filename, attachment=attachment,
                                    creator=user, updater=user)
    reference.owner = owner
    reference.save()
    return reference


def attach(reference: AttachmentReference, owner, user=None) -> AttachmentReference:
    """Give ``reference`` an owner and clear its expiry in a single UPDATE."""
    kind, owner_id = owners.key_for(owner)
    if owner_id is None:
        raise ValueError("attach() needs an owner; use detach() to orphan a reference")
    fields = {"owner_kind": kind, "owner_id": owner_id, "expires_at": None, "updated_at": timezone.now()}
    if user is not None:
        fields["updater"] = user
    AttachmentReference.objects.filter(pk=reference.pk).update(**fields)
    for k, v in fields.items():
        setattr(reference, k, v)
    return reference


def detach(reference: Optional[AttachmentReference]) -> None:
    """Orphan ``reference`` so the sweep reaps it once the expiry passes."""
    if reference is None:
        return
    expires_at = orphan_expiry()
    AttachmentReference.objects.filter(pk=reference.pk).update(
        owner_kind="", owner_id=None, expires_at=expires_at, updated_at=timezone.now()
    )
    reference.owner_kind, reference.owner_id, reference.expires_at = "", None, expires_at


def sweep_expired(now=None) -> Tuple[int, int]:
    """Delete expired orphan references, then attachments nothing points to any more."""
    now = now or timezone.now()
    with transaction.atomic():
        expired = AttachmentReference.objects.filter(owner_id__isnull=True, expires_at__lte=now)
        touched = set(expired.values_list("attachment_id", flat=True))
        refs_deleted, _ = expired.delete()

        unreferenced = Attachment.objects.filter(pk__in=touched, references__isnull=True)
        blobs = [(a.file.storage, a.file.name) for a in unreferenced if a.file.name]
        attachments_deleted, _ = unreferenced.delete()

        def _delete_blobs():
            for storage, name in blobs:
                storage.delete(name)
        # Blobs go only once the rows are gone for good.
        transaction.on_commit(_delete_blobs)

    if refs_deleted or attachments_deleted:
        logger.info("sweep_expired: removed %s references and %s attachments", refs_deleted, attachments_deleted)
    return refs_deleted, attachments_deleted
