# attachments/models.py
from datetime import timedelta
from pathlib import PurePosixPath

from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.text import get_valid_filename

from . import owners


def _fname(name: str) -> str:
    """Keep only basename and make it filesystem-safe."""
    base = PurePosixPath((name or "")).name.lstrip("/\\.")
    safe = get_valid_filename(base) if base else ""
    return safe or "file"


def attachment_upload_path(instance, filename):
    # Content-addressed: the object key is derived from the hash, never from the client name.
    digest = instance.name
    return "/".join(["attachments", digest[:2], digest[2:4], digest])


def orphan_expiry():
    return timezone.now() + timedelta(hours=getattr(settings, "ATTACHMENT_ORPHAN_TTL_HOURS", 24))


class Attachment(models.Model):
    name = models.CharField(max_length=64, unique=True, help_text="SHA-256 of the file bytes")
    file = models.FileField(upload_to=attachment_upload_path, max_length=1024)
    size = models.PositiveBigIntegerField(default=0)
    original_filename = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.original_filename or 'attachment'} ({self.name[:12]})"

    def read(self) -> bytes:
        with self.file.open("rb") as f:
            return f.read()


class AttachmentReference(models.Model):
    name = models.CharField(max_length=255)
    attachment = models.ForeignKey(Attachment, related_name="references", on_delete=models.PROTECT)

    # Polymorphic owner, resolved through attachments.owners.
    owner_kind = models.CharField(max_length=64, blank=True, default="")
    owner_id = models.PositiveBigIntegerField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True, db_index=True)

    creator = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True,
                                related_name="+", on_delete=models.SET_NULL)
    updater = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True,
                                related_name="+", on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["owner_kind", "owner_id"], name="attachment_ref_owner_idx")]
        ordering = ["id"]

    def __str__(self):
        return self.name

    @property
    def owner(self):
        return owners.resolve(self.owner_kind, self.owner_id)

    @owner.setter
    def owner(self, value):
        self.owner_kind, self.owner_id = owners.key_for(value)

    @property
    def is_orphaned(self) -> bool:
        return self.owner_id is None

    def open(self, mode="rb"):
        return self.attachment.file.open(mode)

    def read(self) -> bytes:
        return self.attachment.read()

    def save(self, *args, **kwargs):
        self.name = _fname(self.name)
        # expires_at is only ever set while the reference has no owner
        if self.owner_id is not None:
            self.expires_at = None
        elif self.expires_at is None:
            self.expires_at = orphan_expiry()
        super().save(*args, **kwargs)
