# attachments/tasks.py
from __future__ import annotations

import logging
from celery import shared_task
from django.utils import timezone

from .store import sweep_expired

logger = logging.getLogger(__name__)

@shared_task(bind=True)
def reap_expired_attachment_references(self) -> dict:
    """Beat job: drop orphan references past their expiry and the blobs left unreferenced."""
    now = timezone.now()
    refs, blobs = sweep_expired(now)
    return {"ok": True, "references": refs, "attachments": blobs, "ts": now.isoformat()}
