import os
from celery import Celery # type: ignore

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "CodeGrading.settings")

app = Celery("CodeGrading")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

app.conf.beat_schedule = {
    "reap-expired-attachment-references-hourly": {
        "task": "attachments.tasks.reap_expired_attachment_references",
        "schedule": 3600.0,
    },
    "recover-pending-packages-every-five-minutes": {
        "task": "programming.tasks.recover_pending_packages",
        "schedule": 300.0,
    },
}
