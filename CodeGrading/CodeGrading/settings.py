from pathlib import Path
import os

BASE_DIR = Path(__file__).resolve().parent.parent
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure")
DEBUG = os.getenv("DEBUG", "1") == "1"
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost,codegrading").split(",")

INSTALLED_APPS = [
    "jazzmin",
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "attachments",
    "programming",
    "storages",
]

JAZZMIN_SETTINGS = {
    "site_title": "CodeGrading Admin",
    "site_header": "CodeGrading",
    "site_brand": "CodeGrading",
    "welcome_sign": "Programming question packages and evaluation jobs",
    "show_sidebar": True,
    "navigation_expanded": True,
    "order_with_respect_to": ["auth", "programming", "attachments"],
    "icons": {
        "auth.user": "fas fa-user",
        "auth.Group": "fas fa-users",
        "attachments.Attachment": "fas fa-file-archive",
        "attachments.AttachmentReference": "fas fa-paperclip",
        "programming.ProgrammingQuestion": "fas fa-code",
        "programming.EvaluationJob": "fas fa-cogs",
        "programming.Submission": "fas fa-inbox",
        "programming.ProgrammingAnswer": "fas fa-file-code",
    },
    "default_icon_parents": "fas fa-chevron-circle-right",
    "default_icon_children": "fas fa-circle",
    "related_modal_active": True,
}

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "CodeGrading.urls"

TEMPLATES = [{
    "BACKEND": "django.template.backends.django.DjangoTemplates",
    "DIRS": [],
    "APP_DIRS": True,
    "OPTIONS": {
        "context_processors": [
            "django.template.context_processors.debug",
            "django.template.context_processors.request",
            "django.contrib.auth.context_processors.auth",
            "django.contrib.messages.context_processors.messages",
        ],
    },
}]

WSGI_APPLICATION = "CodeGrading.wsgi.application"

_db = os.getenv("DATABASE_URL", "").strip()
if _db:
    if _db.startswith("sqlite:///"): _db = _db.replace("sqlite:///", "", 1)
    DATABASES = {"default": {"ENGINE": "django.db.backends.sqlite3", "NAME": _db}}
else:
    DATABASES = {"default": {"ENGINE": "django.db.backends.sqlite3", "NAME": BASE_DIR / "db.sqlite3"}}

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
MEDIA_URL = "/media/"

# S3/MinIO
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID", "minioadmin")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY", "minioadmin")
AWS_STORAGE_BUCKET_NAME = os.getenv("AWS_STORAGE_BUCKET_NAME", "files")
AWS_S3_ENDPOINT_URL = os.getenv("AWS_S3_ENDPOINT_URL", "http://minio:9000")
AWS_S3_REGION_NAME = "us-east-1"
AWS_S3_SIGNATURE_VERSION = "s3v4"
AWS_S3_ADDRESSING_STYLE = "path"
AWS_S3_URL_PROTOCOL = "http:"
AWS_QUERYSTRING_AUTH = True
AWS_DEFAULT_ACL = None

STORAGES = {
    "default": {"BACKEND": "storages.backends.s3boto3.S3Boto3Storage"},
    "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
}

LOGIN_URL = "/admin/login/"
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

GRADING_LOG_LEVEL = os.getenv("GRADING_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "plain"}},
    "root": {"handlers": ["console"], "level": "INFO"},
    "loggers": {
        "django": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "attachments": {"handlers": ["console"], "level": GRADING_LOG_LEVEL, "propagate": False},
        "programming": {"handlers": ["console"], "level": GRADING_LOG_LEVEL, "propagate": False},
    },
}

# Attachments
ATTACHMENT_ORPHAN_TTL_HOURS = int(os.getenv("ATTACHMENT_ORPHAN_TTL_HOURS", "24"))

# Programming evaluation
PROGRAMMING_CPU_TIMEOUT = min(int(os.getenv("PROGRAMMING_CPU_TIMEOUT", "30")), 30)
_mem = os.getenv("PROGRAMMING_MEMORY_LIMIT", "").strip()
PROGRAMMING_MEMORY_LIMIT = int(_mem) if _mem else None
PROGRAMMING_EVALUATOR_BACKEND = os.getenv("PROGRAMMING_EVALUATOR_BACKEND", "docker")
PROGRAMMING_CONTAINER_MEMORY = os.getenv("PROGRAMMING_CONTAINER_MEMORY", "1g")
PROGRAMMING_ALLOW_NETWORK = os.getenv("PROGRAMMING_ALLOW_NETWORK", "0") == "1"
PROGRAMMING_WORK_DIR = os.getenv("GRADER_SHARED_DIR", "/grader-shared")
PROGRAMMING_RECOVERY_GRACE_SECONDS = int(os.getenv("PROGRAMMING_RECOVERY_GRACE_SECONDS", "300"))

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/0")
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TIME_LIMIT = int(os.getenv("CELERY_TASK_TIME_LIMIT", "300"))
CELERY_TASK_SOFT_TIME_LIMIT = int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "240"))
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_REJECT_ON_WORKER_LOST = True
# Evaluation tasks carry their own time limits (programming.queue.time_limits), up to about an
# hour; redis must not hand a running one to a second worker before that.
CELERY_BROKER_TRANSPORT_OPTIONS = {
    "visibility_timeout": int(os.getenv("CELERY_VISIBILITY_TIMEOUT", str(2 * 3600))),
}
