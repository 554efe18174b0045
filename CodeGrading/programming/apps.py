from django.apps import AppConfig


class ProgrammingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "programming"
