from django.apps import AppConfig


class ComplianceConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "compliance"
    verbose_name = "CE Credit Compliance"

    def ready(self):
        from . import signals  # noqa: F401
