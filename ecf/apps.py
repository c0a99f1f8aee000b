from django.apps import AppConfig


class EcfAppConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "ecf"
    verbose_name = "Electronic Fiscal Documents"

    def ready(self):
        from . import signals  # noqa: F401
