from django.apps import AppConfig


class TradebookConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "tradebook"

    def ready(self):
        import tradebook.signals  # noqa: F401
