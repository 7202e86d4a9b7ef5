from django.apps import AppConfig


class ArmadaDirectorConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "armada_director"
    label = "armada_director"
    verbose_name = "Armada Director"

    def ready(self):
        from . import checks  # noqa: F401
