from django.apps import AppConfig


class DteConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "dte"
    verbose_name = "Documentos Tributarios Electrónicos"
