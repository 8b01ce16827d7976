# core/celery.py
from __future__ import annotations

import os

from celery import Celery

# Módulo de settings de Django por defecto
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "core.settings")

app = Celery("core")

# Leer configuración desde settings.py, con prefijo CELERY_
# Ejemplo: CELERY_BROKER_URL, CELERY_RESULT_BACKEND, etc.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Autodescubre tasks.py en todas las apps instaladas
app.autodiscover_tasks()

# Reenvío periódico de DTE en contingencia
app.conf.beat_schedule = {
    "dte-reenviar-contingencias": {
        "task": "dte.tasks.reenviar_contingencias_task",
        "schedule": 15 * 60,
    },
}
