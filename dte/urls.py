# dte/urls.py
# -*- coding: utf-8 -*-
"""
Rutas del módulo DTE.

Se incluye en el proyecto como:
    path("api/dte/", include("dte.urls"))

- /api/dte/documentos/            (listado, detalle, creación, acciones MH)
- /api/dte/anulaciones/           (eventos de invalidación)
- /api/dte/libros-iva/            (libros de IVA, ver dte/api/urls.py)
"""

from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from dte.viewsets import FiscalDocumentViewSet, InvalidationEventViewSet

app_name = "dte"

router = DefaultRouter()
router.register(r"documentos", FiscalDocumentViewSet, basename="documento")
router.register(r"anulaciones", InvalidationEventViewSet, basename="anulacion")

urlpatterns = [
    path("", include("dte.api.urls")),
    path("", include(router.urls)),
]
