# dte/api/urls.py
# -*- coding: utf-8 -*-
"""
Rutas de los libros de IVA:

- GET /api/dte/libros-iva/          filas paginadas (page, limit) + totales
- GET /api/dte/libros-iva/resumen/  conteo de documentos + totales
- GET /api/dte/libros-iva/excel/    archivo .xlsx
- GET /api/dte/libros-iva/pdf/      archivo .pdf

Query params comunes: tipo_libro (ANEXO_1 | ANEXO_2 | ANEXO_5),
fecha_inicio, fecha_fin (YYYY-MM-DD), id_sucursal, solo_procesados (default true).
"""

from __future__ import annotations

from django.urls import path

from dte.api.views import LibroIvaExcelView, LibroIvaPdfView, LibroIvaResumenView, LibroIvaView

urlpatterns = [
    path("libros-iva/", LibroIvaView.as_view(), name="libros-iva"),
    path("libros-iva/resumen/", LibroIvaResumenView.as_view(), name="libros-iva-resumen"),
    path("libros-iva/excel/", LibroIvaExcelView.as_view(), name="libros-iva-excel"),
    path("libros-iva/pdf/", LibroIvaPdfView.as_view(), name="libros-iva-pdf"),
]
