# dte/api/views.py
# -*- coding: utf-8 -*-
"""
Endpoints DRF de libros de IVA (JSON, Excel y PDF).

Las filas y totales los calcula dte.services.ledger.build_ledger; aquí sólo
se validan parámetros, se pagina la respuesta y se arma el archivo.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from django.http import HttpResponse

from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView

from dte.pagination import meta_paginacion
from dte.serializers import LedgerQuerySerializer
from dte.services.ledger import build_ledger, resumen_ledger
from dte.services.ledger_excel import generar_excel_ledger, nombre_archivo
from dte.services.ledger_pdf import generar_pdf_ledger, nombre_archivo_pdf

logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PDF_CONTENT_TYPE = "application/pdf"


def _parametros(request: Request) -> Dict[str, Any]:
    serializer = LedgerQuerySerializer(data=request.query_params)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


def _kwargs_libro(params: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "tipo_libro": params["tipo_libro"],
        "fecha_inicio": params["fecha_inicio"],
        "fecha_fin": params["fecha_fin"],
        "sucursal_id": params.get("id_sucursal"),
        "solo_procesados": params.get("solo_procesados", True),
    }


class LibroIvaView(APIView):
    """
    GET /api/dte/libros-iva/

    Respuesta: {tipo_libro, titulo, columnas, filas (página), totales
    (de todo el período), meta: {total, page, limit, totalPages}}
    """

    def get(self, request: Request) -> Response:
        params = _parametros(request)
        report = build_ledger(**_kwargs_libro(params))

        page = params["page"]
        limit = params["limit"]
        inicio = (page - 1) * limit
        data = report.to_dict(filas=report.filas[inicio:inicio + limit])
        data["meta"] = meta_paginacion(report.total_documentos, page, limit)
        return Response(data)


class LibroIvaResumenView(APIView):
    """GET /api/dte/libros-iva/resumen/"""

    def get(self, request: Request) -> Response:
        params = _parametros(request)
        return Response(resumen_ledger(**_kwargs_libro(params)))


class LibroIvaExcelView(APIView):
    """GET /api/dte/libros-iva/excel/"""

    def get(self, request: Request) -> HttpResponse:
        params = _parametros(request)
        report = build_ledger(**_kwargs_libro(params))
        contenido = generar_excel_ledger(report)

        response = HttpResponse(contenido, content_type=XLSX_CONTENT_TYPE)
        response["Content-Disposition"] = f'attachment; filename="{nombre_archivo(report)}"'
        return response


class LibroIvaPdfView(APIView):
    """GET /api/dte/libros-iva/pdf/ (mismas filas y totales que el Excel)"""

    def get(self, request: Request) -> HttpResponse:
        params = _parametros(request)
        report = build_ledger(**_kwargs_libro(params))
        contenido = generar_pdf_ledger(report)

        response = HttpResponse(contenido, content_type=PDF_CONTENT_TYPE)
        response["Content-Disposition"] = f'attachment; filename="{nombre_archivo_pdf(report)}"'
        return response
