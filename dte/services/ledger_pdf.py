# dte/services/ledger_pdf.py
# -*- coding: utf-8 -*-
"""
Libro de IVA en PDF (ReportLab), horizontal: encabezado del contribuyente,
período, tabla del anexo y fila de totales.

Usa exactamente las filas y totales de build_ledger, igual que el Excel.
"""
from __future__ import annotations

import logging
from io import BytesIO
from typing import Any, List
from xml.sax.saxutils import escape

from django.conf import settings
from django.utils import timezone

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from dte.services.ledger import CAMPOS_MONETARIOS, LedgerReport, format_monto

logger = logging.getLogger(__name__)

PAGE_SIZE = landscape(A4)
MARGEN = 10 * mm

# Peso relativo del ancho de cada columna
PESO_COLUMNA_DEFAULT = 1.0
PESOS_COLUMNA = {
    "fila": 0.5,
    "nombre_cliente": 2.6,
    "nombre_sujeto": 2.6,
    "numero_resolucion": 2.2,
    "numero_serie": 2.0,
    "numero_documento": 2.4,
    "numero_documento_del": 2.4,
    "numero_documento_al": 2.4,
}


def nombre_archivo_pdf(report: LedgerReport) -> str:
    return (
        f"libro_iva_{report.tipo_libro.lower()}_"
        f"{report.fecha_inicio:%Y%m%d}_{report.fecha_fin:%Y%m%d}.pdf"
    )


def _anchos(columnas: List[tuple]) -> List[float]:
    disponible = PAGE_SIZE[0] - 2 * MARGEN
    pesos = [PESOS_COLUMNA.get(campo, PESO_COLUMNA_DEFAULT) for campo, _ in columnas]
    total = sum(pesos)
    return [disponible * p / total for p in pesos]


def generar_pdf_ledger(report: LedgerReport) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=PAGE_SIZE,
        rightMargin=MARGEN,
        leftMargin=MARGEN,
        topMargin=MARGEN,
        bottomMargin=MARGEN,
        title=report.titulo,
    )

    styles = getSampleStyleSheet()
    normal = styles["Normal"]
    title_style = ParagraphStyle(
        "LibroTitle",
        parent=normal,
        fontSize=13,
        leading=16,
        alignment=TA_CENTER,
        fontName="Helvetica-Bold",
    )
    subtitle_style = ParagraphStyle(
        "LibroSubtitle",
        parent=normal,
        fontSize=9,
        leading=11,
        alignment=TA_CENTER,
    )
    header_style = ParagraphStyle(
        "LibroHeader",
        parent=normal,
        fontSize=5.5,
        leading=6.5,
        alignment=TA_CENTER,
        fontName="Helvetica-Bold",
        textColor=colors.white,
    )
    cell_style = ParagraphStyle("LibroCell", parent=normal, fontSize=5.5, leading=6.5)
    amount_style = ParagraphStyle("LibroAmount", parent=cell_style, alignment=TA_RIGHT)
    total_style = ParagraphStyle(
        "LibroTotal",
        parent=amount_style,
        fontName="Helvetica-Bold",
    )

    elements: List[Any] = []

    # ====================================================================
    # ENCABEZADO
    # ====================================================================
    emisor = escape(getattr(settings, "DTE_EMISOR_NOMBRE", "") or "")
    nit = escape(getattr(settings, "DTE_EMISOR_NIT", "") or "")
    nrc = escape(getattr(settings, "DTE_EMISOR_NRC", "") or "")

    elements.append(Paragraph(escape(report.titulo), title_style))
    if emisor:
        elements.append(Paragraph(f"<b>{emisor}</b>", subtitle_style))
    if nit or nrc:
        elements.append(Paragraph(f"NIT: {nit} &nbsp;&nbsp; NRC: {nrc}", subtitle_style))
    elements.append(
        Paragraph(
            f"Período: {report.fecha_inicio:%d/%m/%Y} al {report.fecha_fin:%d/%m/%Y}"
            f" &nbsp;&nbsp; Documentos: {report.total_documentos}",
            subtitle_style,
        )
    )
    elements.append(Spacer(1, 4 * mm))

    # ====================================================================
    # DETALLE
    # ====================================================================
    columnas = report.columnas
    monetarios = set(CAMPOS_MONETARIOS[report.tipo_libro])

    data: List[List[Any]] = [
        [Paragraph(escape(titulo), header_style) for _campo, titulo in columnas]
    ]
    for fila in report.filas:
        celdas = []
        for campo, _titulo in columnas:
            if campo in monetarios:
                celdas.append(Paragraph(format_monto(fila.get(campo)), amount_style))
            else:
                celdas.append(Paragraph(escape(str(fila.get(campo, "") or "")), cell_style))
        data.append(celdas)

    totales: List[Any] = []
    for idx, (campo, _titulo) in enumerate(columnas):
        if campo in monetarios:
            totales.append(Paragraph(report.totales.get(campo, "0.00"), total_style))
        elif idx == 0:
            totales.append(Paragraph("<b>TOTALES</b>", cell_style))
        else:
            totales.append("")
    data.append(totales)

    table = Table(data, colWidths=_anchos(columnas), repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#366092")),
                ("BACKGROUND", (0, -1), (-1, -1), colors.HexColor("#D9E2F3")),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("LEFTPADDING", (0, 0), (-1, -1), 1.5),
                ("RIGHTPADDING", (0, 0), (-1, -1), 1.5),
                ("TOPPADDING", (0, 0), (-1, -1), 1),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 1),
            ]
        )
    )
    elements.append(table)
    elements.append(Spacer(1, 3 * mm))
    elements.append(
        Paragraph(
            f"Generado el {timezone.localtime():%d/%m/%Y %H:%M}",
            ParagraphStyle("LibroPie", parent=normal, fontSize=7, textColor=colors.grey),
        )
    )

    doc.build(elements)
    pdf_bytes = buffer.getvalue()
    buffer.close()

    logger.info(
        "PDF de %s generado con %s filas (%s bytes)",
        report.tipo_libro,
        report.total_documentos,
        len(pdf_bytes),
    )
    return pdf_bytes
