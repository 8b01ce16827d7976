# dte/services/ledger_excel.py
# -*- coding: utf-8 -*-
"""
Exportación de un libro de IVA a Excel (openpyxl): título, encabezados,
filas del libro y fila de totales.
"""
from __future__ import annotations

import io
import logging
from decimal import Decimal

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from dte.services.ledger import CAMPOS_MONETARIOS, LedgerReport

logger = logging.getLogger(__name__)

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
HEADER_ALIGNMENT = Alignment(horizontal="center", vertical="center", wrap_text=True)
TITLE_FONT = Font(bold=True, size=14)
DATA_FONT = Font(size=10)
TOTAL_FONT = Font(bold=True)
TOTAL_FILL = PatternFill(start_color="D9E2F3", end_color="D9E2F3", fill_type="solid")
THIN = Side(style="thin")
THIN_BORDER = Border(left=THIN, right=THIN, top=THIN, bottom=THIN)

FORMATO_MONTO = "#,##0.00"


def nombre_archivo(report: LedgerReport) -> str:
    return (
        f"libro_iva_{report.tipo_libro.lower()}_"
        f"{report.fecha_inicio:%Y%m%d}_{report.fecha_fin:%Y%m%d}.xlsx"
    )


def generar_excel_ledger(report: LedgerReport) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = report.tipo_libro

    columnas = report.columnas
    monetarios = set(CAMPOS_MONETARIOS[report.tipo_libro])
    ultima_col = get_column_letter(len(columnas))

    # Título y período
    ws["A1"] = report.titulo
    ws["A1"].font = TITLE_FONT
    ws.merge_cells(f"A1:{ultima_col}1")
    ws["A2"] = f"Período: {report.fecha_inicio:%d/%m/%Y} al {report.fecha_fin:%d/%m/%Y}"
    ws.merge_cells(f"A2:{ultima_col}2")

    header_row = 4
    for col_idx, (_campo, titulo) in enumerate(columnas, start=1):
        cell = ws.cell(row=header_row, column=col_idx, value=titulo)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = HEADER_ALIGNMENT
        cell.border = THIN_BORDER

    row_idx = header_row
    for fila in report.filas:
        row_idx += 1
        for col_idx, (campo, _titulo) in enumerate(columnas, start=1):
            valor = fila.get(campo, "")
            if campo in monetarios:
                valor = Decimal(valor)
            cell = ws.cell(row=row_idx, column=col_idx, value=valor)
            cell.font = DATA_FONT
            cell.border = THIN_BORDER
            if campo in monetarios:
                cell.number_format = FORMATO_MONTO

    # Totales
    row_idx += 1
    ws.cell(row=row_idx, column=1, value="TOTALES")
    for col_idx, (campo, _titulo) in enumerate(columnas, start=1):
        cell = ws.cell(row=row_idx, column=col_idx)
        if campo in monetarios:
            cell.value = Decimal(report.totales.get(campo, "0.00"))
            cell.number_format = FORMATO_MONTO
        cell.font = TOTAL_FONT
        cell.fill = TOTAL_FILL
        cell.border = THIN_BORDER

    for col_idx, (campo, _titulo) in enumerate(columnas, start=1):
        letra = get_column_letter(col_idx)
        if campo == "fila":
            ws.column_dimensions[letra].width = 6
        elif campo.startswith("nombre"):
            ws.column_dimensions[letra].width = 40
        elif campo in monetarios:
            ws.column_dimensions[letra].width = 15
        else:
            ws.column_dimensions[letra].width = 20

    ws.freeze_panes = ws.cell(row=header_row + 1, column=1)

    buffer = io.BytesIO()
    wb.save(buffer)
    logger.info(
        "Excel de %s generado con %s filas",
        report.tipo_libro,
        report.total_documentos,
    )
    return buffer.getvalue()
