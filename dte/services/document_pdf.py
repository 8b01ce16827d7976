# dte/services/document_pdf.py
# -*- coding: utf-8 -*-
"""
Representación impresa (PDF) de un DTE con ReportLab.

- Requiere que el documento tenga su JSON generado (firmado al menos una vez).
- Encabezado con emisor y bloque de identificación (código de generación,
  número de control, sello de recepción).
- Receptor, documento relacionado (notas), detalle, totales y observaciones.
- QR de consulta pública del MH sólo cuando el documento está PROCESADO.
- Un documento que no está PROCESADO lleva una leyenda de "sin validez".

El PDF se genera en cada solicitud; no se persiste.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from io import BytesIO
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlencode
from xml.sax.saxutils import escape

from django.conf import settings

from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from dte.exceptions import ValidationError
from dte.models import FiscalDocument, TipoDte
from dte.services.builders import TIPOS_PRECIO_SIN_IVA
from dte.services.workflow import cargar_documento

logger = logging.getLogger(__name__)

CONSULTA_PUBLICA_URL = "https://admin.factura.gob.sv/consultaPublica"

TITULOS_DOCUMENTO = {
    TipoDte.FACTURA.value: "FACTURA",
    TipoDte.CCF.value: "COMPROBANTE DE CRÉDITO FISCAL",
    TipoDte.NOTA_CREDITO.value: "NOTA DE CRÉDITO",
    TipoDte.NOTA_DEBITO.value: "NOTA DE DÉBITO",
    TipoDte.COMPROBANTE_RETENCION.value: "COMPROBANTE DE RETENCIÓN",
    TipoDte.FACTURA_EXPORTACION.value: "FACTURA DE EXPORTACIÓN",
    TipoDte.SUJETO_EXCLUIDO.value: "FACTURA DE SUJETO EXCLUIDO",
}

AMBIENTES = {"00": "PRUEBAS", "01": "PRODUCCIÓN"}

DocumentoInput = Union[FiscalDocument, int]


def _fmt_amount(value: Any) -> str:
    if value is None:
        return "0.00"
    return f"{Decimal(str(value)):.2f}"


def _fmt_cantidad(value: Any) -> str:
    # 4 decimales en el modelo; se muestran sólo los significativos
    texto = f"{Decimal(str(value)):f}"
    return texto.rstrip("0").rstrip(".") if "." in texto else texto


def _txt(value: Any) -> str:
    return escape(str(value)) if value not in (None, "") else ""


def url_consulta_publica(documento: FiscalDocument) -> str:
    base = getattr(settings, "DTE_CONSULTA_PUBLICA_URL", CONSULTA_PUBLICA_URL)
    query = urlencode(
        {
            "ambiente": documento.ambiente,
            "codGen": documento.codigo_generacion,
            "fechaEmi": documento.fecha_emision.isoformat(),
        }
    )
    return f"{base}?{query}"


def nombre_archivo_documento(documento: FiscalDocument) -> str:
    return f"{documento.numero_control or documento.codigo_generacion}.pdf"


def _build_qr_drawing(contenido: str, size: float = 30 * mm) -> Drawing:
    qr = QrCodeWidget(contenido)
    bounds = qr.getBounds()
    width = bounds[2] - bounds[0]
    height = bounds[3] - bounds[1]
    drawing = Drawing(size, size, transform=[size / width, 0, 0, size / height, 0, 0])
    drawing.add(qr)
    return drawing


def _resolver_documento(documento: DocumentoInput) -> FiscalDocument:
    if isinstance(documento, FiscalDocument):
        return documento
    return cargar_documento(documento)


def generar_pdf_documento(documento: DocumentoInput) -> bytes:
    doc_obj = _resolver_documento(documento)
    if not doc_obj.dte_json:
        raise ValidationError(
            "El documento no tiene un DTE generado. No se puede generar el PDF.",
            code="DTE_NOT_GENERATED",
            estado_actual=doc_obj.estado,
        )

    dte: Dict[str, Any] = doc_obj.dte_json
    identificacion = dte.get("identificacion") or {}
    emisor = dte.get("emisor") or {}

    buffer = BytesIO()
    pdf = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=15 * mm,
        leftMargin=15 * mm,
        topMargin=15 * mm,
        bottomMargin=15 * mm,
        title=doc_obj.numero_control,
    )

    styles = getSampleStyleSheet()
    normal = styles["Normal"]
    subtitle_style = ParagraphStyle(
        "DteSubtitle",
        parent=normal,
        fontSize=10,
        leading=12,
        alignment=TA_CENTER,
        fontName="Helvetica-Bold",
    )
    label_style = ParagraphStyle(
        "DteLabel",
        parent=normal,
        fontSize=8,
        leading=10,
        fontName="Helvetica-Bold",
    )
    value_style = ParagraphStyle("DteValue", parent=normal, fontSize=8, leading=10)
    small_style = ParagraphStyle("DteSmall", parent=normal, fontSize=7, leading=9)
    aviso_style = ParagraphStyle(
        "DteAviso",
        parent=subtitle_style,
        textColor=colors.HexColor("#B00020"),
    )

    elements: List[Any] = []

    # ====================================================================
    # ENCABEZADO: emisor | identificación del DTE
    # ====================================================================
    emisor_html = f"<b>{_txt(emisor.get('nombre') or getattr(settings, 'DTE_EMISOR_NOMBRE', ''))}</b><br/>"
    emisor_html += f"<b>NIT:</b> {_txt(emisor.get('nit'))}<br/>"
    emisor_html += f"<b>NRC:</b> {_txt(emisor.get('nrc'))}<br/>"
    emisor_html += f"<b>Establecimiento:</b> {_txt(doc_obj.sucursal.nombre)}"
    if emisor.get("telefono"):
        emisor_html += f"<br/><b>Teléfono:</b> {_txt(emisor['telefono'])}"
    if emisor.get("correo"):
        emisor_html += f"<br/><b>Correo:</b> {_txt(emisor['correo'])}"

    left_table = Table([[Paragraph(emisor_html, value_style)]], colWidths=[90 * mm])

    modelo = "Diferido" if identificacion.get("tipoModelo") == 2 else "Previo"
    operacion = "Contingencia" if identificacion.get("tipoOperacion") == 2 else "Normal"
    hora = identificacion.get("horEmi") or ""

    right_rows: List[List[Any]] = [
        [Paragraph("DOCUMENTO TRIBUTARIO ELECTRÓNICO", label_style)],
        [Paragraph(TITULOS_DOCUMENTO.get(doc_obj.tipo_dte, "DOCUMENTO TRIBUTARIO"), subtitle_style)],
        [Paragraph("<b>Código de generación:</b>", label_style)],
        [Paragraph(_txt(doc_obj.codigo_generacion), small_style)],
        [Paragraph("<b>Número de control:</b>", label_style)],
        [Paragraph(_txt(doc_obj.numero_control), small_style)],
        [Paragraph("<b>Sello de recepción:</b>", label_style)],
        [Paragraph(_txt(doc_obj.sello_recepcion) or "(Pendiente)", small_style)],
        [Paragraph(f"<b>Modelo:</b> {modelo} &nbsp; <b>Operación:</b> {operacion}", value_style)],
        [Paragraph(f"<b>Emisión:</b> {doc_obj.fecha_emision:%d/%m/%Y} {_txt(hora)}", value_style)],
        [Paragraph(f"<b>Ambiente:</b> {AMBIENTES.get(doc_obj.ambiente, doc_obj.ambiente)}", value_style)],
    ]
    right_table = Table(right_rows, colWidths=[90 * mm])
    right_table.setStyle(
        TableStyle(
            [
                ("TOPPADDING", (0, 0), (-1, -1), 1),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 1),
            ]
        )
    )

    header_table = Table([[left_table, right_table]], colWidths=[90 * mm, 90 * mm])
    header_table.setStyle(
        TableStyle(
            [
                ("BOX", (0, 0), (-1, -1), 1, colors.black),
                ("INNERGRID", (0, 0), (-1, -1), 0.5, colors.grey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )
    elements.append(header_table)
    elements.append(Spacer(1, 3 * mm))

    if doc_obj.estado == FiscalDocument.Estado.INVALIDADO:
        elements.append(Paragraph("DOCUMENTO INVALIDADO", aviso_style))
        elements.append(Spacer(1, 2 * mm))
    elif doc_obj.estado != FiscalDocument.Estado.PROCESADO:
        elements.append(
            Paragraph(f"SIN VALIDEZ TRIBUTARIA: documento en estado {doc_obj.estado}", aviso_style)
        )
        elements.append(Spacer(1, 2 * mm))

    # ====================================================================
    # RECEPTOR
    # ====================================================================
    etiqueta = "Sujeto excluido" if doc_obj.tipo_dte == TipoDte.SUJETO_EXCLUIDO else "Receptor"
    elements.append(Paragraph(f"<b>{etiqueta}</b>", subtitle_style))
    elements.append(Spacer(1, 2 * mm))

    receptor_data: List[List[Any]] = [
        [Paragraph("<b>Nombre:</b>", label_style), Paragraph(_txt(doc_obj.receptor_nombre), value_style)],
    ]
    if doc_obj.receptor_nit:
        receptor_data.append([Paragraph("<b>NIT:</b>", label_style), Paragraph(_txt(doc_obj.receptor_nit), value_style)])
    elif doc_obj.receptor_num_documento:
        receptor_data.append(
            [
                Paragraph("<b>Documento:</b>", label_style),
                Paragraph(_txt(doc_obj.receptor_num_documento), value_style),
            ]
        )
    if doc_obj.receptor_nrc:
        receptor_data.append([Paragraph("<b>NRC:</b>", label_style), Paragraph(_txt(doc_obj.receptor_nrc), value_style)])
    if doc_obj.receptor_correo:
        receptor_data.append(
            [Paragraph("<b>Correo:</b>", label_style), Paragraph(_txt(doc_obj.receptor_correo), value_style)]
        )
    if doc_obj.receptor_telefono:
        receptor_data.append(
            [Paragraph("<b>Teléfono:</b>", label_style), Paragraph(_txt(doc_obj.receptor_telefono), value_style)]
        )

    receptor_table = Table(receptor_data, colWidths=[35 * mm, 145 * mm])
    receptor_table.setStyle(
        TableStyle(
            [
                ("BOX", (0, 0), (-1, -1), 1, colors.black),
                ("INNERGRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )
    elements.append(receptor_table)
    elements.append(Spacer(1, 4 * mm))

    # Notas: documento que ajustan
    relacionados = dte.get("documentoRelacionado") or []
    if relacionados:
        rel_data: List[List[Any]] = [
            [
                Paragraph("<b>Documento relacionado</b>", small_style),
                Paragraph("<b>Código de generación</b>", small_style),
                Paragraph("<b>Fecha</b>", small_style),
            ]
        ]
        for rel in relacionados:
            rel_data.append(
                [
                    Paragraph(
                        TITULOS_DOCUMENTO.get(rel.get("tipoDocumento"), _txt(rel.get("tipoDocumento"))),
                        small_style,
                    ),
                    Paragraph(_txt(rel.get("numeroDocumento")), small_style),
                    Paragraph(_txt(rel.get("fechaEmision")), small_style),
                ]
            )
        rel_table = Table(rel_data, colWidths=[60 * mm, 90 * mm, 30 * mm])
        rel_table.setStyle(
            TableStyle(
                [
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#CCCCCC")),
                ]
            )
        )
        elements.append(rel_table)
        elements.append(Spacer(1, 4 * mm))

    # ====================================================================
    # DETALLE
    # ====================================================================
    detail_data: List[List[Any]] = [
        [
            Paragraph(f"<b>{titulo}</b>", small_style)
            for titulo in (
                "N°",
                "Cant.",
                "Código",
                "Descripción",
                "Precio unitario",
                "Descuento",
                "No sujetas",
                "Exentas",
                "Gravadas",
            )
        ]
    ]
    for linea in doc_obj.lineas.order_by("num_item"):
        detail_data.append(
            [
                Paragraph(str(linea.num_item), small_style),
                Paragraph(_fmt_cantidad(linea.cantidad), small_style),
                Paragraph(_txt(linea.codigo), small_style),
                Paragraph(_txt(linea.descripcion), small_style),
                Paragraph(_fmt_amount(linea.precio_unitario), small_style),
                Paragraph(_fmt_amount(linea.monto_descuento), small_style),
                Paragraph(_fmt_amount(linea.venta_no_sujeta), small_style),
                Paragraph(_fmt_amount(linea.venta_exenta), small_style),
                Paragraph(_fmt_amount(linea.venta_gravada), small_style),
            ]
        )
    if len(detail_data) == 1:
        detail_data.append([Paragraph("Sin detalles", small_style)] + [""] * 8)

    detail_table = Table(
        detail_data,
        colWidths=[8 * mm, 12 * mm, 18 * mm, 52 * mm, 18 * mm, 17 * mm, 18 * mm, 18 * mm, 19 * mm],
        repeatRows=1,
    )
    detail_table.setStyle(
        TableStyle(
            [
                ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#CCCCCC")),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("ALIGN", (4, 1), (-1, -1), "RIGHT"),
            ]
        )
    )
    elements.append(detail_table)
    elements.append(Spacer(1, 4 * mm))

    # ====================================================================
    # OBSERVACIONES + TOTALES
    # ====================================================================
    info_rows: List[List[Any]] = []
    if doc_obj.observaciones:
        info_rows.append([Paragraph("<b>Observaciones:</b>", label_style)])
        info_rows.append([Paragraph(_txt(doc_obj.observaciones[:500]), value_style)])
    qr_drawing: Optional[Drawing] = None
    if doc_obj.estado == FiscalDocument.Estado.PROCESADO:
        qr_drawing = _build_qr_drawing(url_consulta_publica(doc_obj))
        info_rows.append([qr_drawing])
        info_rows.append([Paragraph("Consulte este documento en el portal del MH", small_style)])
    if not info_rows:
        info_rows.append([Paragraph("", value_style)])
    info_table = Table(info_rows, colWidths=[95 * mm])

    totales_data: List[List[Any]] = [
        [Paragraph("<b>Ventas no sujetas</b>", label_style), Paragraph(_fmt_amount(doc_obj.total_no_sujeto), value_style)],
        [Paragraph("<b>Ventas exentas</b>", label_style), Paragraph(_fmt_amount(doc_obj.total_exento), value_style)],
        [Paragraph("<b>Ventas gravadas</b>", label_style), Paragraph(_fmt_amount(doc_obj.total_gravado), value_style)],
    ]
    if doc_obj.tipo_dte in TIPOS_PRECIO_SIN_IVA:
        totales_data.append(
            [Paragraph("<b>IVA 13%</b>", label_style), Paragraph(_fmt_amount(doc_obj.total_iva), value_style)]
        )
    elif doc_obj.total_iva:
        totales_data.append(
            [Paragraph("<b>IVA incluido</b>", label_style), Paragraph(_fmt_amount(doc_obj.total_iva), value_style)]
        )
    if doc_obj.iva_retenido:
        totales_data.append(
            [Paragraph("<b>IVA retenido</b>", label_style), Paragraph(_fmt_amount(doc_obj.iva_retenido), value_style)]
        )
    totales_data.append(
        [
            Paragraph(f"<b>TOTAL ({_txt(doc_obj.moneda)})</b>", label_style),
            Paragraph(f"<b>{_fmt_amount(doc_obj.total)}</b>", value_style),
        ]
    )
    totales_table = Table(totales_data, colWidths=[50 * mm, 35 * mm])
    totales_table.setStyle(
        TableStyle(
            [
                ("BOX", (0, 0), (-1, -1), 1, colors.black),
                ("INNERGRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                ("BACKGROUND", (0, -1), (-1, -1), colors.HexColor("#EEEEEE")),
            ]
        )
    )

    combined = Table([[info_table, totales_table]], colWidths=[95 * mm, 85 * mm])
    combined.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))
    elements.append(combined)

    pdf.build(elements)
    pdf_bytes = buffer.getvalue()
    buffer.close()

    logger.info(
        "PDF generado para DTE %s (%s, estado=%s, qr=%s)",
        doc_obj.codigo_generacion,
        doc_obj.tipo_dte,
        doc_obj.estado,
        qr_drawing is not None,
    )
    return pdf_bytes
