# dte/services/ledger.py
# -*- coding: utf-8 -*-
"""
Libros de IVA (anexos del MH) a partir de los DTE aceptados.

- ANEXO_1: ventas a contribuyentes (CCF, 03).
- ANEXO_2: ventas a consumidor final (Factura, 01).
- ANEXO_5: compras a sujetos excluidos (FSE, 14).

Los documentos INVALIDADOS nunca se incluyen. Las filas se leen en una
sola consulta dentro de una transacción y los totales se calculan sobre
exactamente esas filas, de modo que totales y columnas siempre cuadran.
Los montos se entregan como texto con 2 decimales (ROUND_HALF_UP).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from django.db import transaction

from dte.exceptions import ValidationError
from dte.models import FiscalDocument, TipoDte

logger = logging.getLogger(__name__)

ANEXO_1 = "ANEXO_1"
ANEXO_2 = "ANEXO_2"
ANEXO_5 = "ANEXO_5"

LIBRO_A_TIPO_DTE = {
    ANEXO_1: TipoDte.CCF,
    ANEXO_2: TipoDte.FACTURA,
    ANEXO_5: TipoDte.SUJETO_EXCLUIDO,
}

TITULOS_LIBRO = {
    ANEXO_1: "Anexo 1 - Libro de Ventas a Contribuyentes",
    ANEXO_2: "Anexo 2 - Libro de Ventas a Consumidor Final",
    ANEXO_5: "Anexo 5 - Libro de Compras a Sujetos Excluidos",
}

# Clase de documento 4 = DTE
CLASE_DOCUMENTO_DTE = "4"

TIPO_OPERACION_GRAVADAS = 1
TIPO_OPERACION_EXENTAS = 2
TIPO_OPERACION_NO_SUJETAS = 3
TIPO_OPERACION_MIXTAS = 4

TIPO_INGRESO_SERVICIOS = 2

# ---------------------------------------------------------------------------
# Layout de columnas (el orden importa)
# ---------------------------------------------------------------------------

COLUMNAS_ANEXO_1 = [
    ("fila", "N°"),
    ("fecha_emision", "Fecha de emisión"),
    ("clase_documento", "Clase de documento"),
    ("tipo_documento", "Tipo de documento"),
    ("numero_resolucion", "Número de resolución"),
    ("numero_serie", "Serie del documento"),
    ("numero_documento", "Número de documento"),
    ("control_interno", "Número de control interno"),
    ("nit_nrc", "NIT o NRC del cliente"),
    ("nombre_cliente", "Nombre, razón social o denominación"),
    ("ventas_exentas", "Ventas exentas"),
    ("ventas_no_sujetas", "Ventas no sujetas"),
    ("ventas_gravadas", "Ventas gravadas locales"),
    ("debito_fiscal", "Débito fiscal"),
    ("ventas_terceros", "Ventas a cuenta de terceros no domiciliados"),
    ("debito_terceros", "Débito fiscal por ventas a cuenta de terceros"),
    ("total_ventas", "Total de ventas"),
    ("dui_cliente", "DUI del cliente"),
    ("tipo_operacion", "Tipo de operación (renta)"),
    ("tipo_ingreso", "Tipo de ingreso (renta)"),
    ("numero_anexo", "Número del anexo"),
]

COLUMNAS_ANEXO_2 = [
    ("fila", "N°"),
    ("fecha_emision", "Fecha de emisión"),
    ("clase_documento", "Clase de documento"),
    ("tipo_documento", "Tipo de documento"),
    ("numero_resolucion", "Número de resolución"),
    ("serie_del", "Serie del documento (del)"),
    ("serie_al", "Serie del documento (al)"),
    ("numero_documento_del", "Número de documento (del)"),
    ("numero_documento_al", "Número de documento (al)"),
    ("numero_maquina", "Número de máquina registradora"),
    ("ventas_exentas", "Ventas exentas"),
    ("ventas_no_sujetas", "Ventas no sujetas"),
    ("ventas_gravadas", "Ventas gravadas locales"),
    ("exportaciones_ca", "Exportaciones dentro del área de Centroamérica"),
    ("exportaciones_fuera_ca", "Exportaciones fuera del área de Centroamérica"),
    ("exportaciones_servicios", "Exportaciones de servicios"),
    ("ventas_zonas_francas", "Ventas a zonas francas y DPA"),
    ("total_ventas", "Total de ventas"),
    ("numero_anexo", "Número del anexo"),
]

COLUMNAS_ANEXO_5 = [
    ("fila", "N°"),
    ("fecha_emision", "Fecha de emisión"),
    ("clase_documento", "Clase de documento"),
    ("tipo_documento", "Tipo de documento"),
    ("numero_resolucion", "Número de resolución"),
    ("numero_serie", "Serie del documento"),
    ("numero_documento", "Número de documento"),
    ("control_interno", "Número de control interno"),
    ("dui_nit", "DUI o NIT del sujeto"),
    ("nombre_sujeto", "Nombre, razón social o denominación"),
    ("monto_compra", "Monto de la compra"),
    ("iva_retenido", "IVA retenido"),
    ("total", "Total"),
    ("numero_anexo", "Número del anexo"),
]

COLUMNAS_LIBRO = {
    ANEXO_1: COLUMNAS_ANEXO_1,
    ANEXO_2: COLUMNAS_ANEXO_2,
    ANEXO_5: COLUMNAS_ANEXO_5,
}

CAMPOS_MONETARIOS = {
    ANEXO_1: [
        "ventas_exentas",
        "ventas_no_sujetas",
        "ventas_gravadas",
        "debito_fiscal",
        "ventas_terceros",
        "debito_terceros",
        "total_ventas",
    ],
    ANEXO_2: [
        "ventas_exentas",
        "ventas_no_sujetas",
        "ventas_gravadas",
        "exportaciones_ca",
        "exportaciones_fuera_ca",
        "exportaciones_servicios",
        "ventas_zonas_francas",
        "total_ventas",
    ],
    ANEXO_5: ["monto_compra", "iva_retenido", "total"],
}

CERO = Decimal("0.00")


@dataclass
class LedgerReport:
    """Libro calculado por consulta; nunca se persiste."""

    tipo_libro: str
    titulo: str
    fecha_inicio: date
    fecha_fin: date
    columnas: List[tuple]
    filas: List[Dict[str, Any]] = field(default_factory=list)
    totales: Dict[str, str] = field(default_factory=dict)

    @property
    def total_documentos(self) -> int:
        return len(self.filas)

    def to_dict(self, filas: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        return {
            "tipo_libro": self.tipo_libro,
            "titulo": self.titulo,
            "fecha_inicio": self.fecha_inicio.isoformat(),
            "fecha_fin": self.fecha_fin.isoformat(),
            "columnas": [{"campo": c, "titulo": t} for c, t in self.columnas],
            "total_documentos": self.total_documentos,
            "filas": self.filas if filas is None else filas,
            "totales": self.totales,
        }


# ---------------------------------------------------------------------------
# Formato
# ---------------------------------------------------------------------------


def format_monto(value: Optional[Decimal]) -> str:
    if value is None:
        return "0.00"
    return str(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_fecha(value: Optional[date]) -> str:
    return value.strftime("%d/%m/%Y") if value else ""


def format_codigo_generacion(codigo: Optional[str]) -> str:
    return (codigo or "").replace("-", "")


def sanitize_identificador(value: Optional[str]) -> str:
    return re.sub(r"[-\s]", "", value or "")


def tipo_operacion(doc: FiscalDocument) -> int:
    gravadas = doc.total_gravado > 0
    exentas = doc.total_exento > 0
    no_sujetas = doc.total_no_sujeto > 0
    if gravadas and (exentas or no_sujetas):
        return TIPO_OPERACION_MIXTAS
    if gravadas:
        return TIPO_OPERACION_GRAVADAS
    if exentas:
        return TIPO_OPERACION_EXENTAS
    if no_sujetas:
        return TIPO_OPERACION_NO_SUJETAS
    return TIPO_OPERACION_GRAVADAS


# ---------------------------------------------------------------------------
# Filas por anexo (montos en Decimal; se formatean al final)
# ---------------------------------------------------------------------------


def _fila_anexo_1(doc: FiscalDocument, n: int) -> Dict[str, Any]:
    return {
        "fila": n,
        "fecha_emision": format_fecha(doc.fecha_emision),
        "clase_documento": CLASE_DOCUMENTO_DTE,
        "tipo_documento": doc.tipo_dte,
        "numero_resolucion": doc.numero_control,
        "numero_serie": doc.sello_recepcion,
        "numero_documento": format_codigo_generacion(doc.codigo_generacion),
        "control_interno": "",
        "nit_nrc": sanitize_identificador(doc.receptor_nit or doc.receptor_nrc),
        "nombre_cliente": (doc.receptor_nombre or "").upper(),
        "ventas_exentas": doc.total_exento,
        "ventas_no_sujetas": doc.total_no_sujeto,
        "ventas_gravadas": doc.total_gravado,
        "debito_fiscal": doc.total_iva,
        "ventas_terceros": CERO,
        "debito_terceros": CERO,
        "total_ventas": doc.total,
        "dui_cliente": "",
        "tipo_operacion": str(tipo_operacion(doc)),
        "tipo_ingreso": str(TIPO_INGRESO_SERVICIOS),
        "numero_anexo": "1",
    }


def _fila_anexo_2(doc: FiscalDocument, n: int) -> Dict[str, Any]:
    # Un DTE individual: "del" y "al" llevan el mismo valor
    codigo = format_codigo_generacion(doc.codigo_generacion)
    return {
        "fila": n,
        "fecha_emision": format_fecha(doc.fecha_emision),
        "clase_documento": CLASE_DOCUMENTO_DTE,
        "tipo_documento": doc.tipo_dte,
        "numero_resolucion": doc.numero_control,
        "serie_del": doc.sello_recepcion,
        "serie_al": doc.sello_recepcion,
        "numero_documento_del": codigo,
        "numero_documento_al": codigo,
        "numero_maquina": "",
        "ventas_exentas": doc.total_exento,
        "ventas_no_sujetas": doc.total_no_sujeto,
        "ventas_gravadas": doc.total_gravado,
        "exportaciones_ca": CERO,
        "exportaciones_fuera_ca": CERO,
        "exportaciones_servicios": CERO,
        "ventas_zonas_francas": CERO,
        "total_ventas": doc.total,
        "numero_anexo": "2",
    }


def _fila_anexo_5(doc: FiscalDocument, n: int) -> Dict[str, Any]:
    return {
        "fila": n,
        "fecha_emision": format_fecha(doc.fecha_emision),
        "clase_documento": CLASE_DOCUMENTO_DTE,
        "tipo_documento": doc.tipo_dte,
        "numero_resolucion": doc.numero_control,
        "numero_serie": doc.sello_recepcion,
        "numero_documento": format_codigo_generacion(doc.codigo_generacion),
        "control_interno": "",
        "dui_nit": sanitize_identificador(doc.receptor_nit or doc.receptor_num_documento),
        "nombre_sujeto": (doc.receptor_nombre or "").upper(),
        "monto_compra": doc.total_gravado,
        "iva_retenido": doc.iva_retenido,
        "total": doc.total,
        "numero_anexo": "5",
    }


CONSTRUCTORES_FILA = {
    ANEXO_1: _fila_anexo_1,
    ANEXO_2: _fila_anexo_2,
    ANEXO_5: _fila_anexo_5,
}


def _validar_parametros(tipo_libro: str, fecha_inicio: date, fecha_fin: date) -> None:
    if tipo_libro not in LIBRO_A_TIPO_DTE:
        raise ValidationError(
            f"Tipo de libro inválido: {tipo_libro}. Use {', '.join(LIBRO_A_TIPO_DTE)}.",
            code="INVALID_LEDGER",
        )
    if not fecha_inicio or not fecha_fin:
        raise ValidationError("Debe indicar fecha_inicio y fecha_fin.", code="INVALID_RANGE")
    if fecha_inicio > fecha_fin:
        raise ValidationError(
            "fecha_inicio no puede ser posterior a fecha_fin.",
            code="INVALID_RANGE",
        )


def documentos_libro(
    tipo_libro: str,
    fecha_inicio: date,
    fecha_fin: date,
    sucursal_id: Optional[int] = None,
    solo_procesados: bool = True,
):
    qs = FiscalDocument.objects.filter(
        tipo_dte=LIBRO_A_TIPO_DTE[tipo_libro],
        fecha_emision__gte=fecha_inicio,
        fecha_emision__lte=fecha_fin,
    ).exclude(estado=FiscalDocument.Estado.INVALIDADO)

    if solo_procesados:
        qs = qs.processed()
    if sucursal_id:
        qs = qs.filter(sucursal_id=sucursal_id)

    return qs.order_by("fecha_emision", "codigo_generacion")


def build_ledger(
    tipo_libro: str,
    fecha_inicio: date,
    fecha_fin: date,
    sucursal_id: Optional[int] = None,
    solo_procesados: bool = True,
) -> LedgerReport:
    _validar_parametros(tipo_libro, fecha_inicio, fecha_fin)

    with transaction.atomic():
        documentos = list(
            documentos_libro(tipo_libro, fecha_inicio, fecha_fin, sucursal_id, solo_procesados)
        )

    constructor = CONSTRUCTORES_FILA[tipo_libro]
    campos = CAMPOS_MONETARIOS[tipo_libro]
    sumas = {campo: CERO for campo in campos}

    filas: List[Dict[str, Any]] = []
    for n, doc in enumerate(documentos, start=1):
        fila = constructor(doc, n)
        for campo in campos:
            monto = Decimal(fila[campo]).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            sumas[campo] += monto
            fila[campo] = format_monto(monto)
        filas.append(fila)

    logger.info(
        "Libro %s %s..%s sucursal=%s solo_procesados=%s: %s documentos",
        tipo_libro,
        fecha_inicio,
        fecha_fin,
        sucursal_id,
        solo_procesados,
        len(filas),
    )

    return LedgerReport(
        tipo_libro=tipo_libro,
        titulo=TITULOS_LIBRO[tipo_libro],
        fecha_inicio=fecha_inicio,
        fecha_fin=fecha_fin,
        columnas=COLUMNAS_LIBRO[tipo_libro],
        filas=filas,
        totales={campo: format_monto(valor) for campo, valor in sumas.items()},
    )


def resumen_ledger(
    tipo_libro: str,
    fecha_inicio: date,
    fecha_fin: date,
    sucursal_id: Optional[int] = None,
    solo_procesados: bool = True,
) -> Dict[str, Any]:
    """Conteo de documentos y totales del libro, sin las filas."""
    report = build_ledger(tipo_libro, fecha_inicio, fecha_fin, sucursal_id, solo_procesados)
    return {
        "tipo_libro": report.tipo_libro,
        "titulo": report.titulo,
        "fecha_inicio": report.fecha_inicio.isoformat(),
        "fecha_fin": report.fecha_fin.isoformat(),
        "total_documentos": report.total_documentos,
        "totales": report.totales,
    }
