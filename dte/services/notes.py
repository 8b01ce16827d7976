# dte/services/notes.py
# -*- coding: utf-8 -*-
"""
Composición de notas de crédito (05) y débito (06) sobre un CCF (03) o
comprobante de retención (07) procesado.

La nota se crea en BORRADOR y sigue el flujo normal de emisión.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import Sum

from dte.exceptions import InvalidState, NotFound, ValidationError
from dte.models import FiscalDocument, FiscalDocumentLine, Sucursal, TipoDte
from dte.services.workflow import (
    CENTAVO,
    calcular_linea,
    calcular_resumen,
    crear_documento,
    iva_rate,
    money,
)

logger = logging.getLogger(__name__)

TIPOS_ORIGINAL_NOTA = (TipoDte.CCF, TipoDte.COMPROBANTE_RETENCION)
TIPOS_NOTA = (TipoDte.NOTA_CREDITO, TipoDte.NOTA_DEBITO)

# Notas que ya no consumen saldo del original
ESTADOS_NOTA_SIN_EFECTO = (
    FiscalDocument.Estado.RECHAZADO,
    FiscalDocument.Estado.INVALIDADO,
)


def _notas_credito_vigentes(original: FiscalDocument):
    return (
        FiscalDocument.objects.filter(
            documento_original=original,
            tipo_dte=TipoDte.NOTA_CREDITO,
        )
        .exclude(estado__in=ESTADOS_NOTA_SIN_EFECTO)
    )


def cantidades_acreditadas(original: FiscalDocument) -> Dict[int, Decimal]:
    """Cantidad ya acreditada por línea del original (id de línea -> cantidad)."""
    filas = (
        FiscalDocumentLine.objects.filter(
            documento__in=_notas_credito_vigentes(original),
            linea_original__isnull=False,
        )
        .values("linea_original_id")
        .annotate(cantidad_total=Sum("cantidad"))
    )
    return {f["linea_original_id"]: f["cantidad_total"] or Decimal("0") for f in filas}


def monto_acreditado(original: FiscalDocument) -> Decimal:
    total = _notas_credito_vigentes(original).aggregate(s=Sum("total"))["s"]
    return total or Decimal("0.00")


def _descuento_proporcional(linea: FiscalDocumentLine, cantidad: Decimal) -> Decimal:
    """Parte del descuento de la línea original que corresponde a la cantidad acreditada."""
    if not linea.monto_descuento or not linea.cantidad:
        return Decimal("0.00")
    if cantidad == linea.cantidad:
        return linea.monto_descuento
    return money(linea.monto_descuento * cantidad / linea.cantidad)


def componer_nota(
    documento_original_id: int,
    lineas: List[Dict[str, Any]],
    observaciones: Optional[str] = None,
    tipo_dte: str = TipoDte.NOTA_CREDITO,
    sucursal: Optional[Sucursal] = None,
    user=None,
) -> FiscalDocument:
    """
    lineas: [{"linea_original_id": int, "cantidad": Decimal, "motivo": str?}, ...]

    Los precios (sin IVA) y el tipo de venta se copian de la línea original;
    el receptor se hereda del documento original.
    """
    if tipo_dte not in TIPOS_NOTA:
        raise ValidationError(f"Tipo de nota no soportado: {tipo_dte}.", code="INVALID_TYPE")

    with transaction.atomic():
        # El bloqueo del original serializa notas concurrentes sobre él
        try:
            original = (
                FiscalDocument.objects.select_for_update()
                .select_related("sucursal")
                .get(pk=documento_original_id)
            )
        except FiscalDocument.DoesNotExist:
            raise NotFound(f"Documento original {documento_original_id} no encontrado.")

        if original.estado != FiscalDocument.Estado.PROCESADO:
            raise InvalidState(
                f"El documento original debe estar PROCESADO (estado actual: {original.estado}).",
                estado_actual=original.estado,
            )
        if original.tipo_dte not in TIPOS_ORIGINAL_NOTA:
            raise ValidationError(
                "Las notas sólo pueden emitirse sobre un CCF (03) o comprobante de retención (07).",
                code="INCOMPATIBLE_ORIGINAL",
                tipo_original=original.tipo_dte,
            )
        if not lineas:
            raise ValidationError("La nota debe tener al menos una línea.", code="LINES_REQUIRED")

        lineas_original = {lo.pk: lo for lo in original.lineas.all()}
        acreditado = cantidades_acreditadas(original) if tipo_dte == TipoDte.NOTA_CREDITO else {}
        es_credito = tipo_dte == TipoDte.NOTA_CREDITO

        solicitadas: Dict[int, Decimal] = {}
        lineas_nota: List[Dict[str, Any]] = []
        for item in lineas:
            linea_id = item.get("linea_original_id")
            linea = lineas_original.get(linea_id)
            if linea is None:
                raise ValidationError(
                    f"La línea {linea_id} no pertenece al documento original.",
                    code="LINE_NOT_IN_ORIGINAL",
                    linea_original_id=linea_id,
                )

            cantidad = Decimal(str(item.get("cantidad") or 0))
            if cantidad <= 0:
                raise ValidationError(
                    f"Línea {linea_id}: la cantidad debe ser mayor a cero.",
                    code="INVALID_QUANTITY",
                    linea_original_id=linea_id,
                )

            solicitadas[linea_id] = solicitadas.get(linea_id, Decimal("0")) + cantidad
            disponible = linea.cantidad - acreditado.get(linea_id, Decimal("0"))
            if solicitadas[linea_id] > disponible:
                raise ValidationError(
                    f"Línea {linea.num_item}: cantidad {solicitadas[linea_id]} excede lo disponible ({disponible}).",
                    code="QUANTITY_EXCEEDS_AVAILABLE",
                    linea_original_id=linea_id,
                    disponible=str(disponible),
                )

            lineas_nota.append(
                {
                    "descripcion": linea.descripcion,
                    "codigo": linea.codigo,
                    "tipo_item": linea.tipo_item,
                    "uni_medida": linea.uni_medida,
                    "cantidad": cantidad,
                    "precio_unitario": linea.precio_unitario,
                    "monto_descuento": _descuento_proporcional(linea, cantidad),
                    "tipo_venta": linea.tipo_venta,
                    "linea_original": linea,
                    "motivo": item.get("motivo", ""),
                }
            )

        if es_credito:
            rate = iva_rate()
            resumen = calcular_resumen(
                tipo_dte,
                [
                    calcular_linea(
                        tipo_dte,
                        ln["cantidad"],
                        ln["precio_unitario"],
                        ln["tipo_venta"],
                        monto_descuento=ln["monto_descuento"],
                        rate=rate,
                    )
                    for ln in lineas_nota
                ],
                rate=rate,
            )
            saldo = original.total - monto_acreditado(original)
            if resumen["total"] > saldo + CENTAVO:
                raise ValidationError(
                    f"El total de la nota ({resumen['total']}) excede el saldo del documento original ({saldo}).",
                    code="AMOUNT_EXCEEDS_AVAILABLE",
                    disponible=str(saldo),
                )

        nota = crear_documento(
            sucursal or original.sucursal,
            tipo_dte,
            lineas_nota,
            receptor={
                "tipo_documento": original.receptor_tipo_documento,
                "num_documento": original.receptor_num_documento,
                "nit": original.receptor_nit,
                "nrc": original.receptor_nrc,
                "nombre": original.receptor_nombre,
                "telefono": original.receptor_telefono,
                "correo": original.receptor_correo,
            },
            observaciones=observaciones or "",
            documento_original=original,
            user=user,
        )

    logger.info(
        "Nota %s (%s) compuesta sobre DTE %s total=%s",
        nota.codigo_generacion,
        tipo_dte,
        original.codigo_generacion,
        nota.total,
    )
    return nota
