# dte/tests/helpers.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from dte.models import FiscalDocument, Sucursal, TipoDte
from dte.services.workflow import cargar_documento, crear_documento

RECEPTOR_CONTRIBUYENTE = {
    "tipo_documento": "36",
    "num_documento": "0614-010190-101-1",
    "nit": "0614-010190-101-1",
    "nrc": "123456-7",
    "nombre": "Cliente Contribuyente SA de CV",
    "correo": "cliente@example.com",
}

RECEPTOR_CONSUMIDOR = {
    "tipo_documento": "13",
    "num_documento": "01234567-8",
    "nombre": "Consumidor Final",
}


class DteDatosMixin:
    """
    Helpers comunes para crear sucursal y documentos en los tests.

    Los documentos "procesados" se marcan con un update directo (sin pasar
    por la pasarela) para probar lo que ocurre después de la aceptación.
    """

    _sello_seq = 0

    def _crear_sucursal(self, **kwargs) -> Sucursal:
        datos = {
            "nombre": "Casa Matriz",
            "cod_estable": "0001",
            "cod_punto_venta": "0001",
        }
        datos.update(kwargs)
        return Sucursal.objects.create(**datos)

    def _crear_documento(
        self,
        tipo_dte: str = TipoDte.FACTURA,
        lineas: Optional[List[Dict[str, Any]]] = None,
        fecha_emision: Optional[date] = None,
        sucursal: Optional[Sucursal] = None,
        receptor: Optional[Dict[str, Any]] = None,
    ) -> FiscalDocument:
        if lineas is None:
            lineas = [{"descripcion": "Servicio técnico", "cantidad": 1, "precio_unitario": Decimal("113.00")}]
        if receptor is None:
            receptor = RECEPTOR_CONTRIBUYENTE if tipo_dte == TipoDte.CCF else RECEPTOR_CONSUMIDOR
        return crear_documento(
            sucursal or self.sucursal,
            tipo_dte,
            lineas,
            receptor=receptor,
            fecha_emision=fecha_emision or date(2024, 1, 1),
        )

    def _marcar_estado(self, documento: FiscalDocument, estado: str, **extra) -> FiscalDocument:
        FiscalDocument.objects.filter(pk=documento.pk).update(estado=estado, **extra)
        return cargar_documento(documento.pk)

    def _marcar_procesado(self, documento: FiscalDocument) -> FiscalDocument:
        DteDatosMixin._sello_seq += 1
        return self._marcar_estado(
            documento,
            FiscalDocument.Estado.PROCESADO,
            sello_recepcion=f"2024SELLO{DteDatosMixin._sello_seq:06d}",
        )

    def _crear_procesado(self, **kwargs) -> FiscalDocument:
        return self._marcar_procesado(self._crear_documento(**kwargs))
