# dte/tests/test_pdf.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings

from reportlab.platypus import Table

from dte.exceptions import AuthorityRejected, ValidationError
from dte.models import FiscalDocument, TipoDte
from dte.services import document_pdf
from dte.services.document_pdf import (
    generar_pdf_documento,
    nombre_archivo_documento,
    url_consulta_publica,
)
from dte.services.ledger import ANEXO_1, ANEXO_2, build_ledger, format_monto
from dte.services.ledger_pdf import generar_pdf_ledger, nombre_archivo_pdf
from dte.services.notes import componer_nota
from dte.services.workflow import emitir_documento
from dte.tests.fakes import FakeGateway, aceptado, rechazado
from dte.tests.helpers import DteDatosMixin

Estado = FiscalDocument.Estado
ENERO = (date(2024, 1, 1), date(2024, 1, 31))


def _texto(celda) -> str:
    return getattr(celda, "text", celda) or ""


class DocumentoPdfTests(DteDatosMixin, TestCase):
    """Representación impresa de un DTE."""

    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()

    def _emitido(self, resultado=None, **kwargs) -> FiscalDocument:
        doc = self._crear_documento(**kwargs)
        return emitir_documento(doc.pk, gateway=FakeGateway([resultado or aceptado("SELLO-PDF")]))

    def test_documento_procesado_con_qr(self):
        doc = self._emitido(fecha_emision=date(2024, 1, 1))

        with patch.object(document_pdf, "_build_qr_drawing", wraps=document_pdf._build_qr_drawing) as qr:
            contenido = generar_pdf_documento(doc)

        self.assertTrue(contenido.startswith(b"%PDF"))
        qr.assert_called_once_with(url_consulta_publica(doc))
        self.assertIn(f"codGen={doc.codigo_generacion}", qr.call_args[0][0])
        self.assertIn("fechaEmi=2024-01-01", qr.call_args[0][0])

    def test_documento_rechazado_sin_qr(self):
        doc = self._crear_documento()
        with self.assertRaises(AuthorityRejected):
            emitir_documento(doc.pk, gateway=FakeGateway([rechazado()]))

        with patch.object(document_pdf, "_build_qr_drawing") as qr:
            contenido = generar_pdf_documento(doc.pk)

        self.assertTrue(contenido.startswith(b"%PDF"))
        qr.assert_not_called()

    def test_borrador_sin_json(self):
        doc = self._crear_documento()

        with self.assertRaises(ValidationError) as ctx:
            generar_pdf_documento(doc)
        self.assertEqual(ctx.exception.code, "DTE_NOT_GENERATED")

    def test_nota_muestra_documento_relacionado(self):
        ccf = self._emitido(
            tipo_dte=TipoDte.CCF,
            lineas=[{"descripcion": "Filtro & empaque", "cantidad": 2, "precio_unitario": Decimal("5.00")}],
        )
        nota = componer_nota(ccf.pk, lineas=[{"linea_original_id": ccf.lineas.get().pk, "cantidad": 1}])
        nota = emitir_documento(nota.pk, gateway=FakeGateway([aceptado("SELLO-NOTA")]))

        with patch.object(document_pdf, "Table", wraps=Table) as tabla:
            generar_pdf_documento(nota)

        textos = [
            _texto(celda)
            for llamada in tabla.call_args_list
            for fila in llamada.args[0]
            for celda in fila
        ]
        self.assertIn(ccf.codigo_generacion, textos)
        self.assertIn("COMPROBANTE DE CRÉDITO FISCAL", textos)
        self.assertIn("Filtro &amp; empaque", textos)

    @override_settings(DTE_CONSULTA_PUBLICA_URL="https://consulta.test/dte")
    def test_url_consulta_configurable(self):
        doc = self._emitido(fecha_emision=date(2024, 3, 5))

        url = url_consulta_publica(doc)

        self.assertTrue(url.startswith("https://consulta.test/dte?"))
        self.assertIn("ambiente=00", url)
        self.assertEqual(nombre_archivo_documento(doc), f"{doc.numero_control}.pdf")


class LibroPdfTests(DteDatosMixin, TestCase):
    """El PDF usa las mismas filas y totales que build_ledger."""

    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()
        self._crear_procesado(fecha_emision=date(2024, 1, 5))
        self._crear_procesado(fecha_emision=date(2024, 1, 20), lineas=[
            {"descripcion": "Servicio", "cantidad": 1, "precio_unitario": Decimal("14.01")},
        ])
        invalidada = self._crear_procesado(fecha_emision=date(2024, 1, 10))
        self._marcar_estado(invalidada, Estado.INVALIDADO)

    def _tabla_del_pdf(self, report):
        with patch("dte.services.ledger_pdf.Table", wraps=Table) as tabla:
            contenido = generar_pdf_ledger(report)
        self.assertTrue(contenido.startswith(b"%PDF"))
        return [[_texto(celda) for celda in fila] for fila in tabla.call_args.args[0]]

    def test_filas_y_totales(self):
        report = build_ledger(ANEXO_2, *ENERO)

        data = self._tabla_del_pdf(report)

        # encabezado + 2 documentos + totales
        self.assertEqual(len(data), 4)
        campos = [campo for campo, _ in report.columnas]
        idx_total = campos.index("total_ventas")
        self.assertEqual(data[1][idx_total], format_monto(report.filas[0]["total_ventas"]))
        self.assertEqual(data[-1][0], "<b>TOTALES</b>")
        self.assertEqual(data[-1][idx_total], "127.01")
        self.assertEqual(nombre_archivo_pdf(report), "libro_iva_anexo_2_20240101_20240131.pdf")

    def test_libro_vacio(self):
        report = build_ledger(ANEXO_1, *ENERO)

        data = self._tabla_del_pdf(report)

        self.assertEqual(len(data), 2)
        self.assertEqual(len(data[0]), len(report.columnas))
