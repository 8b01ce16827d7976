# dte/tests/test_notes.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase

from dte.exceptions import InvalidState, NotFound, ValidationError
from dte.models import FiscalDocument, TipoDte
from dte.services.notes import cantidades_acreditadas, componer_nota
from dte.services.workflow import emitir_documento
from dte.tests.fakes import FakeGateway, aceptado
from dte.tests.helpers import RECEPTOR_CONTRIBUYENTE, DteDatosMixin

Estado = FiscalDocument.Estado


class ComponerNotaTests(DteDatosMixin, TestCase):
    """
    Notas de crédito / débito sobre un CCF procesado con dos líneas:
    - A: 10 unidades a 5.00
    - B: 2 unidades a 3.00
    """

    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()
        self.ccf = self._crear_procesado(
            tipo_dte=TipoDte.CCF,
            fecha_emision=date(2024, 1, 10),
            lineas=[
                {"descripcion": "Filtro", "cantidad": 10, "precio_unitario": Decimal("5.00"), "codigo": "F-01"},
                {"descripcion": "Mano de obra", "cantidad": 2, "precio_unitario": Decimal("3.00")},
            ],
        )
        self.linea_a, self.linea_b = list(self.ccf.lineas.order_by("num_item"))

    def _nota(self, *lineas, tipo_dte=TipoDte.NOTA_CREDITO, original=None):
        return componer_nota(
            (original or self.ccf).pk,
            lineas=[{"linea_original_id": lid, "cantidad": cant} for lid, cant in lineas],
            tipo_dte=tipo_dte,
        )

    # ===================================================================
    # Composición
    # ===================================================================

    def test_nota_credito_copia_precios_y_receptor(self):
        nota = componer_nota(
            self.ccf.pk,
            lineas=[{"linea_original_id": self.linea_a.pk, "cantidad": Decimal("4"), "motivo": "Devolución"}],
            observaciones="Devolución parcial",
        )

        self.assertEqual(nota.tipo_dte, TipoDte.NOTA_CREDITO)
        self.assertEqual(nota.estado, Estado.BORRADOR)
        self.assertEqual(nota.documento_original_id, self.ccf.pk)
        self.assertEqual(nota.receptor_nit, RECEPTOR_CONTRIBUYENTE["nit"])
        self.assertEqual(nota.receptor_nrc, RECEPTOR_CONTRIBUYENTE["nrc"])
        self.assertEqual(nota.total_gravado, Decimal("20.00"))
        self.assertEqual(nota.total_iva, Decimal("2.60"))
        self.assertEqual(nota.total, Decimal("22.60"))

        linea = nota.lineas.get()
        self.assertEqual(linea.linea_original_id, self.linea_a.pk)
        self.assertEqual(linea.precio_unitario, self.linea_a.precio_unitario)
        self.assertEqual(linea.codigo, "F-01")
        self.assertEqual(linea.motivo, "Devolución")

    def test_nota_emitida_referencia_al_original(self):
        nota = self._nota((self.linea_a.pk, 1))
        gw = FakeGateway([aceptado()])

        nota = emitir_documento(nota.pk, gateway=gw)

        self.assertEqual(nota.estado, Estado.PROCESADO)
        relacionado = gw.firmas[0]["documentoRelacionado"][0]
        self.assertEqual(relacionado["tipoDocumento"], TipoDte.CCF)
        self.assertEqual(relacionado["numeroDocumento"], self.ccf.codigo_generacion)

    def test_cantidad_acumulada_por_linea(self):
        self._nota((self.linea_a.pk, 4))

        with self.assertRaises(ValidationError) as ctx:
            self._nota((self.linea_a.pk, 7))
        self.assertEqual(ctx.exception.code, "QUANTITY_EXCEEDS_AVAILABLE")
        self.assertEqual(Decimal(ctx.exception.to_dict()["disponible"]), Decimal("6"))

        nota = self._nota((self.linea_a.pk, 6))
        self.assertEqual(nota.estado, Estado.BORRADOR)
        self.assertEqual(cantidades_acreditadas(self.ccf)[self.linea_a.pk], Decimal("10"))

    def test_lineas_repetidas_en_la_misma_nota_suman(self):
        with self.assertRaises(ValidationError) as ctx:
            self._nota((self.linea_a.pk, 6), (self.linea_a.pk, 5))
        self.assertEqual(ctx.exception.code, "QUANTITY_EXCEEDS_AVAILABLE")

    def test_nota_rechazada_no_consume_saldo(self):
        primera = self._nota((self.linea_a.pk, 10))
        self._marcar_estado(primera, Estado.RECHAZADO)

        nota = self._nota((self.linea_a.pk, 10))
        self.assertEqual(nota.lineas.get().cantidad, Decimal("10"))

    def test_nota_debito_limitada_por_cantidad_original(self):
        self._nota((self.linea_b.pk, 2))

        nota = self._nota((self.linea_b.pk, 2), tipo_dte=TipoDte.NOTA_DEBITO)
        self.assertEqual(nota.tipo_dte, TipoDte.NOTA_DEBITO)

        with self.assertRaises(ValidationError) as ctx:
            self._nota((self.linea_b.pk, 3), tipo_dte=TipoDte.NOTA_DEBITO)
        self.assertEqual(ctx.exception.code, "QUANTITY_EXCEEDS_AVAILABLE")

    def test_nota_credito_respeta_descuento_de_la_linea_original(self):
        """10 unidades a 10.00 con descuento 10.00: gravado 90.00, total 101.70."""
        original = self._crear_procesado(
            tipo_dte=TipoDte.CCF,
            lineas=[
                {
                    "descripcion": "Repuesto",
                    "cantidad": 10,
                    "precio_unitario": Decimal("10.00"),
                    "monto_descuento": Decimal("10.00"),
                },
            ],
        )
        self.assertEqual(original.total, Decimal("101.70"))
        linea = original.lineas.get()

        parcial = self._nota((linea.pk, 4), original=original)
        self.assertEqual(parcial.lineas.get().monto_descuento, Decimal("4.00"))
        self.assertEqual(parcial.total_gravado, Decimal("36.00"))
        self.assertEqual(parcial.total, Decimal("40.68"))

        resto = self._nota((linea.pk, 6), original=original)
        self.assertEqual(resto.total_gravado, Decimal("54.00"))
        self.assertEqual(parcial.total + resto.total, original.total)

    def test_nota_credito_total_de_linea_con_descuento(self):
        original = self._crear_procesado(
            tipo_dte=TipoDte.CCF,
            lineas=[
                {
                    "descripcion": "Repuesto",
                    "cantidad": 10,
                    "precio_unitario": Decimal("10.00"),
                    "monto_descuento": Decimal("10.00"),
                },
            ],
        )

        nota = self._nota((original.lineas.get().pk, 10), original=original)

        self.assertEqual(nota.total_gravado, Decimal("90.00"))
        self.assertEqual(nota.total, original.total)

    def test_nota_credito_limitada_por_saldo_del_original(self):
        """Total original 63.28; con 60.00 ya acreditado quedan 3.28."""
        with patch("dte.services.notes.monto_acreditado", return_value=Decimal("60.00")):
            with self.assertRaises(ValidationError) as ctx:
                self._nota((self.linea_a.pk, 1))

        self.assertEqual(ctx.exception.code, "AMOUNT_EXCEEDS_AVAILABLE")
        self.assertFalse(FiscalDocument.objects.filter(documento_original=self.ccf).exists())

    # ===================================================================
    # Validaciones
    # ===================================================================

    def test_original_debe_ser_ccf(self):
        factura = self._crear_procesado(tipo_dte=TipoDte.FACTURA)
        linea = factura.lineas.get()

        with self.assertRaises(ValidationError) as ctx:
            self._nota((linea.pk, 1), original=factura)
        self.assertEqual(ctx.exception.code, "INCOMPATIBLE_ORIGINAL")

    def test_linea_de_otro_documento(self):
        otro = self._crear_procesado(tipo_dte=TipoDte.CCF)

        with self.assertRaises(ValidationError) as ctx:
            self._nota((otro.lineas.get().pk, 1))
        self.assertEqual(ctx.exception.code, "LINE_NOT_IN_ORIGINAL")

    def test_cantidad_cero(self):
        with self.assertRaises(ValidationError) as ctx:
            self._nota((self.linea_a.pk, 0))
        self.assertEqual(ctx.exception.code, "INVALID_QUANTITY")

    def test_sin_lineas(self):
        with self.assertRaises(ValidationError) as ctx:
            self._nota()
        self.assertEqual(ctx.exception.code, "LINES_REQUIRED")

    def test_original_invalidado(self):
        self._marcar_estado(self.ccf, Estado.INVALIDADO)

        with self.assertRaises(InvalidState):
            self._nota((self.linea_a.pk, 1))

    def test_original_no_procesado(self):
        borrador = self._crear_documento(tipo_dte=TipoDte.CCF)
        with self.assertRaises(InvalidState):
            self._nota((borrador.lineas.get().pk, 1), original=borrador)

    def test_original_inexistente(self):
        with self.assertRaises(NotFound):
            componer_nota(999999, lineas=[{"linea_original_id": 1, "cantidad": 1}])

    def test_tipo_de_nota_invalido(self):
        with self.assertRaises(ValidationError) as ctx:
            self._nota((self.linea_a.pk, 1), tipo_dte=TipoDte.FACTURA)
        self.assertEqual(ctx.exception.code, "INVALID_TYPE")
