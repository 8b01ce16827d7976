# dte/tests/test_workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from decimal import Decimal

from django.test import TestCase

from dte.exceptions import (
    AuthorityRejected,
    Conflict,
    InvalidState,
    SigningError,
    TransportFailure,
    ValidationError,
)
from dte.models import FiscalDocument, TipoDte
from dte.services.gateway import KIND_DTE
from dte.services.workflow import (
    _update_document_status,
    calcular_linea,
    cargar_documento,
    emitir_documento,
    reenviar_contingencia,
    reenviar_contingencias_pendientes,
)
from dte.tests.fakes import FakeGateway, aceptado, rechazado, sin_respuesta
from dte.tests.helpers import RECEPTOR_CONSUMIDOR, DteDatosMixin

Estado = FiscalDocument.Estado


class CrearDocumentoTests(DteDatosMixin, TestCase):
    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()

    def test_ccf_calcula_iva_sobre_precio_neto(self):
        doc = self._crear_documento(
            tipo_dte=TipoDte.CCF,
            lineas=[
                {"descripcion": "Repuesto", "cantidad": 2, "precio_unitario": Decimal("10.00")},
                {
                    "descripcion": "Servicio exento",
                    "cantidad": 1,
                    "precio_unitario": Decimal("5.00"),
                    "tipo_venta": "EXENTO",
                },
            ],
        )

        self.assertEqual(doc.estado, Estado.BORRADOR)
        self.assertEqual(doc.version, 3)
        self.assertEqual(doc.total_gravado, Decimal("20.00"))
        self.assertEqual(doc.total_exento, Decimal("5.00"))
        self.assertEqual(doc.total_iva, Decimal("2.60"))
        self.assertEqual(doc.total, Decimal("27.60"))
        self.assertEqual(doc.lineas.count(), 2)
        self.assertEqual(doc.codigo_generacion, doc.codigo_generacion.upper())
        self.assertEqual(len(doc.codigo_generacion), 36)

    def test_factura_precio_incluye_iva(self):
        doc = self._crear_documento(tipo_dte=TipoDte.FACTURA)

        self.assertEqual(doc.total, Decimal("113.00"))
        self.assertEqual(doc.total_gravado, Decimal("113.00"))
        self.assertEqual(doc.total_iva, Decimal("13.00"))

    def test_numero_control_correlativo_por_tipo(self):
        d1 = self._crear_documento(tipo_dte=TipoDte.FACTURA)
        d2 = self._crear_documento(tipo_dte=TipoDte.FACTURA)
        d3 = self._crear_documento(tipo_dte=TipoDte.CCF)

        self.assertEqual(d1.numero_control, "DTE-01-00010001-000000000000001")
        self.assertEqual(d2.numero_control, "DTE-01-00010001-000000000000002")
        self.assertEqual(d3.numero_control, "DTE-03-00010001-000000000000001")
        self.assertEqual(len(d1.numero_control), 31)

    def test_ccf_requiere_nit_y_nrc(self):
        with self.assertRaises(ValidationError) as ctx:
            self._crear_documento(tipo_dte=TipoDte.CCF, receptor=RECEPTOR_CONSUMIDOR)
        self.assertEqual(ctx.exception.code, "RECEPTOR_REQUIRED")

    def test_sin_lineas(self):
        with self.assertRaises(ValidationError) as ctx:
            self._crear_documento(lineas=[])
        self.assertEqual(ctx.exception.code, "LINES_REQUIRED")

    def test_cantidad_invalida(self):
        with self.assertRaises(ValidationError) as ctx:
            self._crear_documento(lineas=[{"descripcion": "X", "cantidad": 0, "precio_unitario": 1}])
        self.assertEqual(ctx.exception.code, "INVALID_QUANTITY")

    def test_nota_requiere_original(self):
        with self.assertRaises(ValidationError) as ctx:
            self._crear_documento(tipo_dte=TipoDte.NOTA_CREDITO)
        self.assertEqual(ctx.exception.code, "ORIGINAL_REQUIRED")

    def test_calcular_linea_redondeo(self):
        montos = calcular_linea(TipoDte.CCF, Decimal("3"), Decimal("0.335"))
        # 1.005 -> 1.01 (ROUND_HALF_UP)
        self.assertEqual(montos["venta_gravada"], Decimal("1.01"))
        self.assertEqual(montos["iva_item"], Decimal("0.13"))


class EmisionTests(DteDatosMixin, TestCase):
    """
    Firma + transmisión con la pasarela falsa:
    - aceptado -> PROCESADO
    - rechazado -> RECHAZADO + AuthorityRejected
    - sin respuesta -> CONTINGENCIA + TransportFailure
    """

    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()
        self.doc = self._crear_documento()

    def test_emitir_aceptado(self):
        gw = FakeGateway([aceptado("SELLO-OK")])

        doc = emitir_documento(self.doc.pk, gateway=gw)

        self.assertEqual(doc.estado, Estado.PROCESADO)
        self.assertEqual(doc.sello_recepcion, "SELLO-OK")
        self.assertIsNotNone(doc.fecha_procesamiento)
        self.assertEqual(doc.intentos_transmision, 1)
        self.assertEqual(doc.dte_firmado, f"jws.{doc.codigo_generacion}")
        self.assertEqual(doc.dte_json["identificacion"]["numeroControl"], doc.numero_control)
        self.assertEqual(len(gw.firmas), 1)
        self.assertEqual(gw.envios[0]["kind"], KIND_DTE)
        self.assertEqual(gw.envios[0]["tipo_dte"], TipoDte.FACTURA)

    def test_emitir_procesado_es_idempotente(self):
        gw = FakeGateway([aceptado()])
        emitir_documento(self.doc.pk, gateway=gw)

        doc = emitir_documento(self.doc.pk, gateway=gw)

        self.assertEqual(doc.estado, Estado.PROCESADO)
        self.assertEqual(len(gw.envios), 1)

    def test_emitir_rechazado(self):
        gw = FakeGateway([rechazado("[receptor.nit] FORMATO INVALIDO", "[resumen] TOTAL INCORRECTO")])

        with self.assertRaises(AuthorityRejected) as ctx:
            emitir_documento(self.doc.pk, gateway=gw)

        self.assertEqual(
            ctx.exception.reasons,
            ["[receptor.nit] FORMATO INVALIDO", "[resumen] TOTAL INCORRECTO"],
        )
        doc = cargar_documento(self.doc.pk)
        self.assertEqual(doc.estado, Estado.RECHAZADO)
        self.assertEqual(doc.observaciones_mh, ctx.exception.reasons)
        self.assertEqual(doc.codigo_msg, "004")

    def test_rechazado_no_se_reenvia(self):
        gw = FakeGateway([rechazado()])
        with self.assertRaises(AuthorityRejected):
            emitir_documento(self.doc.pk, gateway=gw)

        with self.assertRaises(InvalidState):
            emitir_documento(self.doc.pk, gateway=gw)
        self.assertEqual(len(gw.envios), 1)

    def test_sin_respuesta_queda_en_contingencia(self):
        gw = FakeGateway([sin_respuesta("Read timed out")])

        with self.assertRaises(TransportFailure) as ctx:
            emitir_documento(self.doc.pk, gateway=gw)

        self.assertTrue(ctx.exception.to_dict()["retryable"])
        doc = cargar_documento(self.doc.pk)
        self.assertEqual(doc.estado, Estado.CONTINGENCIA)
        self.assertEqual(doc.intentos_transmision, 1)
        self.assertIn("Read timed out", doc.ultimo_error)

    def test_excepcion_de_la_pasarela_se_trata_como_transporte(self):
        gw = FakeGateway([RuntimeError("socket cerrado")])

        with self.assertRaises(TransportFailure):
            emitir_documento(self.doc.pk, gateway=gw)

        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.CONTINGENCIA)

    def test_reenviar_contingencia(self):
        gw = FakeGateway([sin_respuesta(), aceptado()])
        with self.assertRaises(TransportFailure):
            emitir_documento(self.doc.pk, gateway=gw)

        doc = reenviar_contingencia(self.doc.pk, gateway=gw)

        self.assertEqual(doc.estado, Estado.PROCESADO)
        self.assertEqual(doc.intentos_transmision, 2)
        # Se reenvía el mismo JWS, sin volver a firmar
        self.assertEqual(len(gw.firmas), 1)
        self.assertEqual(gw.envios[0]["signed"], gw.envios[1]["signed"])

    def test_reenviar_exige_contingencia(self):
        with self.assertRaises(InvalidState):
            reenviar_contingencia(self.doc.pk, gateway=FakeGateway())

    def test_falla_de_firma_deja_borrador(self):
        gw = FakeGateway(falla_firma=True)

        with self.assertRaises(SigningError):
            emitir_documento(self.doc.pk, gateway=gw)

        doc = cargar_documento(self.doc.pk)
        self.assertEqual(doc.estado, Estado.BORRADOR)
        self.assertEqual(doc.ultimo_error, "Firmador no disponible")
        self.assertEqual(gw.envios, [])

    def test_reenviar_contingencias_pendientes(self):
        otro = self._crear_documento()
        gw = FakeGateway([sin_respuesta(), sin_respuesta()])
        for doc in (self.doc, otro):
            with self.assertRaises(TransportFailure):
                emitir_documento(doc.pk, gateway=gw)

        gw.resultados = [aceptado(), rechazado()]
        resumen = reenviar_contingencias_pendientes(gateway=gw)

        self.assertEqual(resumen, {"procesados": 1, "rechazados": 1, "fallidos": 0})
        self.assertFalse(FiscalDocument.objects.filter(estado=Estado.CONTINGENCIA).exists())


class EstadoYResumenTests(DteDatosMixin, TestCase):
    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()

    def test_resumen_congelado_despues_de_procesado(self):
        doc = self._crear_procesado()
        doc.total = Decimal("1.00")

        with self.assertRaises(InvalidState):
            doc.save()

        self.assertEqual(cargar_documento(doc.pk).total, Decimal("113.00"))

    def test_otros_campos_se_pueden_guardar_si_procesado(self):
        doc = self._crear_procesado()
        doc.observaciones = "Entregado"
        doc.save()
        self.assertEqual(cargar_documento(doc.pk).observaciones, "Entregado")

    def test_escritura_condicional_detecta_cambio_concurrente(self):
        doc = self._crear_documento()
        # Otro proceso firmó el documento mientras tanto
        FiscalDocument.objects.filter(pk=doc.pk).update(estado=Estado.FIRMADO)

        with self.assertRaises(Conflict):
            _update_document_status(doc, Estado.FIRMADO)

    def test_transicion_no_permitida(self):
        doc = self._crear_documento()
        with self.assertRaises(InvalidState):
            _update_document_status(doc, Estado.PROCESADO)

    def test_mensajes_se_acumulan(self):
        doc = self._crear_documento()
        doc = _update_document_status(doc, Estado.FIRMADO, mensajes=[{"detalle": "uno"}])
        self.assertEqual(len(doc.mensajes), 2)
        self.assertEqual(doc.mensajes[-1]["detalle"], "uno")
