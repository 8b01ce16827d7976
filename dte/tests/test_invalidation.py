# dte/tests/test_invalidation.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import date
from unittest.mock import patch

from django.test import TestCase

from dte.exceptions import (
    AlreadyInvalidated,
    AuthorityRejected,
    Conflict,
    DeadlineExceeded,
    InvalidState,
    NotFound,
    SigningError,
    TransportFailure,
    ValidationError,
)
from dte.models import FiscalDocument, InvalidationEvent, TipoDte
from dte.services.gateway import KIND_ANULACION
from dte.services.invalidation import (
    invalidar_documento,
    listar_anulaciones,
    reintentar_anulacion,
)
from dte.services.workflow import cargar_documento
from dte.tests.fakes import FakeGateway, aceptado, rechazado, sin_respuesta
from dte.tests.helpers import DteDatosMixin

Estado = FiscalDocument.Estado
EstadoEvento = InvalidationEvent.Estado
RESCINDIR = InvalidationEvent.TipoAnulacion.RESCINDIR_OPERACION

RESPONSABLE = {"nombre": "Ana Responsable", "tipo_doc": "13", "num_doc": "01234567-8"}
SOLICITANTE = {"nombre": "Luis Solicitante", "tipo_doc": "13", "num_doc": "09876543-2"}


class InvalidacionTests(DteDatosMixin, TestCase):
    """
    Flujo de invalidación sobre una factura del 2024-01-01 por 113.00
    (plazo: 2024-04-01 inclusive).
    """

    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()
        self.doc = self._crear_procesado(fecha_emision=date(2024, 1, 1))

    # ===================================================================
    # Helpers
    # ===================================================================

    def _invalidar(self, gateway=None, now=date(2024, 3, 31), **kwargs):
        datos = {
            "tipo_anulacion": RESCINDIR,
            "responsable": RESPONSABLE,
            "solicitante": SOLICITANTE,
        }
        datos.update(kwargs)
        documento_id = datos.pop("documento_id", self.doc.pk)
        return invalidar_documento(
            documento_id,
            now=now,
            gateway=gateway if gateway is not None else FakeGateway([aceptado("SELLO-ANULACION")]),
            **datos,
        )

    # ===================================================================
    # Camino feliz
    # ===================================================================

    def test_invalidar_dentro_del_plazo(self):
        gw = FakeGateway([aceptado("SELLO-ANULACION")])

        evento = self._invalidar(gateway=gw)

        self.assertEqual(evento.estado, EstadoEvento.PROCESADA)
        self.assertEqual(evento.sello_recepcion, "SELLO-ANULACION")
        self.assertEqual(evento.fecha_anulacion, date(2024, 3, 31))
        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.INVALIDADO)
        self.assertEqual(gw.envios[0]["kind"], KIND_ANULACION)
        self.assertEqual(gw.envios[0]["version"], 2)

        payload = gw.firmas[0]
        self.assertEqual(payload["documento"]["codigoGeneracion"], self.doc.codigo_generacion)
        self.assertEqual(payload["motivo"]["tipoAnulacion"], 2)
        self.assertEqual(payload["motivo"]["nombreSolicita"], "Luis Solicitante")

    def test_ultimo_dia_del_plazo(self):
        evento = self._invalidar(now=date(2024, 4, 1))
        self.assertEqual(evento.estado, EstadoEvento.PROCESADA)

    def test_reemplazo_por_error_en_la_informacion(self):
        reemplazo = self._crear_procesado(fecha_emision=date(2024, 3, 30))
        gw = FakeGateway([aceptado()])

        self._invalidar(
            gateway=gw,
            tipo_anulacion=InvalidationEvent.TipoAnulacion.ERROR_INFORMACION,
            codigo_generacion_reemplazo=reemplazo.codigo_generacion,
        )

        doc = cargar_documento(self.doc.pk)
        self.assertEqual(doc.estado, Estado.INVALIDADO)
        self.assertEqual(doc.documento_reemplazo_id, reemplazo.pk)
        self.assertEqual(gw.firmas[0]["documento"]["codigoGeneracionR"], reemplazo.codigo_generacion)

    # ===================================================================
    # Validaciones previas (no se contacta al MH)
    # ===================================================================

    def test_plazo_vencido(self):
        gw = FakeGateway()

        with self.assertRaises(DeadlineExceeded) as ctx:
            self._invalidar(gateway=gw, now=date(2024, 4, 2))

        self.assertEqual(ctx.exception.deadline, date(2024, 4, 1))
        self.assertEqual(ctx.exception.to_dict()["deadline"], "2024-04-01")
        self.assertEqual(gw.firmas, [])
        self.assertEqual(gw.envios, [])
        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.PROCESADO)
        self.assertFalse(InvalidationEvent.objects.exists())

    def test_ccf_vence_el_dia_habil_siguiente(self):
        # 2024-01-05 es viernes: el plazo es el lunes 2024-01-08
        ccf = self._crear_procesado(tipo_dte=TipoDte.CCF, fecha_emision=date(2024, 1, 5))

        with self.assertRaises(DeadlineExceeded) as ctx:
            self._invalidar(documento_id=ccf.pk, now=date(2024, 1, 9))
        self.assertEqual(ctx.exception.deadline, date(2024, 1, 8))

    def test_reemplazo_requerido_aun_fuera_de_plazo(self):
        with self.assertRaises(ValidationError) as ctx:
            self._invalidar(
                now=date(2024, 6, 1),
                tipo_anulacion=InvalidationEvent.TipoAnulacion.ERROR_INFORMACION,
            )
        self.assertEqual(ctx.exception.code, "REPLACEMENT_REQUIRED")

    def test_reemplazo_debe_estar_procesado(self):
        borrador = self._crear_documento(fecha_emision=date(2024, 3, 30))

        with self.assertRaises(ValidationError) as ctx:
            self._invalidar(
                tipo_anulacion=InvalidationEvent.TipoAnulacion.ERROR_INFORMACION,
                documento_reemplazo_id=borrador.pk,
            )
        self.assertEqual(ctx.exception.code, "REPLACEMENT_REQUIRED")

    def test_reemplazo_no_puede_ser_el_mismo(self):
        with self.assertRaises(ValidationError) as ctx:
            self._invalidar(
                tipo_anulacion=InvalidationEvent.TipoAnulacion.ERROR_INFORMACION,
                documento_reemplazo_id=self.doc.pk,
            )
        self.assertEqual(ctx.exception.code, "REPLACEMENT_REQUIRED")

    def test_motivo_requerido_para_otro(self):
        with self.assertRaises(ValidationError) as ctx:
            self._invalidar(tipo_anulacion=InvalidationEvent.TipoAnulacion.OTRO, motivo="  ")
        self.assertEqual(ctx.exception.code, "MOTIVE_REQUIRED")

    def test_solicitante_requerido(self):
        with self.assertRaises(ValidationError) as ctx:
            self._invalidar(solicitante={"nombre": "Sin documento"})
        self.assertEqual(ctx.exception.code, "PARTY_REQUIRED")

    def test_tipo_anulacion_invalido(self):
        with self.assertRaises(ValidationError) as ctx:
            self._invalidar(tipo_anulacion=9)
        self.assertEqual(ctx.exception.code, "INVALID_REASON")

    def test_documento_no_procesado(self):
        borrador = self._crear_documento()
        with self.assertRaises(InvalidState):
            self._invalidar(documento_id=borrador.pk)

    def test_documento_inexistente(self):
        with self.assertRaises(NotFound):
            self._invalidar(documento_id=999999)

    def test_documento_ya_invalidado(self):
        self._invalidar()
        with self.assertRaises(InvalidState):
            self._invalidar()

    # ===================================================================
    # Una sola anulación activa
    # ===================================================================

    def test_anulacion_activa_bloquea_otra(self):
        with self.assertRaises(TransportFailure):
            self._invalidar(gateway=FakeGateway([sin_respuesta()]))

        with self.assertRaises(AlreadyInvalidated):
            self._invalidar()

        self.assertEqual(InvalidationEvent.objects.filter(documento=self.doc).count(), 1)

    def test_carrera_entre_anulaciones_concurrentes(self):
        with self.assertRaises(TransportFailure):
            self._invalidar(gateway=FakeGateway([sin_respuesta()]))

        # Simula que la otra anulación no era visible al validar
        with patch("dte.services.invalidation._tiene_anulacion_activa", return_value=False):
            with self.assertRaises(Conflict):
                self._invalidar()

        self.assertEqual(InvalidationEvent.objects.filter(documento=self.doc).count(), 1)

    def test_rechazo_libera_el_documento(self):
        gw = FakeGateway([rechazado("[documento.selloRecibido] NO COINCIDE")])

        with self.assertRaises(AuthorityRejected) as ctx:
            self._invalidar(gateway=gw)

        self.assertEqual(ctx.exception.reasons, ["[documento.selloRecibido] NO COINCIDE"])
        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.PROCESADO)
        evento = InvalidationEvent.objects.get(documento=self.doc)
        self.assertEqual(evento.estado, EstadoEvento.RECHAZADA)

        nuevo = self._invalidar()
        self.assertEqual(nuevo.estado, EstadoEvento.PROCESADA)
        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.INVALIDADO)

    # ===================================================================
    # Reintentos
    # ===================================================================

    def test_falla_de_red_y_reintento(self):
        with self.assertRaises(TransportFailure) as ctx:
            self._invalidar(gateway=FakeGateway([sin_respuesta("Connection reset")]))

        evento = InvalidationEvent.objects.get(documento=self.doc)
        self.assertEqual(ctx.exception.to_dict()["evento_id"], evento.pk)
        self.assertEqual(evento.estado, EstadoEvento.TRANSMITIDA)
        self.assertIn("Connection reset", evento.ultimo_error)
        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.PROCESADO)

        gw = FakeGateway([aceptado()])
        evento = reintentar_anulacion(evento.pk, gateway=gw)

        self.assertEqual(evento.estado, EstadoEvento.PROCESADA)
        self.assertEqual(evento.intentos_transmision, 2)
        self.assertEqual(gw.firmas, [])
        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.INVALIDADO)

    def test_falla_del_firmador_y_reintento(self):
        with self.assertRaises(SigningError):
            self._invalidar(gateway=FakeGateway(falla_firma=True))

        evento = InvalidationEvent.objects.get(documento=self.doc)
        self.assertEqual(evento.estado, EstadoEvento.PENDIENTE)

        evento = reintentar_anulacion(evento.pk, gateway=FakeGateway([aceptado()]))
        self.assertEqual(evento.estado, EstadoEvento.PROCESADA)

    def test_sello_se_conserva_si_el_documento_cambia(self):
        """Aceptada por el MH pero el documento cambió: el sello no se pierde ni se reenvía."""
        with patch(
            "dte.services.invalidation._update_document_status",
            side_effect=Conflict("El documento cambió de estado."),
        ):
            with self.assertRaises(Conflict):
                self._invalidar(gateway=FakeGateway([aceptado("SELLO-MH-1")]))

        evento = InvalidationEvent.objects.get(documento=self.doc)
        self.assertEqual(evento.estado, EstadoEvento.TRANSMITIDA)
        self.assertEqual(evento.sello_recepcion, "SELLO-MH-1")
        self.assertIn("El documento cambió de estado.", evento.ultimo_error)
        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.PROCESADO)

        gw = FakeGateway()
        evento = reintentar_anulacion(evento.pk, gateway=gw)

        self.assertEqual(gw.envios, [])
        self.assertEqual(evento.estado, EstadoEvento.PROCESADA)
        self.assertEqual(evento.sello_recepcion, "SELLO-MH-1")
        self.assertEqual(evento.intentos_transmision, 1)
        self.assertEqual(cargar_documento(self.doc.pk).estado, Estado.INVALIDADO)

    def test_reintentar_procesada_no_reenvia(self):
        evento = self._invalidar()
        gw = FakeGateway()

        self.assertEqual(reintentar_anulacion(evento.pk, gateway=gw).estado, EstadoEvento.PROCESADA)
        self.assertEqual(gw.envios, [])

    def test_reintentar_rechazada(self):
        with self.assertRaises(AuthorityRejected):
            self._invalidar(gateway=FakeGateway([rechazado()]))
        evento = InvalidationEvent.objects.get(documento=self.doc)

        with self.assertRaises(InvalidState):
            reintentar_anulacion(evento.pk, gateway=FakeGateway())

    def test_listar_anulaciones(self):
        with self.assertRaises(AuthorityRejected):
            self._invalidar(gateway=FakeGateway([rechazado()]))
        self._invalidar()

        self.assertEqual(listar_anulaciones(documento_id=self.doc.pk).count(), 2)
        self.assertEqual(listar_anulaciones(estado=EstadoEvento.RECHAZADA).count(), 1)
