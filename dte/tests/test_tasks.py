# dte/tests/test_tasks.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from io import StringIO
from unittest.mock import patch

from celery.exceptions import Retry
from django.core.management import call_command
from django.test import TestCase, override_settings

from dte.exceptions import TransportFailure
from dte.models import FiscalDocument
from dte.services.workflow import emitir_documento
from dte.tasks import emitir_documento_task, reenviar_contingencias_task
from dte.tests.fakes import FakeGateway, aceptado, rechazado, sin_respuesta
from dte.tests.helpers import DteDatosMixin

Estado = FiscalDocument.Estado


@override_settings(DTE_GATEWAY_CLASS="dte.tests.fakes.FakeGateway")
class EmitirDocumentoTaskTests(DteDatosMixin, TestCase):
    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()
        self.doc = self._crear_documento()
        FakeGateway.reset()

    def test_emision_exitosa(self):
        FakeGateway.reset([aceptado("SELLO-TASK")])

        result = emitir_documento_task.apply(args=[self.doc.pk]).get()

        self.assertEqual(result, {"ok": True, "estado": Estado.PROCESADO, "sello_recepcion": "SELLO-TASK"})

    def test_rechazo_no_se_reintenta(self):
        FakeGateway.reset([rechazado("[emisor] NO AUTORIZADO")])

        with patch.object(emitir_documento_task, "retry") as mock_retry:
            result = emitir_documento_task.apply(args=[self.doc.pk]).get()

        mock_retry.assert_not_called()
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "AUTHORITY_REJECTED")
        self.assertEqual(result["reasons"], ["[emisor] NO AUTORIZADO"])

    def test_contingencia_programa_reintento(self):
        FakeGateway.reset([sin_respuesta()])

        with patch.object(emitir_documento_task, "retry", side_effect=Retry()) as mock_retry:
            emitir_documento_task.apply(args=[self.doc.pk])

        mock_retry.assert_called_once()
        self.assertEqual(mock_retry.call_args[1]["countdown"], 60)
        self.assertIsInstance(mock_retry.call_args[1]["exc"], TransportFailure)
        self.assertEqual(FiscalDocument.objects.get(pk=self.doc.pk).estado, Estado.CONTINGENCIA)

    def test_documento_inexistente(self):
        result = emitir_documento_task.apply(args=[999999]).get()
        self.assertEqual(result, {"ok": False, "error": "NOT_FOUND"})


@override_settings(DTE_GATEWAY_CLASS="dte.tests.fakes.FakeGateway")
class ReenvioContingenciasTests(DteDatosMixin, TestCase):
    def setUp(self) -> None:
        self.sucursal = self._crear_sucursal()
        FakeGateway.reset([sin_respuesta(), sin_respuesta()])
        self.docs = [self._crear_documento(), self._crear_documento()]
        for doc in self.docs:
            with self.assertRaises(TransportFailure):
                emitir_documento(doc.pk)

    def _en_contingencia(self):
        return FiscalDocument.objects.filter(estado=Estado.CONTINGENCIA).count()

    def test_tarea_periodica(self):
        FakeGateway.reset([aceptado(), aceptado()])

        resumen = reenviar_contingencias_task.apply().get()

        self.assertEqual(resumen, {"procesados": 2, "rechazados": 0, "fallidos": 0})
        self.assertEqual(self._en_contingencia(), 0)

    def test_comando_con_limite(self):
        FakeGateway.reset([aceptado()])
        out = StringIO()

        call_command("reenviar_contingencias", "--limite", "1", stdout=out)

        self.assertIn("Procesados: 1", out.getvalue())
        self.assertEqual(self._en_contingencia(), 1)

    def test_comando_sin_respuesta(self):
        FakeGateway.reset([sin_respuesta(), sin_respuesta()])
        out = StringIO()

        call_command("reenviar_contingencias", stdout=out)

        self.assertIn("Sin respuesta: 2", out.getvalue())
        self.assertEqual(self._en_contingencia(), 2)
