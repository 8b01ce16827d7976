# dte/viewsets.py
from __future__ import annotations

import logging
from typing import Optional

from django.http import HttpResponse

from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from dte.filters import FiscalDocumentFilter, InvalidationEventFilter
from dte.models import FiscalDocument, InvalidationEvent
from dte.pagination import DtePagination
from dte.permissions import CanAnularDte, CanEmitirDte
from dte.serializers import (
    FiscalDocumentCreateSerializer,
    FiscalDocumentSerializer,
    InvalidationEventSerializer,
    InvalidationRequestSerializer,
    NoteRequestSerializer,
)
from dte.services.document_pdf import generar_pdf_documento, nombre_archivo_documento
from dte.services.invalidation import invalidar_documento, reintentar_anulacion
from dte.services.notes import componer_nota
from dte.services.workflow import emitir_documento, reenviar_contingencia

logger = logging.getLogger(__name__)


class FiscalDocumentViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    viewsets.GenericViewSet,
):
    """
    DTE: listado, detalle, creación de borradores y acciones frente al MH.

    Las acciones NO se envuelven en transaction.atomic: el estado TRANSMITIDO
    y el resultado del MH se confirman antes de responder, aun cuando la
    respuesta sea un error (rechazo o contingencia).
    """

    serializer_class = FiscalDocumentSerializer
    pagination_class = DtePagination
    filterset_class = FiscalDocumentFilter
    search_fields = ["codigo_generacion", "numero_control", "receptor_nombre", "receptor_nit"]
    ordering_fields = ["fecha_emision", "created_at", "total", "numero_control"]
    ordering = ["-fecha_emision", "-created_at"]

    def get_queryset(self):
        return (
            FiscalDocument.objects.select_related("sucursal")
            .prefetch_related("lineas")
            .all()
        )

    def get_permissions(self):
        if self.action in ("create", "emitir", "reenviar", "nota"):
            return [CanEmitirDte()]
        if self.action == "anular":
            return [CanAnularDte()]
        return super().get_permissions()

    def create(self, request, *args, **kwargs):
        serializer = FiscalDocumentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        documento = serializer.save(user=request.user)
        return Response(
            FiscalDocumentSerializer(documento).data,
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="emitir")
    def emitir(self, request, pk: Optional[str] = None):
        """Firma (si es borrador) y transmite al MH."""
        documento = self.get_object()
        documento = emitir_documento(documento.pk)
        return Response(FiscalDocumentSerializer(documento).data)

    @action(detail=True, methods=["post"], url_path="reenviar")
    def reenviar(self, request, pk: Optional[str] = None):
        """Reenvío de un documento en CONTINGENCIA."""
        documento = self.get_object()
        documento = reenviar_contingencia(documento.pk)
        return Response(FiscalDocumentSerializer(documento).data)

    @action(detail=True, methods=["post"], url_path="anular")
    def anular(self, request, pk: Optional[str] = None):
        """
        Invalidación ante el MH.

        Body:
        - tipo_anulacion: 1 error en la información (requiere reemplazo),
          2 rescindir la operación, 3 otro (requiere motivo)
        - motivo
        - codigo_generacion_reemplazo | documento_reemplazo_id
        - responsable / solicitante: {nombre, tipo_doc, num_doc}
        """
        documento = self.get_object()
        serializer = InvalidationRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        evento = invalidar_documento(
            documento.pk,
            tipo_anulacion=data["tipo_anulacion"],
            motivo=data.get("motivo"),
            documento_reemplazo_id=data.get("documento_reemplazo_id"),
            codigo_generacion_reemplazo=data.get("codigo_generacion_reemplazo"),
            responsable=data.get("responsable"),
            solicitante=data.get("solicitante"),
            user=request.user,
        )
        return Response(
            InvalidationEventSerializer(evento).data,
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="nota")
    def nota(self, request, pk: Optional[str] = None):
        """Compone una nota de crédito (05) o débito (06) sobre este documento."""
        serializer = NoteRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        nota = componer_nota(
            self.kwargs["pk"],
            lineas=data.get("lineas") or [],
            observaciones=data.get("observaciones"),
            tipo_dte=data["tipo_dte"],
            user=request.user,
        )
        return Response(
            FiscalDocumentSerializer(nota).data,
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["get"], url_path="pdf")
    def pdf(self, request, pk: Optional[str] = None):
        """
        Representación impresa del DTE.

        Se genera en cada solicitud; 400 DTE_NOT_GENERATED si el documento
        aún no tiene su JSON (borrador nunca firmado).
        """
        documento = self.get_object()
        contenido = generar_pdf_documento(documento)
        response = HttpResponse(contenido, content_type="application/pdf")
        response["Content-Disposition"] = f'inline; filename="{nombre_archivo_documento(documento)}"'
        return response


class InvalidationEventViewSet(viewsets.ReadOnlyModelViewSet):
    """Eventos de invalidación: listado, detalle y reintento."""

    serializer_class = InvalidationEventSerializer
    pagination_class = DtePagination
    filterset_class = InvalidationEventFilter
    ordering = ["-created_at"]

    def get_queryset(self):
        return InvalidationEvent.objects.select_related("documento", "documento_reemplazo").all()

    def get_permissions(self):
        if self.action == "reintentar":
            return [CanAnularDte()]
        return super().get_permissions()

    @action(detail=True, methods=["post"], url_path="reintentar")
    def reintentar(self, request, pk: Optional[str] = None):
        evento = self.get_object()
        evento = reintentar_anulacion(evento.pk)
        return Response(InvalidationEventSerializer(evento).data)
