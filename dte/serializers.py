# dte/serializers.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

from rest_framework import serializers

from dte.models import (
    FiscalDocument,
    FiscalDocumentLine,
    InvalidationEvent,
    Sucursal,
    TipoDte,
)
from dte.services.deadlines import invalidation_deadline
from dte.services.invalidation import default_business_day
from dte.services.ledger import LIBRO_A_TIPO_DTE
from dte.services.workflow import crear_documento


# =========================
# Lectura
# =========================


class SucursalSerializer(serializers.ModelSerializer):
    class Meta:
        model = Sucursal
        fields = [
            "id",
            "nombre",
            "tipo_establecimiento",
            "cod_estable_mh",
            "cod_estable",
            "cod_punto_venta_mh",
            "cod_punto_venta",
        ]


class FiscalDocumentLineSerializer(serializers.ModelSerializer):
    monto = serializers.DecimalField(source="monto_linea", max_digits=14, decimal_places=2, read_only=True)

    class Meta:
        model = FiscalDocumentLine
        fields = [
            "id",
            "num_item",
            "tipo_item",
            "codigo",
            "descripcion",
            "cantidad",
            "uni_medida",
            "precio_unitario",
            "monto_descuento",
            "tipo_venta",
            "venta_no_sujeta",
            "venta_exenta",
            "venta_gravada",
            "iva_item",
            "monto",
            "linea_original",
            "motivo",
        ]


class FiscalDocumentSerializer(serializers.ModelSerializer):
    """
    Representación de lectura de un DTE, con líneas y plazo de anulación.
    """

    lineas = FiscalDocumentLineSerializer(many=True, read_only=True)
    sucursal_detalle = SucursalSerializer(source="sucursal", read_only=True)
    tipo_dte_display = serializers.CharField(source="get_tipo_dte_display", read_only=True)
    estado_display = serializers.CharField(source="get_estado_display", read_only=True)
    fecha_limite_anulacion = serializers.SerializerMethodField()

    class Meta:
        model = FiscalDocument
        fields = [
            "id",
            "codigo_generacion",
            "numero_control",
            "tipo_dte",
            "tipo_dte_display",
            "version",
            "ambiente",
            "sucursal",
            "sucursal_detalle",
            "estado",
            "estado_display",
            "fecha_emision",
            "hora_emision",
            "receptor_tipo_documento",
            "receptor_num_documento",
            "receptor_nit",
            "receptor_nrc",
            "receptor_nombre",
            "receptor_telefono",
            "receptor_correo",
            "total_no_sujeto",
            "total_exento",
            "total_gravado",
            "total_iva",
            "iva_retenido",
            "total",
            "moneda",
            "documento_original",
            "documento_reemplazo",
            "sello_recepcion",
            "fecha_procesamiento",
            "codigo_msg",
            "descripcion_msg",
            "observaciones_mh",
            "observaciones",
            "mensajes",
            "intentos_transmision",
            "ultimo_error",
            "fecha_limite_anulacion",
            "lineas",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_fecha_limite_anulacion(self, obj: FiscalDocument):
        if obj.estado != FiscalDocument.Estado.PROCESADO:
            return None
        return invalidation_deadline(obj.tipo_dte, obj.fecha_emision, default_business_day())


class InvalidationEventSerializer(serializers.ModelSerializer):
    documento_codigo_generacion = serializers.CharField(
        source="documento.codigo_generacion", read_only=True
    )
    documento_reemplazo_codigo_generacion = serializers.CharField(
        source="documento_reemplazo.codigo_generacion", read_only=True, default=None
    )
    tipo_anulacion_display = serializers.CharField(source="get_tipo_anulacion_display", read_only=True)

    class Meta:
        model = InvalidationEvent
        fields = [
            "id",
            "codigo_generacion",
            "documento",
            "documento_codigo_generacion",
            "documento_reemplazo",
            "documento_reemplazo_codigo_generacion",
            "tipo_anulacion",
            "tipo_anulacion_display",
            "motivo",
            "responsable_nombre",
            "responsable_tipo_doc",
            "responsable_num_doc",
            "solicitante_nombre",
            "solicitante_tipo_doc",
            "solicitante_num_doc",
            "estado",
            "fecha_anulacion",
            "hora_anulacion",
            "sello_recepcion",
            "fecha_procesamiento",
            "codigo_msg",
            "descripcion_msg",
            "observaciones_mh",
            "mensajes",
            "intentos_transmision",
            "ultimo_error",
            "created_at",
        ]
        read_only_fields = fields


# =========================
# Escritura
# =========================


class ReceptorSerializer(serializers.Serializer):
    tipo_documento = serializers.CharField(max_length=2, required=False, allow_blank=True)
    num_documento = serializers.CharField(max_length=25, required=False, allow_blank=True)
    nit = serializers.CharField(max_length=17, required=False, allow_blank=True)
    nrc = serializers.CharField(max_length=10, required=False, allow_blank=True)
    nombre = serializers.CharField(max_length=255, required=False, allow_blank=True)
    telefono = serializers.CharField(max_length=32, required=False, allow_blank=True)
    correo = serializers.EmailField(required=False, allow_blank=True)


class LineaInputSerializer(serializers.Serializer):
    descripcion = serializers.CharField(max_length=1000)
    cantidad = serializers.DecimalField(max_digits=14, decimal_places=4)
    precio_unitario = serializers.DecimalField(max_digits=14, decimal_places=6)
    tipo_venta = serializers.ChoiceField(
        choices=FiscalDocumentLine.TipoVenta.choices,
        default=FiscalDocumentLine.TipoVenta.GRAVADO,
    )
    codigo = serializers.CharField(max_length=25, required=False, allow_blank=True)
    tipo_item = serializers.IntegerField(required=False, min_value=1, max_value=4)
    uni_medida = serializers.IntegerField(required=False, min_value=1)
    monto_descuento = serializers.DecimalField(
        max_digits=14, decimal_places=2, required=False, default=Decimal("0.00")
    )


class FiscalDocumentCreateSerializer(serializers.Serializer):
    """Creación de un DTE en BORRADOR (las notas se crean con la acción 'nota')."""

    sucursal = serializers.PrimaryKeyRelatedField(queryset=Sucursal.objects.filter(is_active=True))
    tipo_dte = serializers.ChoiceField(
        choices=[
            (t.value, t.label)
            for t in TipoDte
            if t not in (TipoDte.NOTA_CREDITO, TipoDte.NOTA_DEBITO)
        ]
    )
    fecha_emision = serializers.DateField(required=False)
    receptor = ReceptorSerializer(required=False)
    lineas = LineaInputSerializer(many=True, allow_empty=True)
    observaciones = serializers.CharField(required=False, allow_blank=True, default="")
    iva_retenido = serializers.DecimalField(
        max_digits=14, decimal_places=2, required=False, default=Decimal("0.00")
    )

    def create(self, validated_data: Dict[str, Any]) -> FiscalDocument:
        return crear_documento(
            sucursal=validated_data["sucursal"],
            tipo_dte=validated_data["tipo_dte"],
            lineas=validated_data["lineas"],
            receptor=validated_data.get("receptor"),
            fecha_emision=validated_data.get("fecha_emision"),
            observaciones=validated_data.get("observaciones", ""),
            iva_retenido=validated_data.get("iva_retenido") or Decimal("0.00"),
            user=validated_data.get("user"),
        )


class ParteSerializer(serializers.Serializer):
    nombre = serializers.CharField(max_length=100, required=False, allow_blank=True)
    tipo_doc = serializers.CharField(max_length=2, required=False, allow_blank=True)
    num_doc = serializers.CharField(max_length=25, required=False, allow_blank=True)


class InvalidationRequestSerializer(serializers.Serializer):
    """
    Sólo valida tipos; las reglas de negocio (reemplazo, motivo, partes)
    las aplica el servicio de invalidación con sus códigos de error.
    """

    tipo_anulacion = serializers.ChoiceField(choices=InvalidationEvent.TipoAnulacion.choices)
    motivo = serializers.CharField(max_length=250, required=False, allow_blank=True)
    codigo_generacion_reemplazo = serializers.CharField(max_length=36, required=False, allow_blank=True)
    documento_reemplazo_id = serializers.IntegerField(required=False, allow_null=True)
    responsable = ParteSerializer(required=False)
    solicitante = ParteSerializer(required=False)


class NotaLineaSerializer(serializers.Serializer):
    linea_original_id = serializers.IntegerField()
    cantidad = serializers.DecimalField(max_digits=14, decimal_places=4)
    motivo = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class NoteRequestSerializer(serializers.Serializer):
    tipo_dte = serializers.ChoiceField(
        choices=[
            (TipoDte.NOTA_CREDITO.value, TipoDte.NOTA_CREDITO.label),
            (TipoDte.NOTA_DEBITO.value, TipoDte.NOTA_DEBITO.label),
        ],
        default=TipoDte.NOTA_CREDITO.value,
    )
    lineas = NotaLineaSerializer(many=True, required=False, default=list)
    observaciones = serializers.CharField(required=False, allow_blank=True, default="")


class LedgerQuerySerializer(serializers.Serializer):
    tipo_libro = serializers.ChoiceField(choices=list(LIBRO_A_TIPO_DTE))
    fecha_inicio = serializers.DateField()
    fecha_fin = serializers.DateField()
    id_sucursal = serializers.IntegerField(required=False, allow_null=True)
    solo_procesados = serializers.BooleanField(required=False, default=True)
    page = serializers.IntegerField(required=False, min_value=1, default=1)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=1000, default=50)

    def validate(self, attrs):
        if attrs["fecha_inicio"] > attrs["fecha_fin"]:
            raise serializers.ValidationError(
                {"fecha_fin": "fecha_fin debe ser igual o posterior a fecha_inicio."}
            )
        return attrs
