# dte/admin.py
from __future__ import annotations

from django.contrib import admin

from dte.models import (
    Correlativo,
    FiscalDocument,
    FiscalDocumentLine,
    InvalidationEvent,
    Sucursal,
)


@admin.register(Sucursal)
class SucursalAdmin(admin.ModelAdmin):
    list_display = (
        "nombre",
        "cod_estable",
        "cod_punto_venta",
        "cod_estable_mh",
        "cod_punto_venta_mh",
        "is_active",
    )
    list_filter = ("is_active", "tipo_establecimiento")
    search_fields = ("nombre", "cod_estable", "cod_punto_venta")
    readonly_fields = ("created_at", "updated_at")


@admin.register(Correlativo)
class CorrelativoAdmin(admin.ModelAdmin):
    list_display = ("sucursal", "tipo_dte", "ultimo_numero")
    list_filter = ("tipo_dte",)


class FiscalDocumentLineInline(admin.TabularInline):
    model = FiscalDocumentLine
    extra = 0
    can_delete = False
    fields = (
        "num_item",
        "descripcion",
        "cantidad",
        "precio_unitario",
        "tipo_venta",
        "venta_gravada",
        "iva_item",
        "linea_original",
    )
    readonly_fields = fields


@admin.register(FiscalDocument)
class FiscalDocumentAdmin(admin.ModelAdmin):
    list_display = (
        "numero_control",
        "tipo_dte",
        "fecha_emision",
        "receptor_nombre",
        "total",
        "estado",
        "sucursal",
    )
    list_filter = ("estado", "tipo_dte", "sucursal", "fecha_emision")
    search_fields = (
        "codigo_generacion",
        "numero_control",
        "sello_recepcion",
        "receptor_nombre",
        "receptor_nit",
    )
    date_hierarchy = "fecha_emision"
    inlines = [FiscalDocumentLineInline]
    # El estado y los montos sólo cambian por los servicios (workflow / anulación)
    readonly_fields = (
        "codigo_generacion",
        "numero_control",
        "estado",
        "total_no_sujeto",
        "total_exento",
        "total_gravado",
        "total_iva",
        "iva_retenido",
        "total",
        "sello_recepcion",
        "fecha_procesamiento",
        "codigo_msg",
        "descripcion_msg",
        "observaciones_mh",
        "mensajes",
        "intentos_transmision",
        "ultimo_error",
        "dte_json",
        "dte_firmado",
        "created_at",
        "updated_at",
    )


@admin.register(InvalidationEvent)
class InvalidationEventAdmin(admin.ModelAdmin):
    list_display = (
        "codigo_generacion",
        "documento",
        "tipo_anulacion",
        "estado",
        "fecha_anulacion",
    )
    list_filter = ("estado", "tipo_anulacion")
    search_fields = ("codigo_generacion", "documento__codigo_generacion", "documento__numero_control")
    readonly_fields = (
        "estado",
        "sello_recepcion",
        "fecha_procesamiento",
        "codigo_msg",
        "descripcion_msg",
        "observaciones_mh",
        "evento_json",
        "evento_firmado",
        "mensajes",
        "intentos_transmision",
        "ultimo_error",
        "created_at",
        "updated_at",
    )
