# dte/filters.py
from __future__ import annotations

import django_filters
from django.db.models import Q

from dte.models import FiscalDocument, InvalidationEvent


class FiscalDocumentFilter(django_filters.FilterSet):
    """
    Filtros para listar DTE.

    - q: código de generación, número de control, sello, NIT/NRC o nombre del receptor.
    - fecha_desde / fecha_hasta: por fecha_emision.
    - estado, tipo_dte, sucursal.
    """

    q = django_filters.CharFilter(method="filter_q", label="Búsqueda general")
    fecha_desde = django_filters.DateFilter(field_name="fecha_emision", lookup_expr="gte")
    fecha_hasta = django_filters.DateFilter(field_name="fecha_emision", lookup_expr="lte")
    estado = django_filters.CharFilter(field_name="estado", lookup_expr="iexact")
    tipo_dte = django_filters.CharFilter(field_name="tipo_dte")
    sucursal = django_filters.NumberFilter(field_name="sucursal_id")
    documento_original = django_filters.NumberFilter(field_name="documento_original_id")

    class Meta:
        model = FiscalDocument
        fields = [
            "q",
            "fecha_desde",
            "fecha_hasta",
            "estado",
            "tipo_dte",
            "sucursal",
            "documento_original",
        ]

    def filter_q(self, queryset, name, value):
        value = (value or "").strip()
        if not value:
            return queryset
        return queryset.filter(
            Q(codigo_generacion__icontains=value)
            | Q(numero_control__icontains=value)
            | Q(sello_recepcion__icontains=value)
            | Q(receptor_nit__icontains=value)
            | Q(receptor_nrc__icontains=value)
            | Q(receptor_num_documento__icontains=value)
            | Q(receptor_nombre__icontains=value)
        )


class InvalidationEventFilter(django_filters.FilterSet):
    estado = django_filters.CharFilter(field_name="estado", lookup_expr="iexact")
    documento = django_filters.NumberFilter(field_name="documento_id")
    tipo_anulacion = django_filters.NumberFilter(field_name="tipo_anulacion")
    fecha_desde = django_filters.DateFilter(field_name="fecha_anulacion", lookup_expr="gte")
    fecha_hasta = django_filters.DateFilter(field_name="fecha_anulacion", lookup_expr="lte")

    class Meta:
        model = InvalidationEvent
        fields = ["estado", "documento", "tipo_anulacion", "fecha_desde", "fecha_hasta"]
