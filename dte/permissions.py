# dte/permissions.py
from __future__ import annotations

from rest_framework.permissions import BasePermission

GRUPOS_ADMIN = ["ADMIN", "Admin", "Administrador"]
GRUPOS_FACTURACION = GRUPOS_ADMIN + ["FACTURACION", "VENDEDOR"]


def _en_grupos(user, grupos) -> bool:
    return user.groups.filter(name__in=grupos).exists()


class CanEmitirDte(BasePermission):
    """
    Crear, emitir y reenviar DTE y componer notas.

    - user.is_superuser
    - user.has_perm('dte.emitir_fiscaldocument')
    - grupo ADMIN / FACTURACION / VENDEDOR
    """

    message = "No tienes permisos para emitir documentos tributarios electrónicos."

    def has_permission(self, request, view) -> bool:
        user = request.user
        if not user or not user.is_authenticated:
            return False
        if user.is_superuser or user.has_perm("dte.emitir_fiscaldocument"):
            return True
        return _en_grupos(user, GRUPOS_FACTURACION)


class CanAnularDte(BasePermission):
    """
    Invalidar DTE ante el MH (y reintentar anulaciones).
    Más restrictivo: superusuario, permiso explícito o grupo ADMIN.
    """

    message = "No tienes permisos para invalidar documentos tributarios electrónicos."

    def has_permission(self, request, view) -> bool:
        user = request.user
        if not user or not user.is_authenticated:
            return False
        if user.is_superuser or user.has_perm("dte.anular_fiscaldocument"):
            return True
        return _en_grupos(user, GRUPOS_ADMIN)
