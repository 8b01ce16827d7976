# dte/pagination.py
from __future__ import annotations

from math import ceil
from typing import Any, Dict

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


def meta_paginacion(total: int, page: int, limit: int) -> Dict[str, Any]:
    """Bloque `meta` común a listados de DTE y libros de IVA."""
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": ceil(total / limit) if limit else 1,
    }


class DtePagination(PageNumberPagination):
    """
    Paginador de los listados de DTE y anulaciones.

    ?page=N&limit=M  ->  {"results": [...], "meta": {total, page, limit, totalPages},
                          "next", "previous"}
    """

    page_size = 50
    page_size_query_param = "limit"
    max_page_size = 500

    def get_paginated_response(self, data):
        limit = self.get_page_size(self.request) or self.page_size
        return Response(
            {
                "results": data,
                "meta": meta_paginacion(self.page.paginator.count, self.page.number, limit),
                "next": self.get_next_link(),
                "previous": self.get_previous_link(),
            }
        )
