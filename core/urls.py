# core/urls.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path
from django.views.decorators.csrf import ensure_csrf_cookie


# Endpoint explícito para setear cookie CSRF (lo consume el frontend antes de los POST)
@ensure_csrf_cookie
def set_csrf_cookie(_request):
    return JsonResponse({"ok": True})


urlpatterns = [
    path("admin/", admin.site.urls),

    # =========================
    # APIs
    # =========================
    path("api/auth/csrf/", set_csrf_cookie),
    path("api/dte/", include("dte.urls")),
]
