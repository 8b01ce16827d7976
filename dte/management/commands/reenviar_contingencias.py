# dte/management/commands/reenviar_contingencias.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand

from dte.services.workflow import reenviar_contingencias_pendientes


class Command(BaseCommand):
    help = "Reenvía al MH los DTE que quedaron en CONTINGENCIA (más antiguos primero)."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--limite",
            type=int,
            default=None,
            help="Cantidad máxima de documentos a reenviar.",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        resumen = reenviar_contingencias_pendientes(limite=options["limite"])

        self.stdout.write(
            self.style.MIGRATE_HEADING("▶ Reenvío de contingencias")
        )
        self.stdout.write(f"  Procesados: {resumen['procesados']}")
        self.stdout.write(f"  Rechazados: {resumen['rechazados']}")
        self.stdout.write(f"  Sin respuesta: {resumen['fallidos']}")

        if resumen["fallidos"]:
            self.stdout.write(self.style.WARNING("Quedan documentos en contingencia."))
        else:
            self.stdout.write(self.style.SUCCESS("Reenvío completado."))
