# dte/services/deadlines.py
# -*- coding: utf-8 -*-
"""
Plazos legales para invalidar un DTE.

- Factura (01), Factura de exportación (11) y Sujeto excluido (14):
  hasta 3 meses calendario después de la fecha de emisión.
- CCF (03), Nota de crédito (05), Nota de débito (06) y Comprobante de
  retención (07): hasta el día hábil siguiente a la emisión.

Los plazos son inclusivos y se comparan por fecha (sin hora).
Módulo puro: no hace I/O ni depende de Django.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional, Union

FechaLike = Union[date, datetime]
BusinessDayPredicate = Callable[[date], bool]

TIPOS_PLAZO_MESES = {"01", "11", "14"}
TIPOS_PLAZO_DIA_HABIL = {"03", "05", "06", "07"}
MESES_PLAZO = 3


@dataclass(frozen=True)
class DeadlineDecision:
    allowed: bool
    deadline: date


def _as_date(value: FechaLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def add_months(base: date, months: int) -> date:
    """Suma meses calendario; si el día no existe en el mes destino se usa el último."""
    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(base.day, last_day))


def weekdays_only(day: date) -> bool:
    return day.weekday() < 5


def holiday_calendar(holidays: Iterable[Union[date, str]]) -> BusinessDayPredicate:
    """
    Predicado de día hábil: lunes a viernes excluyendo los feriados dados
    (objetos date o cadenas ISO 'YYYY-MM-DD').
    """
    feriados = {
        date.fromisoformat(h.strip()) if isinstance(h, str) else h
        for h in holidays
    }

    def is_business_day(day: date) -> bool:
        return weekdays_only(day) and day not in feriados

    return is_business_day


def next_business_day(base: date, is_business_day: Optional[BusinessDayPredicate] = None) -> date:
    predicate = is_business_day or weekdays_only
    day = base + timedelta(days=1)
    # Un año sin días hábiles sólo es posible con un predicado mal configurado
    for _ in range(366):
        if predicate(day):
            return day
        day += timedelta(days=1)
    raise ValueError("El calendario de días hábiles no tiene días hábiles en un año.")


def invalidation_deadline(
    tipo_dte: str,
    issued_at: FechaLike,
    is_business_day: Optional[BusinessDayPredicate] = None,
) -> date:
    """Último día (incluido) en que el documento puede invalidarse."""
    emision = _as_date(issued_at)
    if tipo_dte in TIPOS_PLAZO_MESES:
        return add_months(emision, MESES_PLAZO)
    if tipo_dte in TIPOS_PLAZO_DIA_HABIL:
        return next_business_day(emision, is_business_day)
    raise ValueError(f"Tipo de DTE sin plazo de invalidación definido: {tipo_dte!r}")


def can_invalidate(
    tipo_dte: str,
    issued_at: FechaLike,
    now: FechaLike,
    is_business_day: Optional[BusinessDayPredicate] = None,
) -> DeadlineDecision:
    deadline = invalidation_deadline(tipo_dte, issued_at, is_business_day)
    return DeadlineDecision(allowed=_as_date(now) <= deadline, deadline=deadline)
