'''pt-BR display helpers shared by the charts, the composer and the API.'''
from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

MONTH_NAMES = (
    'janeiro', 'fevereiro', 'março', 'abril', 'maio', 'junho',
    'julho', 'agosto', 'setembro', 'outubro', 'novembro', 'dezembro',
)
MONTH_ABBREVIATIONS = ('jan', 'fev', 'mar', 'abr', 'mai', 'jun', 'jul', 'ago', 'set', 'out', 'nov', 'dez')
CENT = Decimal('0.01')


def _swap_separators(text: str) -> str:
    return text.replace(',', '_').replace('.', ',').replace('_', '.')


def formatBRL(value: Any) -> str:
    '''Format a value as Brazilian reais, e.g. ``R$ 1.234,50``.'''
    try:
        amount = Decimal(str(value if value is not None else 0))
    except InvalidOperation:
        amount = Decimal('0')
    if not amount.is_finite():
        amount = Decimal('0')
    amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    return f'R$ {_swap_separators(f"{amount:,.2f}")}'


def formatPercent(value: float, digits: int = 1) -> str:
    return f'{_swap_separators(f"{value:.{digits}f}")}%'


def percent(part: Any, total: Any) -> str:
    '''Return the share of ``part`` over ``total`` as a percentage string.'''
    try:
        p = Decimal(str(part or 0))
        t = Decimal(str(total or 0))
    except InvalidOperation:
        return formatPercent(0.0)
    if t == 0:
        return formatPercent(0.0)
    return formatPercent(float(p * 100 / t))


def formatDate(day: date | None, short: bool = False) -> str:
    '''dd/mm/yyyy straight from the calendar fields, never via a timezone.'''
    if day is None:
        return ''
    if short:
        return f'{day.day:02d}/{day.month:02d}/{day.year % 100:02d}'
    return f'{day.day:02d}/{day.month:02d}/{day.year:04d}'


def formatTimestamp(moment: datetime | None) -> str:
    if moment is None:
        return ''
    return f'{formatDate(moment.date())} {moment.hour:02d}:{moment.minute:02d}'


def monthYear(day: date) -> str:
    return f'{MONTH_NAMES[day.month - 1]} de {day.year}'


def monthLabel(day: date) -> str:
    return f'{MONTH_ABBREVIATIONS[day.month - 1]}/{day.year % 100:02d}'


def titleCase(value: str) -> str:
    return value[:1].upper() + value[1:] if value else value
