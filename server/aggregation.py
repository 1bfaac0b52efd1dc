'''Aggregation of filtered expenses into report metrics.

``aggregate`` applies the report filter exactly once and freezes the result;
every later stage (charts, composer, summary) reads the ``AggregatedReport``
and never filters again. Money stays in ``Decimal`` end to end; percentages
are floats derived from exact totals.
'''

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from errors import InvalidRecordError
from records import ExpenseRecord, ExpenseStatus, ReportFilter, ReportPeriod

logger = logging.getLogger(__name__)

ZERO = Decimal('0')
MOVING_AVERAGE_WINDOW = 3


class ComplianceRating(str, Enum):
    EXCELLENT = 'EXCELENTE'
    ADEQUATE = 'ADEQUADA'
    INSUFFICIENT = 'INSUFICIENTE'


@dataclass(frozen=True)
class Share:
    name: str
    amount: Decimal
    percentage: float


@dataclass(frozen=True)
class AggregatedReport:
    filtered_expenses: Tuple[ExpenseRecord, ...]
    total_amount: Decimal
    category_totals: Mapping[str, Decimal]
    child_totals: Mapping[str, Decimal]
    status_totals: Mapping[ExpenseStatus, Decimal]
    period: ReportPeriod
    expense_count: int
    receipt_count: int
    skipped_count: int = 0

    @property
    def documentation_rate(self) -> float:
        '''Receipts attached per expense, as a percentage.'''
        return 100.0 * self.receipt_count / max(self.expense_count, 1)

    @property
    def documented_expense_count(self) -> int:
        return sum(1 for expense in self.filtered_expenses if expense.receipts)

    @property
    def compliance(self) -> ComplianceRating:
        rate = round(self.documentation_rate, 1)
        if rate >= 90:
            return ComplianceRating.EXCELLENT
        if rate >= 70:
            return ComplianceRating.ADEQUATE
        return ComplianceRating.INSUFFICIENT

    def category_breakdown(self) -> List[Share]:
        return _breakdown(self.category_totals, self.total_amount)

    def child_breakdown(self) -> List[Share]:
        return _breakdown(self.child_totals, self.total_amount)

    def status_breakdown(self) -> List[Share]:
        named = {status.label: amount for status, amount in self.status_totals.items()}
        return _breakdown(named, self.total_amount)

    def expenses_by_date_desc(self) -> List[ExpenseRecord]:
        # sorted() is stable, so same-day expenses keep their fetched order.
        return sorted(self.filtered_expenses, key=lambda expense: expense.expense_date, reverse=True)

    def summary(self) -> Dict[str, Any]:
        '''Companion object returned next to the rendered document.'''
        return {
            'totalAmount': str(self.total_amount),
            'expenseCount': self.expense_count,
            'receiptCount': self.receipt_count,
            'period': {'start': self.period.start.isoformat(), 'end': self.period.end.isoformat()},
        }


def _breakdown(totals: Mapping[str, Decimal], total: Decimal) -> List[Share]:
    if total == ZERO:
        return []
    shares = [
        Share(name=name, amount=amount, percentage=float(amount * 100 / total))
        for name, amount in totals.items()
    ]
    shares.sort(key=lambda share: (-share.amount, share.name.lower()))
    return shares


def _coerce(raw: Any) -> ExpenseRecord:
    if isinstance(raw, ExpenseRecord):
        return raw
    if isinstance(raw, Mapping):
        return ExpenseRecord.from_payload(raw)
    raise InvalidRecordError(f'Unsupported expense payload: {type(raw).__name__}')


def aggregate(raw_expenses: Iterable[Any], report_filter: ReportFilter) -> AggregatedReport:
    '''Filter ``raw_expenses`` and compute the report totals.

    Records that cannot be parsed (non-numeric amount, bad date, unknown
    status) are skipped and counted in ``skipped_count``.
    '''
    filtered: List[ExpenseRecord] = []
    skipped = 0
    for raw in raw_expenses or ():
        try:
            expense = _coerce(raw)
        except InvalidRecordError as exc:
            skipped += 1
            logger.debug('Skipping expense record: %s', exc)
            continue
        if report_filter.matches(expense):
            filtered.append(expense)

    if skipped:
        logger.warning('Skipped %d malformed expense record(s) during aggregation', skipped)

    total = ZERO
    by_category: Dict[str, Decimal] = {}
    by_child: Dict[str, Decimal] = {}
    by_status: Dict[ExpenseStatus, Decimal] = {}
    receipt_count = 0
    for expense in filtered:
        total += expense.amount
        by_category[expense.category] = by_category.get(expense.category, ZERO) + expense.amount
        child_name = expense.child.full_name
        by_child[child_name] = by_child.get(child_name, ZERO) + expense.amount
        by_status[expense.status] = by_status.get(expense.status, ZERO) + expense.amount
        receipt_count += len(expense.receipts)

    return AggregatedReport(
        filtered_expenses=tuple(filtered),
        total_amount=total,
        category_totals=MappingProxyType(by_category),
        child_totals=MappingProxyType(by_child),
        status_totals=MappingProxyType(by_status),
        period=report_filter.period,
        expense_count=len(filtered),
        receipt_count=receipt_count,
        skipped_count=skipped,
    )


# ---------------------------------------------------------------------------
# Series used by the charts
# ---------------------------------------------------------------------------
def monthly_totals(expenses: Iterable[ExpenseRecord]) -> List[Tuple[date, Decimal]]:
    '''One (first-of-month, total) pair per month present, oldest first.'''
    buckets: Dict[date, Decimal] = {}
    for expense in expenses:
        month = date(expense.expense_date.year, expense.expense_date.month, 1)
        buckets[month] = buckets.get(month, ZERO) + expense.amount
    return sorted(buckets.items())


def cumulative_series(expenses: Iterable[ExpenseRecord]) -> List[Tuple[date, Decimal]]:
    '''Running total per expense date in ascending date order.'''
    per_day: Dict[date, Decimal] = {}
    for expense in expenses:
        per_day[expense.expense_date] = per_day.get(expense.expense_date, ZERO) + expense.amount
    running = ZERO
    series = []
    for day, amount in sorted(per_day.items()):
        running += amount
        series.append((day, running))
    return series


def moving_average(values: Sequence[Any], window: int = MOVING_AVERAGE_WINDOW) -> List[Any]:
    '''Trailing average; the first points average whatever precedes them.'''
    if window < 1:
        raise ValueError('window must be at least 1')
    averages = []
    for index in range(len(values)):
        chunk = values[max(0, index - window + 1):index + 1]
        averages.append(sum(chunk) / len(chunk))
    return averages
