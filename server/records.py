'''Typed records consumed by the report pipeline.

Records arrive from the storage layer as mappings with the camelCase keys the
REST layer serves (``expenseDate``, ``filePath`` ...). Every ``from_payload``
constructor raises ``InvalidRecordError`` on data it cannot trust so callers
can skip the record instead of aborting the run.
'''

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Mapping, Tuple

from errors import InvalidFilterError, InvalidRecordError

NOT_RECORDED = '[não registrado]'
CALENDAR_DATE = re.compile(r'\d{4}-\d{2}-\d{2}')
GENERIC_CONTENT_TYPES = {'', 'application/octet-stream', 'binary/octet-stream'}
DEFAULT_PERIOD_DAYS = 30


class ExpenseStatus(str, Enum):
    PENDING = 'pendente'
    PAID = 'pago'
    REIMBURSED = 'reembolsado'

    @property
    def label(self) -> str:
        return self.value.capitalize()


_STATUS_ALIASES = {
    'pendente': ExpenseStatus.PENDING,
    'pending': ExpenseStatus.PENDING,
    'pago': ExpenseStatus.PAID,
    'paid': ExpenseStatus.PAID,
    'reembolsado': ExpenseStatus.REIMBURSED,
    'reimbursed': ExpenseStatus.REIMBURSED,
}


def normalize_status(raw: Any) -> ExpenseStatus:
    '''Map a stored status string to the closed status set.'''
    if isinstance(raw, ExpenseStatus):
        return raw
    value = str(raw or '').strip().lower()
    try:
        return _STATUS_ALIASES[value]
    except KeyError:
        raise InvalidRecordError(f'Unknown expense status: {raw!r}') from None


def parse_calendar_date(raw: Any) -> date:
    '''Return the calendar date of ``raw`` without any timezone conversion.'''
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw or '').strip()
    # Only the date part of a timestamp counts; the time part is never read.
    for separator in ('T', ' '):
        if separator in text:
            text = text.split(separator, 1)[0]
    if not CALENDAR_DATE.fullmatch(text):
        raise InvalidRecordError(f'Invalid calendar date: {raw!r}')
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise InvalidRecordError(f'Invalid calendar date: {raw!r}') from None


def parse_timestamp(raw: Any) -> datetime | None:
    if raw in (None, ''):
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw).strip().replace('Z', '+00:00'))
    except ValueError:
        return None


def parse_amount(raw: Any) -> Decimal:
    '''Parse a positive monetary amount as an exact decimal.'''
    if isinstance(raw, bool) or raw is None:
        raise InvalidRecordError(f'Invalid amount: {raw!r}')
    if isinstance(raw, Decimal):
        amount = raw
    else:
        text = str(raw).strip()
        if ',' in text and '.' not in text:
            text = text.replace(',', '.')
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise InvalidRecordError(f'Invalid amount: {raw!r}') from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidRecordError(f'Amount must be a positive number: {raw!r}')
    return amount


def _optional_text(value: Any) -> str | None:
    text = str(value).strip() if value is not None else ''
    return text or None


def _optional_date(value: Any) -> date | None:
    if value in (None, ''):
        return None
    try:
        return parse_calendar_date(value)
    except InvalidRecordError:
        return None


def _text_tuple(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(',') if part.strip())
    return tuple(str(item).strip() for item in value if str(item).strip())


# ---------------------------------------------------------------------------
# Reference records
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ChildRecord:
    id: str
    first_name: str
    last_name: str | None = None
    date_of_birth: date | None = None

    @property
    def full_name(self) -> str:
        return ' '.join(part for part in (self.first_name, self.last_name) if part)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'ChildRecord':
        child_id = _optional_text(payload.get('id'))
        first_name = _optional_text(payload.get('firstName'))
        if not child_id or not first_name:
            raise InvalidRecordError('Child requires id and firstName')
        return cls(
            id=child_id,
            first_name=first_name,
            last_name=_optional_text(payload.get('lastName')),
            date_of_birth=_optional_date(payload.get('dateOfBirth')),
        )


@dataclass(frozen=True)
class ParentRecord:
    id: str
    full_name: str
    relationship: str | None = None
    email: str | None = None
    phone: str | None = None
    child_ids: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'ParentRecord':
        name = _optional_text(payload.get('fullName'))
        if not name:
            name = ' '.join(
                part for part in (_optional_text(payload.get('firstName')), _optional_text(payload.get('lastName')))
                if part
            )
        if not name:
            raise InvalidRecordError('Parent requires a name')
        return cls(
            id=_optional_text(payload.get('id')) or name,
            full_name=name,
            relationship=_optional_text(payload.get('relationship')),
            email=_optional_text(payload.get('email')),
            phone=_optional_text(payload.get('phone')),
            child_ids=_text_tuple(payload.get('childIds')),
        )


@dataclass(frozen=True)
class LawyerRecord:
    id: str
    full_name: str
    oab_number: str | None = None
    oab_state: str | None = None
    law_firm: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    specializations: Tuple[str, ...] = ()
    notes: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'LawyerRecord':
        name = _optional_text(payload.get('fullName'))
        if not name:
            raise InvalidRecordError('Lawyer requires fullName')
        return cls(
            id=_optional_text(payload.get('id')) or name,
            full_name=name,
            oab_number=_optional_text(payload.get('oabNumber')),
            oab_state=_optional_text(payload.get('oabState')),
            law_firm=_optional_text(payload.get('lawFirm')),
            phone=_optional_text(payload.get('phone')),
            email=_optional_text(payload.get('email')),
            address=_optional_text(payload.get('address')),
            specializations=_text_tuple(payload.get('specializations')),
            notes=_optional_text(payload.get('notes')),
        )


@dataclass(frozen=True)
class LegalCaseRecord:
    id: str
    case_type: str
    status: str = 'em_andamento'
    lawyer_id: str | None = None
    case_number: str | None = None
    court_name: str | None = None
    judge_name: str | None = None
    start_date: date | None = None
    expected_end_date: date | None = None
    children_involved: Tuple[str, ...] = ()
    custody_type: str | None = None
    alimony_amount: Decimal | None = None
    visitation_schedule: str | None = None
    notes: str | None = None

    @property
    def is_concluded(self) -> bool:
        return self.status.strip().lower() in {'concluído', 'concluido', 'concluded'}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'LegalCaseRecord':
        case_type = _optional_text(payload.get('caseType'))
        if not case_type:
            raise InvalidRecordError('Legal case requires caseType')
        alimony = None
        if payload.get('alimonyAmount') not in (None, ''):
            try:
                alimony = parse_amount(payload.get('alimonyAmount'))
            except InvalidRecordError:
                alimony = None
        return cls(
            id=_optional_text(payload.get('id')) or case_type,
            case_type=case_type,
            status=_optional_text(payload.get('status')) or 'em_andamento',
            lawyer_id=_optional_text(payload.get('lawyerId')),
            case_number=_optional_text(payload.get('caseNumber')),
            court_name=_optional_text(payload.get('courtName')),
            judge_name=_optional_text(payload.get('judgeName')),
            start_date=_optional_date(payload.get('startDate')),
            expected_end_date=_optional_date(payload.get('expectedEndDate')),
            children_involved=_text_tuple(payload.get('childrenInvolved')),
            custody_type=_optional_text(payload.get('custodyType')),
            alimony_amount=alimony,
            visitation_schedule=_optional_text(payload.get('visitationSchedule')),
            notes=_optional_text(payload.get('notes')),
        )


# ---------------------------------------------------------------------------
# Expenses and receipts
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ReceiptRecord:
    id: str
    file_path: str
    file_name: str | None = None
    file_type: str | None = None
    uploaded_at: datetime | None = None

    @property
    def display_name(self) -> str:
        return self.file_name or 'documento'

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'ReceiptRecord':
        receipt_id = _optional_text(payload.get('id'))
        file_path = _optional_text(payload.get('filePath')) or ''
        if not receipt_id:
            raise InvalidRecordError('Receipt requires id')
        return cls(
            id=receipt_id,
            file_path=file_path,
            file_name=_optional_text(payload.get('originalFileName')) or _optional_text(payload.get('fileName')),
            file_type=_optional_text(payload.get('fileType')),
            uploaded_at=parse_timestamp(payload.get('uploadedAt')),
        )


@dataclass(frozen=True)
class ExpenseRecord:
    id: str
    description: str
    amount: Decimal
    expense_date: date
    category: str
    status: ExpenseStatus
    child: ChildRecord
    receipts: Tuple[ReceiptRecord, ...] = ()

    def __post_init__(self):
        if not isinstance(self.amount, Decimal) or not self.amount.is_finite() or self.amount <= 0:
            raise InvalidRecordError(f'Expense {self.id} amount must be a positive decimal')
        if isinstance(self.expense_date, datetime) or not isinstance(self.expense_date, date):
            raise InvalidRecordError(f'Expense {self.id} date must be a calendar date')

    @property
    def child_id(self) -> str:
        return self.child.id

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'ExpenseRecord':
        expense_id = _optional_text(payload.get('id'))
        if not expense_id:
            raise InvalidRecordError('Expense requires id')
        child_payload = payload.get('child')
        if isinstance(child_payload, Mapping):
            child = ChildRecord.from_payload(child_payload)
        else:
            child_id = _optional_text(payload.get('childId'))
            if not child_id:
                raise InvalidRecordError(f'Expense {expense_id} has no child reference')
            child = ChildRecord(id=child_id, first_name=_optional_text(payload.get('childName')) or child_id)
        receipts = tuple(ReceiptRecord.from_payload(item) for item in payload.get('receipts') or ())
        return cls(
            id=expense_id,
            description=_optional_text(payload.get('description')) or '',
            amount=parse_amount(payload.get('amount')),
            expense_date=parse_calendar_date(payload.get('expenseDate')),
            category=_optional_text(payload.get('category')) or 'outros',
            status=normalize_status(payload.get('status') or ExpenseStatus.PENDING),
            child=child,
            receipts=receipts,
        )


# ---------------------------------------------------------------------------
# Filter and context
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ReportPeriod:
    start: date
    end: date

    def contains(self, day: date) -> bool:
        # Field-wise comparison of plain dates; no timestamps involved.
        return (self.start.year, self.start.month, self.start.day) <= (day.year, day.month, day.day) <= (
            self.end.year, self.end.month, self.end.day)


def _split_values(raw: Any) -> Tuple[str, ...]:
    if raw in (None, ''):
        return ()
    if isinstance(raw, str):
        return tuple(item.strip() for item in raw.split(',') if item.strip())
    return tuple(str(item).strip() for item in raw if str(item).strip())


@dataclass(frozen=True)
class ReportFilter:
    period: ReportPeriod
    categories: frozenset = field(default_factory=frozenset)
    child_ids: frozenset = field(default_factory=frozenset)
    statuses: frozenset = field(default_factory=frozenset)

    def __post_init__(self):
        if not isinstance(self.period.start, date) or not isinstance(self.period.end, date):
            raise InvalidFilterError('Date range requires start and end dates')
        if self.period.start > self.period.end:
            raise InvalidFilterError(
                f'Date range start {self.period.start.isoformat()} is after end {self.period.end.isoformat()}'
            )

    def matches(self, expense: ExpenseRecord) -> bool:
        return (
            self.period.contains(expense.expense_date)
            and (not self.categories or expense.category in self.categories)
            and (not self.child_ids or expense.child_id in self.child_ids)
            and (not self.statuses or expense.status in self.statuses)
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, today: date | None = None) -> 'ReportFilter':
        '''Build a filter from query-string or JSON values.

        Missing dates default to the last 30 days ending ``today``. Malformed
        dates and unknown statuses raise ``InvalidFilterError``.
        '''
        today = today or date.today()
        try:
            end = parse_calendar_date(payload['end']) if payload.get('end') else today
            start = (
                parse_calendar_date(payload['start']) if payload.get('start')
                else end - timedelta(days=DEFAULT_PERIOD_DAYS)
            )
            statuses = frozenset(normalize_status(item) for item in _split_values(payload.get('statuses')))
        except InvalidRecordError as exc:
            raise InvalidFilterError(str(exc)) from exc
        return cls(
            period=ReportPeriod(start=start, end=end),
            categories=frozenset(_split_values(payload.get('categories'))),
            child_ids=frozenset(_split_values(payload.get('children') or payload.get('childIds'))),
            statuses=statuses,
        )


@dataclass(frozen=True)
class ReportContext:
    '''Read-only reference data printed in the front matter.'''

    children: Tuple[ChildRecord, ...] = ()
    parents: Tuple[ParentRecord, ...] = ()
    lawyers: Tuple[LawyerRecord, ...] = ()
    legal_cases: Tuple[LegalCaseRecord, ...] = ()

    def child_by_id(self, child_id: str) -> ChildRecord | None:
        for child in self.children:
            if child.id == child_id:
                return child
        return None

    def primary_lawyer(self) -> LawyerRecord | None:
        return self.lawyers[0] if self.lawyers else None

    def primary_case(self) -> LegalCaseRecord | None:
        active = [case for case in self.legal_cases if not case.is_concluded]
        if active:
            return active[0]
        return self.legal_cases[0] if self.legal_cases else None


def parse_many(factory, payloads: Iterable[Mapping[str, Any]]) -> Tuple[list, int]:
    '''Parse ``payloads`` with ``factory``, returning (records, skipped_count).'''
    records = []
    skipped = 0
    for payload in payloads or ():
        try:
            records.append(factory(payload))
        except InvalidRecordError:
            skipped += 1
    return records, skipped
