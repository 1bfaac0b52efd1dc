'''Storage-layer collaborators for the report pipeline.

A report source hands back plain payload mappings with the camelCase keys used
throughout ``records.py``; parsing and filtering stay in the pipeline. Every
fetch is scoped to one user id. Transport failures surface as
``DataSourceError``.
'''

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol

from errors import DataSourceError
from records import ReportFilter

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]


class ReportSource(Protocol):
    def fetch_filtered_expenses(self, user_id: str, report_filter: ReportFilter) -> List[Payload]:  # pragma: no cover
        ...

    def fetch_children(self, user_id: str) -> List[Payload]:  # pragma: no cover
        ...

    def fetch_parents(self, user_id: str) -> List[Payload]:  # pragma: no cover
        ...

    def fetch_lawyers(self, user_id: str) -> List[Payload]:  # pragma: no cover
        ...

    def fetch_legal_cases(self, user_id: str) -> List[Payload]:  # pragma: no cover
        ...


# ---------------------------------------------------------------------------
# In-memory source (lite host, tests)
# ---------------------------------------------------------------------------
class InMemoryReportSource:
    '''Serves records posted by the caller.

    Records carrying a ``userId`` are only visible to that user; records
    without one belong to whoever posted them.
    '''

    def __init__(self, expenses=None, children=None, parents=None, lawyers=None, legal_cases=None):
        self.expenses = list(expenses or [])
        self.children = list(children or [])
        self.parents = list(parents or [])
        self.lawyers = list(lawyers or [])
        self.legal_cases = list(legal_cases or [])

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'InMemoryReportSource':
        def items(key: str) -> list:
            value = payload.get(key) or []
            if not isinstance(value, list):
                raise DataSourceError(f'"{key}" must be a list', code='invalid_payload')
            return value

        return cls(
            expenses=items('expenses'),
            children=items('children'),
            parents=items('parents'),
            lawyers=items('lawyers'),
            legal_cases=items('legalCases'),
        )

    @staticmethod
    def _scoped(items: List[Any], user_id: str) -> List[Any]:
        scoped = []
        for item in items:
            owner = item.get('userId') if isinstance(item, Mapping) else None
            if owner in (None, '', user_id):
                scoped.append(item)
        return scoped

    def fetch_filtered_expenses(self, user_id: str, report_filter: ReportFilter) -> List[Payload]:
        # The aggregator applies the filter; malformed rows must reach it to be counted.
        return self._scoped(self.expenses, user_id)

    def fetch_children(self, user_id: str) -> List[Payload]:
        return self._scoped(self.children, user_id)

    def fetch_parents(self, user_id: str) -> List[Payload]:
        return self._scoped(self.parents, user_id)

    def fetch_lawyers(self, user_id: str) -> List[Payload]:
        return self._scoped(self.lawyers, user_id)

    def fetch_legal_cases(self, user_id: str) -> List[Payload]:
        return self._scoped(self.legal_cases, user_id)


# ---------------------------------------------------------------------------
# Airtable source
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class AirtableTables:
    expenses: str = 'Expenses'
    children: str = 'Children'
    parents: str = 'Parents'
    lawyers: str = 'Lawyers'
    legal_cases: str = 'Legal Cases'


def _quote(value: Any) -> str:
    return "'" + str(value).replace('\\', '\\\\').replace("'", "\\'") + "'"


def build_expense_formula(user_id: str, report_filter: ReportFilter) -> str:
    '''Airtable formula narrowing expenses to the user, period, categories and statuses.'''
    start = report_filter.period.start.isoformat()
    end = report_filter.period.end.isoformat()
    clauses = [
        f'{{User Id}} = {_quote(user_id)}',
        f"NOT(IS_BEFORE({{Expense Date}}, DATETIME_PARSE({_quote(start)}, 'YYYY-MM-DD')))",
        f"NOT(IS_AFTER({{Expense Date}}, DATETIME_PARSE({_quote(end)}, 'YYYY-MM-DD')))",
    ]
    if report_filter.categories:
        options = ', '.join(f'{{Category}} = {_quote(c)}' for c in sorted(report_filter.categories))
        clauses.append(f'OR({options})')
    if report_filter.statuses:
        options = ', '.join(f'{{Status}} = {_quote(s.value)}' for s in sorted(report_filter.statuses))
        clauses.append(f'OR({options})')
    return 'AND(' + ', '.join(clauses) + ')'


def _first_link(value: Any) -> str | None:
    if isinstance(value, list) and value:
        return str(value[0])
    if isinstance(value, str) and value:
        return value
    return None


def child_payload(record: Mapping[str, Any]) -> Payload:
    fields = record.get('fields', {})
    return {
        'id': record.get('id'),
        'firstName': fields.get('First Name'),
        'lastName': fields.get('Last Name'),
        'dateOfBirth': fields.get('Date of Birth'),
    }


def parent_payload(record: Mapping[str, Any]) -> Payload:
    fields = record.get('fields', {})
    return {
        'id': record.get('id'),
        'fullName': fields.get('Full Name'),
        'relationship': fields.get('Relationship'),
        'email': fields.get('Email'),
        'phone': fields.get('Phone'),
        'childIds': fields.get('Children') or [],
    }


def lawyer_payload(record: Mapping[str, Any]) -> Payload:
    fields = record.get('fields', {})
    return {
        'id': record.get('id'),
        'fullName': fields.get('Full Name'),
        'oabNumber': fields.get('OAB Number'),
        'oabState': fields.get('OAB State'),
        'lawFirm': fields.get('Law Firm'),
        'phone': fields.get('Phone'),
        'email': fields.get('Email'),
        'address': fields.get('Address'),
        'specializations': fields.get('Specializations') or [],
        'notes': fields.get('Notes'),
    }


def legal_case_payload(record: Mapping[str, Any]) -> Payload:
    fields = record.get('fields', {})
    return {
        'id': record.get('id'),
        'caseType': fields.get('Case Type'),
        'status': fields.get('Status'),
        'lawyerId': _first_link(fields.get('Lawyer')),
        'caseNumber': fields.get('Case Number'),
        'courtName': fields.get('Court'),
        'judgeName': fields.get('Judge'),
        'startDate': fields.get('Start Date'),
        'expectedEndDate': fields.get('Expected End Date'),
        'childrenInvolved': fields.get('Children Involved') or [],
        'custodyType': fields.get('Custody Type'),
        'alimonyAmount': fields.get('Alimony Amount'),
        'visitationSchedule': fields.get('Visitation Schedule'),
        'notes': fields.get('Notes'),
    }


def expense_payload(record: Mapping[str, Any], children: Mapping[str, Payload]) -> Payload:
    fields = record.get('fields', {})
    child_id = _first_link(fields.get('Child'))
    receipts = []
    for attachment in fields.get('Receipts') or []:
        receipts.append({
            'id': attachment.get('id'),
            'filePath': attachment.get('url'),
            'fileName': attachment.get('filename'),
            'fileType': attachment.get('type'),
            'uploadedAt': fields.get('Receipt Uploaded At') or record.get('createdTime'),
        })
    payload: Payload = {
        'id': record.get('id'),
        'description': fields.get('Description'),
        'amount': fields.get('Amount'),
        'expenseDate': fields.get('Expense Date'),
        'category': fields.get('Category'),
        'status': fields.get('Status'),
        'receipts': receipts,
    }
    if child_id and (children.get(child_id) or {}).get('firstName'):
        payload['child'] = children[child_id]
    else:
        payload['childId'] = child_id
        payload['childName'] = fields.get('Child Name')
    return payload


class AirtableReportSource:
    '''Reads the user's records from Airtable with pyairtable.'''

    def __init__(self, api_key: str, base_id: str, tables: AirtableTables | None = None, api: Any = None):
        if not api_key and api is None:
            raise DataSourceError('Missing Airtable env var: AIRTABLE_API_KEY')
        if not base_id:
            raise DataSourceError('Missing Airtable base ID. Set AIRTABLE_BASE_ID or AIRTABLE_URL.')
        if api is None:
            from pyairtable import Api

            api = Api(api_key)
        self.api = api
        self.base_id = base_id
        self.tables = tables or AirtableTables()

    def _all(self, table_name: str, formula: str) -> List[Mapping[str, Any]]:
        try:
            return self.api.table(self.base_id, table_name).all(formula=formula)
        except Exception as exc:
            raise DataSourceError(f'Airtable request to {table_name!r} failed: {exc}') from exc

    def _user_records(self, table_name: str, user_id: str) -> List[Mapping[str, Any]]:
        return self._all(table_name, f'{{User Id}} = {_quote(user_id)}')

    def fetch_filtered_expenses(self, user_id: str, report_filter: ReportFilter) -> List[Payload]:
        records = self._all(self.tables.expenses, build_expense_formula(user_id, report_filter))
        children = {payload['id']: payload for payload in self.fetch_children(user_id)}
        logger.info('Fetched %d expense record(s) from Airtable for %s', len(records), user_id)
        return [expense_payload(record, children) for record in records]

    def fetch_children(self, user_id: str) -> List[Payload]:
        return [child_payload(r) for r in self._user_records(self.tables.children, user_id)]

    def fetch_parents(self, user_id: str) -> List[Payload]:
        return [parent_payload(r) for r in self._user_records(self.tables.parents, user_id)]

    def fetch_lawyers(self, user_id: str) -> List[Payload]:
        return [lawyer_payload(r) for r in self._user_records(self.tables.lawyers, user_id)]

    def fetch_legal_cases(self, user_id: str) -> List[Payload]:
        return [legal_case_payload(r) for r in self._user_records(self.tables.legal_cases, user_id)]
