import sys
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from aggregation import ComplianceRating, aggregate, cumulative_series, monthly_totals, moving_average
from errors import InvalidFilterError, InvalidRecordError
from records import ExpenseRecord, ExpenseStatus, ReportFilter, ReportPeriod, parse_calendar_date


def expense(expense_id, day, amount, category, status, child_id='c1', receipts=0):
    first_name = {'c1': 'Ana', 'c2': 'Bruno'}.get(child_id, child_id)
    return {
        'id': expense_id,
        'description': f'Despesa {expense_id}',
        'amount': amount,
        'expenseDate': day,
        'category': category,
        'status': status,
        'child': {'id': child_id, 'firstName': first_name, 'lastName': 'Silva'},
        'receipts': [
            {'id': f'{expense_id}-r{n}', 'filePath': f'receipts/{expense_id}-{n}.jpg'} for n in range(receipts)
        ],
    }


SCENARIO = [
    expense('e1', '2024-01-05', '100.00', 'educação', 'pago', receipts=1),
    expense('e2', '2024-01-20', '50.00', 'saúde', 'pendente'),
    expense('e3', '2024-02-10', '200.00', 'educação', 'pago', receipts=1),
]


def period_filter(start=date(2024, 1, 1), end=date(2024, 2, 28), **kwargs):
    return ReportFilter(period=ReportPeriod(start, end), **kwargs)


class AggregateScenarioTest(unittest.TestCase):
    def test_scenario_totals(self):
        report = aggregate(SCENARIO, period_filter())
        self.assertEqual(report.total_amount, Decimal('350.00'))
        self.assertEqual(report.expense_count, 3)
        self.assertEqual(dict(report.category_totals), {'educação': Decimal('300.00'), 'saúde': Decimal('50.00')})
        shares = report.category_breakdown()
        self.assertEqual([s.name for s in shares], ['educação', 'saúde'])
        self.assertEqual([round(s.percentage, 2) for s in shares], [85.71, 14.29])

    def test_percentages_sum_to_hundred(self):
        report = aggregate(SCENARIO + [expense('e4', '2024-02-11', '33.33', 'lazer', 'pago')], period_filter())
        total = sum(s.percentage for s in report.category_breakdown())
        self.assertAlmostEqual(total, 100.0, delta=0.01)

    def test_empty_set(self):
        report = aggregate(SCENARIO, period_filter(date(2023, 1, 1), date(2023, 12, 31)))
        self.assertEqual(report.total_amount, Decimal('0'))
        self.assertEqual(report.expense_count, 0)
        self.assertEqual(report.category_breakdown(), [])
        self.assertEqual(report.status_breakdown(), [])
        self.assertEqual(report.documentation_rate, 0.0)

    def test_totals_are_exact_decimals(self):
        report = aggregate(
            [expense('a', '2024-01-02', 0.1, 'lazer', 'pago'), expense('b', '2024-01-03', '0.2', 'lazer', 'pago')],
            period_filter(),
        )
        self.assertEqual(report.total_amount, Decimal('0.3'))

    def test_status_and_child_breakdowns(self):
        data = SCENARIO + [expense('e4', '2024-01-08', '50.00', 'lazer', 'reembolsado', child_id='c2')]
        report = aggregate(data, period_filter())
        self.assertEqual(report.status_totals[ExpenseStatus.PAID], Decimal('300.00'))
        self.assertEqual(report.status_totals[ExpenseStatus.REIMBURSED], Decimal('50.00'))
        self.assertEqual([s.name for s in report.status_breakdown()], ['Pago', 'Pendente', 'Reembolsado'])
        self.assertEqual(dict(report.child_totals), {'Ana Silva': Decimal('350.00'), 'Bruno Silva': Decimal('50.00')})

    def test_documentation_metrics(self):
        report = aggregate(SCENARIO, period_filter())
        self.assertEqual(report.receipt_count, 2)
        self.assertEqual(report.documented_expense_count, 2)
        self.assertAlmostEqual(report.documentation_rate, 66.666, places=2)
        self.assertIs(report.compliance, ComplianceRating.INSUFFICIENT)

        documented = [expense('x', '2024-01-05', '10', 'lazer', 'pago', receipts=2)]
        self.assertIs(aggregate(documented, period_filter()).compliance, ComplianceRating.EXCELLENT)

    def test_summary(self):
        summary = aggregate(SCENARIO, period_filter()).summary()
        self.assertEqual(summary, {
            'totalAmount': '350.00',
            'expenseCount': 3,
            'receiptCount': 2,
            'period': {'start': '2024-01-01', 'end': '2024-02-28'},
        })


class FilterTest(unittest.TestCase):
    def test_filter_closure(self):
        data = SCENARIO + [
            expense('e4', '2024-01-08', '80.00', 'educação', 'pendente', child_id='c2'),
            expense('e5', '2024-03-01', '70.00', 'educação', 'pago'),
        ]
        report_filter = period_filter(
            categories=frozenset({'educação'}),
            child_ids=frozenset({'c1'}),
            statuses=frozenset({ExpenseStatus.PAID}),
        )
        report = aggregate(data, report_filter)
        self.assertEqual([e.id for e in report.filtered_expenses], ['e1', 'e3'])
        for item in report.filtered_expenses:
            self.assertTrue(report_filter.matches(item))
            self.assertTrue(date(2024, 1, 1) <= item.expense_date <= date(2024, 2, 28))

    def test_boundaries_are_inclusive(self):
        data = [
            expense('first', '2024-01-01', '1', 'lazer', 'pago'),
            expense('last', '2024-02-28', '1', 'lazer', 'pago'),
            expense('after', '2024-02-29', '1', 'lazer', 'pago'),
            expense('before', '2023-12-31', '1', 'lazer', 'pago'),
        ]
        report = aggregate(data, period_filter())
        self.assertEqual({e.id for e in report.filtered_expenses}, {'first', 'last'})

    def test_timestamps_keep_their_calendar_date(self):
        data = [expense('late', '2024-02-28T23:30:00-03:00', '10', 'lazer', 'pago')]
        report = aggregate(data, period_filter())
        self.assertEqual(report.filtered_expenses[0].expense_date, date(2024, 2, 28))

    def test_calendar_date_rejects_trailing_text(self):
        self.assertEqual(parse_calendar_date('2024-01-05T10:00:00Z'), date(2024, 1, 5))
        self.assertEqual(parse_calendar_date('2024-01-05 10:00'), date(2024, 1, 5))
        self.assertEqual(parse_calendar_date(' 2024-01-05 '), date(2024, 1, 5))
        for raw in ('2024-01-05xyz', '2024-01-0', '2024-1-05', '20240105', '2024-02-30', ''):
            with self.assertRaises(InvalidRecordError, msg=raw):
                parse_calendar_date(raw)

    def test_malformed_records_are_skipped_and_counted(self):
        data = SCENARIO + [
            expense('bad-amount', '2024-01-10', 'abc', 'lazer', 'pago'),
            expense('bad-status', '2024-01-10', '10', 'lazer', 'talvez'),
            expense('bad-date', 'ontem', '10', 'lazer', 'pago'),
            expense('junk-date', '2024-01-10xyz', '10', 'lazer', 'pago'),
            expense('negative', '2024-01-10', '-5', 'lazer', 'pago'),
        ]
        report = aggregate(data, period_filter())
        self.assertEqual(report.skipped_count, 5)
        self.assertEqual(report.expense_count, 3)

    def test_accepts_typed_records(self):
        records = [ExpenseRecord.from_payload(item) for item in SCENARIO]
        self.assertEqual(aggregate(records, period_filter()).total_amount, Decimal('350.00'))

    def test_start_after_end_is_rejected(self):
        with self.assertRaises(InvalidFilterError):
            period_filter(date(2024, 3, 1), date(2024, 1, 1))

    def test_filter_from_payload(self):
        report_filter = ReportFilter.from_payload(
            {'start': '2024-01-01', 'end': '2024-01-31', 'categories': 'educação,saúde', 'statuses': ['paid']}
        )
        self.assertEqual(report_filter.categories, frozenset({'educação', 'saúde'}))
        self.assertEqual(report_filter.statuses, frozenset({ExpenseStatus.PAID}))

    def test_filter_defaults_to_last_thirty_days(self):
        report_filter = ReportFilter.from_payload({}, today=date(2024, 3, 31))
        self.assertEqual(report_filter.period, ReportPeriod(date(2024, 3, 1), date(2024, 3, 31)))

    def test_filter_from_payload_rejects_bad_values(self):
        with self.assertRaises(InvalidFilterError):
            ReportFilter.from_payload({'start': '2024-13-01', 'end': '2024-12-31'})
        with self.assertRaises(InvalidFilterError):
            ReportFilter.from_payload({'start': '2024-01-05xyz', 'end': '2024-01-31'})
        with self.assertRaises(InvalidFilterError):
            ReportFilter.from_payload({'start': '2024-01-01', 'end': '2024-01-31', 'statuses': 'talvez'})


class SeriesTest(unittest.TestCase):
    def test_moving_average(self):
        values = [Decimal('10'), Decimal('20'), Decimal('60'), Decimal('40')]
        averages = moving_average(values)
        self.assertEqual(averages[0], Decimal('10'))
        self.assertEqual(averages[1], Decimal('15'))
        self.assertEqual(averages[2], Decimal('30'))
        self.assertEqual(averages[3], Decimal('40'))
        self.assertEqual(moving_average([]), [])
        with self.assertRaises(ValueError):
            moving_average(values, window=0)

    def test_monthly_totals_are_chronological(self):
        records = [ExpenseRecord.from_payload(item) for item in reversed(SCENARIO)]
        self.assertEqual(monthly_totals(records), [
            (date(2024, 1, 1), Decimal('150.00')),
            (date(2024, 2, 1), Decimal('200.00')),
        ])

    def test_cumulative_series(self):
        records = [ExpenseRecord.from_payload(item) for item in SCENARIO]
        self.assertEqual([total for _, total in cumulative_series(records)],
                         [Decimal('100.00'), Decimal('150.00'), Decimal('350.00')])

    def test_date_descending_order_is_stable(self):
        data = [
            expense('a', '2024-01-10', '1', 'lazer', 'pago'),
            expense('b', '2024-01-12', '1', 'lazer', 'pago'),
            expense('c', '2024-01-10', '1', 'lazer', 'pago'),
        ]
        report = aggregate(data, period_filter())
        self.assertEqual([e.id for e in report.expenses_by_date_desc()], ['b', 'a', 'c'])


if __name__ == '__main__':  # pragma: no cover
    unittest.main()
