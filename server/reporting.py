'''Report generation for the expense accountability report.

``generate_report`` is the single entry point both Flask hosts call. It runs
the pipeline in fixed phases:

    fetch -> aggregate -> charts (+ receipts fetched concurrently)
          -> compose -> resolve TOC and page numbers -> PDF bytes

The run is cancellable through a ``threading.Event`` and bounded by
``ReportOptions.timeout_seconds``; either way nothing partial is returned.
Progress is reported through an optional ``on_progress(percent, message)``
callback.
'''

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from threading import Event
from typing import Any, Callable, Dict, List, Tuple

from aggregation import AggregatedReport, aggregate
from attachments import AttachmentLoader, AttachmentPrefetch
from charts import ChartBackend, ChartStyle, render_charts
from composer import DocumentComposer
from errors import DataSourceError, ReportCancelledError
from formatting import formatBRL, formatDate, formatPercent, percent  # noqa: F401  (re-exported helpers)
from object_storage import ObjectStore
from pagination import resolve
from pdf_renderer import render_pdf
from records import (
    ChildRecord,
    LawyerRecord,
    LegalCaseRecord,
    ParentRecord,
    ReportContext,
    ReportFilter,
    parse_many,
)
from report_source import ReportSource

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


@dataclass(frozen=True)
class ReportOptions:
    timeout_seconds: float | None = 120.0
    max_workers: int = 4
    receipt_max_dimension: int = 1600
    jpeg_quality: int = 85
    chart_dpi: int = 200

    @property
    def chart_style(self) -> ChartStyle:
        return ChartStyle(dpi=self.chart_dpi)


@dataclass
class ReportResult:
    pdf_bytes: bytes
    summary: Dict[str, Any]
    skipped_count: int = 0
    warnings: List[str] = field(default_factory=list)
    page_count: int = 0
    filename: str = 'relatorio.pdf'


class _Run:
    '''Progress and cancellation bookkeeping for one invocation.'''

    def __init__(self, on_progress: ProgressCallback | None, cancel_event: Event | None, deadline: float | None):
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self.deadline = deadline

    def check(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ReportCancelledError('Report generation was cancelled')
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise ReportCancelledError('Report generation timed out', code='timeout')

    def progress(self, pct: int, message: str):
        if self.on_progress is not None:
            self.on_progress(pct, message)

    def step(self, pct: int, message: str):
        self.check()
        logger.debug('Report progress %d%%: %s', pct, message)
        self.progress(pct, message)


def report_filename(report_filter: ReportFilter, generated_at: datetime) -> str:
    period = report_filter.period
    return (
        f'relatorio-despesas_{period.start.isoformat()}_{period.end.isoformat()}_'
        f'{generated_at.strftime("%Y%m%d-%H%M%S")}.pdf'
    )


def coerce_filter(report_filter: ReportFilter | Dict[str, Any] | None, today=None) -> ReportFilter:
    if isinstance(report_filter, ReportFilter):
        return report_filter
    return ReportFilter.from_payload(report_filter or {}, today=today)


def fetch_expenses(source: ReportSource, user_id: str, report_filter: ReportFilter) -> List[Any]:
    try:
        return list(source.fetch_filtered_expenses(user_id, report_filter) or [])
    except DataSourceError:
        raise
    except Exception as exc:
        raise DataSourceError(f'Could not fetch expenses: {exc}') from exc


def load_context(source: ReportSource, user_id: str) -> Tuple[ReportContext, List[str]]:
    '''Reference data for the front matter. Failures here degrade to empty sections.'''
    warnings: List[str] = []
    parsed: Dict[str, list] = {}
    fetchers = (
        ('children', source.fetch_children, ChildRecord.from_payload),
        ('parents', source.fetch_parents, ParentRecord.from_payload),
        ('lawyers', source.fetch_lawyers, LawyerRecord.from_payload),
        ('legal_cases', source.fetch_legal_cases, LegalCaseRecord.from_payload),
    )
    for name, fetch, factory in fetchers:
        try:
            payloads = fetch(user_id) or []
        except Exception as exc:
            logger.warning('Could not fetch %s for %s: %s', name, user_id, exc)
            warnings.append(f'{name}: unavailable')
            payloads = []
        records, skipped = parse_many(factory, payloads)
        if skipped:
            logger.warning('Skipped %d malformed %s record(s)', skipped, name)
            warnings.append(f'{name}: {skipped} malformed record(s) skipped')
        parsed[name] = records
    context = ReportContext(
        children=tuple(parsed['children']),
        parents=tuple(parsed['parents']),
        lawyers=tuple(parsed['lawyers']),
        legal_cases=tuple(parsed['legal_cases']),
    )
    return context, warnings


def report_preview(report: AggregatedReport) -> Dict[str, Any]:
    '''JSON-friendly view of the aggregated numbers, without rendering.'''

    def shares(items):
        return [
            {'name': share.name, 'amount': str(share.amount), 'percentage': round(share.percentage, 2)}
            for share in items
        ]

    preview = report.summary()
    preview.update({
        'totalAmountFormatted': formatBRL(report.total_amount),
        'byCategory': shares(report.category_breakdown()),
        'byChild': shares(report.child_breakdown()),
        'byStatus': shares(report.status_breakdown()),
        'documentationRate': round(report.documentation_rate, 2),
        'documentedExpenseCount': report.documented_expense_count,
        'compliance': report.compliance.value,
        'skippedCount': report.skipped_count,
    })
    return preview


def build_preview(user_id: str, report_filter: ReportFilter | Dict[str, Any] | None,
                  source: ReportSource) -> Dict[str, Any]:
    report_filter = coerce_filter(report_filter)
    report = aggregate(fetch_expenses(source, user_id, report_filter), report_filter)
    return report_preview(report)


def generate_report(
    user_id: str,
    report_filter: ReportFilter | Dict[str, Any] | None,
    source: ReportSource,
    object_store: ObjectStore,
    *,
    options: ReportOptions | None = None,
    chart_backend: ChartBackend | None = None,
    on_progress: ProgressCallback | None = None,
    cancel_event: Event | None = None,
    generated_at: datetime | None = None,
) -> ReportResult:
    '''Produce the finished PDF and its companion summary for ``user_id``.

    Raises ``InvalidFilterError``, ``DataSourceError``, ``DocumentInitError``
    or ``ReportCancelledError``; single charts or receipts that fail only
    degrade to placeholders and are listed in ``ReportResult.warnings``.
    '''
    options = options or ReportOptions()
    generated_at = generated_at or datetime.now().replace(microsecond=0)
    report_filter = coerce_filter(report_filter, today=generated_at.date())
    deadline = time.monotonic() + options.timeout_seconds if options.timeout_seconds else None
    run = _Run(on_progress, cancel_event, deadline)
    started = time.monotonic()

    run.step(5, 'Buscando despesas')
    raw_expenses = fetch_expenses(source, user_id, report_filter)
    context, warnings = load_context(source, user_id)

    run.step(15, 'Agregando dados')
    report = aggregate(raw_expenses, report_filter)
    if report.skipped_count:
        warnings.append(f'expenses: {report.skipped_count} malformed record(s) skipped')

    loader = AttachmentLoader(object_store, options.receipt_max_dimension, options.jpeg_quality)
    with AttachmentPrefetch(loader, report.filtered_expenses, max_workers=options.max_workers, deadline=deadline,
                            cancel_event=cancel_event) as prefetch:
        # Charts render on this thread while the receipt fetches are in flight.
        run.step(25, 'Gerando gráficos')
        charts = render_charts(report, options.chart_style, chart_backend)
        run.step(45, 'Carregando comprovantes')
        attachments = prefetch.collect(
            on_loaded=lambda done, total: run.progress(45 + (20 * done) // max(total, 1),
                                                       f'Carregando comprovantes ({done}/{total})')
        )

    run.step(65, 'Montando documento')
    composer = DocumentComposer(
        report,
        context,
        charts=charts,
        attachments=attachments,
        generated_at=generated_at,
        on_section=lambda _section: run.check(),
    )
    composed = composer.compose()
    warnings.extend(composer.warnings)

    run.step(85, 'Gerando sumário e numeração de páginas')
    document = resolve(composed, composed.section_page_map)

    run.step(92, 'Gerando PDF')
    pdf_bytes = render_pdf(document)
    run.check()
    run.progress(100, 'Relatório concluído')
    logger.info(
        'Report for %s: %d expense(s), %d page(s), %d warning(s) in %.2fs',
        user_id, report.expense_count, document.page_count, len(warnings), time.monotonic() - started,
    )
    return ReportResult(
        pdf_bytes=pdf_bytes,
        summary=report.summary(),
        skipped_count=report.skipped_count,
        warnings=warnings,
        page_count=document.page_count,
        filename=report_filename(report_filter, generated_at),
    )
