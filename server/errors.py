'''Error taxonomy for report generation.

Only these exceptions escape ``generate_report``. Per-chart and per-receipt
failures never surface here; the composer turns them into placeholders.
'''

from __future__ import annotations


class ReportGenerationError(RuntimeError):
    '''Fatal failure of a report run. No partial document is produced.'''

    code = 'report_failed'

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class InvalidFilterError(ReportGenerationError, ValueError):
    code = 'invalid_filter'


class DataSourceError(ReportGenerationError):
    code = 'data_source_unavailable'


class DocumentInitError(ReportGenerationError):
    code = 'document_init_failed'


class ReportCancelledError(ReportGenerationError):
    code = 'cancelled'


class InvalidRecordError(ValueError):
    '''A single record could not be parsed; callers skip it and count it.'''
