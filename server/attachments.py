'''Receipt attachment loading.

``AttachmentLoader.load`` turns a logical storage path into one of four
outcomes and never raises: a re-encoded image, opaque bytes (PDF and other
non-raster files), a missing object, or a failure with a reason. The composer
decides how each outcome is drawn.

``AttachmentPrefetch`` loads every receipt of the filtered set on a thread
pool before composition starts, so the composer itself never waits on I/O.
'''

from __future__ import annotations

import logging
import mimetypes
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from io import BytesIO
from threading import Event
from typing import Callable, Dict, Iterable, Tuple, Union

from errors import ReportCancelledError
from object_storage import ObjectNotFoundError, ObjectStore
from records import GENERIC_CONTENT_TYPES, ExpenseRecord, ReceiptRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSION = 1600
DEFAULT_JPEG_QUALITY = 85
POLL_INTERVAL_SECONDS = 0.1
NON_RASTER_IMAGE_TYPES = {'image/svg+xml'}


@dataclass(frozen=True)
class ImageAttachment:
    data: bytes
    content_type: str
    width: int
    height: int


@dataclass(frozen=True)
class OpaqueAttachment:
    data: bytes
    content_type: str


@dataclass(frozen=True)
class MissingAttachment:
    path: str = ''


@dataclass(frozen=True)
class FailedAttachment:
    reason: str


AttachmentResult = Union[ImageAttachment, OpaqueAttachment, MissingAttachment, FailedAttachment]
AttachmentKey = Tuple[str, str]


def _bare_type(value: str | None) -> str:
    return (value or '').split(';', 1)[0].strip().lower()


def resolve_content_type(transport_type: str | None, declared_type: str | None, path: str = '') -> str:
    '''Transport type wins unless it is absent or generic; then the declared one.'''
    transport = _bare_type(transport_type)
    if transport not in GENERIC_CONTENT_TYPES:
        return transport
    declared = _bare_type(declared_type)
    if declared not in GENERIC_CONTENT_TYPES:
        return declared
    guessed, _ = mimetypes.guess_type(path.split('?', 1)[0]) if path else (None, None)
    return guessed or 'application/octet-stream'


def is_raster_image(content_type: str) -> bool:
    return content_type.startswith('image/') and content_type not in NON_RASTER_IMAGE_TYPES


class AttachmentLoader:
    def __init__(self, store: ObjectStore, max_dimension: int = DEFAULT_MAX_DIMENSION,
                 quality: int = DEFAULT_JPEG_QUALITY):
        if max_dimension < 1:
            raise ValueError('max_dimension must be positive')
        self.store = store
        self.max_dimension = max_dimension
        self.quality = quality

    def load(self, path: str | None, declared_type: str | None = None) -> AttachmentResult:
        if not path or not path.strip():
            return MissingAttachment('')
        try:
            stored = self.store.load_object(path)
        except ObjectNotFoundError:
            logger.info('Receipt object not found: %s', path)
            return MissingAttachment(path)
        except Exception as exc:
            logger.warning('Could not load receipt %s: %s', path, exc)
            return FailedAttachment(f'{type(exc).__name__}: {exc}')

        if not stored.data:
            return FailedAttachment('empty object')
        content_type = resolve_content_type(stored.content_type, declared_type, path)
        if not is_raster_image(content_type):
            return OpaqueAttachment(data=stored.data, content_type=content_type)
        try:
            return self._reencode(stored.data)
        except Exception as exc:
            logger.warning('Could not decode receipt image %s: %s', path, exc)
            return FailedAttachment(f'invalid image: {exc}')

    def _reencode(self, data: bytes) -> ImageAttachment:
        from PIL import Image, ImageOps

        with Image.open(BytesIO(data)) as source:
            source.load()
            img = ImageOps.exif_transpose(source)
            if img.mode in ('RGBA', 'LA') or (img.mode == 'P' and 'transparency' in img.info):
                rgba = img.convert('RGBA')
                img = Image.new('RGB', rgba.size, (255, 255, 255))
                img.paste(rgba, mask=rgba.split()[-1])
            elif img.mode != 'RGB':
                img = img.convert('RGB')
            img.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)
            out = BytesIO()
            img.save(out, format='JPEG', quality=self.quality, optimize=True)
            return ImageAttachment(data=out.getvalue(), content_type='image/jpeg', width=img.width,
                                   height=img.height)


# ---------------------------------------------------------------------------
# Concurrent pre-fetch
# ---------------------------------------------------------------------------
class AttachmentPrefetch:
    '''Loads all receipts of ``expenses`` concurrently.

    ``start()`` submits the work and returns immediately; ``collect()`` blocks
    until every receipt has an outcome, the ``deadline`` (a ``time.monotonic``
    value) passes, or ``cancel_event`` is set. On cancellation or timeout the
    queued fetches are dropped and running ones are left to finish on their
    own; ``ReportCancelledError`` is raised and no results are returned.
    '''

    def __init__(self, loader: AttachmentLoader, expenses: Iterable[ExpenseRecord], *, max_workers: int = 4,
                 deadline: float | None = None, cancel_event: Event | None = None):
        self.loader = loader
        self.jobs = [(expense.id, receipt) for expense in expenses for receipt in expense.receipts]
        self.max_workers = max(1, int(max_workers))
        self.deadline = deadline
        self.cancel_event = cancel_event
        self._executor: ThreadPoolExecutor | None = None
        self._futures: Dict[Future, AttachmentKey] = {}

    def __enter__(self) -> 'AttachmentPrefetch':
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.abandon()
        else:
            self.close()
        return False

    def start(self) -> 'AttachmentPrefetch':
        if self._executor is not None or not self.jobs:
            return self
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='receipt-fetch')
        for expense_id, receipt in self.jobs:
            future = self._executor.submit(self._load, receipt)
            self._futures[future] = (expense_id, receipt.id)
        logger.debug('Submitted %d receipt fetches on %d workers', len(self._futures), self.max_workers)
        return self

    def _load(self, receipt: ReceiptRecord) -> AttachmentResult:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return FailedAttachment('cancelled')
        return self.loader.load(receipt.file_path, receipt.file_type)

    def _check_cancelled(self) -> float:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ReportCancelledError('Report generation was cancelled')
        if self.deadline is None:
            return POLL_INTERVAL_SECONDS
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise ReportCancelledError('Report generation timed out while loading receipts', code='timeout')
        return min(POLL_INTERVAL_SECONDS, remaining)

    def collect(self, on_loaded: Callable[[int, int], None] | None = None) -> Dict[AttachmentKey, AttachmentResult]:
        self.start()
        results: Dict[AttachmentKey, AttachmentResult] = {}
        total = len(self._futures)
        pending = set(self._futures)
        try:
            while pending:
                wait_for = self._check_cancelled()
                done, pending = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
                for future in done:
                    key = self._futures[future]
                    try:
                        results[key] = future.result()
                    except Exception as exc:
                        logger.warning('Receipt fetch %s/%s failed: %s', key[0], key[1], exc)
                        results[key] = FailedAttachment(f'{type(exc).__name__}: {exc}')
                    if on_loaded is not None:
                        on_loaded(len(results), total)
            self._check_cancelled()
        except BaseException:
            self.abandon()
            raise
        self.close()
        return results

    def abandon(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def prefetch_attachments(loader: AttachmentLoader, expenses: Iterable[ExpenseRecord], *, max_workers: int = 4,
                         deadline: float | None = None, cancel_event: Event | None = None,
                         on_loaded: Callable[[int, int], None] | None = None) -> Dict[AttachmentKey, AttachmentResult]:
    '''Load every receipt of ``expenses``; keys are ``(expense_id, receipt_id)``.'''
    with AttachmentPrefetch(loader, expenses, max_workers=max_workers, deadline=deadline,
                            cancel_event=cancel_event) as prefetch:
        return prefetch.collect(on_loaded=on_loaded)
