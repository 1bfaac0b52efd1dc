'''Second pass over a composed document: table of contents and page numbers.

The composer records where every heading starts. ``resolve`` inserts the TOC
pages immediately before the first numbered section, derives display numbers
from the pre-insertion page indices and stamps them on every numbered page:

    display number = original index + 1 - index of the first numbered page
    physical index = original index + number of TOC pages

Front matter (cover, identification, legal context and the TOC itself) stays
unnumbered. Stamps live apart from page content, so stamping a page again
replaces its previous stamp.
'''

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Sequence, Tuple

from document import (
    FONT_BOLD,
    FONT_REGULAR,
    MM,
    STAMP_BASELINE,
    STAMP_PATCH_HEIGHT,
    STAMP_PATCH_TOP,
    STAMP_PATCH_WIDTH,
    STAMP_SIZE,
    WHITE,
    ComposedDocument,
    Page,
    PageGeometry,
    RectOp,
    TextOp,
    TocEntry,
)
from errors import DocumentInitError

logger = logging.getLogger(__name__)

TOC_TITLE = 'SUMÁRIO'
TOC_SIZE = 12.0
TOC_LEADING = 20.0
TOC_INDENT = 8 * MM
TOC_NUMBER_GAP = 4.0


def _metrics():
    try:
        from reportlab.lib.utils import simpleSplit
        from reportlab.pdfbase.pdfmetrics import stringWidth
    except Exception as exc:
        raise DocumentInitError(
            'PDF generation requires reportlab. Install it: pip install reportlab'
        ) from exc
    return stringWidth, simpleSplit


# ---------------------------------------------------------------------------
# Stamping
# ---------------------------------------------------------------------------
def stamp_ops(number: int, geometry: PageGeometry) -> Tuple[RectOp, TextOp]:
    right = geometry.width - geometry.margins.right
    patch = RectOp(
        x=right - STAMP_PATCH_WIDTH,
        y=STAMP_PATCH_TOP,
        width=STAMP_PATCH_WIDTH + 1,
        height=STAMP_PATCH_HEIGHT,
        stroke=None,
        fill=WHITE,
    )
    text = TextOp(x=right, y=STAMP_BASELINE, text=str(number), font=FONT_REGULAR, size=STAMP_SIZE,
                  align='right')
    return patch, text


def stamp_page(page: Page, number: int, geometry: PageGeometry):
    '''Opaque patch then the number; any earlier stamp is replaced.'''
    page.display_number = number
    page.stamp = stamp_ops(number, geometry)


def restamp(document: ComposedDocument) -> ComposedDocument:
    for page in document.pages:
        if page.numbered and page.display_number is not None:
            stamp_page(page, page.display_number, document.geometry)
    return document


# ---------------------------------------------------------------------------
# TOC pages
# ---------------------------------------------------------------------------
def _toc_line_ops(entry: TocEntry, y: float, geometry: PageGeometry, string_width,
                  simple_split) -> Tuple[List[TextOp], float]:
    left = geometry.margins.left + entry.level * TOC_INDENT
    right = geometry.width - geometry.margins.right
    font = FONT_BOLD if entry.level == 0 else FONT_REGULAR
    number = str(entry.page_number)
    number_width = string_width(number, FONT_REGULAR, TOC_SIZE)
    title_width = right - left - number_width - 3 * TOC_NUMBER_GAP - string_width('....', font, TOC_SIZE)
    lines = simple_split(entry.title, font, TOC_SIZE, title_width) or [entry.title]
    ops: List[TextOp] = []
    for line in lines[:-1]:
        ops.append(TextOp(x=left, y=y, text=line, font=font, size=TOC_SIZE))
        y += TOC_LEADING
    last = lines[-1]
    ops.append(TextOp(x=left, y=y, text=last, font=font, size=TOC_SIZE))
    dots_start = left + string_width(last, font, TOC_SIZE) + TOC_NUMBER_GAP
    dots_end = right - number_width - TOC_NUMBER_GAP
    dot_width = string_width('.', FONT_REGULAR, TOC_SIZE)
    count = int((dots_end - dots_start) // dot_width) if dot_width > 0 else 0
    if count > 0:
        ops.append(TextOp(x=dots_end, y=y, text='.' * count, font=FONT_REGULAR, size=TOC_SIZE, align='right'))
    ops.append(TextOp(x=right, y=y, text=number, font=FONT_REGULAR, size=TOC_SIZE, align='right'))
    return ops, y + TOC_LEADING


def build_toc_pages(entries: Sequence[TocEntry], geometry: PageGeometry) -> List[Page]:
    '''Lay the numbered entries out on as many TOC pages as they need.'''
    string_width, simple_split = _metrics()
    pages: List[Page] = []

    def new_page() -> Tuple[Page, float]:
        page = Page(numbered=False, kind='toc', section='toc')
        title = TOC_TITLE if not pages else f'{TOC_TITLE} (continuação)'
        page.add(TextOp(
            x=geometry.margins.left + geometry.content_width / 2.0,
            y=geometry.content_top + 14,
            text=title,
            font=FONT_BOLD,
            size=14,
            align='center',
            anchor='toc' if not pages else None,
        ))
        pages.append(page)
        return page, geometry.content_top + 14 + 2 * TOC_LEADING

    page, y = new_page()
    for entry in entries:
        ops, next_y = _toc_line_ops(entry, y, geometry, string_width, simple_split)
        if next_y - TOC_LEADING > geometry.content_bottom:
            page, y = new_page()
            ops, next_y = _toc_line_ops(entry, y, geometry, string_width, simple_split)
        for op in ops:
            page.add(op)
        y = next_y
    return pages


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------
def resolve(document: ComposedDocument, section_page_map: Mapping[str, int] | None = None) -> ComposedDocument:
    '''Insert the TOC, number the body pages and stamp them.

    Returns a new document; the input pages are copied, not mutated.
    '''
    if document.resolved:
        raise ValueError('Document already resolved')
    page_map = dict(section_page_map if section_page_map is not None else document.section_page_map)
    first = document.first_numbered_index
    if not 0 <= first < len(document.pages):
        raise ValueError(f'First numbered page {first} outside document of {len(document.pages)} pages')

    numbered_entries = []
    for entry in document.toc_entries:
        if entry.key not in page_map:
            raise KeyError(f'Section {entry.key!r} was never recorded')
        original = page_map[entry.key]
        numbered_entries.append(TocEntry(key=entry.key, title=entry.title, level=entry.level,
                                         page_number=original + 1 - first))

    toc_pages = build_toc_pages(numbered_entries, document.geometry)
    inserted = len(toc_pages)
    pages = [page.copy() for page in document.pages[:first]]
    pages.extend(toc_pages)
    for original, page in enumerate(document.pages[first:], start=first):
        copy = page.copy()
        if copy.numbered:
            stamp_page(copy, original + 1 - first, document.geometry)
        pages.append(copy)

    shifted: Dict[str, int] = {
        key: index if index < first else index + inserted for key, index in page_map.items()
    }
    shifted['toc'] = first
    entries = tuple(
        TocEntry(key=entry.key, title=entry.title, level=entry.level, page_number=entry.page_number,
                 physical_index=page_map[entry.key] + inserted)
        for entry in numbered_entries
    )
    logger.debug('Inserted %d TOC page(s) at index %d; %d entries', inserted, first, len(entries))
    return ComposedDocument(
        pages=pages,
        geometry=document.geometry,
        section_page_map=shifted,
        toc_entries=entries,
        first_numbered_index=first + inserted,
        title=document.title,
        resolved=True,
    )


def toc_mismatches(document: ComposedDocument) -> List[str]:
    '''Entries whose printed number disagrees with the page bearing their heading.'''
    problems = []
    anchors = document.anchor_index()
    for entry in document.toc_entries:
        index = anchors.get(entry.key)
        if index is None:
            problems.append(f'{entry.key}: heading not found')
            continue
        page = document.pages[index]
        if index != entry.physical_index:
            problems.append(f'{entry.key}: listed at index {entry.physical_index}, heading on {index}')
        if page.display_number != entry.page_number:
            problems.append(f'{entry.key}: TOC says {entry.page_number}, page stamped {page.display_number}')
    return problems
