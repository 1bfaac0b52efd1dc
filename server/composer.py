'''Document composer.

Sections are laid out in a fixed order onto the page model in ``document.py``.
The composer owns the only mutable layout state, a ``DocumentCursor`` that
tracks the current page and the vertical position. Every atomic unit (a line
of text, a table row, a chart, a placeholder box) asks ``ensure_space`` first
and moves to a new page when it would cross the bottom margin; tables repeat
their header row after such a break. Table rows and placeholder boxes taller
than a page are split line by line across pages.

Headings carry an anchor and their first page is written to the section page
map exactly once. The TOC itself is not composed here; ``pagination.resolve``
inserts it afterwards.
'''

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

from aggregation import AggregatedReport, ComplianceRating, Share
from attachments import (
    AttachmentKey,
    AttachmentResult,
    FailedAttachment,
    ImageAttachment,
    MissingAttachment,
    OpaqueAttachment,
)
from charts import CHART_TITLES, ChartFailure, ChartKind, ChartOutcome, RasterImage
from document import (
    BLACK,
    FONT_BOLD,
    FONT_ITALIC,
    FONT_REGULAR,
    GREY,
    LIGHT_GREY,
    MM,
    STAMP_ZONE_BOTTOM,
    ComposedDocument,
    ImageOp,
    LineOp,
    Page,
    PageGeometry,
    RectOp,
    TextOp,
    TocEntry,
)
from errors import DocumentInitError
from formatting import formatBRL, formatDate, formatPercent, formatTimestamp, monthYear, titleCase
from records import NOT_RECORDED, ChildRecord, ExpenseRecord, ExpenseStatus, ReportContext

logger = logging.getLogger(__name__)

SYSTEM_NAME = 'Sistema de Gestão Financeira para Filhos de Pais Divorciados'
REPORT_TITLE = 'Relatório de Prestação de Contas de Despesas Infantis'
NO_CHART_DATA = 'Sem dados no período'

BODY_SIZE = 12.0
BODY_LEADING = 16.0
TABLE_SIZE = 9.0
TABLE_LEADING = 11.5
CELL_PADDING = 3.0
PLACEHOLDER_SIZE = 10.0
PLACEHOLDER_LEADING = 13.0
BLOCK_GAP = 8.0
CHART_MAX_HEIGHT = 110 * MM
RECEIPT_MARGIN = 10 * MM
RECEIPT_CAPTION_SIZE = 9.0
RECEIPT_CAPTION_RESERVED = 60 * MM


class Section(str, Enum):
    COVER = 'cover'
    CHILDREN_INFO = 'children_info'
    LEGAL_CONTEXT = 'legal_context'
    EXECUTIVE_SUMMARY = 'executive_summary'
    FINANCIAL_ANALYSIS = 'financial_analysis'
    CHARTS = 'charts'
    EXPENSE_TABLE = 'expense_table'
    RECEIPT_EXTRACT = 'receipt_extract'
    CONCLUSIONS = 'conclusions'
    REFERENCES = 'references'


FRONT_MATTER = frozenset({Section.COVER, Section.CHILDREN_INFO, Section.LEGAL_CONTEXT})
FIRST_NUMBERED_SECTION = Section.EXECUTIVE_SUMMARY

SECTION_TITLES = {
    Section.COVER: REPORT_TITLE.upper(),
    Section.CHILDREN_INFO: 'IDENTIFICAÇÃO DAS PARTES',
    Section.LEGAL_CONTEXT: 'CONTEXTO JURÍDICO',
    Section.EXECUTIVE_SUMMARY: '1 RESUMO EXECUTIVO',
    Section.FINANCIAL_ANALYSIS: '2 ANÁLISE FINANCEIRA',
    Section.CHARTS: '3 GRÁFICOS',
    Section.EXPENSE_TABLE: '4 DETALHAMENTO DAS DESPESAS',
    Section.RECEIPT_EXTRACT: '5 EXTRATO DE DESPESAS COM COMPROVANTES',
    Section.CONCLUSIONS: '6 CONCLUSÕES E RECOMENDAÇÕES',
    Section.REFERENCES: 'REFERÊNCIAS',
}

CHART_ORDER = (ChartKind.PIE, ChartKind.LINE, ChartKind.BAR, ChartKind.TREND)

REFERENCES = (
    'BRASIL. Constituição da República Federativa do Brasil de 1988. Brasília, DF: Senado Federal, 1988.',
    'BRASIL. Lei nº 8.069, de 13 de julho de 1990. Dispõe sobre o Estatuto da Criança e do Adolescente e dá '
    'outras providências. Brasília, DF: Presidência da República, 1990.',
    'ASSOCIAÇÃO BRASILEIRA DE NORMAS TÉCNICAS. NBR 14724: informação e documentação: trabalhos acadêmicos: '
    'apresentação. Rio de Janeiro: ABNT, 2011.',
)

LEGAL_NOTES = (
    'Este relatório consolida as despesas registradas pelo responsável no sistema e os comprovantes '
    'anexados a cada lançamento, não substituindo os documentos originais.',
    'Os valores apresentados correspondem aos lançamentos do período analisado, conforme os filtros '
    'aplicados na geração do relatório.',
    'A veracidade das informações é de responsabilidade de quem as registrou. Os comprovantes originais '
    'devem ser preservados e apresentados sempre que solicitados pelo juízo.',
)


@dataclass(frozen=True)
class Column:
    title: str
    weight: float
    align: str = 'left'


@dataclass
class DocumentCursor:
    geometry: PageGeometry
    page_index: int = -1
    y: float = 0.0

    @property
    def page_width(self) -> float:
        return self.geometry.width

    @property
    def page_height(self) -> float:
        return self.geometry.height

    @property
    def margins(self):
        return self.geometry.margins

    @property
    def at_top(self) -> bool:
        return self.y <= self.geometry.content_top + 0.01

    def fits(self, height: float) -> bool:
        return self.y + height <= self.geometry.content_bottom

    def reset(self, page_index: int):
        self.page_index = page_index
        self.y = self.geometry.content_top

    def exhaust(self):
        '''Force the next unit onto a fresh page.'''
        self.y = self.geometry.content_bottom + 1


def _text_metrics():
    try:
        from reportlab.lib.utils import simpleSplit
        from reportlab.pdfbase.pdfmetrics import stringWidth
    except Exception as exc:
        raise DocumentInitError(
            'PDF generation requires reportlab. Install it: pip install reportlab'
        ) from exc
    return stringWidth, simpleSplit


def _age_on(dob: date, day: date) -> int:
    return day.year - dob.year - ((day.month, day.day) < (dob.month, dob.day))


def _humanize(value: str | None) -> str:
    if not value:
        return NOT_RECORDED
    return titleCase(value.replace('_', ' ').strip())


def _or_placeholder(value) -> str:
    if value is None:
        return NOT_RECORDED
    text = str(value).strip()
    return text or NOT_RECORDED


class DocumentComposer:
    '''Lays out one report. Instances are single-use.'''

    def __init__(
        self,
        report: AggregatedReport,
        context: ReportContext | None = None,
        *,
        charts: Mapping[ChartKind, ChartOutcome] | None = None,
        attachments: Mapping[AttachmentKey, AttachmentResult] | None = None,
        generated_at: datetime,
        geometry: PageGeometry | None = None,
        on_section: Callable[[Section], None] | None = None,
    ):
        self.report = report
        self.context = context or ReportContext()
        self.charts = dict(charts or {})
        self.attachments = dict(attachments or {})
        self.generated_at = generated_at
        self.geometry = geometry or PageGeometry()
        self.on_section = on_section
        self.cursor = DocumentCursor(self.geometry)
        self.pages: List[Page] = []
        self.section_page_map: Dict[str, int] = {}
        self.toc_entries: List[TocEntry] = []
        self.warnings: List[str] = []
        self.state: Section | None = None
        self._composed = False
        self._string_width, self._simple_split = _text_metrics()
        self._builders = {
            Section.COVER: self._build_cover,
            Section.CHILDREN_INFO: self._build_children_info,
            Section.LEGAL_CONTEXT: self._build_legal_context,
            Section.EXECUTIVE_SUMMARY: self._build_executive_summary,
            Section.FINANCIAL_ANALYSIS: self._build_financial_analysis,
            Section.CHARTS: self._build_charts,
            Section.EXPENSE_TABLE: self._build_expense_table,
            Section.RECEIPT_EXTRACT: self._build_receipt_extract,
            Section.CONCLUSIONS: self._build_conclusions,
            Section.REFERENCES: self._build_references,
        }

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def compose(self) -> ComposedDocument:
        if self._composed:
            raise RuntimeError('DocumentComposer instances are single-use')
        self._composed = True
        for section in Section:
            self.state = section
            self._start_section(section)
            self._builders[section]()
            if self.on_section is not None:
                self.on_section(section)
        self.state = None
        logger.debug('Composed %d pages, %d TOC entries', len(self.pages), len(self.toc_entries))
        return ComposedDocument(
            pages=self.pages,
            geometry=self.geometry,
            section_page_map=dict(self.section_page_map),
            toc_entries=tuple(self.toc_entries),
            first_numbered_index=self.section_page_map[FIRST_NUMBERED_SECTION.value],
            title=REPORT_TITLE,
        )

    def _start_section(self, section: Section):
        self._new_page(numbered=section not in FRONT_MATTER, kind='section', section=section.value)

    # ------------------------------------------------------------------
    # Cursor and page handling
    # ------------------------------------------------------------------
    @property
    def page(self) -> Page:
        return self.pages[self.cursor.page_index]

    def _new_page(self, *, numbered: bool, kind: str = 'body', section: str | None = None) -> Page:
        page = Page(numbered=numbered, kind=kind, section=section)
        self.pages.append(page)
        self.cursor.reset(len(self.pages) - 1)
        return page

    def _break_page(self):
        current = self.page
        self._new_page(numbered=current.numbered, kind='body', section=current.section)

    def ensure_space(self, height: float) -> bool:
        '''Start a new page if ``height`` does not fit; returns True on a break.'''
        if self.cursor.fits(height):
            return False
        if self.cursor.at_top:
            # Taller than a whole page; nothing to gain from another break.
            return False
        self._break_page()
        return True

    def record_section(self, key: str):
        if key in self.section_page_map:
            raise ValueError(f'Section {key!r} already recorded')
        self.section_page_map[key] = self.cursor.page_index

    # ------------------------------------------------------------------
    # Text measurement
    # ------------------------------------------------------------------
    def text_width(self, text: str, font: str, size: float) -> float:
        return self._string_width(text, font, size)

    def wrap(self, text: str, font: str, size: float, width: float) -> List[str]:
        lines: List[str] = []
        for paragraph in (text or '').split('\n'):
            if not paragraph.strip():
                lines.append('')
                continue
            for line in self._simple_split(paragraph, font, size, width):
                lines.extend(self._hard_break(line, font, size, width))
        return lines or ['']

    def _hard_break(self, line: str, font: str, size: float, width: float) -> List[str]:
        if self.text_width(line, font, size) <= width:
            return [line]
        pieces: List[str] = []
        current = ''
        for char in line:
            if current and self.text_width(current + char, font, size) > width:
                pieces.append(current)
                current = char
            else:
                current += char
        if current:
            pieces.append(current)
        return pieces

    # ------------------------------------------------------------------
    # Layout primitives
    # ------------------------------------------------------------------
    def heading(self, title: str, key: str, *, level: int = 0, in_toc: bool = True):
        size = 14.0 if level == 0 else 12.0
        leading = size + 8
        # Keep the heading with at least two body lines.
        self.ensure_space(leading + 2 * BODY_LEADING)
        lines = self.wrap(title, FONT_BOLD, size, self.geometry.content_width)
        for index, line in enumerate(lines):
            self.cursor.y += size if index == 0 else size + 2
            self.page.add(TextOp(
                x=self.geometry.margins.left,
                y=self.cursor.y,
                text=line,
                font=FONT_BOLD,
                size=size,
                anchor=key if index == 0 else None,
            ))
        self.cursor.y += 8
        self.record_section(key)
        if in_toc and self.page.numbered:
            self.toc_entries.append(TocEntry(key=key, title=title, level=level))

    def subheading(self, title: str):
        self.ensure_space(BODY_SIZE + 4 + 2 * BODY_LEADING)
        self.cursor.y += BODY_SIZE + 2
        self.page.add(TextOp(x=self.geometry.margins.left, y=self.cursor.y, text=title, font=FONT_BOLD,
                             size=BODY_SIZE))
        self.cursor.y += 6

    def paragraph(self, text: str, *, font: str = FONT_REGULAR, size: float = BODY_SIZE,
                  leading: float = BODY_LEADING, indent: float = 0.0, align: str = 'left',
                  color=BLACK):
        width = self.geometry.content_width - indent
        left = self.geometry.margins.left + indent
        for line in self.wrap(text, font, size, width):
            self.ensure_space(leading)
            self.cursor.y += leading
            if not line:
                continue
            x = left
            if align == 'center':
                x = left + width / 2.0
            elif align == 'right':
                x = left + width
            self.page.add(TextOp(x=x, y=self.cursor.y - (leading - size), text=line, font=font, size=size,
                                 align=align, color=color))
        self.cursor.y += BLOCK_GAP / 2

    def bullet_list(self, items: Sequence[str]):
        for item in items:
            self.paragraph(f'• {item}', indent=6 * MM)

    def placeholder_box(self, lines: Sequence[str], *, font: str = FONT_ITALIC, fill=LIGHT_GREY):
        width = self.geometry.content_width
        wrapped: List[str] = []
        for line in lines:
            wrapped.extend(self.wrap(line, font, PLACEHOLDER_SIZE, width - 4 * CELL_PADDING))
        padding = 4 * CELL_PADDING
        page_room = self.geometry.content_bottom - self.geometry.content_top
        while True:
            height = len(wrapped) * PLACEHOLDER_LEADING + padding
            if self.cursor.fits(height):
                self._draw_placeholder(wrapped, font, fill)
                break
            # Boxes taller than a page continue on the next one.
            capacity = int((self.geometry.content_bottom - self.cursor.y - padding) // PLACEHOLDER_LEADING)
            if height > page_room and capacity >= 1:
                self._draw_placeholder(wrapped[:capacity], font, fill)
                wrapped = wrapped[capacity:]
            self._break_page()
        self.cursor.y += BLOCK_GAP

    def _draw_placeholder(self, lines: Sequence[str], font: str, fill):
        width = self.geometry.content_width
        left = self.geometry.margins.left
        top = self.cursor.y
        height = len(lines) * PLACEHOLDER_LEADING + 4 * CELL_PADDING
        self.page.add(RectOp(x=left, y=top, width=width, height=height, stroke=GREY, fill=fill))
        y = top + 2 * CELL_PADDING
        for line in lines:
            y += PLACEHOLDER_LEADING
            self.page.add(TextOp(x=left + width / 2.0, y=y - 3.0, text=line, font=font, size=PLACEHOLDER_SIZE,
                                 align='center'))
        self.cursor.y = top + height

    def not_recorded(self):
        self.paragraph(NOT_RECORDED, font=FONT_ITALIC)

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------
    def column_widths(self, columns: Sequence[Column]) -> List[float]:
        total_weight = sum(column.weight for column in columns) or 1.0
        return [self.geometry.content_width * column.weight / total_weight for column in columns]

    def layout_row(self, cells: Sequence[str], widths: Sequence[float], fonts: Sequence[str],
                   size: float = TABLE_SIZE) -> Tuple[List[List[str]], float]:
        '''Wrap every cell; the row is as tall as its tallest cell.'''
        wrapped = [
            self.wrap(str(cell), font, size, max(width - 2 * CELL_PADDING, 1.0))
            for cell, width, font in zip(cells, widths, fonts)
        ]
        tallest = max((len(lines) for lines in wrapped), default=1)
        return wrapped, tallest * TABLE_LEADING + 2 * CELL_PADDING

    def _draw_row(self, wrapped: List[List[str]], height: float, columns: Sequence[Column],
                  widths: Sequence[float], fonts: Sequence[str], fill=None):
        x = self.geometry.margins.left
        top = self.cursor.y
        for lines, column, width, font in zip(wrapped, columns, widths, fonts):
            self.page.add(RectOp(x=x, y=top, width=width, height=height, stroke=BLACK, fill=fill,
                                 line_width=0.4))
            if column.align == 'right':
                tx = x + width - CELL_PADDING
            elif column.align == 'center':
                tx = x + width / 2.0
            else:
                tx = x + CELL_PADDING
            baseline = top + CELL_PADDING + TABLE_SIZE
            for line in lines:
                if line:
                    self.page.add(TextOp(x=tx, y=baseline, text=line, font=font, size=TABLE_SIZE,
                                         align=column.align))
                baseline += TABLE_LEADING
            x += width
        self.cursor.y = top + height

    def table(self, columns: Sequence[Column], rows: Sequence[Sequence[str]], *, header: bool = True,
              bold_last_row: bool = False, label_column_bold: bool = False):
        widths = self.column_widths(columns)
        header_fonts = [FONT_BOLD] * len(columns)
        header_cells, header_height = self.layout_row([c.title for c in columns], widths, header_fonts)

        def row_fonts(index: int) -> List[str]:
            if bold_last_row and index == len(rows) - 1:
                return [FONT_BOLD] * len(columns)
            fonts = [FONT_REGULAR] * len(columns)
            if label_column_bold:
                fonts[0] = FONT_BOLD
            return fonts

        def draw_header():
            self._draw_row(header_cells, header_height, columns, widths, header_fonts, fill=LIGHT_GREY)

        repeat_height = header_height if header else 0.0
        page_room = self.geometry.content_bottom - self.geometry.content_top - repeat_height
        first_height = self.layout_row(rows[0], widths, row_fonts(0))[1] if rows else 0.0
        if first_height > page_room:
            # The first row will be split anyway; keep at least one line of it under the header.
            first_height = TABLE_LEADING + 2 * CELL_PADDING
        self.ensure_space(repeat_height + first_height)
        if header:
            draw_header()
        for index, row in enumerate(rows):
            fonts = row_fonts(index)
            wrapped, _ = self.layout_row(row, widths, fonts)
            self._place_row(wrapped, columns, widths, fonts, page_room, draw_header if header else None)
        self.cursor.y += BLOCK_GAP

    def _place_row(self, wrapped: List[List[str]], columns: Sequence[Column], widths: Sequence[float],
                   fonts: Sequence[str], page_room: float, on_break=None):
        '''Draw a row, moving it to a fresh page or splitting its lines when it does not fit.

        ``page_room`` is the height a row may use on a fresh page once the repeated header is drawn; rows
        taller than that are cut line by line, and ``on_break`` redraws the header on each new page.
        '''
        while True:
            tallest = max((len(lines) for lines in wrapped), default=1)
            height = tallest * TABLE_LEADING + 2 * CELL_PADDING
            if self.cursor.fits(height):
                self._draw_row(wrapped, height, columns, widths, fonts)
                return
            capacity = int((self.geometry.content_bottom - self.cursor.y - 2 * CELL_PADDING) // TABLE_LEADING)
            if height > page_room and capacity >= 1:
                self._draw_row([lines[:capacity] for lines in wrapped], capacity * TABLE_LEADING + 2 * CELL_PADDING,
                               columns, widths, fonts)
                wrapped = [lines[capacity:] for lines in wrapped]
            self._break_page()
            if on_break is not None:
                on_break()

    def key_value_box(self, pairs: Sequence[Tuple[str, str | None]]):
        columns = (Column('', 0.32), Column('', 0.68))
        self.table(columns, [(label, _or_placeholder(value)) for label, value in pairs], header=False,
                   label_column_bold=True)

    def share_table(self, first_title: str, shares: Sequence[Share]):
        if not shares:
            self.not_recorded()
            return
        rows = [(titleCase(share.name), formatBRL(share.amount), formatPercent(share.percentage))
                for share in shares]
        rows.append(('Total', formatBRL(self.report.total_amount), formatPercent(100.0)))
        self.table(
            (Column(first_title, 0.5), Column('Valor', 0.3, 'right'), Column('Percentual', 0.2, 'right')),
            rows,
            bold_last_row=True,
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def chart_block(self, raster: RasterImage, caption: str):
        width = self.geometry.content_width
        height = width * raster.height / max(raster.width, 1)
        if height > CHART_MAX_HEIGHT:
            height = CHART_MAX_HEIGHT
            width = height * raster.width / max(raster.height, 1)
        self.ensure_space(height + TABLE_LEADING + BLOCK_GAP)
        x = self.geometry.margins.left + (self.geometry.content_width - width) / 2.0
        self.page.add(ImageOp(x=x, y=self.cursor.y, width=width, height=height, data=raster.data))
        self.cursor.y += height + TABLE_LEADING
        self.page.add(TextOp(x=self.geometry.margins.left + self.geometry.content_width / 2.0, y=self.cursor.y,
                             text=caption, font=FONT_ITALIC, size=TABLE_SIZE, align='center'))
        self.cursor.y += BLOCK_GAP

    def receipt_image_box(self, caption_lines: Sequence[str]) -> Tuple[float, float, float, float]:
        '''Near-full-bleed box below the caption strip and clear of the page-number stamp.'''
        caption_height = len(caption_lines) * (RECEIPT_CAPTION_SIZE + 3)
        top = max(RECEIPT_MARGIN + caption_height + 4 * MM, STAMP_ZONE_BOTTOM + 2 * MM)
        return (
            RECEIPT_MARGIN,
            top,
            self.geometry.width - 2 * RECEIPT_MARGIN,
            self.geometry.height - RECEIPT_MARGIN - top,
        )

    def receipt_page(self, caption: str, image: ImageAttachment):
        '''One receipt image on its own page, as large as fits, centred.'''
        current = self.page
        page = self._new_page(numbered=current.numbered, kind='receipt', section=current.section)
        caption_width = self.geometry.width - RECEIPT_MARGIN - RECEIPT_CAPTION_RESERVED
        lines = self.wrap(caption, FONT_BOLD, RECEIPT_CAPTION_SIZE, caption_width)
        y = RECEIPT_MARGIN
        for line in lines:
            y += RECEIPT_CAPTION_SIZE + 3
            page.add(TextOp(x=RECEIPT_MARGIN, y=y, text=line, font=FONT_BOLD, size=RECEIPT_CAPTION_SIZE))
        box_x, box_y, box_w, box_h = self.receipt_image_box(lines)
        scale = min(box_w / max(image.width, 1), box_h / max(image.height, 1))
        draw_w = image.width * scale
        draw_h = image.height * scale
        page.add(ImageOp(
            x=box_x + (box_w - draw_w) / 2.0,
            y=box_y + (box_h - draw_h) / 2.0,
            width=draw_w,
            height=draw_h,
            data=image.data,
        ))
        self.cursor.exhaust()

    # ------------------------------------------------------------------
    # Section builders
    # ------------------------------------------------------------------
    def _beneficiaries(self) -> List[ChildRecord]:
        if self.context.children:
            return list(self.context.children)
        seen: Dict[str, ChildRecord] = {}
        for expense in self.report.filtered_expenses:
            seen.setdefault(expense.child.id, expense.child)
        return list(seen.values())

    def _period_text(self) -> str:
        period = self.report.period
        return f'{formatDate(period.start)} a {formatDate(period.end)}'

    def _build_cover(self):
        g = self.geometry
        center = g.margins.left + g.content_width / 2.0
        top_lines = ('SISTEMA DE GESTÃO FINANCEIRA', 'PARA FILHOS DE PAIS DIVORCIADOS')
        y = g.content_top + 14
        for line in top_lines:
            self.page.add(TextOp(x=center, y=y, text=line, font=FONT_BOLD, size=14, align='center'))
            y += 20
        y = g.height * 0.42
        title_lines = ('RELATÓRIO DE PRESTAÇÃO DE CONTAS', 'DE DESPESAS INFANTIS')
        for index, line in enumerate(title_lines):
            self.page.add(TextOp(x=center, y=y, text=line, font=FONT_BOLD, size=18, align='center',
                                 anchor=Section.COVER.value if index == 0 else None))
            y += 26
        self.record_section(Section.COVER.value)
        y += 20
        self.page.add(TextOp(x=center, y=y, text=f'Período analisado: {self._period_text()}', size=BODY_SIZE,
                             align='center'))
        names = ', '.join(child.full_name for child in self._beneficiaries())
        if names:
            self.cursor.y = y + 6
            for line in self.wrap(f'Beneficiário(s): {names}', FONT_REGULAR, BODY_SIZE, g.content_width):
                self.cursor.y += BODY_LEADING
                self.page.add(TextOp(x=center, y=self.cursor.y, text=line, size=BODY_SIZE, align='center'))
        bottom = g.content_bottom - BODY_LEADING
        self.page.add(TextOp(x=center, y=bottom, text='Local: Brasil', size=BODY_SIZE, align='center'))
        self.page.add(TextOp(x=center, y=bottom + BODY_LEADING,
                             text=f'Data: {monthYear(self.generated_at.date())}', size=BODY_SIZE, align='center'))

    def _build_children_info(self):
        self.heading(SECTION_TITLES[Section.CHILDREN_INFO], Section.CHILDREN_INFO.value)
        today = self.generated_at.date()
        self.subheading('Beneficiários')
        children = self._beneficiaries()
        if children:
            rows = []
            for child in children:
                dob = child.date_of_birth
                rows.append((
                    child.full_name,
                    formatDate(dob) if dob else NOT_RECORDED,
                    f'{_age_on(dob, today)} anos' if dob else NOT_RECORDED,
                ))
            self.table((Column('Nome', 0.5), Column('Data de nascimento', 0.3), Column('Idade', 0.2)), rows)
        else:
            self.not_recorded()

        self.subheading('Responsáveis')
        if self.context.parents:
            rows = [
                (parent.full_name, _humanize(parent.relationship), _or_placeholder(parent.email),
                 _or_placeholder(parent.phone))
                for parent in self.context.parents
            ]
            self.table((Column('Nome', 0.32), Column('Vínculo', 0.18), Column('E-mail', 0.3),
                        Column('Telefone', 0.2)), rows)
        else:
            self.not_recorded()

    def _build_legal_context(self):
        self.heading(SECTION_TITLES[Section.LEGAL_CONTEXT], Section.LEGAL_CONTEXT.value)
        self.subheading('Advogado(a) responsável')
        lawyer = self.context.primary_lawyer()
        if lawyer is None:
            self.not_recorded()
        else:
            oab = None
            if lawyer.oab_number:
                oab = f'{lawyer.oab_number}/{lawyer.oab_state}' if lawyer.oab_state else lawyer.oab_number
            self.key_value_box((
                ('Nome', lawyer.full_name),
                ('OAB', oab),
                ('Escritório', lawyer.law_firm),
                ('Telefone', lawyer.phone),
                ('E-mail', lawyer.email),
                ('Endereço', lawyer.address),
                ('Especializações', ', '.join(lawyer.specializations) or None),
                ('Observações', lawyer.notes),
            ))

        self.subheading('Processo judicial')
        case = self.context.primary_case()
        if case is None:
            self.not_recorded()
        else:
            self.key_value_box((
                ('Tipo de ação', _humanize(case.case_type)),
                ('Número do processo', case.case_number),
                ('Vara / Tribunal', case.court_name),
                ('Juiz(a)', case.judge_name),
                ('Início', formatDate(case.start_date) or None),
                ('Previsão de término', formatDate(case.expected_end_date) or None),
                ('Situação', _humanize(case.status)),
                ('Tipo de guarda', _humanize(case.custody_type) if case.custody_type else None),
                ('Pensão alimentícia', formatBRL(case.alimony_amount) if case.alimony_amount else None),
                ('Crianças envolvidas', ', '.join(case.children_involved) or None),
                ('Regime de visitas', case.visitation_schedule),
                ('Observações', case.notes),
            ))
            others = [other for other in self.context.legal_cases if other is not case]
            if others:
                self.subheading('Outros processos')
                self.table(
                    (Column('Tipo', 0.4), Column('Número', 0.35), Column('Situação', 0.25)),
                    [(_humanize(o.case_type), _or_placeholder(o.case_number), _humanize(o.status)) for o in others],
                )

    def _build_executive_summary(self):
        report = self.report
        self.heading(SECTION_TITLES[Section.EXECUTIVE_SUMMARY], Section.EXECUTIVE_SUMMARY.value)
        self.paragraph(
            f'O presente relatório apresenta a prestação de contas das despesas realizadas em benefício '
            f'dos filhos no período de {self._period_text()}, elaborado a partir dos registros mantidos no '
            f'{SYSTEM_NAME}.'
        )
        if report.expense_count:
            self.paragraph(
                f'Foram registradas {report.expense_count} despesa(s), totalizando '
                f'{formatBRL(report.total_amount)}, com {report.receipt_count} comprovante(s) anexado(s).'
            )
            categories = report.category_breakdown()
            if categories:
                top = categories[0]
                self.paragraph(
                    f'A categoria de maior dispêndio foi "{titleCase(top.name)}", que corresponde a '
                    f'{formatPercent(top.percentage)} do total ({formatBRL(top.amount)}).'
                )
        else:
            self.paragraph('Não há despesas registradas no período analisado.')
        if report.skipped_count:
            self.paragraph(
                f'{report.skipped_count} registro(s) com dados inconsistentes foram desconsiderados.',
                font=FONT_ITALIC,
            )

        self.heading('1.1 Dados consolidados', f'{Section.EXECUTIVE_SUMMARY.value}.consolidated', level=1)
        average = report.total_amount / report.expense_count if report.expense_count else 0
        self.table(
            (Column('Indicador', 0.6), Column('Valor', 0.4, 'right')),
            [
                ('Período analisado', self._period_text()),
                ('Total de despesas', formatBRL(report.total_amount)),
                ('Quantidade de despesas', str(report.expense_count)),
                ('Valor médio por despesa', formatBRL(average)),
                ('Comprovantes anexados', str(report.receipt_count)),
                ('Despesas com comprovante', f'{report.documented_expense_count} de {report.expense_count}'),
                ('Taxa de documentação', formatPercent(report.documentation_rate)),
                ('Conformidade documental', report.compliance.value),
            ],
        )

    def _build_financial_analysis(self):
        report = self.report
        key = Section.FINANCIAL_ANALYSIS.value
        self.heading(SECTION_TITLES[Section.FINANCIAL_ANALYSIS], key)
        self.paragraph(
            'Esta seção detalha a distribuição dos valores por categoria, por situação de pagamento e por '
            'beneficiário, seguida da avaliação da documentação comprobatória.'
        )
        self.heading('2.1 Distribuição por categoria', f'{key}.category', level=1)
        self.share_table('Categoria', report.category_breakdown())
        self.heading('2.2 Distribuição por status', f'{key}.status', level=1)
        self.share_table('Status', report.status_breakdown())
        self.heading('2.3 Distribuição por beneficiário', f'{key}.child', level=1)
        self.share_table('Beneficiário', report.child_breakdown())

        self.heading('2.4 Conformidade documental', f'{key}.compliance', level=1)
        if not report.expense_count:
            self.not_recorded()
            return
        self.paragraph(
            f'Das {report.expense_count} despesa(s) do período, {report.documented_expense_count} possui(em) '
            f'comprovante anexado, com {report.receipt_count} comprovante(s) no total. A taxa de documentação '
            f'é de {formatPercent(report.documentation_rate)}, classificada como {report.compliance.value}.'
        )
        self.paragraph(
            'Critério: EXCELENTE a partir de 90%, ADEQUADA a partir de 70%, INSUFICIENTE abaixo de 70%.',
            font=FONT_ITALIC,
            size=10.0,
            leading=13.0,
        )

    def _build_charts(self):
        key = Section.CHARTS.value
        self.heading(SECTION_TITLES[Section.CHARTS], key)
        for number, kind in enumerate(CHART_ORDER, start=1):
            title = CHART_TITLES[kind]
            self.heading(f'3.{number} {title}', f'{key}.{kind.value}', level=1)
            outcome = self.charts.get(kind)
            if isinstance(outcome, RasterImage):
                self.chart_block(outcome, f'Figura {number} - {title}')
                continue
            if isinstance(outcome, ChartFailure) and outcome.no_data:
                self.placeholder_box([NO_CHART_DATA])
                continue
            reason = outcome.reason if isinstance(outcome, ChartFailure) else 'não gerado'
            logger.warning('Chart %s replaced by placeholder: %s', kind.value, reason)
            self.warnings.append(f'chart {kind.value}: {reason}')
            self.placeholder_box([f'[ERRO: Não foi possível gerar o gráfico "{title}"]'])

    def _build_expense_table(self):
        self.heading(SECTION_TITLES[Section.EXPENSE_TABLE], Section.EXPENSE_TABLE.value)
        expenses = self.report.expenses_by_date_desc()
        if not expenses:
            self.not_recorded()
            return
        rows = [
            (
                formatDate(expense.expense_date),
                expense.description or NOT_RECORDED,
                expense.child.full_name,
                titleCase(expense.category),
                formatBRL(expense.amount),
                expense.status.label,
                str(len(expense.receipts)),
            )
            for expense in expenses
        ]
        rows.append(('', 'TOTAL', '', '', formatBRL(self.report.total_amount), '', str(self.report.receipt_count)))
        self.table(
            (
                Column('Data', 0.12),
                Column('Descrição', 0.26),
                Column('Beneficiário', 0.16),
                Column('Categoria', 0.13),
                Column('Valor', 0.13, 'right'),
                Column('Status', 0.12),
                Column('Doc.', 0.08, 'center'),
            ),
            rows,
            bold_last_row=True,
        )

    def _build_receipt_extract(self):
        self.heading(SECTION_TITLES[Section.RECEIPT_EXTRACT], Section.RECEIPT_EXTRACT.value)
        expenses = self.report.expenses_by_date_desc()
        if not expenses:
            self.not_recorded()
            return
        self.paragraph(
            'A seguir, cada despesa do período é apresentada com seus dados e os respectivos comprovantes. '
            'Imagens de comprovantes ocupam uma página inteira logo após os dados da despesa.'
        )
        for number, expense in enumerate(expenses, start=1):
            self._expense_extract(number, expense)

    def _expense_extract(self, number: int, expense: ExpenseRecord):
        self.subheading(f'5.{number} DESPESA #{number}')
        self.key_value_box((
            ('Descrição', expense.description or None),
            ('Valor', formatBRL(expense.amount)),
            ('Data', formatDate(expense.expense_date)),
            ('Categoria', titleCase(expense.category)),
            ('Beneficiário', expense.child.full_name),
            ('Status', expense.status.label),
            ('Comprovantes', str(len(expense.receipts))),
        ))
        if not expense.receipts:
            self.placeholder_box(['ATENÇÃO: Nenhum comprovante anexado para esta despesa'], font=FONT_BOLD)
            return
        total = len(expense.receipts)
        for index, receipt in enumerate(expense.receipts, start=1):
            name = receipt.display_name
            uploaded = formatTimestamp(receipt.uploaded_at) or NOT_RECORDED
            self.paragraph(
                f'Comprovante {index} de {total} - Nome: {name} | Tipo: {receipt.file_type or NOT_RECORDED} '
                f'| Upload: {uploaded}',
                size=10.0,
                leading=13.0,
            )
            outcome = self.attachments.get((expense.id, receipt.id))
            if outcome is None:
                outcome = FailedAttachment('not loaded')
            if isinstance(outcome, ImageAttachment):
                self.receipt_page(f'DESPESA #{number} - Comprovante {index} de {total}: {name}', outcome)
            elif isinstance(outcome, OpaqueAttachment):
                self.placeholder_box([f'ARQUIVO: {name}', f'Tipo: {outcome.content_type}',
                                      'Arquivo disponível no sistema (não é uma imagem).'], font=FONT_REGULAR)
            elif isinstance(outcome, MissingAttachment):
                logger.warning('Receipt %s of expense %s has no stored file', receipt.id, expense.id)
                self.warnings.append(f'receipt {receipt.id}: missing')
                self.placeholder_box([f'[SEM ARQUIVO: {name}]'])
            else:
                logger.warning('Receipt %s of expense %s replaced by placeholder: %s', receipt.id, expense.id,
                               outcome.reason)
                self.warnings.append(f'receipt {receipt.id}: {outcome.reason}')
                self.placeholder_box([f'[ERRO: Não foi possível carregar {name}]'])

    def _build_conclusions(self):
        report = self.report
        self.heading(SECTION_TITLES[Section.CONCLUSIONS], Section.CONCLUSIONS.value)
        if report.expense_count:
            self.paragraph(
                f'No período de {self._period_text()} foram comprovados gastos de {formatBRL(report.total_amount)} '
                f'em {report.expense_count} despesa(s) destinadas aos filhos. A documentação apresentada foi '
                f'classificada como {report.compliance.value}, com taxa de {formatPercent(report.documentation_rate)}.'
            )
        else:
            self.paragraph('Não houve despesas registradas no período analisado que permitam conclusões financeiras.')
        self.subheading('Recomendações')
        recommendations = [
            'Manter o registro sistemático das despesas no momento em que ocorrerem.',
            'Anexar o comprovante fiscal correspondente a cada lançamento.',
            'Preservar os documentos originais para eventual apresentação em juízo.',
        ]
        pending = report.status_totals.get(ExpenseStatus.PENDING)
        if pending:
            recommendations.append(
                f'Regularizar as despesas pendentes, que somam {formatBRL(pending)} no período.'
            )
        if report.compliance is not ComplianceRating.EXCELLENT:
            recommendations.append(
                'Aprimorar a documentação das despesas, anexando comprovantes às despesas que ainda não os possuem.'
            )
        self.bullet_list(recommendations)

    def _build_references(self):
        key = Section.REFERENCES.value
        self.heading(SECTION_TITLES[Section.REFERENCES], key)
        for reference in REFERENCES:
            self.paragraph(reference, size=11.0, leading=14.0)
        self.heading('OBSERVAÇÕES LEGAIS', f'{key}.legal_notes', level=1)
        for note in LEGAL_NOTES:
            self.paragraph(note, size=11.0, leading=14.0)

        self.ensure_space(5 * BODY_LEADING)
        self.cursor.y += 2 * BODY_LEADING
        g = self.geometry
        center = g.margins.left + g.content_width / 2.0
        self.page.add(LineOp(x1=center - 60 * MM, y1=self.cursor.y, x2=center + 60 * MM, y2=self.cursor.y))
        self.cursor.y += 4
        self.paragraph(f'Documento gerado eletronicamente pelo {SYSTEM_NAME}', size=10.0, leading=13.0,
                       align='center')
        self.paragraph(f'Data de geração: {formatTimestamp(self.generated_at)}', size=10.0, leading=13.0,
                       align='center')


def compose_document(report: AggregatedReport, context: ReportContext | None = None, **kwargs) -> ComposedDocument:
    return DocumentComposer(report, context, **kwargs).compose()
