'''Page model shared by the composer, the TOC resolver and the PDF renderer.

A composed document is a list of pages, each a display list of drawing
operations in points with the origin at the top-left corner of the page
(y grows downwards, like the composer's cursor). Nothing is written to a PDF
until the resolver has inserted the table of contents and stamped the page
numbers, so page insertion is a list operation rather than a re-layout.
'''

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Tuple, Union

MM = 72.0 / 25.4
A4_WIDTH = 210 * MM
A4_HEIGHT = 297 * MM

FONT_REGULAR = 'Times-Roman'
FONT_BOLD = 'Times-Bold'
FONT_ITALIC = 'Times-Italic'
FONT_BOLD_ITALIC = 'Times-BoldItalic'

BLACK = (0.0, 0.0, 0.0)
WHITE = (1.0, 1.0, 1.0)
GREY = (0.45, 0.45, 0.45)
LIGHT_GREY = (0.92, 0.92, 0.92)

# Page-number stamp, top-right of every numbered page. The patch is opaque, so
# nothing else may be drawn inside the stamp zone.
STAMP_SIZE = 10.0
STAMP_BASELINE = 20 * MM
STAMP_PATCH_WIDTH = 25 * MM
STAMP_PATCH_HEIGHT = 9 * MM
STAMP_PATCH_TOP = STAMP_BASELINE - STAMP_SIZE - 2 * MM
STAMP_ZONE_BOTTOM = STAMP_PATCH_TOP + STAMP_PATCH_HEIGHT


@dataclass(frozen=True)
class Margins:
    top: float = 30 * MM
    bottom: float = 20 * MM
    left: float = 30 * MM
    right: float = 20 * MM


@dataclass(frozen=True)
class PageGeometry:
    width: float = A4_WIDTH
    height: float = A4_HEIGHT
    margins: Margins = field(default_factory=Margins)

    @property
    def content_width(self) -> float:
        return self.width - self.margins.left - self.margins.right

    @property
    def content_top(self) -> float:
        return self.margins.top

    @property
    def content_bottom(self) -> float:
        return self.height - self.margins.bottom


# ---------------------------------------------------------------------------
# Drawing operations
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TextOp:
    '''Single line of text; ``y`` is the baseline.'''

    x: float
    y: float
    text: str
    font: str = FONT_REGULAR
    size: float = 12.0
    align: str = 'left'
    color: Tuple[float, float, float] = BLACK
    anchor: str | None = None


@dataclass(frozen=True)
class RectOp:
    '''Rectangle whose top-left corner is (x, y).'''

    x: float
    y: float
    width: float
    height: float
    stroke: Tuple[float, float, float] | None = BLACK
    fill: Tuple[float, float, float] | None = None
    line_width: float = 0.5


@dataclass(frozen=True)
class LineOp:
    x1: float
    y1: float
    x2: float
    y2: float
    color: Tuple[float, float, float] = BLACK
    line_width: float = 0.5


@dataclass(frozen=True)
class ImageOp:
    '''Raster image drawn in the box whose top-left corner is (x, y).'''

    x: float
    y: float
    width: float
    height: float
    data: bytes
    anchor: str | None = None


DrawOp = Union[TextOp, RectOp, LineOp, ImageOp]


@dataclass
class Page:
    ops: List[DrawOp] = field(default_factory=list)
    numbered: bool = True
    kind: str = 'body'
    section: str | None = None
    display_number: int | None = None
    stamp: Tuple[DrawOp, ...] = ()

    def add(self, op: DrawOp):
        self.ops.append(op)

    def all_ops(self) -> List[DrawOp]:
        '''Content followed by the page-number stamp, in paint order.'''
        return list(self.ops) + list(self.stamp)

    def anchors(self) -> List[str]:
        return [op.anchor for op in self.ops if getattr(op, 'anchor', None)]

    def copy(self) -> 'Page':
        return replace(self, ops=list(self.ops))


@dataclass(frozen=True)
class TocEntry:
    key: str
    title: str
    level: int = 0
    page_number: int | None = None
    physical_index: int | None = None


@dataclass
class ComposedDocument:
    pages: List[Page]
    geometry: PageGeometry
    section_page_map: Mapping[str, int]
    toc_entries: Tuple[TocEntry, ...] = ()
    first_numbered_index: int = 0
    title: str = ''
    resolved: bool = False

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def page_of_anchor(self, key: str) -> int | None:
        for index, page in enumerate(self.pages):
            if key in page.anchors():
                return index
        return None

    def anchor_index(self) -> Dict[str, int]:
        found: Dict[str, int] = {}
        for index, page in enumerate(self.pages):
            for key in page.anchors():
                found.setdefault(key, index)
        return found
