'''Replays a resolved page model onto a reportlab canvas.

The canvas is created with ``invariant=1`` so the same document always yields
the same bytes (no creation timestamp, fixed document id). Page model
coordinates are top-down; PDF space is bottom-up, hence the flips below.
'''

from __future__ import annotations

import logging
from io import BytesIO

from document import ComposedDocument, ImageOp, LineOp, RectOp, TextOp
from errors import DocumentInitError

logger = logging.getLogger(__name__)

PDF_CREATOR = 'Sistema de Gestão Financeira para Filhos de Pais Divorciados'


def _draw_text(pdf, op: TextOp, page_height: float):
    y = page_height - op.y
    pdf.setFont(op.font, op.size)
    pdf.setFillColorRGB(*op.color)
    if op.align == 'right':
        pdf.drawRightString(op.x, y, op.text)
    elif op.align == 'center':
        pdf.drawCentredString(op.x, y, op.text)
    else:
        pdf.drawString(op.x, y, op.text)
    if op.anchor:
        pdf.bookmarkHorizontal(op.anchor, 0, y + op.size)


def _draw_rect(pdf, op: RectOp, page_height: float):
    pdf.setLineWidth(op.line_width)
    if op.stroke is not None:
        pdf.setStrokeColorRGB(*op.stroke)
    if op.fill is not None:
        pdf.setFillColorRGB(*op.fill)
    pdf.rect(op.x, page_height - op.y - op.height, op.width, op.height,
             stroke=1 if op.stroke is not None else 0, fill=1 if op.fill is not None else 0)


def _draw_line(pdf, op: LineOp, page_height: float):
    pdf.setLineWidth(op.line_width)
    pdf.setStrokeColorRGB(*op.color)
    pdf.line(op.x1, page_height - op.y1, op.x2, page_height - op.y2)


def _draw_image(pdf, op: ImageOp, page_height: float, image_reader):
    pdf.drawImage(image_reader(BytesIO(op.data)), op.x, page_height - op.y - op.height, op.width, op.height)
    if op.anchor:
        pdf.bookmarkHorizontal(op.anchor, 0, page_height - op.y)


def render_pdf(document: ComposedDocument) -> bytes:
    '''Render ``document`` to PDF bytes; the document should already be resolved.'''
    try:
        from reportlab.lib.utils import ImageReader
        from reportlab.pdfgen import canvas
    except Exception as exc:
        raise DocumentInitError(
            'PDF generation requires reportlab. Install it: pip install reportlab'
        ) from exc

    if not document.resolved:
        logger.warning('Rendering a document without TOC or page numbers')

    geometry = document.geometry
    buf = BytesIO()
    try:
        pdf = canvas.Canvas(buf, pagesize=(geometry.width, geometry.height), invariant=1, pageCompression=1)
    except Exception as exc:
        raise DocumentInitError(f'Could not initialise PDF canvas: {exc}') from exc
    pdf.setTitle(document.title)
    pdf.setCreator(PDF_CREATOR)

    page_height = geometry.height
    for page in document.pages:
        for op in page.all_ops():
            pdf.saveState()
            if isinstance(op, TextOp):
                _draw_text(pdf, op, page_height)
            elif isinstance(op, RectOp):
                _draw_rect(pdf, op, page_height)
            elif isinstance(op, LineOp):
                _draw_line(pdf, op, page_height)
            elif isinstance(op, ImageOp):
                _draw_image(pdf, op, page_height, ImageReader)
            pdf.restoreState()
        pdf.showPage()

    known = document.anchor_index()
    for entry in document.toc_entries:
        if entry.key in known:
            pdf.addOutlineEntry(entry.title, entry.key, level=entry.level, closed=False)
    pdf.save()
    return buf.getvalue()
