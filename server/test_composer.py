import sys
import unittest
from datetime import date, datetime
from io import BytesIO
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from PIL import Image

from aggregation import aggregate
from attachments import FailedAttachment, ImageAttachment, MissingAttachment, OpaqueAttachment
from charts import ChartFailure, ChartKind, RasterImage
from composer import (
    CELL_PADDING,
    FRONT_MATTER,
    NO_CHART_DATA,
    TABLE_LEADING,
    Column,
    DocumentComposer,
    Section,
)
from document import FONT_BOLD, ImageOp, RectOp, TextOp
from records import (
    NOT_RECORDED,
    ChildRecord,
    LawyerRecord,
    LegalCaseRecord,
    ParentRecord,
    ReportContext,
    ReportFilter,
    ReportPeriod,
)
from test_aggregation import SCENARIO, expense

GENERATED_AT = datetime(2024, 3, 9, 14, 30)
PERIOD = ReportFilter(period=ReportPeriod(date(2024, 1, 1), date(2024, 2, 28)))


def png(size=(700, 400)):
    buf = BytesIO()
    Image.new('RGB', size, 'white').save(buf, format='PNG')
    return RasterImage(data=buf.getvalue(), width=size[0], height=size[1])


def jpeg_attachment(size):
    buf = BytesIO()
    Image.new('RGB', size, (90, 90, 90)).save(buf, format='JPEG')
    return ImageAttachment(data=buf.getvalue(), content_type='image/jpeg', width=size[0], height=size[1])


def sample_context():
    return ReportContext(
        children=(ChildRecord(id='c1', first_name='Ana', last_name='Silva', date_of_birth=date(2015, 3, 10)),),
        parents=(ParentRecord(id='p1', full_name='Carla Silva', relationship='mãe', email='carla@example.com'),),
        lawyers=(LawyerRecord(id='l1', full_name='Dr. Paulo Souza', oab_number='123456', oab_state='SP'),),
        legal_cases=(
            LegalCaseRecord(id='k1', case_type='divorcio', status='concluído', case_number='0001-OLD'),
            LegalCaseRecord(id='k2', case_type='guarda', status='em_andamento', case_number='0002-ACTIVE',
                            visitation_schedule='Fins de semana alternados'),
        ),
    )


def all_charts():
    return {kind: png() for kind in ChartKind}


def compose(data=SCENARIO, *, context=None, charts=None, attachments=None, report_filter=PERIOD):
    report = aggregate(data, report_filter)
    composer = DocumentComposer(
        report,
        context if context is not None else sample_context(),
        charts=all_charts() if charts is None else charts,
        attachments=attachments or {},
        generated_at=GENERATED_AT,
    )
    return composer, composer.compose()


def texts(document, page_index=None):
    pages = document.pages if page_index is None else [document.pages[page_index]]
    return [op.text for page in pages for op in page.ops if isinstance(op, TextOp)]


class SectionOrderTest(unittest.TestCase):
    def test_every_section_starts_a_page_in_order(self):
        _, document = compose()
        starts = [document.section_page_map[section.value] for section in Section]
        self.assertEqual(starts, sorted(starts))
        self.assertEqual(len(set(starts)), len(starts))
        for section, index in zip(Section, starts):
            page = document.pages[index]
            self.assertEqual(page.kind, 'section')
            self.assertIn(section.value, page.anchors())

    def test_front_matter_is_unnumbered(self):
        _, document = compose()
        for section in Section:
            page = document.pages[document.section_page_map[section.value]]
            self.assertEqual(page.numbered, section not in FRONT_MATTER)
        self.assertEqual(document.first_numbered_index, document.section_page_map['executive_summary'])

    def test_subsections_are_recorded_and_listed(self):
        _, document = compose()
        keys = [entry.key for entry in document.toc_entries]
        self.assertEqual(keys[0], 'executive_summary')
        self.assertIn('executive_summary.consolidated', keys)
        self.assertIn('financial_analysis.compliance', keys)
        self.assertIn('charts.trend', keys)
        self.assertNotIn('cover', keys)
        for key in keys:
            self.assertIn(key, document.pages[document.section_page_map[key]].anchors())

    def test_composition_is_deterministic(self):
        _, first = compose()
        _, second = compose()
        self.assertEqual(first.page_count, second.page_count)
        self.assertEqual(first.section_page_map, second.section_page_map)
        self.assertEqual([p.ops for p in first.pages], [p.ops for p in second.pages])

    def test_composer_is_single_use(self):
        composer, _ = compose()
        with self.assertRaises(RuntimeError):
            composer.compose()

    def test_section_recorded_once(self):
        composer, _ = compose()
        with self.assertRaises(ValueError):
            composer.record_section('charts')


class ContentTest(unittest.TestCase):
    def test_front_matter_content(self):
        _, document = compose()
        content = texts(document)
        self.assertIn('RELATÓRIO DE PRESTAÇÃO DE CONTAS', content)
        self.assertIn('Período analisado: 01/01/2024 a 28/02/2024', content)
        self.assertIn('Data: março de 2024', content)
        self.assertIn('8 anos', content)
        self.assertIn('123456/SP', content)
        self.assertIn('0002-ACTIVE', content)
        self.assertIn('Fins de semana alternados', content)

    def test_empty_context_prints_placeholder(self):
        _, document = compose(context=ReportContext())
        legal_page = document.section_page_map['legal_context']
        self.assertIn(NOT_RECORDED, texts(document, legal_page))

    def test_empty_report_still_has_every_section(self):
        _, document = compose(data=[], charts={kind: ChartFailure(kind, 'empty', no_data=True) for kind in ChartKind})
        self.assertTrue(set(document.section_page_map).issuperset(s.value for s in Section))
        content = texts(document)
        self.assertIn(NOT_RECORDED, content)
        self.assertEqual(content.count(NO_CHART_DATA), len(ChartKind))

    def test_failed_chart_becomes_placeholder(self):
        charts = all_charts()
        charts[ChartKind.BAR] = ChartFailure(ChartKind.BAR, 'boom')
        del charts[ChartKind.TREND]
        composer, document = compose(charts=charts)
        placeholders = [t for t in texts(document) if 'Não foi possível gerar o gráfico' in t]
        self.assertEqual(len(placeholders), 2)
        self.assertEqual(len([w for w in composer.warnings if w.startswith('chart')]), 2)
        chart_images = [op for page in document.pages for op in page.ops if isinstance(op, ImageOp)]
        self.assertEqual(len(chart_images), 2)

    def test_recommendation_added_below_ninety_percent(self):
        _, document = compose()
        recommendation = [t for t in texts(document) if 'Aprimorar a documentação' in t]
        self.assertTrue(recommendation)

        documented = [expense('x', '2024-01-05', '10', 'lazer', 'pago', receipts=1)]
        _, document = compose(data=documented)
        self.assertFalse([t for t in texts(document) if 'Aprimorar a documentação' in t])

    def test_signature_block(self):
        _, document = compose()
        content = ' '.join(texts(document, len(document.pages) - 1))
        self.assertIn('Documento gerado eletronicamente', content)
        self.assertIn('Data de geração: 09/03/2024 14:30', content)


class ReceiptTest(unittest.TestCase):
    def test_image_receipt_gets_its_own_centred_page(self):
        data = [expense('e1', '2024-01-05', '100.00', 'educação', 'pago', receipts=1)]
        image = jpeg_attachment((1200, 1600))
        composer, document = compose(data=data, attachments={('e1', 'e1-r0'): image})
        receipt_pages = [page for page in document.pages if page.kind == 'receipt']
        self.assertEqual(len(receipt_pages), 1)
        ops = [op for op in receipt_pages[0].ops if isinstance(op, ImageOp)]
        self.assertEqual(len(ops), 1)
        op = ops[0]
        self.assertAlmostEqual(op.width / op.height, 1200 / 1600, places=3)

        caption = [o.text for o in receipt_pages[0].ops if isinstance(o, TextOp)]
        box_x, box_y, box_w, box_h = composer.receipt_image_box(caption)
        self.assertTrue(abs(op.width - box_w) < 0.01 or abs(op.height - box_h) < 0.01)
        self.assertLessEqual(op.width, box_w + 0.01)
        self.assertLessEqual(op.height, box_h + 0.01)
        self.assertAlmostEqual(op.x - box_x, box_x + box_w - (op.x + op.width), places=3)
        self.assertAlmostEqual(op.y - box_y, box_y + box_h - (op.y + op.height), places=3)

    def test_unit_after_receipt_page_starts_new_page(self):
        data = [expense('e1', '2024-01-05', '100.00', 'educação', 'pago', receipts=2)]
        attachments = {('e1', 'e1-r0'): jpeg_attachment((100, 100)), ('e1', 'e1-r1'): jpeg_attachment((100, 100))}
        _, document = compose(data=data, attachments=attachments)
        kinds = [page.kind for page in document.pages]
        first = kinds.index('receipt')
        self.assertEqual(kinds[first + 1], 'body')
        self.assertIn('Comprovante 2 de 2', ' '.join(texts(document, first + 1)))

    def test_receipt_outcomes_degrade_to_placeholders(self):
        data = [
            expense('e1', '2024-01-05', '100.00', 'educação', 'pago', receipts=3),
            expense('e2', '2024-01-06', '10.00', 'lazer', 'pago'),
        ]
        attachments = {
            ('e1', 'e1-r0'): MissingAttachment('receipts/e1-0.jpg'),
            ('e1', 'e1-r1'): FailedAttachment('invalid image'),
            ('e1', 'e1-r2'): OpaqueAttachment(b'%PDF', 'application/pdf'),
        }
        composer, document = compose(data=data, attachments=attachments)
        content = texts(document)
        self.assertIn('[SEM ARQUIVO: documento]', content)
        self.assertIn('[ERRO: Não foi possível carregar documento]', content)
        self.assertIn('ARQUIVO: documento', content)
        self.assertIn('ATENÇÃO: Nenhum comprovante anexado para esta despesa', content)
        self.assertEqual(len(composer.warnings), 2)


class TableLayoutTest(unittest.TestCase):
    def test_row_height_follows_tallest_cell(self):
        composer, _ = compose()
        columns = (Column('A', 0.2), Column('B', 0.8))
        widths = composer.column_widths(columns)
        fonts = ['Times-Roman', 'Times-Roman']
        _, single = composer.layout_row(('x', 'y'), widths, fonts)
        wrapped, tall = composer.layout_row(('palavra ' * 40, 'y'), widths, fonts)
        self.assertEqual(single, TABLE_LEADING + 2 * CELL_PADDING)
        self.assertEqual(tall, len(wrapped[0]) * TABLE_LEADING + 2 * CELL_PADDING)
        self.assertGreater(len(wrapped[0]), 3)
        self.assertEqual(' '.join(' '.join(wrapped[0]).split()), ('palavra ' * 40).strip())

    def test_long_words_are_broken_not_clipped(self):
        composer, _ = compose()
        word = 'x' * 300
        lines = composer.wrap(word, 'Times-Roman', 9, 100)
        self.assertEqual(''.join(lines), word)
        for line in lines:
            self.assertLessEqual(composer.text_width(line, 'Times-Roman', 9), 100)

    def test_header_row_repeats_on_every_table_page(self):
        data = [
            expense(f'e{n}', f'2024-01-{(n % 28) + 1:02d}', '12.50', 'alimentação', 'pago') for n in range(90)
        ]
        _, document = compose(data=data)
        start = document.section_page_map['expense_table']
        end = document.section_page_map['receipt_extract']
        self.assertGreater(end - start, 1)
        for index in range(start, end):
            headers = [op for op in document.pages[index].ops
                       if isinstance(op, TextOp) and op.text == 'Descrição' and op.font == FONT_BOLD]
            self.assertEqual(len(headers), 1, f'page {index}')

    def test_text_never_crosses_bottom_margin(self):
        data = [expense(f'e{n}', '2024-01-10', '12.50', 'alimentação', 'pago', receipts=1) for n in range(30)]
        _, document = compose(data=data)
        limit = document.geometry.content_bottom + 0.01
        for page in document.pages:
            if page.kind == 'receipt':
                continue
            for op in page.ops:
                if isinstance(op, TextOp):
                    self.assertLessEqual(op.y, limit, op.text)

    def assert_inside_content_area(self, geometry, pages):
        limit = geometry.content_bottom + 0.01
        for page in pages:
            for op in page.ops:
                if isinstance(op, TextOp):
                    self.assertLessEqual(op.y, limit, op.text)
                elif isinstance(op, RectOp):
                    self.assertLessEqual(op.y + op.height, limit)

    def test_row_taller_than_a_page_is_split_across_pages(self):
        record = expense('e1', '2024-01-10', '12.50', 'alimentação', 'pago')
        record['description'] = ('palavra ' * 700).strip()
        _, document = compose(data=[record])

        start = document.section_page_map['expense_table']
        end = document.section_page_map['receipt_extract']
        table_pages = document.pages[start:end]
        self.assertGreater(len(table_pages), 2)
        self.assert_inside_content_area(document.geometry, table_pages)
        for index, page in enumerate(table_pages):
            headers = [op for op in page.ops
                       if isinstance(op, TextOp) and op.text == 'Descrição' and op.font == FONT_BOLD]
            self.assertEqual(len(headers), 1, f'page {start + index}')
        words = [word for page in table_pages for op in page.ops if isinstance(op, TextOp)
                 for word in op.text.split()]
        self.assertEqual(words.count('palavra'), 700)
        self.assertIn('TOTAL', words)

        extract_pages = document.pages[end:document.section_page_map['conclusions']]
        self.assert_inside_content_area(document.geometry, extract_pages)
        words = [word for page in extract_pages for op in page.ops if isinstance(op, TextOp)
                 for word in op.text.split()]
        self.assertEqual(words.count('palavra'), 700)

    def test_placeholder_taller_than_a_page_continues_on_next_page(self):
        composer, _ = compose()
        first = composer.cursor.page_index
        composer.placeholder_box([('palavra ' * 3000).strip()])
        pages = composer.pages[first:]
        self.assertGreater(len(pages), 2)
        self.assert_inside_content_area(composer.geometry, pages)
        words = [word for page in pages for op in page.ops if isinstance(op, TextOp) for word in op.text.split()]
        self.assertEqual(words.count('palavra'), 3000)


if __name__ == '__main__':  # pragma: no cover
    unittest.main()
