import sys
import unittest
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from aggregation import aggregate
from charts import (
    ChartDataError,
    ChartFailure,
    ChartKind,
    ChartSeries,
    ChartStyle,
    MatplotlibChartBackend,
    RasterImage,
    build_series,
    render_chart,
    render_charts,
)
from records import ReportFilter, ReportPeriod
from test_aggregation import SCENARIO

PNG_SIGNATURE = b'\x89PNG\r\n\x1a\n'
SMALL = ChartStyle(dpi=40, width_in=4.0, height_in=2.5)


def scenario_report():
    return aggregate(SCENARIO, ReportFilter(period=ReportPeriod(date(2024, 1, 1), date(2024, 2, 28))))


class BrokenBackend:
    def render_to_raster(self, spec):
        raise RuntimeError('no display')


class SeriesTest(unittest.TestCase):
    def test_pie_legend_embeds_amount_and_percentage(self):
        series = build_series(scenario_report(), ChartKind.PIE)
        self.assertEqual(series.labels, ('Educação', 'Saúde'))
        self.assertEqual(series.values, (300.0, 50.0))
        self.assertEqual(series.legend[0], 'Educação: R$ 300,00 (85,7%)')
        self.assertEqual(series.legend[1], 'Saúde: R$ 50,00 (14,3%)')

    def test_line_is_running_total_by_date(self):
        series = build_series(scenario_report(), ChartKind.LINE)
        self.assertEqual(series.values, (100.0, 150.0, 350.0))
        self.assertEqual(series.dates, (date(2024, 1, 5), date(2024, 1, 20), date(2024, 2, 10)))

    def test_bar_has_one_bar_per_month(self):
        series = build_series(scenario_report(), ChartKind.BAR)
        self.assertEqual(series.labels, ('jan/24', 'fev/24'))
        self.assertEqual(series.values, (150.0, 200.0))

    def test_trend_carries_moving_average(self):
        series = build_series(scenario_report(), ChartKind.TREND)
        self.assertEqual(series.values, (150.0, 200.0))
        self.assertEqual(series.secondary, (150.0, 175.0))


class RenderTest(unittest.TestCase):
    def test_renders_png_for_every_kind(self):
        report = scenario_report()
        backend = MatplotlibChartBackend()
        for kind in ChartKind:
            with self.subTest(kind=kind):
                image = render_chart(kind, build_series(report, kind), SMALL, backend)
                self.assertIsInstance(image, RasterImage)
                self.assertTrue(image.data.startswith(PNG_SIGNATURE))
                self.assertGreater(image.width, 0)
                self.assertGreater(image.height, 0)

    def test_rendering_is_deterministic(self):
        series = build_series(scenario_report(), ChartKind.PIE)
        first = render_chart(ChartKind.PIE, series, SMALL)
        second = render_chart(ChartKind.PIE, series, SMALL)
        self.assertEqual(first.data, second.data)

    def test_empty_series_raises(self):
        with self.assertRaises(ChartDataError):
            render_chart(ChartKind.BAR, ChartSeries(kind=ChartKind.BAR, title='vazio'), SMALL)

    def test_kind_mismatch_raises(self):
        series = build_series(scenario_report(), ChartKind.BAR)
        with self.assertRaises(ValueError):
            render_chart(ChartKind.PIE, series, SMALL)

    def test_render_charts_isolates_failures(self):
        outcomes = render_charts(scenario_report(), SMALL, BrokenBackend())
        self.assertEqual(set(outcomes), set(ChartKind))
        for outcome in outcomes.values():
            self.assertIsInstance(outcome, ChartFailure)
            self.assertFalse(outcome.no_data)
            self.assertIn('no display', outcome.reason)

    def test_render_charts_marks_empty_data(self):
        empty = aggregate([], ReportFilter(period=ReportPeriod(date(2024, 1, 1), date(2024, 1, 31))))
        outcomes = render_charts(empty, SMALL, BrokenBackend())
        self.assertTrue(all(isinstance(o, ChartFailure) and o.no_data for o in outcomes.values()))


if __name__ == '__main__':  # pragma: no cover
    unittest.main()
