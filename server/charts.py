'''Chart rendering for the report.

Series are built from the frozen ``AggregatedReport`` and handed to a
``ChartBackend`` that returns PNG bytes. The composer only ever sees
``RasterImage`` objects, so swapping the raster back end never touches layout.

Styling is print-first: grey-scale palette, hatches on filled areas, serif
text, and every legend/bar label carries the number itself so a black and
white photocopy stays readable.
'''

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from io import BytesIO
from typing import Dict, Iterable, Protocol, Tuple, Union

from aggregation import AggregatedReport, cumulative_series, monthly_totals, moving_average
from formatting import formatBRL, formatPercent, monthLabel, titleCase

logger = logging.getLogger(__name__)

GREYSCALE_PALETTE = (
    '#1A1A1A', '#7F7F7F', '#D9D9D9', '#4D4D4D', '#B3B3B3', '#333333', '#999999', '#F2F2F2',
)
HATCHES = ('', '//', '..', 'xx', '\\\\', '++', 'oo', '--')


class ChartKind(str, Enum):
    PIE = 'pie'
    LINE = 'line'
    BAR = 'bar'
    TREND = 'trend'


class ChartDataError(ValueError):
    '''Raised when a chart has nothing to plot.'''


@dataclass(frozen=True)
class ChartStyle:
    dpi: int = 200
    width_in: float = 7.0
    height_in: float = 4.0
    font_family: str = 'serif'
    font_size: float = 9.0
    palette: Tuple[str, ...] = GREYSCALE_PALETTE
    hatches: Tuple[str, ...] = HATCHES
    line_color: str = '#000000'
    secondary_color: str = '#6B6B6B'


@dataclass(frozen=True)
class ChartSeries:
    kind: ChartKind
    title: str
    labels: Tuple[str, ...] = ()
    values: Tuple[float, ...] = ()
    secondary: Tuple[float, ...] = ()
    legend: Tuple[str, ...] = ()
    dates: Tuple[date, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.values or not any(self.values)


@dataclass(frozen=True)
class ChartSpec:
    series: ChartSeries
    style: ChartStyle = field(default_factory=ChartStyle)


@dataclass(frozen=True)
class RasterImage:
    data: bytes
    width: int
    height: int
    content_type: str = 'image/png'


class ChartBackend(Protocol):
    def render_to_raster(self, spec: ChartSpec) -> bytes:  # pragma: no cover - interface
        ...


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------
CHART_TITLES = {
    ChartKind.PIE: 'Distribuição por categoria',
    ChartKind.LINE: 'Gastos acumulados no período',
    ChartKind.BAR: 'Totais mensais',
    ChartKind.TREND: 'Tendência mensal (média móvel de 3 meses)',
}


def build_series(report: AggregatedReport, kind: ChartKind) -> ChartSeries:
    title = CHART_TITLES[kind]
    if kind is ChartKind.PIE:
        shares = report.category_breakdown()
        return ChartSeries(
            kind=kind,
            title=title,
            labels=tuple(titleCase(share.name) for share in shares),
            values=tuple(float(share.amount) for share in shares),
            legend=tuple(
                f'{titleCase(share.name)}: {formatBRL(share.amount)} ({formatPercent(share.percentage)})'
                for share in shares
            ),
        )
    if kind is ChartKind.LINE:
        points = cumulative_series(report.filtered_expenses)
        return ChartSeries(
            kind=kind,
            title=title,
            labels=tuple(day.isoformat() for day, _ in points),
            values=tuple(float(total) for _, total in points),
            dates=tuple(day for day, _ in points),
        )
    months = monthly_totals(report.filtered_expenses)
    amounts = [amount for _, amount in months]
    secondary: Tuple[float, ...] = ()
    if kind is ChartKind.TREND:
        secondary = tuple(float(value) for value in moving_average(amounts))
    return ChartSeries(
        kind=kind,
        title=title,
        labels=tuple(monthLabel(month) for month, _ in months),
        values=tuple(float(amount) for amount in amounts),
        secondary=secondary,
        dates=tuple(month for month, _ in months),
    )


def render_chart(kind: ChartKind, series: ChartSeries, style: ChartStyle | None = None,
                 backend: ChartBackend | None = None) -> RasterImage:
    '''Render ``series`` to a raster image; raises on empty data or back-end failure.'''
    if series.kind is not kind:
        raise ValueError(f'Series is {series.kind.value}, expected {kind.value}')
    if series.is_empty:
        raise ChartDataError(f'No data for {kind.value} chart')
    backend = backend or MatplotlibChartBackend()
    data = backend.render_to_raster(ChartSpec(series=series, style=style or ChartStyle()))
    width, height = _raster_size(data)
    return RasterImage(data=data, width=width, height=height)


@dataclass(frozen=True)
class ChartFailure:
    kind: ChartKind
    reason: str
    no_data: bool = False


ChartOutcome = Union[RasterImage, ChartFailure]


def render_charts(report: AggregatedReport, style: ChartStyle | None = None, backend: ChartBackend | None = None,
                  kinds: Iterable[ChartKind] = tuple(ChartKind)) -> Dict[ChartKind, ChartOutcome]:
    '''Render every chart kind; a failing chart yields a ``ChartFailure`` instead of raising.'''
    backend = backend or MatplotlibChartBackend()
    outcomes: Dict[ChartKind, ChartOutcome] = {}
    for kind in kinds:
        try:
            outcomes[kind] = render_chart(kind, build_series(report, kind), style, backend)
        except ChartDataError as exc:
            outcomes[kind] = ChartFailure(kind=kind, reason=str(exc), no_data=True)
        except Exception as exc:
            logger.warning('Chart %s could not be rendered: %s', kind.value, exc, exc_info=True)
            outcomes[kind] = ChartFailure(kind=kind, reason=f'{type(exc).__name__}: {exc}')
    return outcomes


def _raster_size(data: bytes) -> Tuple[int, int]:
    from PIL import Image

    with Image.open(BytesIO(data)) as image:
        return image.size


# ---------------------------------------------------------------------------
# matplotlib back end
# ---------------------------------------------------------------------------
class MatplotlibChartBackend:
    '''Agg raster back end using matplotlib's object API (no pyplot state).'''

    def render_to_raster(self, spec: ChartSpec) -> bytes:
        import matplotlib
        from matplotlib.backends.backend_agg import FigureCanvasAgg
        from matplotlib.figure import Figure

        style = spec.style
        series = spec.series
        rc = {
            'font.family': style.font_family,
            'font.size': style.font_size,
            'axes.edgecolor': style.line_color,
            'hatch.color': style.line_color,
            'hatch.linewidth': 0.6,
            'svg.hashsalt': 'report',
        }
        with matplotlib.rc_context(rc):
            figure = Figure(figsize=(style.width_in, style.height_in), dpi=style.dpi)
            FigureCanvasAgg(figure)
            axes = figure.add_subplot(1, 1, 1)
            draw = {
                ChartKind.PIE: self._draw_pie,
                ChartKind.LINE: self._draw_line,
                ChartKind.BAR: self._draw_bar,
                ChartKind.TREND: self._draw_trend,
            }[series.kind]
            draw(axes, series, style)
            axes.set_title(series.title, fontweight='bold')
            buffer = BytesIO()
            figure.savefig(
                buffer,
                format='png',
                dpi=style.dpi,
                bbox_inches='tight',
                pad_inches=0.15,
                facecolor='white',
                metadata={'Software': None},
            )
        return buffer.getvalue()

    @staticmethod
    def _money_axis(axis):
        from matplotlib.ticker import FuncFormatter

        axis.set_major_formatter(FuncFormatter(lambda value, _pos: formatBRL(value)))

    def _draw_pie(self, axes, series: ChartSeries, style: ChartStyle):
        colours = [style.palette[i % len(style.palette)] for i in range(len(series.values))]
        wedges, _texts = axes.pie(
            series.values,
            colors=colours,
            startangle=90,
            counterclock=False,
            wedgeprops={'edgecolor': style.line_color, 'linewidth': 0.8},
        )
        for index, wedge in enumerate(wedges):
            wedge.set_hatch(style.hatches[index % len(style.hatches)])
        axes.axis('equal')
        axes.legend(
            wedges,
            series.legend or series.labels,
            loc='center left',
            bbox_to_anchor=(1.0, 0.5),
            frameon=False,
        )

    def _draw_line(self, axes, series: ChartSeries, style: ChartStyle):
        from matplotlib import dates as mdates

        axes.plot(series.dates, series.values, color=style.line_color, marker='o', markersize=3, linewidth=1.4)
        axes.xaxis.set_major_locator(mdates.MonthLocator())
        axes.xaxis.set_major_formatter(mdates.DateFormatter('%m/%Y'))
        axes.set_xlabel('Mês')
        self._money_axis(axes.yaxis)
        axes.grid(axis='y', linestyle=':', linewidth=0.6, color=style.secondary_color)
        last_day, last_value = series.dates[-1], series.values[-1]
        axes.annotate(formatBRL(last_value), (last_day, last_value), textcoords='offset points',
                      xytext=(0, 6), ha='right')

    def _draw_bar(self, axes, series: ChartSeries, style: ChartStyle):
        positions = list(range(len(series.values)))
        bars = axes.bar(
            positions,
            series.values,
            color=style.palette[2],
            edgecolor=style.line_color,
            linewidth=0.8,
            hatch=style.hatches[1],
        )
        axes.set_xticks(positions)
        axes.set_xticklabels(series.labels)
        for bar, value in zip(bars, series.values):
            axes.text(bar.get_x() + bar.get_width() / 2.0, bar.get_height(), formatBRL(value),
                      ha='center', va='bottom', fontsize=style.font_size - 1.5)
        axes.set_ylim(0, max(series.values) * 1.18)
        self._money_axis(axes.yaxis)
        axes.grid(axis='y', linestyle=':', linewidth=0.6, color=style.secondary_color)

    def _draw_trend(self, axes, series: ChartSeries, style: ChartStyle):
        positions = list(range(len(series.values)))
        axes.plot(positions, series.values, color=style.line_color, marker='o', linewidth=1.4,
                  label='Total mensal')
        axes.plot(positions, series.secondary, color=style.secondary_color, marker='s', linestyle='--',
                  linewidth=1.4, label='Média móvel (3 meses)')
        for x, value in zip(positions, series.values):
            axes.annotate(formatBRL(value), (x, value), textcoords='offset points', xytext=(0, 6),
                          ha='center', fontsize=style.font_size - 1.5)
        axes.set_xticks(positions)
        axes.set_xticklabels(series.labels)
        self._money_axis(axes.yaxis)
        axes.legend(loc='upper left', frameon=False)
        axes.grid(axis='y', linestyle=':', linewidth=0.6, color=style.secondary_color)
