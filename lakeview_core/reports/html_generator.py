"""
HTML Report Generator
Population heatmap and layer preview maps (folium / Leaflet) and the
printable water-quality data summary
"""

from html import escape
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

import folium
from folium.plugins import HeatMap

from lakeview_core.config.settings import (
    COLOR_SCHEME, MAP_DEFAULT_ZOOM, MAP_CENTER_DEFAULT, MAP_TILE_PROVIDER,
    MAPS_DIR, REPORTS_DIR, LAKE_OUTLINE_COLOR, WATERSHED_OUTLINE_COLOR,
    HEATMAP_RADIUS, HEATMAP_BLUR, HEATMAP_MAX_ZOOM, HEATMAP_GRADIENT, MONTH_NAMES
)
from lakeview_core.models.population_heatmap import HeatmapResult
from lakeview_core.models.stats_pivot import MonthlyPivot, ParameterSummary
from lakeview_core.models.water_quality import WaterQualityEvaluator
from lakeview_core.utils.geo_processor import GeoProcessor

logger = logging.getLogger(__name__)


def _outline_style(color: str, fill_opacity: float = 0.05):
    return lambda _: {'color': color, 'weight': 2, 'fillColor': color, 'fillOpacity': fill_opacity}


class MapReportGenerator:
    """Interactive folium maps for heatmaps and uploaded layers"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _base_map(geometry: Any = None, zoom: int = MAP_DEFAULT_ZOOM) -> folium.Map:
        m = folium.Map(location=MAP_CENTER_DEFAULT, zoom_start=zoom,
                       tiles=MAP_TILE_PROVIDER, control_scale=True)
        if geometry is not None:
            m.fit_bounds(GeoProcessor.bounds_from_geom(geometry))
        return m

    def heatmap_map(self, result: HeatmapResult, lake_geometry: Any = None,
                    lake_name: str = '') -> folium.Map:
        """Heat layer, invisible tooltip markers and the lake / buffer outlines"""
        m = self._base_map(result.filter_geometry or lake_geometry)

        if result.filter_geometry is not None:
            folium.GeoJson(
                result.filter_geometry.__geo_interface__,
                name=f"{result.distance_km:g} km buffer",
                style_function=lambda _: {'color': '#f59e0b', 'weight': 1, 'dashArray': '4 4', 'fillOpacity': 0},
            ).add_to(m)

        if lake_geometry is not None:
            folium.GeoJson(
                GeoProcessor.to_shape(lake_geometry).__geo_interface__,
                name=lake_name or 'Lake',
                style_function=_outline_style(LAKE_OUTLINE_COLOR, 0.15),
            ).add_to(m)

        HeatMap(
            result.heat_points,
            name='Population',
            radius=HEATMAP_RADIUS,
            blur=HEATMAP_BLUR,
            max_zoom=HEATMAP_MAX_ZOOM,
            gradient=HEATMAP_GRADIENT,
        ).add_to(m)

        markers = folium.FeatureGroup(name='Population values')
        for marker in result.markers():
            folium.CircleMarker(
                location=[marker['lat'], marker['lon']],
                radius=5,
                opacity=0,
                fill_opacity=0,
                tooltip=marker['tooltip'],
            ).add_to(markers)
        markers.add_to(m)

        legend = (
            '<div style="position: fixed; bottom: 24px; left: 24px; z-index: 9999; '
            'background: white; padding: 8px 12px; border-radius: 6px; font: 13px sans-serif;">'
            f'<strong>{escape(lake_name) or "Lake"}</strong><br>'
            f'Population within {result.distance_km:g} km: {result.population_total:,}</div>'
        )
        m.get_root().html.add_child(folium.Element(legend))
        folium.LayerControl(collapsed=True).add_to(m)
        return m

    def layer_preview_map(self, geometry: Any, name: str = '', body_type: str = 'lake') -> folium.Map:
        """Preview of a normalized EPSG:4326 layer geometry"""
        color = WATERSHED_OUTLINE_COLOR if body_type == 'watershed' else LAKE_OUTLINE_COLOR
        m = self._base_map(geometry)
        folium.GeoJson(
            GeoProcessor.to_shape(geometry).__geo_interface__,
            name=name or 'Layer',
            style_function=_outline_style(color, 0.2),
            tooltip=escape(name) if name else None,
        ).add_to(m)
        return m

    def save(self, m: folium.Map, filename: str, output_folder: Optional[Path] = None) -> Path:
        output_folder = output_folder or MAPS_DIR
        output_folder.mkdir(parents=True, exist_ok=True)
        output_file = output_folder / filename
        m.save(str(output_file))
        self.logger.info(f"Map saved: {output_file}")
        return output_file


class DataSummaryReportGenerator:
    """Printable monthly pivot with threshold highlighting and yearly summary"""

    CSS = """
        body { font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; color: #111; margin: 18pt; }
        .pv-header { margin-bottom: 12px; }
        .pv-title { font-size: 16px; font-weight: 700; margin-bottom: 6px; }
        .pv-meta { font-size: 12px; color: #374151; }
        table { width: 100%%; border-collapse: collapse; border: 1px solid #ddd; margin-bottom: 18px; }
        th, td { padding: 6px 8px; border: 1px solid #ddd; }
        thead th { background: #f3f4f6; font-weight: 700; }
        .ds-cell-exceed { background: rgba(239,68,68,0.12); color: %(exceed)s; }
        .ds-cell-ok { background: rgba(16,185,129,0.12); color: %(ok)s; }
        .ds-chip { display: inline-block; font-size: 11px; color: %(neutral)s; margin-left: 6px; }
        @media print { body { margin: 6mm; } }
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.color_scheme = COLOR_SCHEME

    @staticmethod
    def _format_value(value: Any) -> str:
        try:
            return f"{float(value):.2f}"
        except (TypeError, ValueError):
            return escape(str(value if value is not None else ''))

    @staticmethod
    def _threshold_chip(threshold: Optional[Dict[str, Any]], unit: str = '') -> str:
        if not threshold:
            return ''
        lo, hi = threshold.get('min_value'), threshold.get('max_value')
        if lo is not None and hi is not None:
            text = f"{lo}&ndash;{hi}"
        elif hi is not None:
            text = f"&le; {hi}"
        elif lo is not None:
            text = f"&ge; {lo}"
        else:
            return ''
        unit = f" {escape(unit)}" if unit else ''
        return f'<span class="ds-chip">{text}{unit}</span>'

    def render_pivot_table(self, pivot: MonthlyPivot) -> str:
        head = ''.join(f"<th>{MONTH_NAMES[m]}</th>" for m in pivot.months)
        body = ''
        for row in pivot.rows:
            cells = ''
            for cell in row.cells:
                if cell is None:
                    cells += '<td></td>'
                    continue
                cls = WaterQualityEvaluator.threshold_class(cell.value, cell.threshold)
                attr = f' class="ds-cell-{cls}"' if cls else ''
                cells += f"<td{attr}>{self._format_value(cell.value)}</td>"
            label = escape(row.label)
            unit = f" ({escape(row.unit)})" if row.unit else ''
            body += (f"<tr><td>{label}{unit}{self._threshold_chip(row.threshold, row.unit)}</td>"
                     f"{cells}</tr>\n")
        return (f"<table><thead><tr><th>Parameter</th>{head}</tr></thead>"
                f"<tbody>\n{body}</tbody></table>")

    def render_summary_table(self, summaries: List[ParameterSummary]) -> str:
        body = ''
        for s in summaries:
            average = '' if s.average is None else f"{s.average:.2f}"
            if s.average_method == 'geometric':
                average += ' <span class="ds-chip">geometric</span>'
            median = '' if s.median is None else f"{s.median:.2f}"
            body += (f"<tr><td>{escape(s.label)}</td><td>{s.count}</td><td>{average}</td>"
                     f"<td>{median}</td><td>{s.compliance_label}</td></tr>\n")
        return ("<table><thead><tr><th>Parameter</th><th>Samples</th><th>Average</th>"
                f"<th>Median</th><th>Compliance</th></tr></thead><tbody>\n{body}</tbody></table>")

    def render_html(self, pivot: MonthlyPivot, summaries: List[ParameterSummary],
                    meta: Optional[Dict[str, Any]] = None) -> str:
        meta = meta or {}
        title = f'<div class="pv-title">{escape(meta["lake_name"])}</div>' if meta.get('lake_name') else ''
        parts = []
        if meta.get('dataset_name'):
            parts.append(f"Dataset: {escape(str(meta['dataset_name']))}")
        if meta.get('year'):
            parts.append(f"Year: {escape(str(meta['year']))}")
        if meta.get('station_name'):
            parts.append(f"Station: {escape(str(meta['station_name']))}")
        meta_line = f'<div class="pv-meta">{" &middot; ".join(parts)}</div>' if parts else ''

        if pivot.is_empty:
            content = '<p>No samples for this selection.</p>'
        else:
            content = self.render_pivot_table(pivot) + '\n' + self.render_summary_table(summaries)

        css = self.CSS % self.color_scheme
        return (
            '<!doctype html><html><head><meta charset="utf-8"><title>Data Summary</title>'
            f'<style>{css}</style></head><body>'
            f'<div class="pv-header">{title}{meta_line}</div>\n{content}\n</body></html>\n'
        )

    def generate_report(self, pivot: MonthlyPivot, summaries: List[ParameterSummary],
                        meta: Optional[Dict[str, Any]] = None,
                        output_folder: Optional[Path] = None,
                        filename: str = 'data_summary.html') -> Path:
        output_folder = output_folder or REPORTS_DIR
        output_folder.mkdir(parents=True, exist_ok=True)
        output_file = output_folder / filename
        with open(output_file, 'w', encoding='utf-8') as f:
            f.write(self.render_html(pivot, summaries, meta))
        self.logger.info(f"Data summary report generated: {output_file}")
        return output_file
