"""
LAKEVIEW MAIN ORCHESTRATOR
Lake water-quality, spatial layer and population-exposure tooling for LakeView PH

Commands:
    lakeview heatmap   --csv pop.csv --lake lake.geojson --distance-km 2
    lakeview summary   --events events.json --station S1 --year 2024
    lakeview normalize --file layer.zip [--srid 32651] [--publish ...]
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from lakeview_core.models.population_heatmap import PopulationHeatmapModel
from lakeview_core.models.spatial_upload import SpatialFileParser, LayerUploadWizard, normalize_geometry
from lakeview_core.models.stats_pivot import StatisticsPivotModel
from lakeview_core.reports.html_generator import MapReportGenerator, DataSummaryReportGenerator
from lakeview_core.data_sources import LakeViewApiClient, NominatimClient, pluck
from lakeview_core.utils.core import (
    AnalysisResult, ApiError, ReportExporter, SpatialFileError, WizardValidationError
)
from lakeview_core.utils.geo_processor import GeoProcessor
from lakeview_core.config.settings import (
    OUTPUT_DIR, REPORTS_DIR, EXPORTS_DIR, DEFAULT_SRID, HEATMAP_DEFAULT_DISTANCE_KM,
    LAYER_BODY_TYPES, LAYER_VISIBILITY_OPTIONS
)

logger = logging.getLogger(__name__)


def _slug(text: str) -> str:
    return ''.join(ch if ch.isalnum() else '_' for ch in str(text)).strip('_') or 'lake'


class LakeViewAnalyzer:
    """
    Main orchestrator for LakeView analyses
    Coordinates the models, the backend client and report generation
    """

    def __init__(self, client: Optional[LakeViewApiClient] = None,
                 nominatim: Optional[NominatimClient] = None):
        self.logger = logging.getLogger(__name__)

        self.heatmap_model = PopulationHeatmapModel()
        self.pivot_model = StatisticsPivotModel()
        self.parser = SpatialFileParser()

        self.map_generator = MapReportGenerator()
        self.summary_generator = DataSummaryReportGenerator()
        self.report_exporter = ReportExporter()

        self._client = client
        self._nominatim = nominatim

    @property
    def client(self) -> LakeViewApiClient:
        if self._client is None:
            self._client = LakeViewApiClient()
        return self._client

    @property
    def nominatim(self) -> NominatimClient:
        if self._nominatim is None:
            self._nominatim = NominatimClient()
        return self._nominatim

    # ------------------------------------------------------------------ inputs

    def load_geometry_file(self, path: Path, srid: Optional[int] = None):
        """Any supported spatial file -> single EPSG:4326 geometry (union of polygons)"""
        parsed = self.parser.parse(path)
        source = srid or parsed.source_epsg
        if source is None:
            raise SpatialFileError(f"{parsed.filename}: source CRS unknown; pass --srid")
        shapes = [GeoProcessor.to_shape(normalize_geometry(f, source)) for f in parsed.features]
        return GeoProcessor.union(shapes)

    def lake_geometry(self, lake_id: Any) -> Dict[str, Any]:
        """Lake geometry from the backend, else a Nominatim search by lake name"""
        lake = self.client.fetch_lake(lake_id)
        geometry = lake.get('geometry') or lake.get('geom_geojson')
        if isinstance(geometry, str):
            geometry = json.loads(geometry)
        if geometry:
            return {'name': lake.get('name') or '', 'geometry': geometry}

        self.logger.warning(f"Lake {lake_id} has no stored geometry; searching Nominatim")
        feature = self.nominatim.search_lake_geometry(lake.get('name') or '')
        if feature is None:
            raise ValueError(f"No geometry available for lake {lake_id}")
        return {'name': lake.get('name') or '', 'geometry': feature['geometry']}

    # ------------------------------------------------------------------ analyses

    def population_heatmap(self, csv_path: Path, lake_geometry: Any = None,
                           distance_km: float = HEATMAP_DEFAULT_DISTANCE_KM,
                           lake_name: str = '',
                           generate_map: bool = True,
                           output_folder: Optional[Path] = None) -> AnalysisResult:
        output_folder = output_folder or OUTPUT_DIR / 'population_heatmap'

        result = self.heatmap_model.compute(csv_path, lake_geometry, distance_km)
        analysis = self.heatmap_model.to_analysis_result(result, lake_geometry, lake_name)

        ok, errors = analysis.validate()
        if not ok:
            self.logger.warning(f"Heatmap result failed validation: {errors}")

        slug = _slug(lake_name)
        self.report_exporter.to_json(analysis, output_folder / f"{slug}_population.json")
        if generate_map:
            m = self.map_generator.heatmap_map(result, lake_geometry, lake_name)
            self.map_generator.save(m, f"{slug}_population_heatmap.html", output_folder)

        self.logger.info(f"Population within {distance_km}km of {lake_name or 'lake'}: "
                         f"{result.population_total:,}")
        return analysis

    def data_summary(self, events: List[Dict[str, Any]], station: str,
                     year: Optional[str] = None,
                     parameter_thresholds: Optional[Dict[str, Dict[str, Any]]] = None,
                     meta: Optional[Dict[str, Any]] = None,
                     export_csv: bool = True,
                     export_excel: bool = False,
                     output_folder: Optional[Path] = None) -> Dict[str, Any]:
        output_folder = output_folder or REPORTS_DIR
        year = year or self.pivot_model.latest_year(events, station)

        pivot = self.pivot_model.monthly_pivot(events, station, year)
        summaries = self.pivot_model.yearly_summary(pivot, parameter_thresholds)

        station_name = next(
            (s['name'] for s in self.pivot_model.station_options(events) if s['id'] == str(station)),
            str(station)
        )
        meta = {'year': year, 'station_name': station_name, **(meta or {})}
        slug = _slug(f"{station_name}_{year or 'all'}")

        outputs: Dict[str, Any] = {'pivot': pivot, 'summaries': summaries}
        outputs['report'] = self.summary_generator.generate_report(
            pivot, summaries, meta, output_folder, f"data_summary_{slug}.html"
        )
        if export_csv:
            csv_path = output_folder / f"data_summary_{slug}.csv"
            self.report_exporter.to_csv(pd.DataFrame(self.pivot_model.pivot_to_csv_rows(pivot),
                                                     columns=['parameter', 'month', 'value']), csv_path)
            outputs['csv'] = csv_path
        if export_excel:
            xlsx_path = output_folder / f"data_summary_{slug}.xlsx"
            self.report_exporter.to_excel({
                'Monthly': self.pivot_model.pivot_to_frame(pivot),
                'Summary': self.pivot_model.summary_to_frame(summaries),
            }, xlsx_path)
            outputs['excel'] = xlsx_path
        return outputs

    def normalize_layer(self, path: Path, srid: Optional[int] = None,
                        feature_index: Optional[int] = None,
                        output_folder: Optional[Path] = None) -> LayerUploadWizard:
        """Run the upload wizard up to the CRS step and export the normalized geometry"""
        output_folder = output_folder or EXPORTS_DIR
        wizard = LayerUploadWizard()
        wizard.load_file(path)
        if wizard.needs_choice:
            wizard.choose_feature(feature_index if feature_index is not None else 0)
        if srid is not None:
            wizard.set_source_srid(srid)
        wizard.validate_step('crs')

        stem = _slug(Path(path).stem)
        feature = {'type': 'Feature', 'properties': {'name': wizard.name, 'source_srid': wizard.source_srid},
                   'geometry': wizard.preview_geometry}
        self.report_exporter.to_geojson([feature], output_folder / f"{stem}_{DEFAULT_SRID}.geojson")
        m = self.map_generator.layer_preview_map(wizard.preview_geometry, wizard.name)
        self.map_generator.save(m, f"{stem}_preview.html", output_folder)
        return wizard


def _load_events(path: Path) -> List[Dict[str, Any]]:
    with open(path, 'r', encoding='utf-8') as f:
        return pluck(json.load(f))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='lakeview', description='LakeView PH data tools')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    heat = sub.add_parser('heatmap', help='population around a lake')
    heat.add_argument('--csv', required=True, type=Path, help='X/Y/Z population points')
    lake = heat.add_mutually_exclusive_group()
    lake.add_argument('--lake', type=Path, help='lake polygon file (.geojson/.kml/.zip/.gpkg)')
    lake.add_argument('--lake-id', help='fetch the lake geometry from the API')
    heat.add_argument('--distance-km', type=float, default=HEATMAP_DEFAULT_DISTANCE_KM)
    heat.add_argument('--name', default='', help='lake name for titles')
    heat.add_argument('--no-map', action='store_true')

    summ = sub.add_parser('summary', help='monthly data summary for a station')
    events = summ.add_mutually_exclusive_group(required=True)
    events.add_argument('--events', type=Path, help='sample events JSON file')
    events.add_argument('--lake-id', help='fetch public sample events from the API')
    summ.add_argument('--org-id', help='dataset source (organization) id')
    summ.add_argument('--station', required=True, help='station id or name')
    summ.add_argument('--year', help='defaults to the station\'s latest year')
    summ.add_argument('--excel', action='store_true', help='also write an .xlsx workbook')

    norm = sub.add_parser('normalize', help='normalize a spatial file to an EPSG:4326 MultiPolygon')
    norm.add_argument('--file', required=True, type=Path)
    norm.add_argument('--srid', type=int, help='source EPSG code when not declared in the file')
    norm.add_argument('--feature', type=int, help='feature index when the file has several polygons')
    norm.add_argument('--publish', action='store_true', help='publish the layer through the API')
    norm.add_argument('--body-type', choices=LAYER_BODY_TYPES, default='lake')
    norm.add_argument('--body-id')
    norm.add_argument('--name')
    norm.add_argument('--category', default='')
    norm.add_argument('--notes', default='')
    norm.add_argument('--visibility', choices=LAYER_VISIBILITY_OPTIONS, default=LAYER_VISIBILITY_OPTIONS[0])
    norm.add_argument('--downloadable', action='store_true')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function"""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    analyzer = LakeViewAnalyzer()

    try:
        if args.command == 'heatmap':
            geometry, name = None, args.name
            if args.lake:
                geometry = analyzer.load_geometry_file(args.lake)
            elif args.lake_id:
                lake = analyzer.lake_geometry(args.lake_id)
                geometry, name = lake['geometry'], name or lake['name']
            result = analyzer.population_heatmap(args.csv, geometry, args.distance_km, name,
                                                 generate_map=not args.no_map)
            print(result.to_json())

        elif args.command == 'summary':
            if args.events:
                events = _load_events(args.events)
            else:
                events = analyzer.client.sample_events(args.lake_id, args.org_id)
            outputs = analyzer.data_summary(events, args.station, args.year, export_excel=args.excel)
            for summary in outputs['summaries']:
                print(f"{summary.label:30s} avg={summary.average} ({summary.average_method}) "
                      f"median={summary.median} compliance={summary.compliance_label}")
            print(f"Report: {outputs['report']}")

        elif args.command == 'normalize':
            wizard = analyzer.normalize_layer(args.file, args.srid, args.feature)
            if args.publish:
                wizard.set_target(args.body_type, args.body_id)
                wizard.set_metadata(args.name or wizard.name, args.category, args.notes,
                                    args.visibility, args.downloadable)
                layer = wizard.publish(analyzer.client)
                print(json.dumps(layer, indent=2, default=str))
            else:
                print(json.dumps({'name': wizard.name, 'source_srid': wizard.source_srid,
                                  'geometry': wizard.preview_geometry}, default=str))

    except (SpatialFileError, WizardValidationError, ApiError, ValueError) as e:
        logger.error(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
