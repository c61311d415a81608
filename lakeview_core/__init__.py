"""
Package initialization file for LakeView Core
"""

__version__ = "1.0.0"
__description__ = "LakeView PH - lake water-quality, spatial layer and population-exposure tooling"

from lakeview_core.session import AuthSession
from lakeview_core.data_sources import (
    LakeViewApiClient, HttpCache, NominatimClient, GlobalWatershedsClient
)
from lakeview_core.models import (
    PopulationHeatmapModel, SpatialFileParser, LayerUploadWizard,
    StatisticsPivotModel, WaterQualityEvaluator
)
from lakeview_core.reports.html_generator import MapReportGenerator, DataSummaryReportGenerator
from lakeview_core.utils.core import (
    AnalysisResult, ApiError, DataValidator, ReportExporter,
    SpatialFileError, WizardValidationError
)
from lakeview_core.utils.geo_processor import GeoProcessor

__all__ = [
    'AuthSession',
    'LakeViewApiClient',
    'HttpCache',
    'NominatimClient',
    'GlobalWatershedsClient',
    'PopulationHeatmapModel',
    'SpatialFileParser',
    'LayerUploadWizard',
    'StatisticsPivotModel',
    'WaterQualityEvaluator',
    'MapReportGenerator',
    'DataSummaryReportGenerator',
    'AnalysisResult',
    'ApiError',
    'DataValidator',
    'ReportExporter',
    'SpatialFileError',
    'WizardValidationError',
    'GeoProcessor',
]
