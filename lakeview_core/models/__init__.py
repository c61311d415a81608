"""
Models module initialization - lake population, upload and water-quality models
"""

from .population_heatmap import PopulationHeatmapModel, HeatmapResult
from .spatial_upload import SpatialFileParser, ParsedSpatialFile, LayerUploadWizard
from .stats_pivot import StatisticsPivotModel, MonthlyPivot, ParameterSummary
from .water_quality import WaterQualityEvaluator, Evaluation

__all__ = [
    'PopulationHeatmapModel',
    'HeatmapResult',
    'SpatialFileParser',
    'ParsedSpatialFile',
    'LayerUploadWizard',
    'StatisticsPivotModel',
    'MonthlyPivot',
    'ParameterSummary',
    'WaterQualityEvaluator',
    'Evaluation',
]
