"""dmbench package."""

from .benchmark.aggregate import (
    ScenarioResult,
    intersection_table,
    metrics_table,
    run_scenarios,
    skipped_table,
    summarize_metrics,
)
from .callers import CallParameters, FisherCaller, FunctionCaller
from .intersections import intersection_sizes
from .metrics import ConfusionMetrics, compute_rates
from .runner import ConfigurationResult, ConfigurationSpec, run_configurations
from .simulation import ScenarioSpec, SimulatedScenario, SiteData
from .sites import SiteKey, SiteUniverse, build_site_universe

__all__ = [
    "CallParameters",
    "ConfigurationResult",
    "ConfigurationSpec",
    "ConfusionMetrics",
    "FisherCaller",
    "FunctionCaller",
    "ScenarioResult",
    "ScenarioSpec",
    "SimulatedScenario",
    "SiteData",
    "SiteKey",
    "SiteUniverse",
    "build_site_universe",
    "compute_rates",
    "intersection_sizes",
    "intersection_table",
    "metrics_table",
    "run_configurations",
    "run_scenarios",
    "skipped_table",
    "summarize_metrics",
]

__version__ = "0.1.0"
