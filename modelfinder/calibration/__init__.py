"""Offline calibration harness for the embedding classifier."""

from .benchmark import BenchmarkReport, ModelBenchmark, ModelResult, rank_models
from .config import (
    CANDIDATE_MODELS,
    EDGE_CASES,
    PERFORMANCE_INPUTS,
    CandidateModel,
    EdgeCase,
    HarnessConfig,
    SuccessCriteria,
)
from .coverage import CoverageAnalyzer, CoverageReport, find_diminishing_returns
from .evaluation import EvaluatedCase, EvaluationSet
from .performance import PerformanceReport, PerformanceTester, lazy_loading_analysis
from .report import ReportWriter
from .runner import EXPERIMENTS, CalibrationRunner
from .threshold import ThresholdCalibrator, ThresholdReport, analyze_thresholds

__all__ = [
    "BenchmarkReport",
    "CANDIDATE_MODELS",
    "CalibrationRunner",
    "CandidateModel",
    "CoverageAnalyzer",
    "CoverageReport",
    "EDGE_CASES",
    "EXPERIMENTS",
    "EdgeCase",
    "EvaluatedCase",
    "EvaluationSet",
    "HarnessConfig",
    "ModelBenchmark",
    "ModelResult",
    "PERFORMANCE_INPUTS",
    "PerformanceReport",
    "PerformanceTester",
    "ReportWriter",
    "SuccessCriteria",
    "ThresholdCalibrator",
    "ThresholdReport",
    "analyze_thresholds",
    "find_diminishing_returns",
    "lazy_loading_analysis",
    "rank_models",
]
