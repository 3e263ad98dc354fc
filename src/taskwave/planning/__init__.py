"""
taskwave — planning plane.

File: src/taskwave/planning/__init__.py
Last updated: 2026-10-18

Purpose
- Dependency graph construction and wave analysis for task sets.
"""

from taskwave.planning.dependency_graph import CycleError, DependencyGraph
from taskwave.planning.wave_analyzer import (
    AnalysisReason,
    EfficiencyEstimate,
    FileOverlap,
    OverlapPolicy,
    OverlapSeverity,
    WaveAnalysis,
    WaveAnalyzer,
    WaveAnalyzerConfig,
)

__all__ = [
    "AnalysisReason",
    "CycleError",
    "DependencyGraph",
    "EfficiencyEstimate",
    "FileOverlap",
    "OverlapPolicy",
    "OverlapSeverity",
    "WaveAnalysis",
    "WaveAnalyzer",
    "WaveAnalyzerConfig",
]
