"""Optimization subsystem -- constrained morph search with adaptive learning."""

from visemeforge.optimization.config import ControllerOptions, OptimizationConfig
from visemeforge.optimization.controller import (
    AdaptiveMorphController, CompletionUpdate, ProgressUpdate,
)
from visemeforge.optimization.interfaces import (
    AnalysisResult, Analyzer, CancelToken, CaptureUnavailableError, FrameCapture,
    MeasurementError, MetricDeviation, OptimizationBusyError,
    OptimizationCancelledError, RenderTarget,
)
from visemeforge.optimization.optimizer import (
    IterationRecord, IterativeMorphOptimizer, MorphAdjustment, OptimizationLog,
    OptimizationResult,
)

__all__ = [
    "AdaptiveMorphController",
    "AnalysisResult",
    "Analyzer",
    "CancelToken",
    "CaptureUnavailableError",
    "CompletionUpdate",
    "ControllerOptions",
    "FrameCapture",
    "IterationRecord",
    "IterativeMorphOptimizer",
    "MeasurementError",
    "MetricDeviation",
    "MorphAdjustment",
    "OptimizationBusyError",
    "OptimizationCancelledError",
    "OptimizationConfig",
    "OptimizationLog",
    "OptimizationResult",
    "ProgressUpdate",
    "RenderTarget",
]
