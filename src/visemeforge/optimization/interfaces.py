"""Collaborator contracts and error types of the optimization loop.

The optimizer never touches a mesh or a camera itself.  A surrounding
application injects a render target, a frame capture and an analyzer.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from visemeforge.analysis.visemes import Viseme
from visemeforge.core.math_utils import LandmarkSet

# Morph name → influence weight in [0, 1]
MorphConfiguration = dict[str, float]


# ── Errors ────────────────────────────────────────────────────────────

class MeasurementError(RuntimeError):
    """Capturing or analysing the rendered frame failed; the run cannot continue."""

    def __init__(self, message: str, iteration: Optional[int] = None):
        super().__init__(message)
        self.iteration = iteration


class CaptureUnavailableError(MeasurementError):
    """The render surface is not ready to be captured."""


class OptimizationBusyError(RuntimeError):
    """An optimization is already running on this controller."""


class OptimizationCancelledError(RuntimeError):
    """The run was cancelled through its CancelToken."""


# ── Collaborators ─────────────────────────────────────────────────────

@runtime_checkable
class RenderTarget(Protocol):
    async def apply_morph_configuration(self, config: MorphConfiguration) -> None:
        """Apply weights to the avatar.  Must be idempotent."""
        ...


@runtime_checkable
class FrameCapture(Protocol):
    async def capture_current_state(self) -> Any:
        """Return the current rendered image.

        Raises CaptureUnavailableError when the surface is not ready.
        """
        ...


@runtime_checkable
class Analyzer(Protocol):
    async def analyze_viseme(self, image: Any, target_viseme: Viseme) -> "AnalysisResult | Mapping":
        """Score *image* against *target_viseme* and report metric deviations."""
        ...


# ── Analysis data ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class MetricDeviation:
    """Current vs target value of one facial metric (``lipGap``, ``mouthWidth`` ...)."""
    current: float
    target: float
    deviation: float

    @classmethod
    def coerce(cls, value: "MetricDeviation | Mapping") -> "MetricDeviation":
        if isinstance(value, MetricDeviation):
            return value
        current = float(value["current"])
        target = float(value["target"])
        deviation = value.get("deviation")
        return cls(current, target,
                   float(deviation) if deviation is not None else target - current)


@dataclass
class AnalysisResult:
    """What the analyzer reports for one rendered frame.

    ``score`` is a match percentage in [0, 100].
    """
    score: float
    landmarks: LandmarkSet = field(default_factory=list)
    deviations: dict[str, MetricDeviation] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: "AnalysisResult | Mapping") -> "AnalysisResult":
        """Accept either an AnalysisResult or a plain mapping."""
        if isinstance(value, AnalysisResult):
            return value
        if not isinstance(value, Mapping):
            raise TypeError(f"Analyzer returned {type(value).__name__}, expected a mapping")
        landmarks = value.get("landmarks")
        return cls(
            score=float(value["score"]),
            landmarks=landmarks if landmarks is not None else [],
            deviations={
                metric: MetricDeviation.coerce(d)
                for metric, d in (value.get("deviations") or {}).items()
            },
        )


class CancelToken:
    """Cooperative cancellation flag, checked between iterations."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled
