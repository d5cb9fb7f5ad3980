"""Landmark-to-viseme classification with temporal smoothing.

Turns one frame of 468 facial landmarks into a viseme label, a confidence
score and smoothed morph-target weights.  Designed to run inside a render
loop: it never raises on bad input, and in ``fast`` mode it throttles to
the configured frame rate by returning the last cached result.
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Optional, Protocol, Sequence

from visemeforge.analysis.features import (
    GeometricFeatures, extract_features, normalize_features,
)
from visemeforge.analysis.rule_classifier import RuleBasedClassifier
from visemeforge.analysis.visemes import Viseme, load_viseme_states
from visemeforge.constants import (
    CONFIDENCE_HISTORY_SIZE, CONFIDENCE_HISTORY_WINDOW, DEFAULT_SMOOTHING_FACTOR,
    DEFAULT_TARGET_FPS, MIN_MOUTH_SIZE, SMOOTHING_WINDOW,
)
from visemeforge.core.clock import MonotonicClock
from visemeforge.core.math_utils import LandmarkSet, clamp01

logger = logging.getLogger(__name__)

PERFORMANCE_MODES = ("fast", "balanced", "quality")

# Scores closer than this count as a tie
_TIE_EPSILON = 1e-9


@dataclass
class ClassifierOptions:
    """Tunable classifier behaviour.

    ``interpolation_frames`` bounds the smoothing ring buffer and
    ``cache_size`` the result cache used for throttled and failed frames.
    """
    smoothing_factor: float = DEFAULT_SMOOTHING_FACTOR
    confidence_threshold: float = 0.7
    interpolation_frames: int = 5
    performance_mode: str = "balanced"
    target_fps: float = DEFAULT_TARGET_FPS
    batch_size: int = 10
    smoothing_enabled: bool = True
    alternative_count: int = 3
    cache_size: int = 30

    def __post_init__(self):
        if not 0.0 <= self.smoothing_factor <= 1.0:
            raise ValueError(f"smoothing_factor must be in [0, 1], got {self.smoothing_factor}")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be in [0, 1], got {self.confidence_threshold}")
        if self.performance_mode not in PERFORMANCE_MODES:
            raise ValueError(f"performance_mode must be one of {PERFORMANCE_MODES}, "
                             f"got {self.performance_mode!r}")
        if self.target_fps <= 0:
            raise ValueError(f"target_fps must be positive, got {self.target_fps}")
        for name in ("interpolation_frames", "batch_size", "cache_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.alternative_count < 0:
            raise ValueError(f"alternative_count must be >= 0, got {self.alternative_count}")


class VisemeModel(Protocol):
    """Anything that ranks visemes from normalized features."""

    def rank(self, features: dict[str, float]) -> list[tuple[Viseme, float]]:
        ...


@dataclass
class VisemeResult:
    """Classification of a single frame."""
    viseme: Viseme
    confidence: float
    morph_targets: dict[str, float]
    features: GeometricFeatures = field(default_factory=GeometricFeatures)
    alternatives: list[tuple[Viseme, float]] = field(default_factory=list)
    processing_time_ms: float = 0.0
    timestamp: float = 0.0
    confident: bool = False
    throttled: bool = False
    fallback: bool = False


class VisemeClassifier:
    """Frame-by-frame landmark → viseme classifier.

    Parameters
    ----------
    options : ClassifierOptions, optional
    model : VisemeModel, optional
        Ranking model; defaults to ``RuleBasedClassifier``.
    viseme_states : dict, optional
        Base morph weights per viseme; loaded from ``viseme_states.json``.
    clock : object with ``now_ms()``, optional
    """

    def __init__(self, options: Optional[ClassifierOptions] = None,
                 model: Optional[VisemeModel] = None,
                 viseme_states: Optional[dict[Viseme, dict[str, float]]] = None,
                 clock=None):
        self.options = options or ClassifierOptions()
        self.model = model or RuleBasedClassifier()
        self.viseme_states = viseme_states if viseme_states is not None else load_viseme_states()
        self._clock = clock or MonotonicClock()

        self._results: deque[VisemeResult] = deque(maxlen=self.options.cache_size)
        self._recent: deque[tuple[Viseme, float]] = deque(maxlen=self.options.interpolation_frames)
        self._confidence_history: deque[float] = deque(maxlen=CONFIDENCE_HISTORY_SIZE)
        self._previous_weights: dict[str, float] = {}
        self._last_process_time: Optional[float] = None

    # ── Public API ──

    @property
    def last_result(self) -> Optional[VisemeResult]:
        return self._results[-1] if self._results else None

    def classify(self, landmarks: LandmarkSet,
                 target_viseme: "Viseme | str | None" = None) -> VisemeResult:
        """Classify one frame.

        *target_viseme* is an optional hint: when it ties with the best
        candidate it wins the tie.  Never raises; failures return the last
        valid result (or a neutral ``sil`` result on cold start).
        """
        return self._classify(landmarks, target_viseme, allow_throttle=True)

    def classify_batch(self, frames: Sequence[LandmarkSet],
                       batch_size: Optional[int] = None) -> list[VisemeResult]:
        """Classify a recorded sequence, smoothing across neighbouring frames.

        Offline processing is never throttled.
        """
        batch_size = batch_size or self.options.batch_size
        results: list[VisemeResult] = []
        for start in range(0, len(frames), batch_size):
            for landmarks in frames[start:start + batch_size]:
                results.append(self._classify(landmarks, None, allow_throttle=False))
            if len(results) > 1:
                self._smooth_batch(results, max(0, len(results) - batch_size))
        return results

    def settings(self) -> dict:
        """Current options plus cache diagnostics."""
        info = asdict(self.options)
        info["buffer_length"] = len(self._results)
        info["average_processing_time_ms"] = self._average_processing_time()
        return info

    def update_settings(self, **changes) -> None:
        """Replace option values; caches are cleared when the mode changes."""
        known = {f.name for f in fields(ClassifierOptions)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown classifier options: {sorted(unknown)}")

        old = self.options
        self.options = replace(old, **changes)
        if (self.options.cache_size != old.cache_size
                or self.options.interpolation_frames != old.interpolation_frames):
            self._results = deque(self._results, maxlen=self.options.cache_size)
            self._recent = deque(self._recent, maxlen=self.options.interpolation_frames)
        if self.options.performance_mode != old.performance_mode:
            logger.info("Performance mode %s -> %s; clearing caches",
                        old.performance_mode, self.options.performance_mode)
            self.clear_caches()

    def clear_caches(self) -> None:
        self._results.clear()
        self._recent.clear()
        self._confidence_history.clear()
        self._previous_weights = {}
        self._last_process_time = None

    # ── Pipeline ──

    def _classify(self, landmarks, target_viseme, allow_throttle: bool) -> VisemeResult:
        start = self._clock.now_ms()

        if allow_throttle and self._should_throttle(start):
            logger.debug("Frame throttled at %.1f ms", start)
            return self._last_valid_result(start, throttled=True)

        try:
            target = Viseme.parse(target_viseme) if target_viseme is not None else None
            features = extract_features(landmarks)
            ranked = self.model.rank(normalize_features(features))
            picked = self._pick(ranked, target)
            viseme, confidence = self._smooth(*picked)
            confidence = self._adjust_confidence(confidence, features)
            morph_targets = self._morph_targets(viseme, confidence)
        except Exception:
            logger.warning("Viseme classification failed; using last valid result",
                           exc_info=True)
            return self._last_valid_result(start, fallback=True)

        result = VisemeResult(
            viseme=viseme,
            confidence=confidence,
            morph_targets=morph_targets,
            features=features,
            alternatives=ranked[:self.options.alternative_count],
            processing_time_ms=self._clock.now_ms() - start,
            timestamp=start,
            confident=confidence >= self.options.confidence_threshold,
        )
        self._commit(picked, confidence, morph_targets)
        self._results.append(result)
        self._last_process_time = start
        return result

    @staticmethod
    def _pick(ranked: list[tuple[Viseme, float]],
              target: Optional[Viseme]) -> tuple[Viseme, float]:
        if not ranked:
            return Viseme.SIL, 0.5
        best, best_score = ranked[0]
        if target is not None and target is not best:
            for viseme, score in ranked:
                if viseme is target and score >= best_score - _TIE_EPSILON:
                    return viseme, score
        return best, best_score

    def _smooth(self, viseme: Viseme, confidence: float) -> tuple[Viseme, float]:
        """Use the most confident label of the last few frames."""
        if not self.options.smoothing_enabled:
            return viseme, confidence

        depth = min(SMOOTHING_WINDOW, self.options.interpolation_frames)
        window = (list(self._recent) + [(viseme, confidence)])[-depth:]
        if len(window) < 2:
            return viseme, confidence

        best_viseme, best_conf = max(window, key=lambda item: item[1])
        return best_viseme, min(1.0, (confidence + best_conf) / 2.0)

    def _adjust_confidence(self, confidence: float, features: GeometricFeatures) -> float:
        # Geometry quality: a tiny or undetected mouth lowers trust
        if features.mouth_width is not None and features.mouth_height is not None:
            quality = min(1.0, (features.mouth_width + features.mouth_height) / MIN_MOUTH_SIZE)
            confidence *= quality

        if self._confidence_history:
            recent = list(self._confidence_history)[-CONFIDENCE_HISTORY_WINDOW:]
            confidence = 0.7 * confidence + 0.3 * (sum(recent) / len(recent))

        return clamp01(confidence)

    def _morph_targets(self, viseme: Viseme, confidence: float) -> dict[str, float]:
        base = self.viseme_states.get(viseme) or self.viseme_states.get(Viseme.SIL, {})
        weights = {name: w * confidence for name, w in base.items()}

        sf = self.options.smoothing_factor
        for name in weights:
            if name in self._previous_weights:
                weights[name] = (1.0 - sf) * self._previous_weights[name] + sf * weights[name]
            weights[name] = clamp01(weights[name])

        return weights

    def _commit(self, picked: tuple[Viseme, float], confidence: float,
                morph_targets: dict[str, float]) -> None:
        # Smoothing and blending buffers only see frames that were returned
        if self.options.smoothing_enabled:
            self._recent.append(picked)
        self._confidence_history.append(confidence)
        self._previous_weights = dict(morph_targets)

    def _should_throttle(self, now: float) -> bool:
        if self.options.performance_mode != "fast" or self._last_process_time is None:
            return False
        return (now - self._last_process_time) < 1000.0 / self.options.target_fps

    def _last_valid_result(self, now: float, throttled: bool = False,
                           fallback: bool = False) -> VisemeResult:
        last = self.last_result
        if last is not None:
            return replace(last, morph_targets=dict(last.morph_targets),
                           throttled=throttled, fallback=fallback)
        neutral = {name: clamp01(w) for name, w in self.viseme_states.get(Viseme.SIL, {}).items()}
        return VisemeResult(
            viseme=Viseme.SIL,
            confidence=0.5,
            morph_targets=neutral,
            timestamp=now,
            throttled=throttled,
            fallback=fallback,
        )

    def _smooth_batch(self, results: list[VisemeResult], start: int) -> None:
        """Average confidence and weights over a ±SMOOTHING_WINDOW frame window."""
        w = SMOOTHING_WINDOW
        smoothed = {}
        for i in range(max(start, w), len(results) - w):
            window = results[i - w:i + w + 1]
            confidence = sum(r.confidence for r in window) / len(window)
            targets = {
                name: sum(r.morph_targets.get(name, 0.0) for r in window) / len(window)
                for name in results[i].morph_targets
            }
            smoothed[i] = replace(results[i], confidence=confidence, morph_targets=targets)
        for i, r in smoothed.items():
            results[i] = r

    def _average_processing_time(self) -> float:
        if not self._results:
            return 0.0
        recent = list(self._results)[-10:]
        return sum(r.processing_time_ms for r in recent) / len(recent)
