"""Learning state shared between optimization runs.

Holds per-viseme learned profiles, session metrics and the morph
effectiveness table, plus the versioned export/import blob.  Blob keys
use camelCase so exported data stays compatible with existing
JavaScript-side persistence.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from visemeforge.constants import (
    DEFAULT_EFFECTIVENESS, EFFECTIVENESS_DECAY, EFFECTIVENESS_MAX,
    EFFECTIVENESS_MIN, LEARNING_DATA_VERSION, MAX_SUCCESSFUL_CONFIGURATIONS,
)

logger = logging.getLogger(__name__)


def _clamp_effectiveness(value: float) -> float:
    return max(EFFECTIVENESS_MIN, min(EFFECTIVENESS_MAX, value))


@dataclass
class SuccessfulConfiguration:
    """A morph configuration that met the success bar for a viseme."""
    morphs: dict[str, float]
    score: float
    weight: float = 1.0
    timestamp: float = 0.0

    @property
    def rank(self) -> float:
        return self.score * self.weight

    def to_dict(self) -> dict[str, Any]:
        return {"morphs": dict(self.morphs), "score": self.score,
                "weight": self.weight, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SuccessfulConfiguration":
        return cls(
            morphs={k: float(v) for k, v in d["morphs"].items()},
            score=float(d["score"]),
            weight=float(d.get("weight", 1.0)),
            timestamp=float(d.get("timestamp", 0.0)),
        )


@dataclass
class LearnedVisemeProfile:
    """Accumulated optimization experience for one viseme."""
    optimizations: int = 0
    successful_configurations: list[SuccessfulConfiguration] = field(default_factory=list)
    average_iterations: float = 0.0
    average_time_ms: float = 0.0
    learning_rate_multiplier: float = 1.0
    constraint_violations: dict[str, int] = field(default_factory=dict)
    metric_deviations: dict[str, int] = field(default_factory=dict)

    _JS_KEY_MAP = {
        "optimizations": "optimizations",
        "successfulConfigurations": "successful_configurations",
        "averageIterationsToConvergence": "average_iterations",
        "averageOptimizationTime": "average_time_ms",
        "learningRateMultiplier": "learning_rate_multiplier",
        "commonConstraintViolations": "constraint_violations",
        "metricDeviations": "metric_deviations",
    }

    def add_configuration(self, config: SuccessfulConfiguration) -> None:
        """Store *config*, keeping at most 10 by score × weight."""
        self.successful_configurations.append(config)
        self._trim()

    def merge_configurations(self, configs: Iterable[SuccessfulConfiguration]) -> None:
        """Add configurations not already present, then re-apply the bound."""
        for config in configs:
            if config not in self.successful_configurations:
                self.successful_configurations.append(config)
        self._trim()

    def _trim(self) -> None:
        if len(self.successful_configurations) > MAX_SUCCESSFUL_CONFIGURATIONS:
            self.successful_configurations.sort(key=lambda c: c.rank, reverse=True)
            del self.successful_configurations[MAX_SUCCESSFUL_CONFIGURATIONS:]

    def violation_rate(self) -> float:
        """Constraint violations per run."""
        if self.optimizations == 0:
            return 0.0
        return sum(self.constraint_violations.values()) / self.optimizations

    def weighted_morph_averages(self) -> dict[str, float]:
        """Weight-averaged value of each morph over successful configurations."""
        sums: dict[str, float] = {}
        weights: dict[str, float] = {}
        for config in self.successful_configurations:
            for morph, value in config.morphs.items():
                sums[morph] = sums.get(morph, 0.0) + value * config.weight
                weights[morph] = weights.get(morph, 0.0) + config.weight
        return {m: sums[m] / weights[m] for m in sums if weights[m] > 0}

    def to_dict(self) -> dict[str, Any]:
        d = {}
        for js_key, py_key in self._JS_KEY_MAP.items():
            value = getattr(self, py_key)
            if py_key == "successful_configurations":
                value = [c.to_dict() for c in value]
            elif isinstance(value, dict):
                value = dict(value)
            d[js_key] = value
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "LearnedVisemeProfile":
        profile = cls()
        for js_key, py_key in cls._JS_KEY_MAP.items():
            if js_key not in d:
                continue
            value = d[js_key]
            if py_key == "successful_configurations":
                value = [SuccessfulConfiguration.from_dict(c) for c in value]
            elif py_key in ("constraint_violations", "metric_deviations"):
                value = {k: int(v) for k, v in value.items()}
            elif py_key == "optimizations":
                value = int(value)
            else:
                value = float(value)
            setattr(profile, py_key, value)
        profile._trim()
        return profile


@dataclass
class VisemeAccuracy:
    attempts: int = 0
    average_score: float = 0.0
    best_score: float = 0.0

    def record(self, score: float) -> None:
        self.attempts += 1
        self.average_score += (score - self.average_score) / self.attempts
        self.best_score = max(self.best_score, score)

    def to_dict(self) -> dict[str, float]:
        return {"attempts": self.attempts, "averageScore": self.average_score,
                "bestScore": self.best_score}


@dataclass
class SessionMetrics:
    """Counters for the current controller session."""
    optimizations_performed: int = 0
    average_score_improvement: float = 0.0
    constraint_violations: int = 0
    total_optimization_time_ms: float = 0.0
    viseme_accuracy: dict[str, VisemeAccuracy] = field(default_factory=dict)

    def record_run(self, viseme: str, final_score: float, improvement: float,
                   constraints_satisfied: bool, duration_ms: float) -> None:
        self.optimizations_performed += 1
        self.total_optimization_time_ms += duration_ms
        self.average_score_improvement += (
            (improvement - self.average_score_improvement) / self.optimizations_performed)
        if not constraints_satisfied:
            self.constraint_violations += 1
        self.viseme_accuracy.setdefault(viseme, VisemeAccuracy()).record(final_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "optimizationsPerformed": self.optimizations_performed,
            "averageScoreImprovement": self.average_score_improvement,
            "constraintViolations": self.constraint_violations,
            "totalOptimizationTime": self.total_optimization_time_ms,
            "visemeAccuracy": {v: a.to_dict() for v, a in self.viseme_accuracy.items()},
        }


class MorphEffectivenessTable:
    """Process-wide morph name → effectiveness score in [0.1, 2.0].

    Several controllers may share one table; every access goes through a
    lock so updates from concurrent runs never interleave.
    """

    def __init__(self, scores: Optional[Mapping[str, float]] = None):
        self._lock = threading.Lock()
        self._scores: dict[str, float] = {}
        if scores:
            self.merge(scores)

    def get(self, morph: str, default: float = DEFAULT_EFFECTIVENESS) -> float:
        with self._lock:
            return self._scores.get(morph, default)

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return dict(self._scores)

    def __len__(self) -> int:
        with self._lock:
            return len(self._scores)

    def update(self, morph: str, effectiveness: float) -> float:
        """Fold one observation into the moving average; returns the new score."""
        with self._lock:
            old = self._scores.get(morph)
            if old is None:
                new = effectiveness
            else:
                new = old * EFFECTIVENESS_DECAY + effectiveness * (1.0 - EFFECTIVENESS_DECAY)
            new = _clamp_effectiveness(new)
            self._scores[morph] = new
            return new

    def update_from_iterations(self, iterations: list) -> None:
        """Credit each applied adjustment with the score change it produced.

        *iterations* are iteration records exposing ``adjusted_score`` and
        ``adjustments`` (each with ``morph`` and ``adjustment``).  The last
        record has no successor to measure against and is skipped.
        """
        for current, following in zip(iterations, iterations[1:]):
            improvement = following.adjusted_score - current.adjusted_score
            for adj in current.adjustments:
                self.update(adj.morph, improvement / (abs(adj.adjustment) + 0.01))

    def merge(self, scores: Mapping[str, float]) -> None:
        """Overwrite entries with *scores*, clamped to the valid range."""
        with self._lock:
            for morph, value in scores.items():
                self._scores[morph] = _clamp_effectiveness(float(value))

    def clear(self) -> None:
        with self._lock:
            self._scores.clear()


class LearningState:
    """Everything a controller learns, plus the export/import blob."""

    def __init__(self, effectiveness: Optional[MorphEffectivenessTable] = None):
        self.profiles: dict[str, LearnedVisemeProfile] = {}
        self.session = SessionMetrics()
        self.effectiveness = effectiveness if effectiveness is not None else MorphEffectivenessTable()

    def profile(self, viseme: str) -> Optional[LearnedVisemeProfile]:
        return self.profiles.get(viseme)

    def ensure_profile(self, viseme: str) -> LearnedVisemeProfile:
        return self.profiles.setdefault(viseme, LearnedVisemeProfile())

    def export(self) -> dict[str, Any]:
        return {
            "version": LEARNING_DATA_VERSION,
            "timestamp": time.time() * 1000.0,
            "sessionMetrics": self.session.to_dict(),
            "visemeLearningData": {v: p.to_dict() for v, p in self.profiles.items()},
            "morphEffectivenessScores": self.effectiveness.snapshot(),
        }

    def import_(self, data: Mapping[str, Any]) -> bool:
        """Merge a previously exported blob.

        Returns False (state untouched) on a version mismatch.  Raises
        ValueError for a blob with the right version but malformed content.
        """
        version = data.get("version") if isinstance(data, Mapping) else None
        if version != LEARNING_DATA_VERSION:
            logger.warning("Learning data version %r does not match %r; skipping import",
                           version, LEARNING_DATA_VERSION)
            return False

        try:
            incoming = {v: LearnedVisemeProfile.from_dict(p)
                        for v, p in (data.get("visemeLearningData") or {}).items()}
            scores = {m: float(s) for m, s in (data.get("morphEffectivenessScores") or {}).items()}
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"Malformed learning data: {e}") from e

        for viseme, profile in incoming.items():
            existing = self.profiles.get(viseme)
            if existing is None:
                self.profiles[viseme] = profile
            else:
                existing.merge_configurations(profile.successful_configurations)
        self.effectiveness.merge(scores)
        logger.info("Imported learning data for %d visemes", len(incoming))
        return True

    def reset(self) -> None:
        self.profiles.clear()
        self.session = SessionMetrics()
        self.effectiveness.clear()
