"""Adaptive controller wrapping the iterative morph optimizer.

Remembers which morph configurations worked for each viseme and uses
that history to seed starting points, tune learning rates and tighten
constraint weights on later runs.  Only one optimization may be in
flight per controller.
"""

import asyncio
import contextlib
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, Optional

from visemeforge.analysis.constraints import violated_names
from visemeforge.analysis.visemes import Viseme
from visemeforge.constants import (
    DEVIATION_THRESHOLD, HIGH_SCORE, LEARNING_RATE_MULTIPLIER_MAX,
    LEARNING_RATE_MULTIPLIER_MIN, LOW_SCORE, MAX_PRIOR_BLEND,
)
from visemeforge.core.clock import MonotonicClock
from visemeforge.core.events import EventBus, EventType
from visemeforge.core.math_utils import clamp01
from visemeforge.core.state import LearningState, SuccessfulConfiguration
from visemeforge.optimization.config import ControllerOptions, OptimizationConfig
from visemeforge.optimization.interfaces import (
    Analyzer, CancelToken, MorphConfiguration, OptimizationBusyError,
)
from visemeforge.optimization.optimizer import (
    IterativeMorphOptimizer, OptimizationResult,
)

logger = logging.getLogger(__name__)

# Focus metrics per viseme family before anything has been learned
DEFAULT_FOCUS_METRICS: dict[str, list[str]] = {
    "PP": ["lipGap", "lipCompression"],
    "FF": ["lipGap", "mouthWidth"],
    "AA": ["lipGap", "jawOpening"],
    "OH": ["mouthWidth", "lipRounding"],
}
FALLBACK_FOCUS_METRICS = ["lipGap", "mouthWidth"]

ProgressCallback = Callable[[str, Any], None]


@dataclass(frozen=True)
class ProgressUpdate:
    viseme: Viseme
    iteration: int
    max_iterations: int
    best_score: float
    elapsed_ms: float
    violated_count: int


@dataclass(frozen=True)
class CompletionUpdate:
    viseme: Viseme
    final_score: float
    score_improvement: float
    constraints_satisfied: bool
    duration_ms: float
    iterations: int


class AdaptiveMorphController:
    """Learning wrapper around ``IterativeMorphOptimizer``.

    Parameters
    ----------
    optimizer : IterativeMorphOptimizer
    analyzer : Analyzer
    options : ControllerOptions, optional
    state : LearningState, optional
        Learned data.  Its effectiveness table is shared with *optimizer*.
    event_bus : EventBus, optional
        Receives started/progress/complete/failed events.
    clock : object with ``now_ms()``, optional
    """

    def __init__(self, optimizer: IterativeMorphOptimizer, analyzer: Analyzer,
                 options: Optional[ControllerOptions] = None,
                 state: Optional[LearningState] = None,
                 event_bus: Optional[EventBus] = None,
                 clock=None):
        self.optimizer = optimizer
        self.analyzer = analyzer
        self.options = options or ControllerOptions()
        self.state = state if state is not None else LearningState(optimizer.effectiveness)
        self.optimizer.effectiveness = self.state.effectiveness
        self.event_bus = event_bus or EventBus()
        self._clock = clock or MonotonicClock()
        self._callbacks: list[ProgressCallback] = []
        self._busy = False

    @property
    def is_optimizing(self) -> bool:
        return self._busy

    # ── Optimization ──

    async def optimize_viseme(self, viseme: "Viseme | str",
                              initial_morphs: MorphConfiguration,
                              config: Optional[OptimizationConfig] = None,
                              cancel_token: Optional[CancelToken] = None) -> OptimizationResult:
        """Optimize *viseme* starting from *initial_morphs*.

        Raises OptimizationBusyError immediately if another run is active.
        """
        if self._busy:
            raise OptimizationBusyError("Optimization already in progress")
        self._busy = True
        start = self._clock.now_ms()
        target: Optional[Viseme] = None
        try:
            target = Viseme.parse(viseme)
            tuned = self.prepare_config(target, config)
            seeded = self.apply_learned_priors(target, initial_morphs)
            self.event_bus.publish(EventType.OPTIMIZATION_STARTED, viseme=target.value, config=tuned)

            reporter = asyncio.create_task(self._report_progress(target, start))
            try:
                result = await self.optimizer.optimize(
                    target, seeded, self.analyzer, tuned, cancel_token)
            finally:
                reporter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reporter

            duration = self._clock.now_ms() - start
            completion = self._learn(target, result, duration)
            self._broadcast("complete", completion)
            self.event_bus.publish(EventType.OPTIMIZATION_COMPLETE, completion=completion)
            return result
        except Exception as e:
            label = target.value if target is not None else str(viseme)
            logger.error("Adaptive optimization failed for %s: %s", label, e)
            self.event_bus.publish(EventType.OPTIMIZATION_FAILED, viseme=label, error=e)
            raise
        finally:
            self._busy = False

    def prepare_config(self, viseme: "Viseme | str",
                       base: Optional[OptimizationConfig] = None) -> OptimizationConfig:
        """Derive a run configuration from *base* and the viseme's history."""
        viseme = Viseme.parse(viseme)
        base = base or OptimizationConfig()
        profile = self.state.profile(viseme.value)
        learned = (self.options.adaptation_enabled and profile is not None
                   and profile.optimizations >= self.options.min_runs_for_learning)

        max_time = min(base.max_optimization_time, self._optimal_time(viseme))
        if not learned:
            return replace(base, max_optimization_time=max_time,
                           focus_metrics=base.focus_metrics or self.focus_metrics(viseme),
                           morph_priorities=base.morph_priorities or self.morph_priorities(viseme))

        tuned = replace(
            base,
            learning_rate=base.learning_rate * profile.learning_rate_multiplier,
            max_iterations=max(1, min(base.max_iterations,
                                      math.ceil(profile.average_iterations + 2))),
            constraint_weight=min(0.6, base.constraint_weight + profile.violation_rate() * 0.4),
            max_optimization_time=max_time,
            focus_metrics=base.focus_metrics or self.focus_metrics(viseme),
            morph_priorities=base.morph_priorities or self.morph_priorities(viseme),
        )
        logger.info("Learned parameters for %s: learning rate %.3f, %d iterations, "
                    "constraint weight %.2f", viseme.value, tuned.learning_rate,
                    tuned.max_iterations, tuned.constraint_weight)
        return tuned

    def apply_learned_priors(self, viseme: "Viseme | str",
                             initial_morphs: MorphConfiguration) -> MorphConfiguration:
        """Blend the seed with the weighted average of past successes.

        Per morph, the learned value gets ``min(0.7, effectiveness)`` of the
        blend, so proven morphs lean on history and unproven ones stay near
        the seed.
        """
        viseme = Viseme.parse(viseme)
        seeded = dict(initial_morphs)
        profile = self.state.profile(viseme.value)
        if (not self.options.adaptation_enabled or profile is None
                or not profile.successful_configurations):
            return seeded

        for morph, learned in profile.weighted_morph_averages().items():
            blend = min(MAX_PRIOR_BLEND, self.state.effectiveness.get(morph))
            seeded[morph] = clamp01(initial_morphs.get(morph, 0.0) * (1.0 - blend) + learned * blend)
        logger.info("Applied learned priors for %s from %d configurations",
                    viseme.value, len(profile.successful_configurations))
        return seeded

    def focus_metrics(self, viseme: "Viseme | str") -> list[str]:
        """Metrics that most often needed correction, or family defaults."""
        viseme = Viseme.parse(viseme)
        profile = self.state.profile(viseme.value)
        if profile is not None and profile.metric_deviations:
            ranked = sorted(profile.metric_deviations.items(), key=lambda kv: kv[1], reverse=True)
            return [metric for metric, _ in ranked[:3]]
        return list(DEFAULT_FOCUS_METRICS.get(viseme.family, FALLBACK_FOCUS_METRICS))

    def morph_priorities(self, viseme: "Viseme | str") -> dict[str, float]:
        """Relative usage (0-1) of morphs in the viseme's successful configurations."""
        viseme = Viseme.parse(viseme)
        profile = self.state.profile(viseme.value)
        if profile is None:
            return {}
        usage: dict[str, float] = {}
        for config in profile.successful_configurations:
            for morph, value in config.morphs.items():
                if value > 0.1:
                    usage[morph] = usage.get(morph, 0.0) + value * config.weight
        if not usage:
            return {}
        peak = max(usage.values())
        return {morph: u / peak for morph, u in usage.items()}

    def _optimal_time(self, viseme: Viseme) -> float:
        limit = self.options.max_optimization_time
        profile = self.state.profile(viseme.value)
        if (profile is None or profile.optimizations < self.options.min_runs_for_learning
                or profile.average_time_ms <= 0):
            return limit
        return min(limit, profile.average_time_ms * 1.5)

    @staticmethod
    def configuration_weight(result: OptimizationResult) -> float:
        """Learning weight of a result: better, cleaner and faster runs count more."""
        weight = result.final_score / 100.0
        weight *= 1.2 if result.constraints_satisfied else 0.8
        weight *= max(0.5, 1.0 - len(result.log.iterations) / 10.0)
        return max(0.1, min(2.0, weight))

    # ── Learning ──

    def _learn(self, viseme: Viseme, result: OptimizationResult,
               duration_ms: float) -> CompletionUpdate:
        key = viseme.value
        improvement = result.final_score - result.initial_raw_score
        self.state.session.record_run(key, result.final_score, improvement,
                                      result.constraints_satisfied, duration_ms)

        profile = self.state.ensure_profile(key)
        profile.optimizations += 1
        n = profile.optimizations
        profile.average_time_ms += (duration_ms - profile.average_time_ms) / n
        profile.average_iterations += (len(result.log.iterations) - profile.average_iterations) / n

        if result.final_score > self.options.success_score and result.constraints_satisfied:
            profile.add_configuration(SuccessfulConfiguration(
                morphs=dict(result.final_morphs),
                score=result.final_score,
                weight=self.configuration_weight(result),
                timestamp=time.time() * 1000.0,
            ))

        for name in violated_names(result.log.final_constraints):
            profile.constraint_violations[name] = profile.constraint_violations.get(name, 0) + 1
        for record in result.log.iterations:
            for metric, dev in record.deviations.items():
                if abs(dev.deviation) > DEVIATION_THRESHOLD:
                    profile.metric_deviations[metric] = profile.metric_deviations.get(metric, 0) + 1

        if result.final_score > HIGH_SCORE:
            profile.learning_rate_multiplier = min(
                LEARNING_RATE_MULTIPLIER_MAX, profile.learning_rate_multiplier * 1.1)
        elif result.final_score < LOW_SCORE:
            profile.learning_rate_multiplier = max(
                LEARNING_RATE_MULTIPLIER_MIN, profile.learning_rate_multiplier * 0.9)

        self.state.effectiveness.update_from_iterations(result.log.iterations)

        logger.info("Learned from %s run: score %.1f (%+.1f) in %.0f ms",
                    key, result.final_score, improvement, duration_ms)
        return CompletionUpdate(
            viseme=viseme,
            final_score=result.final_score,
            score_improvement=improvement,
            constraints_satisfied=result.constraints_satisfied,
            duration_ms=duration_ms,
            iterations=len(result.log.iterations),
        )

    # ── Notifications ──

    def add_progress_callback(self, callback: ProgressCallback) -> None:
        """Register ``callback(kind, data)``; kind is ``"progress"`` or ``"complete"``."""
        self._callbacks.append(callback)

    def remove_progress_callback(self, callback: ProgressCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _broadcast(self, kind: str, data: Any) -> None:
        for callback in list(self._callbacks):
            try:
                callback(kind, data)
            except Exception:
                logger.warning("%s callback %r failed", kind, callback, exc_info=True)

    async def _report_progress(self, viseme: Viseme, start: float) -> None:
        while True:
            await asyncio.sleep(self.options.progress_interval)
            snap = self.optimizer.progress
            if not snap.running:
                continue
            update = ProgressUpdate(
                viseme=viseme,
                iteration=snap.iteration,
                max_iterations=snap.max_iterations,
                best_score=snap.best_score,
                elapsed_ms=self._clock.now_ms() - start,
                violated_count=snap.violated_count,
            )
            self._broadcast("progress", update)
            self.event_bus.publish(EventType.OPTIMIZATION_PROGRESS, progress=update)

    # ── Persistence & statistics ──

    def export_learning_data(self) -> dict[str, Any]:
        return self.state.export()

    def import_learning_data(self, data: Mapping[str, Any]) -> bool:
        """Merge exported learning data; a version mismatch is skipped, not fatal."""
        if not self.state.import_(data):
            return False
        visemes = list((data.get("visemeLearningData") or {}).keys())
        self.event_bus.publish(EventType.LEARNING_IMPORTED, visemes=visemes)
        return True

    def reset_learning_data(self) -> None:
        self.state.reset()
        logger.info("Learning data reset")
        self.event_bus.publish(EventType.LEARNING_RESET)

    def session_statistics(self) -> dict[str, Any]:
        stats = self.state.session.to_dict()
        stats["learningData"] = [
            {
                "viseme": viseme,
                "optimizations": p.optimizations,
                "successfulConfigurations": len(p.successful_configurations),
                "averageTime": p.average_time_ms,
                "learningRateMultiplier": p.learning_rate_multiplier,
            }
            for viseme, p in self.state.profiles.items()
        ]
        stats["optimizerSummary"] = self.optimizer.summary()
        return stats
