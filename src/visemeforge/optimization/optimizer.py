"""Constrained iterative morph optimizer.

Each iteration applies the current morph configuration to the render
target, captures and analyses the rendered frame, penalises anatomical
constraint violations, and proposes bounded adjustments for the next
iteration.  The best configuration seen (not the last one) is re-applied
before the run returns or fails.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from visemeforge.analysis.constraints import (
    ConstraintEvaluator, ConstraintResult, are_constraints_satisfied,
    constraint_penalty, violated_names,
)
from visemeforge.analysis.influence import MorphInfluenceMap
from visemeforge.analysis.visemes import Viseme
from visemeforge.constants import (
    CONFLICT_SCALE, DEVIATION_THRESHOLD, MAX_CONSTRAINT_PENALTY, MIN_ADJUSTMENT,
    MORPH_PENALTY_PER_SEVERITY, SAFETY_SCALE,
)
from visemeforge.core.clock import MonotonicClock
from visemeforge.core.math_utils import clamp01
from visemeforge.core.state import MorphEffectivenessTable
from visemeforge.optimization.config import OptimizationConfig
from visemeforge.optimization.interfaces import (
    AnalysisResult, Analyzer, CancelToken, FrameCapture, MeasurementError,
    MetricDeviation, MorphConfiguration, OptimizationCancelledError, RenderTarget,
)

logger = logging.getLogger(__name__)

# Finished run logs kept for summary()
HISTORY_SIZE = 100


@dataclass
class MorphAdjustment:
    morph: str
    current_value: float
    adjustment: float
    new_value: float
    reason: str = ""
    safety_reduced: bool = False
    conflict_reduced: bool = False


@dataclass
class IterationRecord:
    """Everything measured and decided in one iteration."""
    index: int
    morphs: MorphConfiguration
    raw_score: float
    constraint_penalty: float
    adjusted_score: float
    constraints: dict[str, ConstraintResult]
    deviations: dict[str, MetricDeviation] = field(default_factory=dict)
    adjustments: list[MorphAdjustment] = field(default_factory=list)
    converged: bool = False

    @property
    def violated_count(self) -> int:
        return len(violated_names(self.constraints))


@dataclass
class OptimizationLog:
    target_viseme: Viseme
    iterations: list[IterationRecord] = field(default_factory=list)
    final_constraints: dict[str, ConstraintResult] = field(default_factory=dict)
    final_score: float = 0.0
    converged: bool = False
    timed_out: bool = False
    duration_ms: float = 0.0


@dataclass
class OptimizationResult:
    final_morphs: MorphConfiguration
    final_score: float
    log: OptimizationLog
    constraints_satisfied: bool

    @property
    def initial_raw_score(self) -> float:
        return self.log.iterations[0].raw_score if self.log.iterations else 0.0


@dataclass
class OptimizerProgress:
    """Snapshot of the run in flight, polled for progress notifications."""
    running: bool = False
    iteration: int = 0
    max_iterations: int = 0
    best_score: float = 0.0
    violated_count: int = 0


class IterativeMorphOptimizer:
    """Render → measure → adjust loop over a morph configuration.

    Parameters
    ----------
    render_target : RenderTarget
    capture : FrameCapture
    influence_map : MorphInfluenceMap, optional
        Loaded from ``morph_influence.json`` when omitted.
    evaluator : ConstraintEvaluator, optional
    effectiveness : MorphEffectivenessTable, optional
        Learned per-morph effectiveness; read-only here.
    clock : object with ``now_ms()``, optional
    """

    def __init__(self, render_target: RenderTarget, capture: FrameCapture,
                 influence_map: Optional[MorphInfluenceMap] = None,
                 evaluator: Optional[ConstraintEvaluator] = None,
                 effectiveness: Optional[MorphEffectivenessTable] = None,
                 clock=None):
        self.render_target = render_target
        self.capture = capture
        self.influence_map = influence_map or MorphInfluenceMap.load()
        self.evaluator = evaluator or ConstraintEvaluator()
        self.effectiveness = effectiveness if effectiveness is not None else MorphEffectivenessTable()
        self._clock = clock or MonotonicClock()
        self.progress = OptimizerProgress()
        self.history: deque[OptimizationLog] = deque(maxlen=HISTORY_SIZE)

    # ── Main loop ──

    async def optimize(self, target_viseme: "Viseme | str",
                       initial_morphs: MorphConfiguration,
                       analyzer: Analyzer,
                       config: Optional[OptimizationConfig] = None,
                       cancel_token: Optional[CancelToken] = None) -> OptimizationResult:
        """Run the optimization loop and return the best configuration found.

        Raises MeasurementError if a frame cannot be captured or analysed
        and OptimizationCancelledError if *cancel_token* is set.  Whatever
        the error, the best known configuration is re-applied first.
        """
        target = Viseme.parse(target_viseme)
        config = config or OptimizationConfig()
        start = self._clock.now_ms()

        current = {m: clamp01(v) for m, v in initial_morphs.items()}
        best_morphs = dict(current)
        best_score = 0.0
        previous_score = 0.0
        log = OptimizationLog(target_viseme=target)
        self.progress = OptimizerProgress(running=True, max_iterations=config.max_iterations)

        logger.info("Optimizing %s: up to %d iterations, learning rate %.3f",
                    target.value, config.max_iterations, config.learning_rate)
        try:
            for k in range(config.max_iterations):
                if cancel_token is not None and cancel_token.cancelled:
                    raise OptimizationCancelledError(
                        f"Optimization of {target.value} cancelled at iteration {k}")
                if k > 0 and self._clock.now_ms() - start >= config.max_optimization_time:
                    logger.warning("Optimization of %s stopped after %d iterations: "
                                   "time budget of %.0f ms exhausted",
                                   target.value, k, config.max_optimization_time)
                    log.timed_out = True
                    break

                self.progress.iteration = k + 1
                analysis = await self._measure(current, target, analyzer, k)
                constraints = self.evaluator.evaluate(analysis.landmarks)
                penalty = constraint_penalty(constraints, config.constraint_weight)
                adjusted = analysis.score * (1.0 - penalty)

                record = IterationRecord(
                    index=k,
                    morphs=dict(current),
                    raw_score=analysis.score,
                    constraint_penalty=penalty,
                    adjusted_score=adjusted,
                    constraints=constraints,
                    deviations=dict(analysis.deviations),
                )
                self.progress.violated_count = record.violated_count
                logger.debug("Iteration %d: score %.2f (raw %.2f, penalty %.1f%%)",
                             k + 1, adjusted, analysis.score, penalty * 100.0)

                if adjusted > best_score:
                    best_score = adjusted
                    best_morphs = dict(current)
                    self.progress.best_score = best_score
                    logger.info("New best configuration for %s: %.2f", target.value, best_score)

                if k > 0 and adjusted - previous_score < config.convergence_threshold:
                    record.converged = True
                    log.converged = True
                    log.iterations.append(record)
                    logger.info("Converged after %d iterations (improvement %.3f)",
                                k + 1, adjusted - previous_score)
                    break

                record.adjustments = self.generate_adjustments(
                    analysis.deviations, constraints, current, config)
                for adj in record.adjustments:
                    current[adj.morph] = adj.new_value
                log.iterations.append(record)
                previous_score = adjusted

            await self._apply(best_morphs, len(log.iterations))
            final = await self._measure(best_morphs, target, analyzer, len(log.iterations))
            log.final_constraints = self.evaluator.evaluate(final.landmarks)

        except BaseException as e:
            # Any abort, including task cancellation, leaves the best configuration applied
            self.progress.running = False
            await self._restore_best(best_morphs, e)
            raise
        finally:
            log.duration_ms = self._clock.now_ms() - start

        self.progress.running = False
        log.final_score = best_score
        self.history.append(log)

        satisfied = are_constraints_satisfied(log.final_constraints)
        logger.info("Optimization of %s complete: score %.2f in %d iterations, "
                    "%d constraint violations",
                    target.value, best_score, len(log.iterations),
                    len(violated_names(log.final_constraints)))
        return OptimizationResult(
            final_morphs=dict(best_morphs),
            final_score=best_score,
            log=log,
            constraints_satisfied=satisfied,
        )

    async def _apply(self, morphs: MorphConfiguration, iteration: int) -> None:
        try:
            await self.render_target.apply_morph_configuration(dict(morphs))
        except MeasurementError:
            raise
        except Exception as e:
            raise MeasurementError(f"Applying morphs failed: {e}", iteration) from e

    async def _measure(self, morphs: MorphConfiguration, target: Viseme,
                       analyzer: Analyzer, iteration: int) -> AnalysisResult:
        """Apply *morphs*, capture the frame and analyse it."""
        await self._apply(morphs, iteration)
        try:
            image = await self.capture.capture_current_state()
            return AnalysisResult.coerce(await analyzer.analyze_viseme(image, target))
        except MeasurementError as e:
            if e.iteration is None:
                e.iteration = iteration
            raise
        except Exception as e:
            raise MeasurementError(f"Frame analysis failed: {e}", iteration) from e

    async def _restore_best(self, best_morphs: MorphConfiguration, error: BaseException) -> None:
        logger.error("Optimization aborted (%s); restoring best configuration", error)
        try:
            await self.render_target.apply_morph_configuration(dict(best_morphs))
        except Exception:
            logger.error("Could not restore best configuration", exc_info=True)

    # ── Adjustments ──

    def generate_adjustments(self, deviations: dict[str, MetricDeviation],
                             constraints: dict[str, ConstraintResult],
                             morphs: MorphConfiguration,
                             config: OptimizationConfig) -> list[MorphAdjustment]:
        """Propose one bounded adjustment per morph for the next iteration."""
        proposals: list[MorphAdjustment] = []
        for metric, dev in deviations.items():
            if not math.isfinite(dev.deviation) or abs(dev.deviation) <= DEVIATION_THRESHOLD:
                continue
            for morph in self.influence_map.morphs_affecting(metric):
                current = morphs.get(morph, 0.0)
                delta = abs(dev.deviation) * config.learning_rate
                if dev.current > dev.target:
                    delta = -delta
                delta *= self.effectiveness.get(morph)
                delta *= 1.0 - self.morph_constraint_penalty(morph, constraints)

                new_value = clamp01(current + delta)
                delta = new_value - current
                safety = self._touches_violated_constraint(morph, constraints)
                if safety:
                    delta *= SAFETY_SCALE
                    new_value = current + delta

                if abs(delta) < MIN_ADJUSTMENT:
                    continue
                proposals.append(MorphAdjustment(
                    morph=morph,
                    current_value=current,
                    adjustment=delta,
                    new_value=new_value,
                    reason=f"{metric}: {dev.current:.3f} -> {dev.target:.3f} "
                           f"(deviation {dev.deviation:+.3f})",
                    safety_reduced=safety,
                ))
        return self.resolve_conflicts(proposals, config.morph_priorities)

    def resolve_conflicts(self, proposals: list[MorphAdjustment],
                          priorities: Optional[dict[str, float]] = None) -> list[MorphAdjustment]:
        """Keep the largest adjustment per morph and halve conflicting ones."""
        priorities = priorities or {}
        ordered = sorted(proposals,
                         key=lambda a: (abs(a.adjustment), priorities.get(a.morph, 0.0)),
                         reverse=True)
        accepted: list[MorphAdjustment] = []
        seen: set[str] = set()
        for adj in ordered:
            if adj.morph in seen:
                continue
            if any(self.influence_map.conflicts(adj.morph, other) for other in seen):
                adj.adjustment *= CONFLICT_SCALE
                adj.new_value = clamp01(adj.current_value + adj.adjustment)
                adj.conflict_reduced = True
                adj.reason += " (reduced due to conflicts)"
            accepted.append(adj)
            seen.add(adj.morph)
        return accepted

    def morph_constraint_penalty(self, morph: str,
                                 constraints: dict[str, ConstraintResult]) -> float:
        """0.2 × severity per violated constraint the morph can disturb, capped at 0.8."""
        penalty = 0.0
        for name in self.influence_map.related_constraints(morph, set(constraints)):
            result = constraints.get(name)
            if result is not None and result.violated:
                penalty += result.severity * MORPH_PENALTY_PER_SEVERITY
        return min(MAX_CONSTRAINT_PENALTY, penalty)

    def _touches_violated_constraint(self, morph: str,
                                     constraints: dict[str, ConstraintResult]) -> bool:
        for name in self.influence_map.related_constraints(morph, set(constraints)):
            result = constraints.get(name)
            if result is not None and result.violated:
                return True
        return False

    # ── Diagnostics ──

    def summary(self) -> dict:
        """Aggregate statistics over finished runs."""
        runs = list(self.history)
        if not runs:
            return {"total_optimizations": 0, "average_iterations": 0.0,
                    "constraint_violation_rate": 0.0,
                    "morph_effectiveness": self.effectiveness.snapshot()}
        violated = sum(1 for log in runs if not are_constraints_satisfied(log.final_constraints))
        return {
            "total_optimizations": len(runs),
            "average_iterations": sum(len(log.iterations) for log in runs) / len(runs),
            "constraint_violation_rate": violated / len(runs),
            "morph_effectiveness": self.effectiveness.snapshot(),
        }
