"""Tests for the iterative morph optimizer."""

import asyncio

import pytest

from visemeforge.analysis.constraints import ConstraintEvaluator
from visemeforge.analysis.visemes import Viseme
from visemeforge.optimization import (
    CancelToken, MeasurementError, MetricDeviation, OptimizationCancelledError,
    OptimizationConfig,
)
from visemeforge.optimization.optimizer import IterativeMorphOptimizer

from fixtures.fake_collaborators import FakeCapture, FakeClock, FakeRenderTarget, ScriptedAnalyzer
from fixtures.synthetic_landmarks import make_face

# lipCompression is moved by Mouth_Close, Mouth_Pucker and V_Explosive
COMPRESSION = {"lipCompression": {"current": 0.2, "target": 0.9}}


def _make(fail_on=None, clock=None):
    render = FakeRenderTarget()
    capture = FakeCapture(render, fail_on=fail_on)
    optimizer = IterativeMorphOptimizer(render, capture, clock=clock or FakeClock())
    return optimizer, render, capture


def _run(optimizer, analyzer, initial, viseme="M", **config):
    return asyncio.run(optimizer.optimize(viseme, initial, analyzer,
                                          OptimizationConfig(**config)))


# ── Main loop ──

def test_single_iteration_keeps_initial_configuration():
    optimizer, render, _ = _make()
    initial = {"Mouth_Close": 0.0, "Jaw_Open": 1.0}
    result = _run(optimizer, ScriptedAnalyzer(scores=[50.0]), initial, max_iterations=1)
    assert result.final_score == 50.0
    assert len(result.log.iterations) == 1
    assert result.final_morphs == initial
    assert render.last_applied == initial
    assert result.constraints_satisfied


def test_best_configuration_reapplied():
    optimizer, render, _ = _make()
    analyzer = ScriptedAnalyzer(scores=[60.0, 80.0, 40.0], deviations=COMPRESSION)
    result = _run(optimizer, analyzer, {"Mouth_Close": 0.2})

    log = result.log
    assert len(log.iterations) == 3
    assert log.converged and log.iterations[-1].converged
    assert result.final_score == 80.0
    assert result.final_morphs == log.iterations[1].morphs
    assert render.last_applied == log.iterations[1].morphs
    assert log.iterations[1].morphs["Mouth_Close"] == pytest.approx(0.2 + 0.7 * 0.15 * 0.5)


def test_converges_when_score_stalls():
    optimizer, _, _ = _make()
    analyzer = ScriptedAnalyzer(scores=[50.0], deviations=COMPRESSION)
    result = _run(optimizer, analyzer, {"Mouth_Close": 0.2})
    assert len(result.log.iterations) == 2
    assert result.log.converged
    # Equal score is not an improvement: the starting point stays best
    assert result.final_morphs == {"Mouth_Close": 0.2}


def test_adjustments_move_toward_target():
    optimizer, _, _ = _make()
    analyzer = ScriptedAnalyzer(scores=[10.0, 20.0, 30.0, 40.0], deviations=COMPRESSION)
    result = _run(optimizer, analyzer, {"Mouth_Close": 0.2}, max_iterations=3)
    values = [it.morphs.get("Mouth_Close", 0.0) for it in result.log.iterations]
    assert values == sorted(values)
    assert values[-1] > values[0]


def test_analyzer_receives_captured_frame():
    optimizer, _, _ = _make()
    analyzer = ScriptedAnalyzer(scores=[50.0])
    _run(optimizer, analyzer, {"Mouth_Close": 0.4}, max_iterations=1)
    assert analyzer.images[0] == {"Mouth_Close": 0.4}


def test_initial_values_clamped():
    optimizer, render, _ = _make()
    _run(optimizer, ScriptedAnalyzer(), {"Mouth_Close": 1.7, "Jaw_Open": -0.2}, max_iterations=1)
    assert render.applied[0] == {"Mouth_Close": 1.0, "Jaw_Open": 0.0}


def test_constraint_penalty_applied():
    optimizer, _, _ = _make()
    analyzer = ScriptedAnalyzer(scores=[50.0], landmarks=make_face(jaw_width=0.5))
    result = _run(optimizer, analyzer, {"Jaw_Open": 0.5}, max_iterations=1)
    record = result.log.iterations[0]
    severity = (0.25 - 0.12) / 0.12
    assert record.raw_score == 50.0
    assert record.constraint_penalty == pytest.approx(severity * 0.3)
    assert record.adjusted_score == pytest.approx(50.0 * (1 - severity * 0.3))
    assert record.violated_count == 1
    assert not result.constraints_satisfied
    assert result.final_score == pytest.approx(record.adjusted_score)


def test_timeout_stops_between_iterations():
    clock = FakeClock()
    optimizer, _, _ = _make(clock=clock)
    analyzer = ScriptedAnalyzer(scores=[10.0, 50.0, 90.0], deviations=COMPRESSION,
                                on_call=lambda n: clock.advance(20000))
    result = _run(optimizer, analyzer, {"Mouth_Close": 0.2}, max_optimization_time=30000)
    assert result.log.timed_out
    assert len(result.log.iterations) == 2
    assert result.final_score == 50.0
    assert result.log.duration_ms == pytest.approx(60000)


def test_progress_snapshot_after_run():
    optimizer, _, _ = _make()
    _run(optimizer, ScriptedAnalyzer(scores=[70.0]), {"Mouth_Close": 0.2}, max_iterations=1)
    assert not optimizer.progress.running
    assert optimizer.progress.best_score == 70.0
    assert optimizer.progress.iteration == 1


# ── Failures ──

def test_capture_failure_restores_best():
    optimizer, render, _ = _make(fail_on=2)
    analyzer = ScriptedAnalyzer(scores=[60.0, 80.0], deviations=COMPRESSION)
    with pytest.raises(MeasurementError) as excinfo:
        _run(optimizer, analyzer, {"Mouth_Close": 0.2})
    assert excinfo.value.iteration == 2
    best = render.applied[1]
    assert render.last_applied == best
    assert not optimizer.progress.running
    assert len(optimizer.history) == 0


def test_analyzer_error_wrapped():
    optimizer, render, _ = _make()
    analyzer = ScriptedAnalyzer(error=ValueError("no face found"))
    with pytest.raises(MeasurementError) as excinfo:
        _run(optimizer, analyzer, {"Mouth_Close": 0.2})
    assert excinfo.value.iteration == 0
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert render.last_applied == {"Mouth_Close": 0.2}


def test_render_failure_is_measurement_error():
    render = FakeRenderTarget(fail=True)
    optimizer = IterativeMorphOptimizer(render, FakeCapture(render), clock=FakeClock())
    with pytest.raises(MeasurementError):
        _run(optimizer, ScriptedAnalyzer(), {"Mouth_Close": 0.2})


def test_cancel_token_stops_run():
    optimizer, render, _ = _make()
    token = CancelToken()
    analyzer = ScriptedAnalyzer(scores=[50.0], deviations=COMPRESSION,
                                on_call=lambda n: token.cancel())
    with pytest.raises(OptimizationCancelledError):
        asyncio.run(optimizer.optimize("M", {"Mouth_Close": 0.2}, analyzer,
                                       OptimizationConfig(), token))
    assert analyzer.calls == 1
    assert render.last_applied == {"Mouth_Close": 0.2}


class _FailingEvaluator(ConstraintEvaluator):
    """Raises on evaluation number *fail_on* (0-based)."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    def evaluate(self, landmarks):
        n = self.calls
        self.calls += 1
        if n == self.fail_on:
            raise RuntimeError("constraint table corrupted")
        return super().evaluate(landmarks)


def test_unexpected_error_restores_best():
    render = FakeRenderTarget()
    optimizer = IterativeMorphOptimizer(render, FakeCapture(render),
                                        evaluator=_FailingEvaluator(fail_on=2),
                                        clock=FakeClock())
    analyzer = ScriptedAnalyzer(scores=[10.0, 50.0, 20.0], deviations=COMPRESSION)
    with pytest.raises(RuntimeError, match="corrupted"):
        _run(optimizer, analyzer, {"Mouth_Close": 0.2})
    best = render.applied[1]
    assert render.applied[2] != best
    assert render.last_applied == best
    assert not optimizer.progress.running


def test_task_cancellation_restores_best():
    optimizer, render, _ = _make()
    running = {}

    def cancel_on_third_analysis(n):
        if n == 2:
            running["task"].cancel()

    analyzer = ScriptedAnalyzer(scores=[10.0, 50.0, 20.0], deviations=COMPRESSION,
                                on_call=cancel_on_third_analysis)

    async def scenario():
        running["task"] = asyncio.create_task(
            optimizer.optimize("M", {"Mouth_Close": 0.2}, analyzer, OptimizationConfig()))
        with pytest.raises(asyncio.CancelledError):
            await running["task"]

    asyncio.run(scenario())
    best = render.applied[1]
    assert render.applied[2] != best
    assert render.last_applied == best
    assert not optimizer.progress.running


# ── Adjustments ──

def _constraints(**face):
    return ConstraintEvaluator().evaluate(make_face(**face))


def test_small_deviations_ignored():
    optimizer, _, _ = _make()
    deviations = {"lipCompression": MetricDeviation(0.5, 0.54, 0.04)}
    assert optimizer.generate_adjustments(deviations, {}, {"Mouth_Close": 0.5},
                                          OptimizationConfig()) == []


@pytest.mark.parametrize("bad", [float("nan"), float("inf")])
def test_non_finite_deviation_ignored(bad):
    optimizer, _, _ = _make()
    deviations = {"jawOpening": MetricDeviation(0.1, 0.6, bad)}
    assert optimizer.generate_adjustments(deviations, {}, {"Jaw_Open": 0.2},
                                          OptimizationConfig()) == []


def test_adjustment_direction():
    optimizer, _, _ = _make()
    deviations = {"jawOpening": MetricDeviation(0.8, 0.2, -0.6)}
    adjustments = optimizer.generate_adjustments(deviations, {}, {"Jaw_Open": 0.5},
                                                 OptimizationConfig())
    assert len(adjustments) == 1
    assert adjustments[0].adjustment == pytest.approx(-0.6 * 0.15 * 0.5)
    assert adjustments[0].new_value < 0.5


def test_effectiveness_scales_adjustment():
    optimizer, _, _ = _make()
    optimizer.effectiveness.merge({"Jaw_Open": 2.0})
    deviations = {"jawOpening": MetricDeviation(0.1, 0.6, 0.5)}
    adj, = optimizer.generate_adjustments(deviations, {}, {"Jaw_Open": 0.2},
                                          OptimizationConfig())
    assert adj.adjustment == pytest.approx(0.5 * 0.15 * 2.0)


def test_adjustments_clamped():
    optimizer, _, _ = _make()
    deviations = {"lipCompression": MetricDeviation(0.2, 0.9, 0.7)}
    adjustments = optimizer.generate_adjustments(
        deviations, {}, {"Mouth_Close": 0.9}, OptimizationConfig(learning_rate=1.0))
    by_morph = {a.morph: a for a in adjustments}
    assert by_morph["Mouth_Close"].new_value == 1.0
    assert by_morph["Mouth_Close"].adjustment == pytest.approx(0.1)
    assert all(0.0 <= a.new_value <= 1.0 for a in adjustments)


def test_tiny_adjustments_dropped():
    optimizer, _, _ = _make()
    deviations = {"lipCompression": MetricDeviation(0.2, 0.9, 0.7)}
    adjustments = optimizer.generate_adjustments(
        deviations, {}, {"Mouth_Close": 0.99}, OptimizationConfig())
    morphs = [a.morph for a in adjustments]
    assert "Mouth_Close" not in morphs
    assert "V_Explosive" in morphs


def test_violated_constraint_reduces_related_morph():
    optimizer, _, _ = _make()
    constraints = _constraints(jaw_width=0.5)
    severity = constraints["faceWidth"].severity
    deviations = {"jawOpening": MetricDeviation(0.1, 0.6, 0.5)}
    adj, = optimizer.generate_adjustments(deviations, constraints, {"Jaw_Open": 0.2},
                                          OptimizationConfig(learning_rate=1.0))
    assert adj.safety_reduced
    assert adj.adjustment == pytest.approx(0.5 * 0.5 * (1 - 0.2 * severity) * 0.3)
    assert adj.new_value == pytest.approx(0.2 + adj.adjustment)


def test_morph_constraint_penalty_capped():
    optimizer, _, _ = _make()
    constraints = _constraints(jaw_width=1.0)
    assert optimizer.morph_constraint_penalty("Jaw_Open", constraints) == 0.8
    assert optimizer.morph_constraint_penalty("Mouth_Pucker", constraints) == 0.0


def test_conflicting_adjustments_halved():
    optimizer, _, _ = _make()
    morphs = {"Mouth_Stretch_L": 0.5, "Mouth_Stretch_R": 0.5, "Mouth_Pucker": 0.5, "V_Explosive": 0.5}
    deviations = {"mouthWidth": MetricDeviation(0.5, 0.1, -0.4)}
    adjustments = optimizer.generate_adjustments(deviations, {}, morphs,
                                                 OptimizationConfig(learning_rate=1.0))
    by_morph = {a.morph: a for a in adjustments}
    assert by_morph["Mouth_Stretch_L"].adjustment == pytest.approx(-0.2)
    assert not by_morph["Mouth_Stretch_L"].conflict_reduced
    assert by_morph["Mouth_Stretch_R"].adjustment == pytest.approx(-0.1)
    assert by_morph["Mouth_Stretch_R"].conflict_reduced
    assert by_morph["Mouth_Stretch_R"].new_value == pytest.approx(0.4)
    assert by_morph["Mouth_Pucker"].conflict_reduced
    assert by_morph["V_Explosive"].adjustment == pytest.approx(-0.2)


def test_priorities_break_ties():
    optimizer, _, _ = _make()
    morphs = {"Mouth_Stretch_L": 0.5, "Mouth_Stretch_R": 0.5, "Mouth_Pucker": 0.5}
    deviations = {"mouthWidth": MetricDeviation(0.5, 0.1, -0.4)}
    config = OptimizationConfig(learning_rate=1.0, morph_priorities={"Mouth_Pucker": 1.0})
    by_morph = {a.morph: a for a in optimizer.generate_adjustments(deviations, {}, morphs, config)}
    assert not by_morph["Mouth_Pucker"].conflict_reduced
    assert by_morph["Mouth_Stretch_L"].conflict_reduced
    assert by_morph["Mouth_Stretch_R"].conflict_reduced


def test_one_adjustment_per_morph():
    optimizer, _, _ = _make()
    deviations = {
        "lipCompression": MetricDeviation(0.2, 0.9, 0.7),
        "lipGap": MetricDeviation(0.2, 0.5, 0.3),
    }
    adjustments = optimizer.generate_adjustments(deviations, {}, {"Mouth_Close": 0.2},
                                                 OptimizationConfig())
    morphs = [a.morph for a in adjustments]
    assert len(morphs) == len(set(morphs))
    by_morph = {a.morph: a for a in adjustments}
    assert by_morph["Mouth_Close"].adjustment == pytest.approx(0.7 * 0.15 * 0.5)


# ── Diagnostics ──

def test_summary():
    optimizer, _, _ = _make()
    assert optimizer.summary()["total_optimizations"] == 0
    _run(optimizer, ScriptedAnalyzer(scores=[50.0]), {"Mouth_Close": 0.2}, max_iterations=1)
    _run(optimizer, ScriptedAnalyzer(scores=[50.0], landmarks=make_face(jaw_width=0.5)),
         {"Mouth_Close": 0.2}, max_iterations=1)
    summary = optimizer.summary()
    assert summary["total_optimizations"] == 2
    assert summary["average_iterations"] == 1.0
    assert summary["constraint_violation_rate"] == 0.5


def test_target_viseme_parsed():
    optimizer, _, _ = _make()
    result = _run(optimizer, ScriptedAnalyzer(), {}, viseme="aa1", max_iterations=1)
    assert result.log.target_viseme is Viseme.AA
