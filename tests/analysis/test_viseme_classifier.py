"""Tests for the frame-level viseme classifier."""

import numpy as np
import pytest

from visemeforge.analysis.viseme_classifier import (
    ClassifierOptions, VisemeClassifier,
)
from visemeforge.analysis.visemes import Viseme

from fixtures.fake_collaborators import FakeClock
from fixtures.synthetic_landmarks import make_closed_mouth, make_face, make_open_mouth


class ScriptedModel:
    """Returns one ranking per call, repeating the last."""

    def __init__(self, *rankings):
        self.rankings = list(rankings)
        self.calls = 0

    def rank(self, features):
        ranking = self.rankings[min(self.calls, len(self.rankings) - 1)]
        self.calls += 1
        if isinstance(ranking, Exception):
            raise ranking
        return ranking


STATES = {
    Viseme.SIL: {"jawOpen": 0.0, "lipsTogether": 1.0},
    Viseme.AA: {"jawOpen": 1.0, "lipsTogether": 0.0},
    Viseme.EH: {"jawOpen": 0.0, "lipsTogether": 0.0},
}


# ── Options ──

class TestClassifierOptions:
    def test_defaults(self):
        opts = ClassifierOptions()
        assert opts.smoothing_factor == 0.3
        assert opts.performance_mode == "balanced"
        assert opts.target_fps == 30

    @pytest.mark.parametrize("kwargs", [
        {"smoothing_factor": 1.5},
        {"confidence_threshold": -0.1},
        {"performance_mode": "turbo"},
        {"target_fps": 0},
        {"interpolation_frames": 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ClassifierOptions(**kwargs)


# ── Classification ──

def test_closed_mouth_with_target_hint():
    clf = VisemeClassifier(clock=FakeClock())
    result = clf.classify(make_closed_mouth(), target_viseme="M")
    assert result.viseme is Viseme.M
    assert result.confidence >= 0.8
    assert result.confident
    assert result.morph_targets["lipsTogether"] >= 0.8
    assert result.morph_targets["jawOpen"] == 0.0
    assert not result.fallback


def test_closed_mouth_without_hint_is_bilabial():
    clf = VisemeClassifier(clock=FakeClock())
    result = clf.classify(make_closed_mouth())
    assert result.viseme.family == "PP"


def test_hint_does_not_override_clear_winner():
    clf = VisemeClassifier(clock=FakeClock())
    result = clf.classify(make_closed_mouth(), target_viseme="AA")
    assert result.viseme.family == "PP"


def test_open_mouth_is_not_bilabial():
    clf = VisemeClassifier(clock=FakeClock())
    result = clf.classify(make_open_mouth(0.1))
    assert result.viseme.family != "PP"


def test_alternatives_limited():
    clf = VisemeClassifier(ClassifierOptions(alternative_count=2), clock=FakeClock())
    result = clf.classify(make_closed_mouth())
    assert len(result.alternatives) == 2


def test_outputs_always_in_range():
    rng = np.random.default_rng(7)
    clock = FakeClock()
    clf = VisemeClassifier(clock=clock)
    for _ in range(20):
        clock.advance(40)
        result = clf.classify(rng.random((468, 3)))
        assert 0.0 <= result.confidence <= 1.0
        assert all(0.0 <= w <= 1.0 for w in result.morph_targets.values())


def test_empty_ranking_defaults_to_silence():
    clf = VisemeClassifier(model=ScriptedModel([]), viseme_states=STATES, clock=FakeClock())
    result = clf.classify(make_closed_mouth())
    assert result.viseme is Viseme.SIL
    assert result.confidence == pytest.approx(0.5)


# ── Failure handling ──

def test_cold_start_failure_returns_neutral():
    clf = VisemeClassifier(viseme_states=STATES, clock=FakeClock())
    result = clf.classify(5)
    assert result.fallback
    assert result.viseme is Viseme.SIL
    assert result.confidence == 0.5
    assert result.morph_targets == {"jawOpen": 0.0, "lipsTogether": 1.0}


def test_failure_returns_last_valid_result():
    model = ScriptedModel([(Viseme.AA, 0.9)], RuntimeError("model crashed"))
    clock = FakeClock()
    clf = VisemeClassifier(model=model, viseme_states=STATES, clock=clock)
    first = clf.classify(make_open_mouth())
    clock.advance(100)
    second = clf.classify(make_open_mouth())
    assert second.fallback
    assert second.viseme is first.viseme
    assert second.morph_targets == first.morph_targets
    assert clf.last_result is first


def test_unknown_target_hint_falls_back():
    clf = VisemeClassifier(clock=FakeClock())
    assert clf.classify(make_closed_mouth(), target_viseme="XX").fallback


# ── Throttling ──

def test_fast_mode_throttles_to_frame_rate():
    clock = FakeClock()
    model = ScriptedModel([(Viseme.AA, 0.9)], [(Viseme.EH, 0.9)])
    clf = VisemeClassifier(ClassifierOptions(performance_mode="fast", target_fps=30),
                           model=model, viseme_states=STATES, clock=clock)
    first = clf.classify(make_open_mouth())
    clock.advance(10)
    throttled = clf.classify(make_open_mouth())
    assert throttled.throttled
    assert throttled.viseme is first.viseme
    assert model.calls == 1

    clock.advance(40)
    fresh = clf.classify(make_open_mouth())
    assert not fresh.throttled
    assert model.calls == 2


def test_balanced_mode_never_throttles():
    clf = VisemeClassifier(clock=FakeClock())
    clf.classify(make_closed_mouth())
    assert not clf.classify(make_closed_mouth()).throttled


# ── Smoothing ──

def test_smoothing_prefers_recent_confident_label():
    model = ScriptedModel([(Viseme.AA, 0.9)], [(Viseme.EH, 0.4)])
    clock = FakeClock()
    clf = VisemeClassifier(model=model, viseme_states=STATES, clock=clock)
    first = clf.classify(make_closed_mouth())
    clock.advance(40)
    second = clf.classify(make_closed_mouth())

    assert first.confidence == pytest.approx(0.9)
    assert second.viseme is Viseme.AA
    # smoothed (0.4 + 0.9) / 2, blended 0.7 / 0.3 with the history mean
    assert second.confidence == pytest.approx(0.7 * 0.65 + 0.3 * 0.9)
    # morph weights blend (1 - 0.3) * previous + 0.3 * new
    assert second.morph_targets["jawOpen"] == pytest.approx(0.7 * 0.9 + 0.3 * 0.725)


def test_smoothing_disabled():
    model = ScriptedModel([(Viseme.AA, 0.9)], [(Viseme.EH, 0.4)])
    clf = VisemeClassifier(ClassifierOptions(smoothing_enabled=False),
                           model=model, viseme_states=STATES, clock=FakeClock())
    clf.classify(make_closed_mouth())
    assert clf.classify(make_closed_mouth()).viseme is Viseme.EH


class _StatesFailingFor(dict):
    """Viseme state table whose lookup of one viseme blows up."""

    def __init__(self, states, broken):
        super().__init__(states)
        self.broken = broken

    def get(self, key, default=None):
        if key is self.broken:
            raise RuntimeError(f"state table corrupt for {key.value}")
        return super().get(key, default)


def test_failed_frame_not_kept_for_smoothing():
    model = ScriptedModel([(Viseme.AA, 0.9)], [(Viseme.EH, 0.95)], [(Viseme.EH, 0.4)])
    clock = FakeClock()
    clf = VisemeClassifier(model=model, viseme_states=_StatesFailingFor(STATES, Viseme.EH),
                           clock=clock)
    first = clf.classify(make_closed_mouth())
    clock.advance(40)
    assert clf.classify(make_closed_mouth()).fallback
    clock.advance(40)
    third = clf.classify(make_closed_mouth())

    assert not third.fallback
    assert third.viseme is Viseme.AA
    # history holds only the first frame's confidence
    assert third.confidence == pytest.approx(0.7 * 0.65 + 0.3 * first.confidence)
    assert third.morph_targets["jawOpen"] == pytest.approx(0.7 * 0.9 + 0.3 * 0.725)


def test_small_mouth_lowers_confidence():
    model = ScriptedModel([(Viseme.AA, 0.9)])
    clf = VisemeClassifier(model=model, viseme_states=STATES, clock=FakeClock())
    result = clf.classify(make_face(mouth_width=0.05))
    assert result.confidence == pytest.approx(0.9 * 0.5)


# ── Batch ──

def test_classify_batch_not_throttled():
    clock = FakeClock()
    clf = VisemeClassifier(ClassifierOptions(performance_mode="fast"), clock=clock)
    frames = [make_closed_mouth()] * 4 + [make_open_mouth(0.08)] * 8
    results = clf.classify_batch(frames, batch_size=5)
    assert len(results) == len(frames)
    assert not any(r.throttled for r in results)
    for r in results:
        assert 0.0 <= r.confidence <= 1.0
        assert all(0.0 <= w <= 1.0 for w in r.morph_targets.values())


def test_classify_batch_smooths_confidence():
    values = [0.9, 0.1] * 6
    model = ScriptedModel(*[[(Viseme.AA, v)] for v in values])
    clf = VisemeClassifier(ClassifierOptions(smoothing_enabled=False),
                           model=model, viseme_states=STATES, clock=FakeClock())
    results = clf.classify_batch([make_closed_mouth()] * len(values))
    middle = [r.confidence for r in results[3:-3]]
    assert max(middle) - min(middle) < 0.3


# ── Settings ──

def test_settings_reports_buffer():
    clf = VisemeClassifier(clock=FakeClock())
    clf.classify(make_closed_mouth())
    info = clf.settings()
    assert info["buffer_length"] == 1
    assert info["performance_mode"] == "balanced"


def test_update_settings_unknown_key():
    clf = VisemeClassifier(clock=FakeClock())
    with pytest.raises(ValueError):
        clf.update_settings(turbo=True)


def test_update_settings_invalid_value():
    clf = VisemeClassifier(clock=FakeClock())
    with pytest.raises(ValueError):
        clf.update_settings(smoothing_factor=2.0)
    assert clf.options.smoothing_factor == 0.3


def test_mode_change_clears_caches():
    clf = VisemeClassifier(clock=FakeClock())
    clf.classify(make_closed_mouth())
    clf.update_settings(performance_mode="quality")
    assert clf.last_result is None
    assert clf.options.performance_mode == "quality"


def test_same_mode_keeps_caches():
    clf = VisemeClassifier(clock=FakeClock())
    clf.classify(make_closed_mouth())
    clf.update_settings(smoothing_factor=0.5)
    assert clf.last_result is not None
