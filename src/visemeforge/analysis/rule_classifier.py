"""Rule-based phoneme classifier over normalized mouth features.

Every phoneme carries a table of ``{min, max, weight}`` ranges (optionally
with an ``optimal`` point).  Candidates are scored against those ranges,
re-weighted by phoneme type, boosted by a few linguistic expectations and
finally nudged by fuzzy similarity rules.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from visemeforge.analysis.visemes import (
    PHONEME_DATABASE, PHONEME_GROUPS, SIMILAR_PHONEMES, PhonemeInfo, Viseme,
)
from visemeforge.core.config_loader import load_config

logger = logging.getLogger(__name__)


@dataclass
class FeatureRule:
    """Acceptable range of one normalized feature for one phoneme."""
    min: float
    max: float
    weight: float = 1.0
    optimal: Optional[float] = None

    def __post_init__(self):
        if self.min > self.max:
            raise ValueError(f"Rule min {self.min} exceeds max {self.max}")
        if self.optimal is not None and not (self.min <= self.optimal <= self.max):
            raise ValueError(f"Rule optimal {self.optimal} outside [{self.min}, {self.max}]")

    @property
    def center(self) -> float:
        if self.optimal is not None:
            return self.optimal
        return (self.min + self.max) / 2.0

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max

    def proximity(self, value: float) -> float:
        """1.0 at the optimal point, falling linearly to 0.0 at the far edge."""
        reach = max(self.center - self.min, self.max - self.center)
        if reach <= 0.0:
            return 1.0
        return 1.0 - abs(value - self.center) / reach

    def penalty(self, value: float) -> float:
        """Distance to the nearest bound, for values outside the range."""
        return min(abs(value - self.min), abs(value - self.max))


@dataclass
class Candidate:
    viseme: Viseme
    score: float
    rule_count: int = 0


# ── Classifier ────────────────────────────────────────────────────────

class RuleBasedClassifier:
    """Scores every known phoneme against a set of normalized features.

    Parameters
    ----------
    rules : dict, optional
        ``{label: {feature: {min, max, weight[, optimal]}}}``.  Loaded from
        ``classification_rules.json`` when omitted.
    feature_weights : dict, optional
        Type weights (``global``, ``vowels``, ``consonants``).
    use_ml_pass : bool
        Apply the type-weighting and linguistic boost pass.
    use_fuzzy_matching : bool
        Apply similarity and borderline boosts.
    """

    def __init__(self, rules: Optional[dict] = None,
                 feature_weights: Optional[dict] = None,
                 use_ml_pass: bool = True,
                 use_fuzzy_matching: bool = True):
        if rules is None or feature_weights is None:
            data = load_config("classification_rules.json")
            rules = rules if rules is not None else data["rules"]
            feature_weights = (feature_weights if feature_weights is not None
                               else data["feature_weights"])

        self.rules: dict[Viseme, dict[str, FeatureRule]] = {}
        for label, table in rules.items():
            viseme = Viseme.parse(label)
            self.rules[viseme] = {
                feature: r if isinstance(r, FeatureRule) else FeatureRule(**r)
                for feature, r in table.items()
            }
        self.feature_weights: dict[str, dict[str, float]] = feature_weights
        self.use_ml_pass = use_ml_pass
        self.use_fuzzy_matching = use_fuzzy_matching

    # ── Scoring ──

    def rank(self, features: dict[str, float]) -> list[tuple[Viseme, float]]:
        """Return ``(viseme, score)`` pairs sorted best first.

        *features* are normalized values (see ``normalize_features``).
        Returns an empty list when no rule applies.
        """
        if not features:
            return []

        candidates = self._rule_candidates(features)
        if self.use_ml_pass:
            for c in candidates:
                c.score = (c.score + self._ml_score(c, features)) / 2.0
        if self.use_fuzzy_matching:
            self._apply_fuzzy(candidates)

        candidates.sort(key=lambda c: c.score, reverse=True)
        return [(c.viseme, c.score) for c in candidates]

    def classify(self, features: dict[str, float]) -> Viseme:
        """Best matching viseme, ``sil`` when nothing applies."""
        ranked = self.rank(features)
        return ranked[0][0] if ranked else Viseme.SIL

    def alternatives(self, features: dict[str, float],
                     count: int = 3) -> list[tuple[Viseme, float]]:
        """Top *count* candidates by plain rule score."""
        candidates = self._rule_candidates(features)
        candidates.sort(key=lambda c: c.score, reverse=True)
        return [(c.viseme, c.score) for c in candidates[:count]]

    def consistency(self, features: dict[str, float], viseme: "Viseme | str") -> float:
        """Fraction of the phoneme's rules whose range contains the feature.

        0.5 when the phoneme has no rules or no feature is available.
        """
        rules = self.rules.get(Viseme.parse(viseme))
        if not rules:
            return 0.5
        checked = [rule.contains(features[name])
                   for name, rule in rules.items() if name in features]
        if not checked:
            return 0.5
        return sum(checked) / len(checked)

    def _rule_candidates(self, features: dict[str, float]) -> list[Candidate]:
        candidates = []
        for viseme, rules in self.rules.items():
            score = 0.0
            total_weight = 0.0
            count = 0
            for name, rule in rules.items():
                value = features.get(name)
                if value is None:
                    continue
                if rule.contains(value):
                    score += rule.proximity(value) * rule.weight
                else:
                    score -= rule.penalty(value) * rule.weight * 0.5
                total_weight += rule.weight
                count += 1
            if count == 0 or total_weight <= 0.0:
                continue
            candidates.append(Candidate(
                viseme, max(0.0, min(1.0, score / total_weight)), count))
        return candidates

    def _type_weights(self, info: PhonemeInfo) -> dict[str, float]:
        if info.kind in ("vowel", "diphthong"):
            return self.feature_weights.get("vowels", {})
        if info.kind == "consonant":
            return self.feature_weights.get("consonants", {})
        return self.feature_weights.get("global", {})

    def _ml_score(self, candidate: Candidate, features: dict[str, float]) -> float:
        info = PHONEME_DATABASE[candidate.viseme]
        weights = self._type_weights(info)
        score = candidate.score
        for name in features:
            w = weights.get(name)
            if w:
                score *= 1.0 + w * 0.1
        score = self._linguistic_boost(score, candidate.viseme, info, features)
        return max(0.0, min(1.0, score))

    @staticmethod
    def _linguistic_boost(score: float, viseme: Viseme, info: PhonemeInfo,
                          features: dict[str, float]) -> float:
        if info.kind == "vowel" and features.get("jaw_opening", 0.0) > 0.3:
            score *= 1.2
        if info.place == "bilabial" and features.get("lip_separation", 1.0) < 0.1:
            score *= 1.3
        if info.rounded and features.get("roundness", 0.0) > 0.6:
            score *= 1.2
        if (viseme is Viseme.SIL
                and features.get("mouth_height", 1.0) < 0.1
                and features.get("lip_separation", 1.0) < 0.05):
            score *= 1.4
        return score

    def _apply_fuzzy(self, candidates: list[Candidate]) -> None:
        # Similarity boosts read the scores as they were before this pass
        before = {c.viseme: c.score for c in candidates}
        for c in candidates:
            if PHONEME_DATABASE[c.viseme].kind == "vowel":
                for similar in SIMILAR_PHONEMES.get(c.viseme, []):
                    if before.get(similar, 0.0) > 0.3:
                        c.score += 0.05
            if 0.4 < c.score < 0.6:
                c.score += 0.1

    # ── Knowledge base queries ──

    def phoneme_info(self, viseme: "Viseme | str") -> Optional[PhonemeInfo]:
        return PHONEME_DATABASE.get(Viseme.parse(viseme))

    def is_in_group(self, viseme: "Viseme | str", group: str) -> bool:
        return Viseme.parse(viseme) in PHONEME_GROUPS.get(group, [])

    def group(self, group: str) -> list[Viseme]:
        return list(PHONEME_GROUPS.get(group, []))

    def update_rule(self, viseme: "Viseme | str", feature: str, rule: "FeatureRule | dict") -> None:
        """Replace or add one feature rule.  Unknown phonemes are ignored."""
        table = self.rules.get(Viseme.parse(viseme))
        if table is None:
            logger.debug("No rule table for %s; update ignored", viseme)
            return
        table[feature] = rule if isinstance(rule, FeatureRule) else FeatureRule(**rule)

    def stats(self) -> dict[str, int]:
        return {
            "total_phonemes": len(self.rules),
            "phoneme_groups": len(PHONEME_GROUPS),
            "features_used": len(self.feature_weights.get("global", {})),
            "classification_rules": sum(len(t) for t in self.rules.values()),
        }
