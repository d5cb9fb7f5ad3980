"""Morph influence map: which facial metrics each morph target moves.

Static configuration loaded from ``morph_influence.json``.  New morphs can
be registered at runtime without touching the optimizer.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from visemeforge.core.config_loader import load_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MorphInfluence:
    """Metrics a morph moves and morphs it must not be combined with."""
    primary: tuple[str, ...] = ()
    secondary: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()

    @property
    def metrics(self) -> tuple[str, ...]:
        return self.primary + self.secondary


class MorphInfluenceMap:
    """Lookup from morph name to its ``MorphInfluence``.

    ``feature_constraints`` maps a metric (``mouthWidth``) to the constraint
    it can push out of bounds (``lipSymmetry``).
    """

    def __init__(self, influences: Optional[dict[str, MorphInfluence]] = None,
                 feature_constraints: Optional[dict[str, str]] = None):
        self._influences: dict[str, MorphInfluence] = dict(influences or {})
        self.feature_constraints: dict[str, str] = dict(feature_constraints or {})

    @classmethod
    def from_config(cls, data: dict) -> "MorphInfluenceMap":
        influences = {
            name: MorphInfluence(
                primary=tuple(entry.get("primary", ())),
                secondary=tuple(entry.get("secondary", ())),
                conflicts=tuple(entry.get("conflicts", ())),
            )
            for name, entry in data.get("morphs", {}).items()
        }
        return cls(influences, data.get("feature_constraints", {}))

    @classmethod
    def load(cls, name: str = "morph_influence.json") -> "MorphInfluenceMap":
        return cls.from_config(load_config(name))

    def __contains__(self, morph: str) -> bool:
        return morph in self._influences

    def __len__(self) -> int:
        return len(self._influences)

    def get(self, morph: str) -> Optional[MorphInfluence]:
        return self._influences.get(morph)

    def register(self, morph: str, influence: MorphInfluence) -> None:
        """Add or replace a morph entry."""
        if morph in self._influences:
            logger.debug("Replacing influence entry for %s", morph)
        self._influences[morph] = influence

    def morphs_affecting(self, metric: str) -> list[str]:
        """Morphs listing *metric* as a primary or secondary effect."""
        return [name for name, inf in self._influences.items() if metric in inf.metrics]

    def related_constraints(self, morph: str,
                            constraint_names: Optional[set[str]] = None) -> list[str]:
        """Constraints this morph can disturb, without duplicates.

        A metric counts when it maps through ``feature_constraints`` or, if
        *constraint_names* is given, when it is itself a constraint name.
        """
        influence = self._influences.get(morph)
        if influence is None:
            return []
        related: list[str] = []
        for metric in influence.metrics:
            name = self.feature_constraints.get(metric)
            if name is None and constraint_names and metric in constraint_names:
                name = metric
            if name is not None and name not in related:
                related.append(name)
        return related

    def conflicts(self, morph: str, other: str) -> bool:
        """True if either morph lists the other as a conflict."""
        a = self._influences.get(morph)
        b = self._influences.get(other)
        return bool((a and other in a.conflicts) or (b and morph in b.conflicts))
