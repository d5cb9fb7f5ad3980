"""Viseme labels, phoneme knowledge base, and base morph weight tables.

Labels are ARPAbet phonemes plus ``sil``.  Each label maps to a family
(``PP``, ``FF``, ``AA`` ...) of visually equivalent mouth shapes, and to a
base morph-target weight table loaded from ``viseme_states.json``.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from visemeforge.core.config_loader import load_config

logger = logging.getLogger(__name__)


class Viseme(str, Enum):
    SIL = "sil"
    # Vowels
    AA = "AA"
    AE = "AE"
    AH = "AH"
    AO = "AO"
    EH = "EH"
    ER = "ER"
    IH = "IH"
    IY = "IY"
    UH = "UH"
    UW = "UW"
    # Diphthongs
    AW = "AW"
    AY = "AY"
    EY = "EY"
    OW = "OW"
    OY = "OY"
    # Plosives
    B = "B"
    P = "P"
    D = "D"
    T = "T"
    G = "G"
    K = "K"
    # Fricatives
    F = "F"
    V = "V"
    TH = "TH"
    DH = "DH"
    S = "S"
    Z = "Z"
    SH = "SH"
    ZH = "ZH"
    HH = "HH"
    # Nasals
    M = "M"
    N = "N"
    NG = "NG"
    # Liquids
    L = "L"
    R = "R"
    # Glides
    W = "W"
    Y = "Y"
    # Affricates
    CH = "CH"
    JH = "JH"

    @classmethod
    def parse(cls, label: "str | Viseme") -> "Viseme":
        """Resolve a label case-insensitively, ignoring ARPAbet stress digits."""
        if isinstance(label, Viseme):
            return label
        clean = label.strip().rstrip("012")
        if clean.lower() == "sil":
            return cls.SIL
        try:
            return cls(clean.upper())
        except ValueError:
            raise ValueError(f"Unknown viseme label: {label!r}") from None

    @property
    def family(self) -> str:
        """The visually equivalent mouth-shape family of this label."""
        return VISEME_FAMILIES.get(self, "REST")


# Phoneme → mouth-shape family
VISEME_FAMILIES: dict[Viseme, str] = {
    Viseme.SIL: "REST",
    Viseme.P: "PP", Viseme.B: "PP", Viseme.M: "PP",
    Viseme.F: "FF", Viseme.V: "FF",
    Viseme.TH: "TH", Viseme.DH: "TH",
    Viseme.T: "DD", Viseme.D: "DD", Viseme.N: "DD", Viseme.L: "DD",
    Viseme.S: "SS", Viseme.Z: "SS",
    Viseme.SH: "SH", Viseme.ZH: "SH", Viseme.CH: "SH", Viseme.JH: "SH",
    Viseme.K: "KK", Viseme.G: "KK", Viseme.NG: "KK",
    Viseme.R: "RR", Viseme.ER: "RR",
    Viseme.AA: "AA", Viseme.AE: "AA", Viseme.AH: "AA", Viseme.AW: "AA", Viseme.AY: "AA",
    Viseme.EH: "EH", Viseme.EY: "EH",
    Viseme.IH: "IH", Viseme.IY: "IH",
    Viseme.AO: "OH", Viseme.OW: "OH", Viseme.OY: "OH",
    Viseme.UH: "UH", Viseme.UW: "UH",
    Viseme.W: "WW", Viseme.Y: "WW", Viseme.HH: "WW",
}


@dataclass(frozen=True)
class PhonemeInfo:
    """Linguistic properties of a phoneme."""
    kind: str                     # vowel | diphthong | consonant | silence
    subtype: str
    place: Optional[str] = None   # consonant place of articulation
    height: Optional[str] = None  # vowel height
    rounded: bool = False
    voiced: bool = False


PHONEME_DATABASE: dict[Viseme, PhonemeInfo] = {
    # Vowels
    Viseme.AA: PhonemeInfo("vowel", "back", height="low", voiced=True),
    Viseme.AE: PhonemeInfo("vowel", "front", height="low", voiced=True),
    Viseme.AH: PhonemeInfo("vowel", "central", height="mid", voiced=True),
    Viseme.AO: PhonemeInfo("vowel", "back", height="low", rounded=True, voiced=True),
    Viseme.EH: PhonemeInfo("vowel", "front", height="mid", voiced=True),
    Viseme.ER: PhonemeInfo("vowel", "central", height="mid", voiced=True),
    Viseme.IH: PhonemeInfo("vowel", "front", height="high", voiced=True),
    Viseme.IY: PhonemeInfo("vowel", "front", height="high", voiced=True),
    Viseme.UH: PhonemeInfo("vowel", "back", height="high", rounded=True, voiced=True),
    Viseme.UW: PhonemeInfo("vowel", "back", height="high", rounded=True, voiced=True),
    # Diphthongs
    Viseme.AW: PhonemeInfo("diphthong", "back", height="low", voiced=True),
    Viseme.AY: PhonemeInfo("diphthong", "front", height="low", voiced=True),
    Viseme.EY: PhonemeInfo("diphthong", "front", height="mid", voiced=True),
    Viseme.OW: PhonemeInfo("diphthong", "back", height="mid", rounded=True, voiced=True),
    Viseme.OY: PhonemeInfo("diphthong", "back", height="mid", rounded=True, voiced=True),
    # Plosives
    Viseme.B: PhonemeInfo("consonant", "plosive", place="bilabial", voiced=True),
    Viseme.P: PhonemeInfo("consonant", "plosive", place="bilabial"),
    Viseme.D: PhonemeInfo("consonant", "plosive", place="alveolar", voiced=True),
    Viseme.T: PhonemeInfo("consonant", "plosive", place="alveolar"),
    Viseme.G: PhonemeInfo("consonant", "plosive", place="velar", voiced=True),
    Viseme.K: PhonemeInfo("consonant", "plosive", place="velar"),
    # Fricatives
    Viseme.F: PhonemeInfo("consonant", "fricative", place="labiodental"),
    Viseme.V: PhonemeInfo("consonant", "fricative", place="labiodental", voiced=True),
    Viseme.TH: PhonemeInfo("consonant", "fricative", place="dental"),
    Viseme.DH: PhonemeInfo("consonant", "fricative", place="dental", voiced=True),
    Viseme.S: PhonemeInfo("consonant", "fricative", place="alveolar"),
    Viseme.Z: PhonemeInfo("consonant", "fricative", place="alveolar", voiced=True),
    Viseme.SH: PhonemeInfo("consonant", "fricative", place="postalveolar"),
    Viseme.ZH: PhonemeInfo("consonant", "fricative", place="postalveolar", voiced=True),
    Viseme.HH: PhonemeInfo("consonant", "fricative", place="glottal"),
    # Nasals
    Viseme.M: PhonemeInfo("consonant", "nasal", place="bilabial", voiced=True),
    Viseme.N: PhonemeInfo("consonant", "nasal", place="alveolar", voiced=True),
    Viseme.NG: PhonemeInfo("consonant", "nasal", place="velar", voiced=True),
    # Liquids
    Viseme.L: PhonemeInfo("consonant", "liquid", place="alveolar", voiced=True),
    Viseme.R: PhonemeInfo("consonant", "liquid", place="postalveolar", voiced=True),
    # Glides
    Viseme.W: PhonemeInfo("consonant", "glide", place="labial-velar", rounded=True, voiced=True),
    Viseme.Y: PhonemeInfo("consonant", "glide", place="palatal", voiced=True),
    # Affricates
    Viseme.CH: PhonemeInfo("consonant", "affricate", place="postalveolar"),
    Viseme.JH: PhonemeInfo("consonant", "affricate", place="postalveolar", voiced=True),
    # Silence
    Viseme.SIL: PhonemeInfo("silence", "pause"),
}

PHONEME_GROUPS: dict[str, list[Viseme]] = {
    "vowels": [Viseme.AA, Viseme.AE, Viseme.AH, Viseme.AO, Viseme.EH,
               Viseme.ER, Viseme.IH, Viseme.IY, Viseme.UH, Viseme.UW],
    "diphthongs": [Viseme.AW, Viseme.AY, Viseme.EY, Viseme.OW, Viseme.OY],
    "plosives": [Viseme.B, Viseme.P, Viseme.D, Viseme.T, Viseme.G, Viseme.K],
    "fricatives": [Viseme.F, Viseme.V, Viseme.TH, Viseme.DH, Viseme.S,
                   Viseme.Z, Viseme.SH, Viseme.ZH, Viseme.HH],
    "nasals": [Viseme.M, Viseme.N, Viseme.NG],
    "liquids": [Viseme.L, Viseme.R],
    "glides": [Viseme.W, Viseme.Y],
    "affricates": [Viseme.CH, Viseme.JH],
    "bilabial": [Viseme.B, Viseme.P, Viseme.M],
    "rounded": [Viseme.AO, Viseme.UH, Viseme.UW, Viseme.OW, Viseme.W],
}

SIMILAR_PHONEMES: dict[Viseme, list[Viseme]] = {
    Viseme.AA: [Viseme.AO, Viseme.AH],
    Viseme.AE: [Viseme.EH, Viseme.AH],
    Viseme.IY: [Viseme.IH, Viseme.EY],
    Viseme.UW: [Viseme.UH, Viseme.OW],
    Viseme.B: [Viseme.P, Viseme.M],
    Viseme.D: [Viseme.T, Viseme.N],
    Viseme.G: [Viseme.K, Viseme.NG],
    Viseme.F: [Viseme.V],
    Viseme.S: [Viseme.Z],
    Viseme.SH: [Viseme.ZH, Viseme.CH],
    Viseme.TH: [Viseme.DH],
}


def load_viseme_states(name: str = "viseme_states.json") -> dict[Viseme, dict[str, float]]:
    """Load base morph weight tables keyed by viseme.

    Unknown labels in the file are skipped with a warning.
    """
    raw = load_config(name)
    states: dict[Viseme, dict[str, float]] = {}
    for label, weights in raw.items():
        try:
            viseme = Viseme.parse(label)
        except ValueError:
            logger.warning("Skipping unknown viseme %r in %s", label, name)
            continue
        states[viseme] = {morph: float(w) for morph, w in weights.items()}
    return states
