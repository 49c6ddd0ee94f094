"""Sub-pattern discovery for classified packs.

Every classified pack is scanned for three kinds of pattern:

* **function** - what the sounds are for (one-shots, loops, tails...),
* **variant** - how they are processed or voiced (dry, heavy, analog...),
* **context** - where in a track they belong (intro, breakdown...).

Patterns come from the pack name (``filename``), its internal folder
names (``folder``) and its detected structure (``structure``).  Text
matches are scored::

    0.5 base
    + 0.3 when the match spans the whole text, + 0.15 when over half
    + source bonus (filename 0.1, folder 0.2, structure 0.15)
    + 0.1 when the match sits at the start or end of the text
    capped at 0.95

Duplicates (same type and value) keep the highest confidence; anything
under 0.3 is dropped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import tuning
from .models import Pack

FUNCTION = "function"
VARIANT = "variant"
CONTEXT = "context"

FUNCTION_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("one_shot", re.compile(r"\b(one\s*shot|oneshot|hit|stab|single)\b")),
    ("loop", re.compile(r"\b(loop|loops|cycle|circular)\b")),
    ("layer", re.compile(r"\b(layer|layers|stack|top|bottom)\b")),
    ("full_kick", re.compile(r"\b(full\s*kick|fullkick|complete\s*kick)\b")),
    ("tok", re.compile(r"\b(tok|toks|click|tick)\b")),
    ("punch", re.compile(r"\b(punch|punchy|punches)\b")),
    ("tail", re.compile(r"\b(tail|tails|reverb|decay)\b")),
    ("bass_shot", re.compile(r"\b(bass\s*shot|bassshot|sub\s*hit)\b")),
    ("bass_loop", re.compile(r"\b(bass\s*loop|bassloop|sub\s*loop)\b")),
    ("wobble", re.compile(r"\b(wobble|wobbles|wob|modulated)\b")),
    ("growl", re.compile(r"\b(growl|growls|distorted|aggressive)\b")),
    ("arp", re.compile(r"\b(arp|arps|arpeggio|arpeggiated)\b")),
    ("pad", re.compile(r"\b(pad|pads|sustained|atmosphere)\b")),
    ("lead", re.compile(r"\b(lead|leads|melody|melodic)\b")),
    ("pluck", re.compile(r"\b(pluck|plucks|staccato|short)\b")),
    ("sweep", re.compile(r"\b(sweep|sweeps|riser|uplifter)\b")),
    ("fill", re.compile(r"\b(fill|fills|transition|break)\b")),
]

VARIANT_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("standard", re.compile(r"\b(standard|std|normal|basic|clean)\b")),
    ("pitched", re.compile(r"\b(pitched|tuned|harmonic|tonal)\b")),
    ("detuned", re.compile(r"\b(detuned|detune|off\s*pitch|atonal)\b")),
    ("heavy", re.compile(r"\b(heavy|thick|fat|massive|huge)\b")),
    ("light", re.compile(r"\b(light|thin|soft|gentle|subtle)\b")),
    ("punchy", re.compile(r"\b(punchy|punch|hard|sharp|crisp)\b")),
    ("dry", re.compile(r"\b(dry|clean|raw|unprocessed)\b")),
    ("wet", re.compile(r"\b(wet|processed|effected|reverb)\b")),
    ("distorted", re.compile(r"\b(distorted|distort|saturated|overdriven)\b")),
    ("filtered", re.compile(r"\b(filtered|filter|low\s*pass|high\s*pass)\b")),
    ("oldschool", re.compile(r"\b(old\s*school|oldschool|classic|vintage|retro)\b")),
    ("modern", re.compile(r"\b(modern|new\s*school|newschool|fresh|current)\b")),
    ("analog", re.compile(r"\b(analog|analogue|warm|vintage|tube)\b")),
    ("digital", re.compile(r"\b(digital|synthetic|cold|precise)\b")),
]

CONTEXT_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("main", re.compile(r"\b(main|drop|climax|main\s*part)\b")),
    ("intro", re.compile(r"\b(intro|introduction|opening|start)\b")),
    ("breakdown", re.compile(r"\b(breakdown|break\s*down|break|calm)\b")),
    ("buildup", re.compile(r"\b(buildup|build\s*up|build|tension|riser)\b")),
    ("outro", re.compile(r"\b(outro|ending|finish|conclusion)\b")),
    ("bridge", re.compile(r"\b(bridge|transition|middle|connecting)\b")),
    ("mix", re.compile(r"\b(mix|mixed|mixing|blend)\b")),
    ("master", re.compile(r"\b(master|mastered|final|finished)\b")),
    ("demo", re.compile(r"\b(demo|draft|sketch|rough)\b")),
    ("final", re.compile(r"\b(final|finished|complete|done)\b")),
]

PATTERN_FAMILIES = [
    (FUNCTION, FUNCTION_PATTERNS),
    (VARIANT, VARIANT_PATTERNS),
    (CONTEXT, CONTEXT_PATTERNS),
]

# Function implied by a detected type bucket
DEFAULT_FUNCTION_FOR_TYPE = {
    "KICKS": "full_kick",
    "BASS": "one_shot",
    "SYNTHS": "lead",
    "PERC": "one_shot",
    "PERCUSSION": "one_shot",
    "VOCALS": "one_shot",
    "FX": "one_shot",
    "MELODY": "lead",
    "DRUMS": "loop",
    "DRUM_LOOPS": "loop",
    "TOPS": "loop",
    "TEXTURES": "pad",
    "PADS": "pad",
    "LEADS": "lead",
    "ARPS": "arp",
}

TYPE_PRIORITY = ["KICKS", "BASS", "SYNTHS", "VOCALS", "FX", "DRUMS", "PERCUSSION", "MELODY"]

NAME_TYPE_PATTERNS: List[Tuple[str, List[str]]] = [
    ("KICKS", [r"\bkick", r"\btok", r"\bpunch"]),
    ("BASS", [r"\bbass", r"\bsub", r"\bwobble"]),
    ("SYNTHS", [r"\bsynth", r"\blead", r"\bpluck", r"\barp"]),
    ("PERC", [r"\bperc", r"\bdrum", r"\bhihat", r"\bsnare"]),
    ("FX", [r"\bfx", r"\beffect", r"\bsweep", r"\bimpact"]),
    ("VOCALS", [r"\bvocal", r"\bvoice", r"\bchop"]),
    ("ACAPELLAS", [r"\bacapella", r"\bacap", r"\bstem"]),
]

_SEPARATORS_RE = re.compile(r"[_\-.]+")
_CAMEL_BOUNDARY_RE = re.compile(r"([a-z])([A-Z])")


@dataclass
class DiscoveredPattern:
    pack_id: str
    type: str
    value: str
    confidence: float
    source: str
    examples: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pack_id": self.pack_id,
            "type": self.type,
            "value": self.value,
            "confidence": round(self.confidence, 4),
            "source": self.source,
            "examples": list(self.examples),
        }


@dataclass(frozen=True)
class MatrixKey:
    family: str
    type: str
    style: str

    @property
    def key(self) -> str:
        return f"{self.family}|{self.type}|{self.style}"


def _prepare(text: str) -> str:
    return re.sub(r"\s+", " ", _SEPARATORS_RE.sub(" ", text.lower())).strip()


def match_confidence(match: "re.Match[str]", text: str, source: str) -> float:
    """Score one regex match found in ``text``."""
    params = tuning.PATTERN_CONFIDENCE
    confidence = params["base"]
    matched = len(match.group(0))
    if matched == len(text):
        confidence += params["exact_bonus"]
    elif matched > len(text) * 0.5:
        confidence += params["partial_bonus"]
    confidence += tuning.PATTERN_SOURCE_BONUS.get(source, 0.0)
    if match.start() == 0 or match.end() == len(text):
        confidence += params["edge_bonus"]
    return min(params["max"], confidence)


def analyze_text(text: str, source: str, pack_id: str = "") -> List[DiscoveredPattern]:
    prepared = _prepare(text)
    if not prepared:
        return []
    found: List[DiscoveredPattern] = []
    for kind, patterns in PATTERN_FAMILIES:
        for value, regex in patterns:
            match = regex.search(prepared)
            if match:
                found.append(
                    DiscoveredPattern(
                        pack_id=pack_id,
                        type=kind,
                        value=value,
                        confidence=match_confidence(match, prepared, source),
                        source=source,
                        examples=[match.group(0)],
                    )
                )
    return found


def analyze_structure(pack: Pack) -> List[DiscoveredPattern]:
    """Patterns implied by the pack's detected types, formats and folders."""
    found: List[DiscoveredPattern] = []
    structure = pack.internal_structure
    if structure is not None:
        for type_name in structure.detected_types:
            function = DEFAULT_FUNCTION_FOR_TYPE.get(type_name.upper())
            if function:
                found.append(
                    DiscoveredPattern(pack.id, FUNCTION, function, 0.9, "structure", [f"{type_name} folder detected"])
                )
        for fmt in structure.formats:
            value = fmt.lower().replace(" ", "_")
            if value.endswith("s") and len(value) > 3:
                value = value[:-1]
            found.append(DiscoveredPattern(pack.id, VARIANT, value, 0.85, "structure", [f"{fmt} organisation detected"]))
        for folder in structure.subfolders:
            lowered = folder.lower()
            if "intro" in lowered:
                found.append(DiscoveredPattern(pack.id, CONTEXT, "intro", 0.8, "structure", [folder]))
            elif "main" in lowered or "drop" in lowered:
                found.append(DiscoveredPattern(pack.id, CONTEXT, "main", 0.8, "structure", [folder]))

    if not found:
        lowered = pack.name.lower()
        if "kick" in lowered:
            found.append(DiscoveredPattern(pack.id, FUNCTION, "full_kick", 0.6, "structure", ['name contains "kick"']))
        if "bass" in lowered:
            found.append(DiscoveredPattern(pack.id, FUNCTION, "bass_shot", 0.6, "structure", ['name contains "bass"']))
    return found


def deduplicate(patterns: Sequence[DiscoveredPattern], pack_id: str) -> List[DiscoveredPattern]:
    unique: Dict[Tuple[str, str], DiscoveredPattern] = {}
    for pattern in patterns:
        pattern.pack_id = pack_id
        key = (pattern.type, pattern.value)
        existing = unique.get(key)
        if existing is None:
            unique[key] = pattern
        elif pattern.confidence > existing.confidence:
            existing.confidence = pattern.confidence
            existing.source = pattern.source
            existing.examples = existing.examples + pattern.examples
    floor = tuning.PATTERN_CONFIDENCE["floor"]
    kept = [p for p in unique.values() if p.confidence >= floor]
    kept.sort(key=lambda p: -p.confidence)
    return kept


def analyze_pack_patterns(pack: Pack) -> List[DiscoveredPattern]:
    """All patterns discovered for one pack, deduplicated and sorted."""
    found = analyze_text(pack.name, "filename", pack.id)
    if pack.internal_structure is not None:
        for folder in pack.internal_structure.subfolders:
            found.extend(analyze_text(folder, "folder", pack.id))
    found.extend(analyze_structure(pack))
    return deduplicate(found, pack.id)


def normalize_name(name: str) -> str:
    """``"hard_dance"`` / ``"hardDance"`` -> ``"Hard Dance"``."""
    text = _CAMEL_BOUNDARY_RE.sub(r"\1 \2", (name or "").strip())
    words = re.split(r"[_\s]+", text)
    return " ".join(w[:1].upper() + w[1:].lower() for w in words if w)


def detect_type_from_name(name: str) -> Optional[str]:
    lowered = name.lower()
    for type_name, patterns in NAME_TYPE_PATTERNS:
        if any(re.search(p, lowered) for p in patterns):
            return type_name
    return None


def detect_pack_type(pack: Pack) -> Optional[str]:
    detected = list(pack.internal_structure.detected_types) if pack.internal_structure else []
    if detected:
        for type_name in TYPE_PRIORITY:
            if type_name in detected:
                return type_name
        return detected[0]
    return detect_type_from_name(pack.name)


def generate_matrix_key(pack: Pack, default_type: str = "UNKNOWN") -> MatrixKey:
    if pack.classification is None:
        raise ValueError(f"Pack {pack.id} has no classification")
    return MatrixKey(
        family=normalize_name(pack.classification.family),
        type=detect_pack_type(pack) or default_type,
        style=normalize_name(pack.classification.style),
    )


def aggregate_patterns(patterns: Sequence[DiscoveredPattern]) -> Dict[str, List[str]]:
    """Unique sorted values per pattern type, above the aggregation floor."""
    floor = tuning.PATTERN_CONFIDENCE["aggregate_floor"]
    buckets: Dict[str, set] = {FUNCTION: set(), VARIANT: set(), CONTEXT: set()}
    for pattern in patterns:
        if pattern.confidence >= floor and pattern.type in buckets:
            buckets[pattern.type].add(pattern.value)
    return {
        "functions": sorted(buckets[FUNCTION]),
        "variants": sorted(buckets[VARIANT]),
        "contexts": sorted(buckets[CONTEXT]),
    }
