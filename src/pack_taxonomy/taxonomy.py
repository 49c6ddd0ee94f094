"""In-memory taxonomy index: genre families, styles and keyword weights.

The index is built once per run from a parsed taxonomy document and is
immutable afterwards.  The document shape is::

    {
      "families": [
        {
          "id": "hard_dance",
          "name": "Hard Dance",
          "styles": ["Hardstyle", "Rawstyle"],
          "keywords": ["hardstyle", {"term": "rawstyle", "weight": 0.9}],
          "exclusions": ["soft"],
          "confidence": 0.8
        }
      ],
      "style_synonyms": {"Hardstyle": ["hard style"]},
      "exclusions": {"hard_dance": ["lofi"]}
    }

String keywords carry the default weight (1.0); dict keywords accept
``term``/``keyword`` and ``weight``/``score`` and are clamped to the
configured weight range.  A family without keywords matches on its own
name.  Reading the document from disk is the job of
:class:`pack_taxonomy.config_service.ConfigService`; when no document is
available :func:`default_index` provides a small built-in taxonomy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from . import tuning


_SEPARATOR_RE = re.compile(r"[_\-]+")
_SPACE_RE = re.compile(r"\s+")


def normalize_search_text(*parts: Any) -> str:
    """Lower-case and flatten text fragments into one searchable string."""
    chunks: List[str] = []
    for part in parts:
        if part is None:
            continue
        if isinstance(part, (list, tuple, set)):
            chunks.extend(str(p) for p in part if p is not None)
        else:
            chunks.append(str(part))
    text = " ".join(chunks).lower()
    text = text.replace("&", " and ")
    text = _SEPARATOR_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


def keyword_in_text(keyword: str, text: str) -> bool:
    """Return True when ``keyword`` appears in ``text`` as whole word(s)."""
    term = normalize_search_text(keyword)
    if not term:
        return False
    pattern = r"(?<![a-z0-9])" + re.escape(term) + r"(?![a-z0-9])"
    return re.search(pattern, text) is not None


def clamp(val: float, min_val: float, max_val: float) -> float:
    """Clamp val between min_val and max_val."""
    return max(min_val, min(max_val, val))


@dataclass(frozen=True)
class TaxonomyFamily:
    id: str
    name: str
    styles: Tuple[str, ...] = ()
    keywords: Tuple[Tuple[str, float], ...] = ()
    exclusions: Tuple[str, ...] = ()
    confidence: float = 0.8

    @property
    def keyword_weights(self) -> Dict[str, float]:
        return dict(self.keywords)

    def mentions(self, word: str) -> bool:
        word = word.lower()
        return word in self.id.lower() or word in self.name.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "styles": list(self.styles),
            "keywords": [{"term": t, "weight": w} for t, w in self.keywords],
            "exclusions": list(self.exclusions),
            "confidence": self.confidence,
        }


def _extract_keywords(raw: Any, family_name: str) -> Tuple[Tuple[str, float], ...]:
    params = tuning.TAXONOMIC_PARAMS
    out: Dict[str, float] = {}
    for item in raw or []:
        if isinstance(item, str):
            term, weight = item, params["default_keyword_weight"]
        elif isinstance(item, dict):
            term = item.get("term") or item.get("keyword") or ""
            weight = item.get("weight", item.get("score", params["default_keyword_weight"]))
        else:
            continue
        term = str(term).strip().lower()
        if not term:
            continue
        try:
            weight_f = float(weight)
        except (TypeError, ValueError):
            weight_f = params["default_keyword_weight"]
        weight_f = clamp(weight_f, params["min_keyword_weight"], params["max_keyword_weight"])
        # Duplicate terms keep their strongest weight
        out[term] = max(weight_f, out.get(term, 0.0))
    if not out and family_name:
        out[family_name.lower()] = params["name_keyword_weight"]
    return tuple(out.items())


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


@dataclass(frozen=True)
class TaxonomyIndex:
    """Immutable lookup over taxonomy families."""

    families: Tuple[TaxonomyFamily, ...]
    style_synonyms: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    source: str = "builtin"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "document") -> "TaxonomyIndex":
        families_raw = data.get("families") or []
        if isinstance(families_raw, dict):
            # Some taxonomy files key families by id instead of listing them
            families_raw = [dict(v, id=v.get("id", k)) for k, v in families_raw.items() if isinstance(v, dict)]

        extra_exclusions = data.get("exclusions") or {}
        families: List[TaxonomyFamily] = []
        for raw in families_raw:
            if not isinstance(raw, dict):
                continue
            name = str(raw.get("name") or raw.get("id") or "").strip()
            if not name:
                continue
            family_id = str(raw.get("id") or _slug(name))
            exclusions = [str(e).lower() for e in raw.get("exclusions") or []]
            if isinstance(extra_exclusions, dict):
                for key in (family_id, name):
                    exclusions.extend(str(e).lower() for e in extra_exclusions.get(key, []) or [])
            styles = []
            for style in raw.get("styles") or []:
                style_name = style.get("name") if isinstance(style, dict) else style
                if style_name:
                    styles.append(str(style_name))
            families.append(
                TaxonomyFamily(
                    id=family_id,
                    name=name,
                    styles=tuple(styles),
                    keywords=_extract_keywords(raw.get("keywords"), name),
                    exclusions=tuple(dict.fromkeys(exclusions)),
                    confidence=float(raw.get("confidence", tuning.TAXONOMIC_PARAMS["default_family_confidence"])),
                )
            )

        synonyms: Dict[str, Tuple[str, ...]] = {}
        for style, values in (data.get("style_synonyms") or data.get("styleSynonyms") or {}).items():
            synonyms[str(style)] = tuple(str(v).lower() for v in (values or []))
        return cls(families=tuple(families), style_synonyms=MappingProxyType(synonyms), source=source)

    def __len__(self) -> int:
        return len(self.families)

    def __iter__(self):
        return iter(self.families)

    def find_family(self, name: Optional[str]) -> Optional[TaxonomyFamily]:
        """Case-insensitive lookup by family id or name."""
        if not name:
            return None
        wanted = name.strip().lower()
        for family in self.families:
            if family.id.lower() == wanted or family.name.lower() == wanted:
                return family
        return None

    def resolve_style(self, family: TaxonomyFamily, search_text: str) -> str:
        """Pick the family style named in the text, else its first style."""
        for style in family.styles:
            candidates = (style,) + tuple(self.style_synonyms.get(style, ()))
            if any(keyword_in_text(c, search_text) for c in candidates):
                return style
        if family.styles:
            return family.styles[0]
        return family.name

    def all_styles(self) -> List[str]:
        seen: Dict[str, None] = {}
        for family in self.families:
            for style in family.styles:
                seen.setdefault(style, None)
        return list(seen)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "families": [f.to_dict() for f in self.families],
            "style_synonyms": {k: list(v) for k, v in self.style_synonyms.items()},
        }


DEFAULT_TAXONOMY: Dict[str, Any] = {
    "families": [
        {
            "id": "hard_dance",
            "name": "Hard Dance",
            "styles": ["Hardstyle", "Rawstyle", "Uptempo"],
            "keywords": [
                {"term": "hardstyle", "weight": 1.0},
                {"term": "rawstyle", "weight": 0.9},
                {"term": "uptempo", "weight": 0.85},
                {"term": "hardcore", "weight": 0.8},
                {"term": "euphoric", "weight": 0.6},
                {"term": "hard dance", "weight": 0.9},
            ],
            "confidence": 0.8,
        },
        {
            "id": "bass_music",
            "name": "Bass Music",
            "styles": ["Dubstep", "Riddim", "Future Bass"],
            "keywords": [
                {"term": "dubstep", "weight": 1.0},
                {"term": "riddim", "weight": 0.9},
                {"term": "future bass", "weight": 0.85},
                {"term": "wobble", "weight": 0.6},
                {"term": "bass", "weight": 0.6},
            ],
            "confidence": 0.8,
        },
        {
            "id": "electronic",
            "name": "Electronic",
            "styles": ["Techno", "House", "Trance"],
            "keywords": [
                {"term": "techno", "weight": 0.9},
                {"term": "house", "weight": 0.8},
                {"term": "trance", "weight": 0.8},
                {"term": "electronic", "weight": 0.7},
                {"term": "warehouse", "weight": 0.5},
            ],
            "confidence": 0.7,
        },
        {
            "id": "hip_hop",
            "name": "Hip Hop",
            "styles": ["Trap", "Hip Hop", "Rap"],
            "keywords": [
                {"term": "trap", "weight": 0.9},
                {"term": "hip hop", "weight": 0.8},
                {"term": "boom bap", "weight": 0.8},
                {"term": "rap", "weight": 0.7},
                {"term": "drill", "weight": 0.7},
            ],
            "confidence": 0.7,
        },
    ],
    "style_synonyms": {
        "Hardstyle": ["hard style", "euphoric hardstyle"],
        "Rawstyle": ["raw style", "raw hardstyle"],
        "Future Bass": ["futurebass"],
        "Hip Hop": ["hiphop", "hip-hop"],
    },
}


def default_index() -> TaxonomyIndex:
    """Return the built-in fallback taxonomy."""
    return TaxonomyIndex.from_dict(DEFAULT_TAXONOMY, source="builtin")


def build_index(data: Optional[Dict[str, Any]], source: str = "document") -> TaxonomyIndex:
    """Build an index, falling back to the default when ``data`` has no families."""
    if not data:
        return default_index()
    index = TaxonomyIndex.from_dict(data, source=source)
    if not index.families:
        return default_index()
    return index
