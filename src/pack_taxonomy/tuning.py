"""Centralized tuning constants for taxonomy classification and folder fusion.

All scoring weights, thresholds, and analysis parameters should be defined
here and referenced by the services.  The ``tuning`` object of
``config.json`` may override any of them through
:func:`apply_overrides`.
"""

from __future__ import annotations

from typing import Any, Dict

# ---------------------------------------------------------------------------
# Classification cascade
CONFIDENCE_THRESHOLD = 0.6
SKIP_CONFIDENCE_THRESHOLD = 0.9
MIN_BUNDLE_INHERITANCE_CONFIDENCE = 0.70

TAXONOMIC_PARAMS: Dict[str, float] = {
    "min_raw_score": 0.3,
    "score_scale": 0.8,
    "fast_pass_weight": 0.9,
    "fast_pass_multiplier": 1.2,
    "max_confidence": 0.95,
    "default_keyword_weight": 1.0,
    "name_keyword_weight": 0.8,
    "min_keyword_weight": 0.1,
    "max_keyword_weight": 1.5,
    "exclusion_penalty": 0.3,
    "default_family_confidence": 0.8,
}

PRESET_GUARD: Dict[str, float] = {
    "audio_ratio_min": 0.6,
    "preset_ratio_max": 0.2,
    "multiplier": 0.15,
}

ALTERNATIVE_PARAMS: Dict[str, float] = {
    "per_keyword": 0.15,
    "cap": 0.8,
    "limit": 3,
}

# Tempo windows used for quarantine suggestions: (low, high, family, style)
TEMPO_HINTS = [
    (140.0, 155.0, "Hard Dance", "Hardstyle"),
    (70.0, 85.0, "Bass Music", "Dubstep"),
    (120.0, 135.0, "Electronic", "Techno"),
]

# ---------------------------------------------------------------------------
# AI fallback
AI_BATCH_SIZE = 25
AI_BATCH_DELAY_SECONDS = 0.1
AI_REQUEST_TIMEOUT_SECONDS = 30.0

# Deterministic keyword rules used when an AI batch fails:
# (keywords, family, style, confidence).  The last rule is the default.
AI_KEYWORD_FALLBACK = [
    (("hardstyle", "rawstyle"), "Hard Dance", "Hardstyle", 0.6),
    (("dubstep", "riddim", "bass"), "Bass Music", "Dubstep", 0.6),
    (("trap", "hip hop", "drill"), "Hip Hop", "Trap", 0.6),
    (("fx", "sfx", "effects"), "Cinematic / Orchestral / SFX", "SFX", 0.6),
    ((), "Experimental / IDM / Noise", "Experimental", 0.3),
]

# ---------------------------------------------------------------------------
# Folder similarity
SIMILARITY_WEIGHTS: Dict[str, float] = {
    "token_overlap": 0.35,
    "levenshtein": 0.25,
    "permutation": 0.20,
    "phonetic": 0.10,
    "contextual": 0.10,
}

SIMILAR_THRESHOLD = 0.65
STRONG_SIMILAR_THRESHOLD = 0.80

CONTEXT_WEIGHTS: Dict[str, float] = {
    "neutral": 0.5,
    "same_parent": 0.5,
    "same_depth": 0.3,
    "common_siblings": 0.2,
}

# ---------------------------------------------------------------------------
# Clustering
SIMILARITY_THRESHOLD = 0.75
MERGE_THRESHOLD = 0.85
MIN_CLUSTER_SIZE = 1
MAX_CLUSTER_SIZE = 100
HIERARCHICAL_MAX_ITEMS = 50

CANONICAL_WEIGHTS: Dict[str, float] = {
    "length_reference": 20,
    "separator_penalty": 0.1,
    "pascal_bonus": 0.2,
    "camel_bonus": 0.15,
    "no_digit_bonus": 0.1,
    "similarity_weight": 0.5,
}

CLUSTER_VALIDATION: Dict[str, float] = {
    "split_min_similarity": 0.6,
    "merge_inter_similarity": 0.7,
}

# ---------------------------------------------------------------------------
# Fusion groups
FUSION_MIN_PACKS = 2
FUSION_MIN_COHESION = 0.9
FUSION_MAX_GROUP_SIZE = 50
ESTIMATED_BYTES_PER_FILE = 500_000

FUSION_CONFIDENCE_WEIGHTS: Dict[str, float] = {
    "cohesion": 0.6,
    "agreement": 0.4,
    "disagreement_penalty": 0.15,
}

FUSION_CONFLICT_PARAMS: Dict[str, float] = {
    "overlap_min": 0.3,
    "overlap_merge": 0.7,
    "name_distance_max": 0.3,
}

# ---------------------------------------------------------------------------
# Pattern / matrix analysis
PATTERN_CONFIDENCE: Dict[str, float] = {
    "base": 0.5,
    "exact_bonus": 0.3,
    "partial_bonus": 0.15,
    "edge_bonus": 0.1,
    "max": 0.95,
    "floor": 0.3,
    "aggregate_floor": 0.5,
}

PATTERN_SOURCE_BONUS: Dict[str, float] = {
    "filename": 0.1,
    "folder": 0.2,
    "structure": 0.15,
}

MATRIX_PARAMS: Dict[str, float] = {
    "min_pack_count": 1,
    "min_pattern_confidence": 0.6,
    "max_patterns": 20,
    "max_examples": 5,
}

# ---------------------------------------------------------------------------
# Structure proposals
MAX_PROPOSALS = 3
PROPOSAL_WEIGHTS: Dict[str, float] = {
    "balance": 0.3,
    "compatibility": 0.4,
    "simplicity": 0.3,
}
PROPOSAL_FOLDER_LIMITS: Dict[str, int] = {
    "min_files": 5,
    "max_files": 100,
}


def apply_overrides(data: Dict[str, Any]) -> None:
    """Merge numeric/dict tuning overrides into module globals (best-effort)."""
    if not isinstance(data, dict):
        return

    module_globals = globals()
    for key, value in data.items():
        if key not in module_globals or key.startswith("_"):
            continue
        current = module_globals[key]
        if isinstance(current, dict) and isinstance(value, dict):
            current.update(value)
        elif isinstance(current, bool) or isinstance(value, bool):
            continue
        elif isinstance(current, (int, float)) and isinstance(value, (int, float)):
            module_globals[key] = value
