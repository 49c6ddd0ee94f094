"""
Pattern discovery tests.

Run with: pytest tests/test_patterns.py -v
"""

import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_DIR))

from pack_taxonomy.models import Classification, InternalStructure, Pack, TypeBucket
from pack_taxonomy.patterns import (
    CONTEXT,
    FUNCTION,
    VARIANT,
    DiscoveredPattern,
    aggregate_patterns,
    analyze_pack_patterns,
    analyze_structure,
    analyze_text,
    deduplicate,
    detect_pack_type,
    detect_type_from_name,
    generate_matrix_key,
    normalize_name,
)


def _values(patterns, kind):
    return {p.value: p.confidence for p in patterns if p.type == kind}


# ============================================================================
# TEXT MATCHING
# ============================================================================

def test_folder_match_at_end_of_text():
    found = _values(analyze_text("Kick_Loops", "folder"), FUNCTION)
    # base 0.5 + folder 0.2 + edge 0.1
    assert found["loop"] == pytest.approx(0.8)


def test_exact_match_is_capped():
    found = _values(analyze_text("Loops", "filename"), FUNCTION)
    assert found["loop"] == pytest.approx(0.95)


def test_text_yields_all_pattern_kinds():
    found = analyze_text("Heavy Intro Pads", "folder")
    assert "pad" in _values(found, FUNCTION)
    assert "heavy" in _values(found, VARIANT)
    assert "intro" in _values(found, CONTEXT)


def test_empty_text_yields_nothing():
    assert analyze_text("  ", "folder") == []


# ============================================================================
# STRUCTURE AND DEDUPLICATION
# ============================================================================

def test_structure_patterns_from_detected_types_and_formats():
    pack = Pack(
        id="p",
        name="Pack",
        internal_structure=InternalStructure(
            detected_types={"KICKS": TypeBucket(4, ["Kicks"])},
            formats=["Loops"],
            subfolders=["Main Drop"],
        ),
    )
    found = analyze_structure(pack)
    assert _values(found, FUNCTION) == {"full_kick": pytest.approx(0.9)}
    assert _values(found, VARIANT) == {"loop": pytest.approx(0.85)}
    assert _values(found, CONTEXT) == {"main": pytest.approx(0.8)}


def test_structure_falls_back_to_pack_name():
    found = analyze_structure(Pack(id="p", name="Bass Kicks"))
    assert _values(found, FUNCTION) == {"full_kick": 0.6, "bass_shot": 0.6}


def test_deduplicate_keeps_highest_and_drops_weak():
    patterns = [
        DiscoveredPattern("", FUNCTION, "loop", 0.6, "filename"),
        DiscoveredPattern("", FUNCTION, "loop", 0.9, "folder"),
        DiscoveredPattern("", VARIANT, "dry", 0.2, "filename"),
    ]
    kept = deduplicate(patterns, "pack-1")
    assert len(kept) == 1
    assert kept[0].confidence == pytest.approx(0.9)
    assert kept[0].source == "folder"
    assert kept[0].pack_id == "pack-1"


def test_pack_patterns_sorted_by_confidence():
    pack = Pack(
        id="p",
        name="Punchy Kicks",
        internal_structure=InternalStructure(subfolders=["Intro FX"], detected_types={"KICKS": TypeBucket()}),
    )
    found = analyze_pack_patterns(pack)
    confidences = [p.confidence for p in found]
    assert confidences == sorted(confidences, reverse=True)
    assert all(p.pack_id == "p" for p in found)


def test_aggregate_uses_floor():
    patterns = [
        DiscoveredPattern("a", FUNCTION, "loop", 0.8, "folder"),
        DiscoveredPattern("b", FUNCTION, "arp", 0.4, "folder"),
        DiscoveredPattern("b", CONTEXT, "intro", 0.5, "folder"),
    ]
    assert aggregate_patterns(patterns) == {"functions": ["loop"], "variants": [], "contexts": ["intro"]}


# ============================================================================
# MATRIX KEYS
# ============================================================================

def test_normalize_name():
    assert normalize_name("hard_dance") == "Hard Dance"
    assert normalize_name("hardDance") == "Hard Dance"


def test_detect_type_from_name():
    assert detect_type_from_name("Sub Bass Essentials") == "BASS"
    assert detect_type_from_name("Lofi Dreams") is None


def test_detected_types_follow_priority():
    pack = Pack(
        id="p",
        name="Pack",
        internal_structure=InternalStructure(detected_types={"PERC": TypeBucket(), "BASS": TypeBucket()}),
    )
    assert detect_pack_type(pack) == "BASS"


def test_matrix_key_requires_classification():
    with pytest.raises(ValueError):
        generate_matrix_key(Pack(id="p", name="Pack"))


def test_matrix_key_defaults_type():
    pack = Pack(id="p", name="Lofi Dreams", classification=Classification("lofi", "chill_hop", 0.7))
    key = generate_matrix_key(pack)
    assert key.key == "Lofi|UNKNOWN|Chill Hop"
