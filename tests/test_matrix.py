"""
Adaptive matrix tests.

Run with: pytest tests/test_matrix.py -v
"""

import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_DIR))

from pack_taxonomy.errors import StepFailure
from pack_taxonomy.fusion import FusionGroup, FusionSource
from pack_taxonomy.matrix import MatrixConfig, MatrixGenerator
from pack_taxonomy.models import Classification, ClassificationMethod, InternalStructure, Pack, TypeBucket
from pack_taxonomy.taxonomy import default_index


def _classified(pack_id, name, family, style, confidence, files, types=(), formats=(), subfolders=()):
    return Pack(
        id=pack_id,
        name=name,
        total_files=files,
        internal_structure=InternalStructure(
            detected_types={t: TypeBucket(file_count=files, paths=[t.title()]) for t in types},
            formats=list(formats),
            subfolders=list(subfolders),
        ),
        classification=Classification(family=family, style=style, confidence=confidence),
    )


@pytest.fixture
def packs():
    return [
        _classified("p1", "Black Octopus - Hardstyle Euphoria Vol.3", "Hard Dance", "Hardstyle", 0.95, 120,
                    types=["KICKS"], subfolders=["Kicks", "Intro FX"]),
        _classified("p2", "Rawstyle Kicks", "Hard Dance", "Rawstyle", 0.9, 80, types=["KICKS"]),
        _classified("p3", "Dubstep Weapons", "Bass Music", "Dubstep", 0.95, 60, types=["BASS"], formats=["Loops"]),
        Pack(
            id="p4",
            name="Lofi Dreams",
            total_files=40,
            classification=Classification(family="Lofi", style="Chillhop", confidence=0.7, method=ClassificationMethod.AI_FALLBACK),
        ),
        _classified("p5", "Hardstyle Kicks 2", "Hard Dance", "Hardstyle", 0.85, 50, types=["KICKS"]),
        Pack(id="p6", name="Unsorted", total_files=500),
    ]


@pytest.fixture
def generator():
    return MatrixGenerator(index=default_index())


# ============================================================================
# ENTRIES
# ============================================================================

def test_entries_keyed_by_family_type_style(generator, packs):
    result = generator.build(packs)
    assert list(result.entries) == [
        "Hard Dance|KICKS|Hardstyle",
        "Hard Dance|KICKS|Rawstyle",
        "Bass Music|BASS|Dubstep",
        "Lofi|UNKNOWN|Chillhop",
    ]


def test_entry_aggregates_packs(generator, packs):
    entry = generator.build(packs).entries["Hard Dance|KICKS|Hardstyle"]
    assert entry.pack_count == 2
    assert entry.total_files == 170
    assert entry.avg_confidence == pytest.approx(0.9)
    assert entry.examples == ["p1", "p5"]
    assert entry.taxonomy_source is True
    assert entry.discovered is False


def test_entry_patterns(generator, packs):
    result = generator.build(packs)
    hardstyle = result.entries["Hard Dance|KICKS|Hardstyle"]
    assert "full_kick" in hardstyle.functions
    assert hardstyle.contexts == ["intro"]
    dubstep = result.entries["Bass Music|BASS|Dubstep"]
    assert dubstep.functions == ["one_shot"]
    assert dubstep.variants == ["loop"]


def test_unknown_family_marked_discovered(generator, packs):
    entry = generator.build(packs).entries["Lofi|UNKNOWN|Chillhop"]
    assert entry.taxonomy_source is False
    assert entry.discovered is True


def test_unclassified_packs_are_skipped(generator, packs):
    result = generator.build(packs)
    assert result.total_files == 120 + 80 + 60 + 40 + 50
    assert all("p6" not in e.pack_ids for e in result.entries.values())


def test_context_detection_can_be_disabled(packs):
    generator = MatrixGenerator(config=MatrixConfig(enable_context_detection=False))
    entry = generator.build(packs).entries["Hard Dance|KICKS|Hardstyle"]
    assert entry.contexts == []


def test_min_pack_count_filters_entries(packs):
    generator = MatrixGenerator(config=MatrixConfig(min_pack_count=2))
    assert list(generator.build(packs).entries) == ["Hard Dance|KICKS|Hardstyle"]


# ============================================================================
# STATISTICS AND FUSION
# ============================================================================

def test_statistics(generator, packs):
    stats = generator.build(packs).statistics
    assert stats["total_entries"] == 4
    assert stats["unique_families"] == 3
    assert stats["unique_types"] == 3
    assert stats["taxonomy_coverage"] == pytest.approx(0.75)
    assert stats["total_files"] == 350
    assert stats["fusion_groups"] == 0


def test_fusion_info_attached(generator, packs):
    group = FusionGroup(
        id="fusion_0001",
        canonical="Bass",
        target_path="/Bass_Music/BASS/Dubstep/Bass",
        classification={"family": "Bass Music", "type": "BASS", "style": "Dubstep", "format": None, "variant": None},
        sources=[
            FusionSource("p3", "Dubstep Weapons", "Bass", 30),
            FusionSource("p9", "Other", "Bass", 10),
        ],
        confidence=0.92,
        cluster_id="cluster_0002",
    )
    result = generator.build(packs, fusion_groups=[group])

    info = result.entries["Bass Music|BASS|Dubstep"].fusion_info
    assert info["fusion_group_id"] == "fusion_0001"
    assert info["canonical_path"] == "/Bass_Music/BASS/Dubstep/Bass"
    assert info["merged_from_packs"] == 2
    assert result.entries["Hard Dance|KICKS|Rawstyle"].fusion_info is None
    assert result.statistics["fusion_groups"] == 1


def test_no_classified_packs_raises_step_failure(generator):
    with pytest.raises(StepFailure) as excinfo:
        generator.build([Pack(id="x", name="Unsorted")])
    assert excinfo.value.code == "MATRIX_INPUT_INVALID"
    assert excinfo.value.recoverable is True


def test_result_serialises(generator, packs):
    data = generator.build(packs).to_dict()
    assert set(data) == {"entries", "statistics", "global_patterns"}
    assert data["entries"]["Lofi|UNKNOWN|Chillhop"]["key"] == "Lofi|UNKNOWN|Chillhop"
