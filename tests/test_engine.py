"""
End-to-end engine tests.

Covers:
1. Full run report (classification, clusters, fusion groups, matrix, proposals)
2. Step selection and failures recorded in the report
3. AI fallback wiring and cooperative cancellation
4. Bundle cache reuse across runs

Run with: pytest tests/test_engine.py -v
"""

import sys
import threading
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_DIR))

from pack_taxonomy.config_service import RunConfig
from pack_taxonomy.engine import PackTaxonomyEngine
from pack_taxonomy.models import Classification, ClassificationMethod, Pack


def _records():
    return [
        {
            "id": "p1",
            "name": "Black Octopus - Hardstyle Euphoria Vol.3",
            "totalFiles": 100,
            "internalStructure": {"detectedTypes": {"kicks": {"fileCount": 30, "paths": ["Kicks"]}}},
        },
        {
            "id": "p2",
            "name": "Hardstyle Drums",
            "totalFiles": 60,
            "internalStructure": {"detectedTypes": {"kicks": {"fileCount": 20, "paths": ["Kick"]}}},
        },
        {
            "id": "p3",
            "name": "Dubstep Weapons",
            "totalFiles": 50,
            "internalStructure": {"detectedTypes": {"bass": {"fileCount": 25, "paths": ["Bass"]}}},
        },
        {"id": "p4", "name": "Random Sounds", "totalFiles": 10},
    ]


@pytest.fixture
def packs():
    return [Pack.from_dict(r) for r in _records()]


def _engine(config=None, adapter=None, workers=1):
    return PackTaxonomyEngine(config=config or RunConfig(), adapter=adapter, workers=workers, sleep=lambda _: None)


class AnsweringAdapter:
    """Answers every pack; optionally sets an event once called."""

    def __init__(self, event=None):
        self.event = event
        self.calls = 0

    def classify_batch(self, packs):
        self.calls += 1
        if self.event is not None:
            self.event.set()
        return [
            Classification(family="Electronic", style="Techno", confidence=0.8, method=ClassificationMethod.AI_FALLBACK)
            for _ in packs
        ]


def _entry(report, pack_id):
    return next(e for e in report["packs"] if e["pack_id"] == pack_id)


# ============================================================================
# FULL RUN
# ============================================================================

def test_full_run_report(packs):
    report = _engine().run(packs)

    assert report["steps"] == ["classify", "cluster", "matrix", "propose"]
    assert report["errors"] == []
    for key in ("run_id", "timestamp", "packs", "bundles", "ai", "clusters",
                "cluster_validation", "fusion_groups", "matrix", "proposals"):
        assert key in report

    stats = report["statistics"]
    assert stats["total_packs"] == 4
    assert stats["classified"] == 3
    assert stats["quarantined"] == 1
    assert stats["by_method"] == {"taxonomic": 3}


def test_unmatched_pack_quarantined_without_adapter(packs):
    report = _engine().run(packs, steps=("classify",))
    entry = _entry(report, "p4")
    assert entry["status"] == "quarantined"
    assert entry["quarantine"]["reason"] == "no taxonomic match; AI unavailable"
    assert entry["quarantine"]["manual_review"] is True
    assert report["ai"]["deferred"] == 1


def test_embedded_keyword_does_not_classify_without_adapter():
    report = _engine().run([Pack(id="e", name="Entrapment Cinematic Textures")], steps=("classify",))
    entry = _entry(report, "e")
    assert entry["status"] == "quarantined"
    assert "AI unavailable" in entry["quarantine"]["reason"]


def test_classification_attached_to_packs(packs):
    _engine().run(packs, steps=("classify",))
    assert packs[0].classification.family == "Hard Dance"
    assert packs[2].classification.style == "Dubstep"
    assert packs[3].classification is None


def test_fusion_group_spans_packs(packs):
    report = _engine().run(packs)
    kicks = next(g for g in report["fusion_groups"] if g["classification"]["type"] == "KICKS")
    assert kicks["target_path"] == "/Hard_Dance/KICKS/Hardstyle/Kick"
    assert kicks["expected_file_count"] == 50
    assert sorted(s["pack_id"] for s in kicks["sources"]) == ["p1", "p2"]


def test_matrix_and_proposals_in_report(packs):
    report = _engine().run(packs)
    entries = report["matrix"]["entries"]
    assert set(entries) == {"Hard Dance|KICKS|Hardstyle", "Bass Music|BASS|Dubstep"}
    assert entries["Hard Dance|KICKS|Hardstyle"]["fusion_info"]["fusion_group_id"].startswith("fusion_")

    proposals = report["proposals"]
    ids = [p["id"] for p in proposals["proposals"]]
    assert proposals["recommendation"]["recommended_id"] in ids
    for proposal in proposals["proposals"]:
        assert sum(n["estimated_files"] for n in proposal["preview"]) == 100 + 60 + 50


def test_parallel_clustering_matches_serial(packs):
    serial = _engine().run(packs, steps=("cluster",))["clusters"]
    parallel = _engine(workers=3).run([Pack.from_dict(r) for r in _records()], steps=("cluster",))["clusters"]
    assert serial == parallel


# ============================================================================
# STEP SELECTION AND FAILURES
# ============================================================================

def test_classify_only_skips_later_steps(packs):
    report = _engine().run(packs, steps=("classify",))
    assert "clusters" not in report
    assert "matrix" not in report
    assert "proposals" not in report


def test_unknown_step_rejected(packs):
    with pytest.raises(ValueError):
        _engine().run(packs, steps=("classify", "publish"))


def test_matrix_failure_recorded_and_classifications_kept():
    packs = [Pack(id="x", name="Random Sounds"), Pack(id="y", name="Mystery Box")]
    report = _engine(RunConfig.from_dict({"ai_enabled": False})).run(packs)

    codes = [(e["step"], e["code"]) for e in report["errors"]]
    assert codes == [("matrix", "MATRIX_INPUT_INVALID"), ("propose", "STRUCTURE_PROPOSAL_INPUT")]
    assert all(e["recoverable"] for e in report["errors"])
    assert [e["status"] for e in report["packs"]] == ["quarantined", "quarantined"]
    assert "AI disabled" in report["packs"][0]["quarantine"]["reason"]


def test_existing_classifications_reused_for_matrix():
    pack = Pack(
        id="m",
        name="Manual Pack",
        total_files=12,
        classification=Classification(family="Hip Hop", style="Trap", confidence=1.0, method=ClassificationMethod.MANUAL),
    )
    report = _engine().run([pack], steps=("matrix",))
    assert "packs" not in report
    assert "Hip Hop|UNKNOWN|Trap" in report["matrix"]["entries"]


def test_log_callback_receives_messages(packs):
    messages = []
    _engine().run(packs, steps=("classify",), log_callback=messages.append)
    assert messages[0].startswith("pack-taxonomy run_id=")
    assert messages[-1] == "Done. errors=0"


def test_failing_log_callback_does_not_break_run(packs):
    def explode(_msg):
        raise RuntimeError("sink closed")

    report = _engine().run(packs, steps=("classify",), log_callback=explode)
    assert report["statistics"]["classified"] == 3


# ============================================================================
# AI FALLBACK AND CANCELLATION
# ============================================================================

def test_ai_answers_settle_deferred_packs(packs):
    adapter = AnsweringAdapter()
    report = _engine(adapter=adapter).run(packs, steps=("classify",))

    entry = _entry(report, "p4")
    assert entry["status"] == "classified"
    assert entry["classification"]["method"] == "ai-fallback"
    assert adapter.calls == 1
    assert report["ai"]["requests"] == 1


def test_cancel_before_run_quarantines_everything(packs):
    event = threading.Event()
    event.set()
    report = _engine().run(packs, steps=("classify",), cancel_event=event)

    assert {e["status"] for e in report["packs"]} == {"cancelled"}
    assert all(e["quarantine"]["reason"] == "cancelled" for e in report["packs"])
    assert report["statistics"]["cancelled"] == 4
    assert report["statistics"]["quarantined"] == 0


def test_cancel_during_ai_keeps_answered_batch():
    event = threading.Event()
    adapter = AnsweringAdapter(event=event)
    config = RunConfig.from_dict({"ai_batch_size": 1})
    packs = [Pack(id="x", name="Random Sounds"), Pack(id="y", name="Mystery Box")]

    report = _engine(config, adapter).run(packs, steps=("classify",), cancel_event=event)

    assert _entry(report, "x")["status"] == "classified"
    assert _entry(report, "y")["status"] == "cancelled"
    assert adapter.calls == 1
    assert report["ai"]["cancelled"] == 1


# ============================================================================
# BUNDLES
# ============================================================================

def test_bundle_cache_returned_and_reused():
    def bundle_packs():
        return [
            Pack.from_dict({"id": "v1", "name": "Volume 1", "bundleInfo": {"bundleName": "Hardstyle Mega Bundle"}}),
            Pack.from_dict({"id": "v2", "name": "Volume 2", "bundleInfo": {"bundleName": "Hardstyle Mega Bundle"}}),
        ]

    engine = _engine()
    first = engine.classify_packs(bundle_packs())
    assert first.bundle_stats["name_only"] == 1
    assert all(p.classification.method is ClassificationMethod.BUNDLE_INHERITED for p in first.classified)

    second = engine.classify_packs(bundle_packs(), bundle_cache=first.bundle_cache)
    assert second.bundle_stats["cached"] == 1
    assert len(second.classified) == 2


def test_bundle_cache_serialised_in_report():
    packs = [Pack.from_dict({"id": "v1", "name": "Volume 1", "bundleInfo": {"bundleName": "Hardstyle Mega Bundle"}})]
    report = _engine().run(packs, steps=("classify",))
    cached = report["bundles"]["cache"]["Hardstyle Mega Bundle"]
    assert cached["family"] == "Hard Dance"
