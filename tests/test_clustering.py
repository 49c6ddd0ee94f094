"""
Folder clustering tests.

Run with: pytest tests/test_clustering.py -v
"""

import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np
import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
sys.path.insert(0, str(SRC_DIR))

from pack_taxonomy.clustering import (
    AdaptiveStrategy,
    ClusterConfig,
    DensityStrategy,
    FolderClusterEngine,
    FolderPath,
    HierarchicalStrategy,
    build_similarity_matrix,
    choose_canonical,
    select_strategy,
)
from pack_taxonomy.similarity import SimilarityScorer


def _folders(*specs):
    """specs: (name, pack_id, file_count)"""
    return [
        FolderPath(id=f"{pack}:{name}", name=name, path=name, pack_id=pack, file_count=files)
        for name, pack, files in specs
    ]


@pytest.fixture
def folders():
    return _folders(
        ("808_Subs", "pack-a", 12),
        ("Kicks", "pack-a", 20),
        ("Sub_808", "pack-b", 8),
        ("Kick_Loops", "pack-b", 15),
        ("Snares", "pack-b", 10),
    )


@pytest.fixture
def engine() -> FolderClusterEngine:
    return FolderClusterEngine()


def _cluster_of(clusters, name):
    return next(c for c in clusters if name in [m.name for m in c.members])


# ============================================================================
# SIMILARITY MATRIX
# ============================================================================

def test_matrix_is_symmetric_with_unit_diagonal(folders):
    matrix = build_similarity_matrix(folders, SimilarityScorer())
    assert matrix.shape == (5, 5)
    assert np.allclose(np.diag(matrix), 1.0)
    assert np.allclose(matrix, matrix.T)


def test_parallel_matrix_matches_serial(folders):
    scorer = SimilarityScorer()
    serial = build_similarity_matrix(folders, scorer)
    with ThreadPoolExecutor(max_workers=3) as pool:
        parallel = build_similarity_matrix(folders, scorer, executor=pool)
    assert np.allclose(serial, parallel)


# ============================================================================
# CLUSTERING
# ============================================================================

def test_reordered_names_cluster_together(engine, folders):
    clusters = engine.cluster(folders)
    subs = _cluster_of(clusters, "808_Subs")

    assert sorted(m.name for m in subs.members) == ["808_Subs", "Sub_808"]
    assert subs.canonical == "Sub_808"
    assert subs.statistics.total_files == 20
    assert subs.statistics.pack_count == 2
    assert subs.pack_ids == ["pack-a", "pack-b"]


def test_distinct_names_stay_separate(engine, folders):
    clusters = engine.cluster(folders)
    kicks = _cluster_of(clusters, "Kicks")
    assert [m.name for m in kicks.members] == ["Kicks"]
    assert len(clusters) == 4


def test_every_folder_in_exactly_one_cluster(engine, folders):
    clusters = engine.cluster(folders)
    ids = [m.id for c in clusters for m in c.members]
    assert sorted(ids) == sorted(f.id for f in folders)


def test_cluster_ids_are_stable(engine, folders):
    first = [c.to_dict() for c in engine.cluster(folders)]
    second = [c.to_dict() for c in engine.cluster(folders)]
    assert first == second
    assert first[0]["id"] == "cluster_0001"


def test_single_member_statistics(engine):
    clusters = engine.cluster(_folders(("Vocals", "p", 4)))
    stats = clusters[0].statistics
    assert stats.avg_similarity == 1.0
    assert stats.cohesion == 1.0
    assert stats.total_files == 4


def test_multi_member_statistics_are_bounded(engine):
    clusters = engine.cluster(_folders(("Kick", "a", 5), ("Kicks", "b", 7), ("KICK", "c", 3)))
    assert len(clusters) == 1
    stats = clusters[0].statistics
    assert stats.min_similarity <= stats.avg_similarity <= stats.max_similarity
    assert stats.min_similarity < stats.max_similarity
    assert 0.0 <= stats.cohesion <= stats.avg_similarity
    assert stats.total_files == 15
    assert stats.pack_count == 3


def test_empty_input_returns_no_clusters(engine):
    assert engine.cluster([]) == []


def test_max_cluster_size_is_respected(engine, folders):
    config = ClusterConfig(max_cluster_size=1)
    clusters = engine.cluster(folders, config)
    assert all(len(c.members) == 1 for c in clusters)


def test_density_requires_enough_neighbours(engine):
    items = _folders(
        ("Kick", "a", 1),
        ("Kicks", "b", 1),
        ("KICK", "c", 1),
        ("808_Subs", "a", 1),
        ("Sub_808", "b", 1),
    )
    clusters = engine.cluster(items, ClusterConfig(algorithm="density", merge_threshold=0.99))
    kick = _cluster_of(clusters, "Kick")
    assert sorted(m.name for m in kick.members) == ["KICK", "Kick", "Kicks"]
    # A lone pair has one neighbour each, below min_pts, and stays
    # below the merge threshold
    assert len(_cluster_of(clusters, "808_Subs").members) == 1


def test_unknown_algorithm_rejected():
    with pytest.raises(ValueError):
        select_strategy("kmeans")


def _paired_matrix(n: int) -> np.ndarray:
    """Items 2k and 2k+1 are near-identical; everything else is unrelated."""
    matrix = np.eye(n)
    for i in range(0, n - 1, 2):
        matrix[i, i + 1] = matrix[i + 1, i] = 0.9
    return matrix


def _normalised(groups):
    return sorted(sorted(g) for g in groups)


@pytest.mark.parametrize("size", [10, 50, 60])
def test_adaptive_dispatches_by_input_size(size):
    config = ClusterConfig()
    matrix = _paired_matrix(size)
    hierarchical = _normalised(HierarchicalStrategy().assign(matrix, config))
    density = _normalised(DensityStrategy().assign(matrix, config))
    adaptive = _normalised(AdaptiveStrategy().assign(matrix, config))

    # Pairs merge under average linkage; one neighbour each is below min_pts
    assert hierarchical == [[i, i + 1] for i in range(0, size, 2)]
    assert density == [[i] for i in range(size)]
    if size < config.hierarchical_max_items:
        assert adaptive == hierarchical
    else:
        assert adaptive == density


# ============================================================================
# CANONICAL NAMES AND VALIDATION
# ============================================================================

def test_canonical_ties_break_alphabetically():
    assert choose_canonical(["Snare", "Kicks"], np.ones((2, 2))) == "Kicks"


def test_validation_flags_loose_cluster(engine):
    items = _folders(("Kicks", "a", 1), ("Kick_Loops", "b", 1))
    config = ClusterConfig(similarity_threshold=0.3, algorithm="hierarchical")
    clusters = engine.cluster(items, config)
    assert len(clusters) == 1

    report = engine.validate(clusters, config)
    assert report["is_valid"] is False
    assert report["anomalies"][0]["kind"] == "split"


def test_validation_of_clean_clusters(engine, folders):
    report = engine.validate(engine.cluster(folders))
    assert report["is_valid"] is True
    assert 0.0 < report["separation_score"] <= 1.0


class RefusingScorer(SimilarityScorer):
    def similarity(self, *args, **kwargs):
        raise AssertionError("similarity should come from the matrix")


def test_validation_reuses_similarity_matrix():
    engine = FolderClusterEngine(scorer=RefusingScorer())
    items = _folders(("Kicks", "a", 1), ("Snares", "b", 1))
    matrix = np.array([[1.0, 0.72], [0.72, 1.0]])
    config = ClusterConfig(similarity_threshold=0.8, merge_threshold=0.99)

    clusters = engine.cluster_matrix(items, matrix, config)
    assert [c.indices for c in clusters] == [[0], [1]]

    report = engine.validate(clusters, config, matrix=matrix)
    assert report["separation_score"] == pytest.approx(0.28)
    assert [a["kind"] for a in report["anomalies"]] == ["merge"]
