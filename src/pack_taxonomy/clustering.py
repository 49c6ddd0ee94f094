"""Folder similarity clustering.

Internal folder paths collected across all packs are grouped into
clusters of equivalent folders (``808_Subs``, ``Sub_808``, ``808 Sub``...).
The engine works in five passes:

1. a full symmetric pairwise similarity matrix (``numpy``, diagonal = 1),
2. a clustering strategy selected once per run:

   * :class:`HierarchicalStrategy` - average-linkage agglomeration, merging
     the most similar pair until the best pair drops below the threshold;
   * :class:`DensityStrategy` - density expansion over the neighbour graph;
     points without enough neighbours stay singletons;
   * :class:`AdaptiveStrategy` - hierarchical for small inputs, density
     for large ones;

3. a merge pass joining clusters whose inter-cluster average similarity
   reaches ``merge_threshold``,
4. canonical-name selection,
5. statistics (avg/min/max similarity, cohesion) plus an advisory
   :meth:`FolderClusterEngine.validate` report.

Strategies only see the similarity matrix, so matrix construction may be
parallelised (see ``executor``) without touching them.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from . import tuning
from .similarity import PathContext, SimilarityScorer

logger = logging.getLogger(__name__)

_SEPARATOR_CHARS_RE = re.compile(r"[_\-]")
_PASCAL_RE = re.compile(r"^[A-Z][a-z]")
_CAMEL_RE = re.compile(r"^[a-z][a-zA-Z]")
_DIGIT_RE = re.compile(r"\d")


@dataclass
class FolderPath:
    """A folder inside a pack, the unit of clustering."""

    id: str
    name: str
    path: str
    pack_id: str
    file_count: int = 0
    context: Optional[PathContext] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "pack_id": self.pack_id,
            "file_count": self.file_count,
        }


@dataclass
class ClusterConfig:
    similarity_threshold: float = field(default_factory=lambda: tuning.SIMILARITY_THRESHOLD)
    merge_threshold: float = field(default_factory=lambda: tuning.MERGE_THRESHOLD)
    min_cluster_size: int = field(default_factory=lambda: tuning.MIN_CLUSTER_SIZE)
    max_cluster_size: int = field(default_factory=lambda: tuning.MAX_CLUSTER_SIZE)
    algorithm: str = "adaptive"
    hierarchical_max_items: int = field(default_factory=lambda: tuning.HIERARCHICAL_MAX_ITEMS)

    @property
    def min_pts(self) -> int:
        return max(2, int(self.min_cluster_size))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClusterConfig":
        cfg = cls()
        for key, value in (data or {}).items():
            if hasattr(cfg, key) and key != "min_pts":
                setattr(cfg, key, value)
        return cfg


@dataclass
class ClusterStatistics:
    avg_similarity: float = 1.0
    min_similarity: float = 1.0
    max_similarity: float = 1.0
    variance: float = 0.0
    cohesion: float = 1.0
    total_files: int = 0
    pack_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "avg_similarity": round(self.avg_similarity, 4),
            "min_similarity": round(self.min_similarity, 4),
            "max_similarity": round(self.max_similarity, 4),
            "variance": round(self.variance, 6),
            "cohesion": round(self.cohesion, 4),
            "total_files": self.total_files,
            "pack_count": self.pack_count,
        }


@dataclass
class FolderCluster:
    id: str
    canonical: str
    members: List[FolderPath]
    similarity_matrix: np.ndarray
    statistics: ClusterStatistics = field(default_factory=ClusterStatistics)
    # Row positions of the members in the run's full similarity matrix
    indices: List[int] = field(default_factory=list, repr=False)

    @property
    def confidence(self) -> float:
        return self.statistics.cohesion

    @property
    def pack_ids(self) -> List[str]:
        return list(dict.fromkeys(m.pack_id for m in self.members))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "canonical": self.canonical,
            "members": [m.path for m in self.members],
            "member_names": [m.name for m in self.members],
            "pack_ids": self.pack_ids,
            "statistics": self.statistics.to_dict(),
        }


def build_similarity_matrix(
    folders: Sequence[FolderPath],
    scorer: SimilarityScorer,
    executor: Optional[Executor] = None,
) -> np.ndarray:
    """Return the symmetric pairwise similarity matrix for ``folders``."""
    n = len(folders)
    matrix = np.eye(n, dtype=float)
    if n < 2:
        return matrix

    def _row(i: int) -> List[float]:
        a = folders[i]
        return [scorer.similarity(a.name, folders[j].name, a.context, folders[j].context) for j in range(i + 1, n)]

    rows = range(n - 1)
    results = executor.map(_row, rows) if executor is not None else map(_row, rows)
    for i, values in zip(rows, results):
        if values:
            matrix[i, i + 1:] = values
            matrix[i + 1:, i] = values
    return matrix


def _average_linkage(matrix: np.ndarray, a: Sequence[int], b: Sequence[int]) -> float:
    return float(matrix[np.ix_(list(a), list(b))].mean())


class HierarchicalStrategy:
    """Average-linkage agglomerative clustering."""

    name = "hierarchical"

    def assign(self, matrix: np.ndarray, config: ClusterConfig) -> List[List[int]]:
        groups: List[List[int]] = [[i] for i in range(matrix.shape[0])]
        while len(groups) > 1:
            best: Optional[Tuple[int, int]] = None
            best_sim = -1.0
            for i in range(len(groups)):
                for j in range(i + 1, len(groups)):
                    if len(groups[i]) + len(groups[j]) > config.max_cluster_size:
                        continue
                    sim = _average_linkage(matrix, groups[i], groups[j])
                    if sim > best_sim:
                        best_sim = sim
                        best = (i, j)
            if best is None or best_sim < config.similarity_threshold:
                break
            i, j = best
            groups[i] = groups[i] + groups[j]
            del groups[j]
        return groups


class DensityStrategy:
    """Density-based expansion over the neighbour graph."""

    name = "density"

    def assign(self, matrix: np.ndarray, config: ClusterConfig) -> List[List[int]]:
        n = matrix.shape[0]
        threshold = config.similarity_threshold
        min_pts = config.min_pts
        labels: List[Optional[int]] = [None] * n
        visited = [False] * n
        groups: List[List[int]] = []

        def neighbours(i: int) -> List[int]:
            return [j for j in np.flatnonzero(matrix[i] >= threshold).tolist() if j != i]

        for point in range(n):
            if visited[point]:
                continue
            visited[point] = True
            seeds = neighbours(point)
            if len(seeds) < min_pts:
                continue
            cluster_id = len(groups)
            members = [point]
            labels[point] = cluster_id
            queue = list(seeds)
            while queue:
                current = queue.pop(0)
                if not visited[current]:
                    visited[current] = True
                    current_neighbours = neighbours(current)
                    if len(current_neighbours) >= min_pts:
                        queue.extend(j for j in current_neighbours if not visited[j])
                if labels[current] is None:
                    labels[current] = cluster_id
                    members.append(current)
            groups.append(members)

        # Points never absorbed into a dense region become singletons
        for point in range(n):
            if labels[point] is None:
                groups.append([point])
        return groups


class AdaptiveStrategy:
    """Hierarchical for small inputs, density-based beyond the size cutoff."""

    name = "adaptive"

    def __init__(self) -> None:
        self.hierarchical = HierarchicalStrategy()
        self.density = DensityStrategy()

    def assign(self, matrix: np.ndarray, config: ClusterConfig) -> List[List[int]]:
        if matrix.shape[0] < config.hierarchical_max_items:
            return self.hierarchical.assign(matrix, config)
        return self.density.assign(matrix, config)


STRATEGIES = {
    "hierarchical": HierarchicalStrategy,
    "density": DensityStrategy,
    "dbscan": DensityStrategy,
    "adaptive": AdaptiveStrategy,
}


def select_strategy(name: str):
    try:
        return STRATEGIES[(name or "adaptive").lower()]()
    except KeyError:
        raise ValueError(f"Unknown clustering algorithm: {name!r}") from None


def canonical_score(name: str, avg_similarity: float) -> float:
    """Score a member name as the cluster's canonical name."""
    w = tuning.CANONICAL_WEIGHTS
    score = (w["length_reference"] - len(name)) / w["length_reference"]
    score -= len(_SEPARATOR_CHARS_RE.findall(name)) * w["separator_penalty"]
    if _PASCAL_RE.match(name):
        score += w["pascal_bonus"]
    elif _CAMEL_RE.match(name):
        score += w["camel_bonus"]
    if not _DIGIT_RE.search(name):
        score += w["no_digit_bonus"]
    score += avg_similarity * w["similarity_weight"]
    return score


def choose_canonical(names: Sequence[str], matrix: np.ndarray) -> str:
    """Pick the best-scoring name; ties go to fewer separators, then shorter."""
    if len(names) == 1:
        return names[0]
    n = len(names)
    ranked = []
    for idx, name in enumerate(names):
        others = [matrix[idx, j] for j in range(n) if j != idx]
        avg = float(np.mean(others)) if others else 1.0
        score = round(canonical_score(name, avg), 9)
        ranked.append((-score, len(_SEPARATOR_CHARS_RE.findall(name)), len(name), name))
    ranked.sort()
    return ranked[0][3]


def compute_statistics(members: Sequence[FolderPath], matrix: np.ndarray) -> ClusterStatistics:
    total_files = sum(int(m.file_count or 0) for m in members)
    pack_count = len({m.pack_id for m in members})
    n = len(members)
    if n < 2:
        return ClusterStatistics(total_files=total_files, pack_count=pack_count)
    upper = matrix[np.triu_indices(n, k=1)]
    avg = float(upper.mean())
    variance = float(upper.var())
    return ClusterStatistics(
        avg_similarity=avg,
        min_similarity=float(upper.min()),
        max_similarity=float(upper.max()),
        variance=variance,
        cohesion=avg * (1.0 - variance ** 0.5),
        total_files=total_files,
        pack_count=pack_count,
    )


@dataclass
class FolderClusterEngine:
    """Cluster folder paths into equivalence groups."""

    scorer: SimilarityScorer = field(default_factory=SimilarityScorer)
    config: ClusterConfig = field(default_factory=ClusterConfig)
    executor: Optional[Executor] = None

    def cluster(
        self,
        folder_paths: Sequence[FolderPath],
        config: Optional[ClusterConfig] = None,
    ) -> List[FolderCluster]:
        folders = list(folder_paths)
        if not folders:
            return []
        matrix = build_similarity_matrix(folders, self.scorer, self.executor)
        return self.cluster_matrix(folders, matrix, config)

    def cluster_matrix(
        self,
        folders: Sequence[FolderPath],
        matrix: np.ndarray,
        config: Optional[ClusterConfig] = None,
    ) -> List[FolderCluster]:
        """Cluster ``folders`` from an already computed similarity matrix."""
        config = config or self.config
        if not folders:
            return []
        strategy = select_strategy(config.algorithm)
        groups = strategy.assign(matrix, config)
        groups = self._merge_groups(groups, matrix, config)
        logger.debug(
            "Clustered %d folders into %d groups using %s",
            len(folders),
            len(groups),
            strategy.name,
        )

        # Order clusters by first member so ids are stable across runs
        groups = [sorted(g) for g in groups]
        groups.sort(key=lambda g: g[0])
        clusters: List[FolderCluster] = []
        for number, group in enumerate(groups, start=1):
            members = [folders[i] for i in group]
            sub_matrix = matrix[np.ix_(group, group)]
            clusters.append(
                FolderCluster(
                    id=f"cluster_{number:04d}",
                    canonical=choose_canonical([m.name for m in members], sub_matrix),
                    members=members,
                    similarity_matrix=sub_matrix,
                    statistics=compute_statistics(members, sub_matrix),
                    indices=list(group),
                )
            )
        return clusters

    def _merge_groups(
        self,
        groups: List[List[int]],
        matrix: np.ndarray,
        config: ClusterConfig,
    ) -> List[List[int]]:
        merged: List[List[int]] = []
        used = [False] * len(groups)
        for i in range(len(groups)):
            if used[i]:
                continue
            current = list(groups[i])
            for j in range(i + 1, len(groups)):
                if used[j]:
                    continue
                if len(current) + len(groups[j]) > config.max_cluster_size:
                    continue
                if _average_linkage(matrix, current, groups[j]) >= config.merge_threshold:
                    current.extend(groups[j])
                    used[j] = True
            used[i] = True
            merged.append(current)
        return merged

    def inter_cluster_similarity(
        self,
        a: FolderCluster,
        b: FolderCluster,
        matrix: Optional[np.ndarray] = None,
    ) -> float:
        if matrix is not None and a.indices and b.indices:
            return _average_linkage(matrix, a.indices, b.indices)
        total = 0.0
        for ma in a.members:
            for mb in b.members:
                total += self.scorer.similarity(ma.name, mb.name, ma.context, mb.context)
        return total / max(1, len(a.members) * len(b.members))

    def validate(
        self,
        clusters: Sequence[FolderCluster],
        config: Optional[ClusterConfig] = None,
        matrix: Optional[np.ndarray] = None,
    ) -> Dict[str, Any]:
        """Advisory quality report; never modifies the clusters.

        Pass the matrix the clusters were built from to reuse its scores
        instead of rescoring every cross-cluster pair.
        """
        config = config or self.config
        params = tuning.CLUSTER_VALIDATION
        anomalies: List[Dict[str, Any]] = []
        if not clusters:
            return {
                "is_valid": True,
                "cohesion_score": 1.0,
                "separation_score": 1.0,
                "anomalies": [],
            }

        for cluster in clusters:
            stats = cluster.statistics
            if stats.min_similarity < params["split_min_similarity"]:
                anomalies.append(
                    {
                        "kind": "split",
                        "clusters": [cluster.id],
                        "message": f"Cluster {cluster.canonical} has low internal similarity ({stats.min_similarity:.2f})",
                    }
                )
            if len(cluster.members) > config.max_cluster_size:
                anomalies.append(
                    {
                        "kind": "split",
                        "clusters": [cluster.id],
                        "message": f"Cluster {cluster.canonical} is too large ({len(cluster.members)} members)",
                    }
                )

        inter: List[float] = []
        for i in range(len(clusters)):
            for j in range(i + 1, len(clusters)):
                sim = self.inter_cluster_similarity(clusters[i], clusters[j], matrix)
                inter.append(sim)
                if sim > params["merge_inter_similarity"]:
                    anomalies.append(
                        {
                            "kind": "merge",
                            "clusters": [clusters[i].id, clusters[j].id],
                            "message": f"Clusters {clusters[i].canonical} and {clusters[j].canonical} are very similar ({sim:.2f})",
                        }
                    )

        cohesion = sum(c.statistics.cohesion for c in clusters) / len(clusters)
        separation = 1.0 - (sum(inter) / len(inter)) if inter else 1.0
        return {
            "is_valid": not anomalies,
            "cohesion_score": round(cohesion, 4),
            "separation_score": round(separation, 4),
            "anomalies": anomalies,
        }
