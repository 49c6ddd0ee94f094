"""Fusion groups: clusters promoted into concrete merge instructions.

A :class:`FusionGroup` tells the reorganiser "move the contents of these
source folders into this one target folder".  A cluster qualifies when

* it has at least two members, and
* its members come from at least ``min_packs`` distinct packs, or its
  cohesion exceeds ``min_cohesion`` (same-pack duplicates such as
  ``Kick`` / ``Kicks``).

Each group carries the target path
``/Family/Type/Style[/Format]/Canonical[/Variant]``, per-source file
counts and sizes, and the expected post-merge file count the physical
merge can be checked against.  Confidence blends cluster cohesion with
how much the contributing packs agree on their classification; when they
disagree the group keeps the majority family but loses confidence and
gets a warning so the operator sees the conflict.

Groups are then checked against each other: identical targets are
merged, strongly overlapping pack sets are merged, weaker overlaps and
near-identical canonical names are left for manual review.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from rapidfuzz.distance import Levenshtein

from . import tuning
from .clustering import FolderCluster, FolderPath
from .models import Pack
from .similarity import PathContext

logger = logging.getLogger(__name__)


def _word_pattern(stem: str) -> "re.Pattern[str]":
    return re.compile(r"(?<![a-z])" + stem, re.IGNORECASE)


TYPE_PATTERNS: List[Tuple["re.Pattern[str]", str]] = [
    (_word_pattern("kick"), "KICKS"),
    (_word_pattern("bass"), "BASS"),
    (_word_pattern("synth"), "SYNTHS"),
    (_word_pattern("perc"), "PERC"),
    (re.compile(r"(?<![a-z])(?:s?fx|effect)", re.IGNORECASE), "FX"),
    (_word_pattern("vocal"), "VOCALS"),
    (_word_pattern("pad"), "PADS"),
    (_word_pattern("lead"), "LEADS"),
    (_word_pattern("snare"), "SNARES"),
    (re.compile(r"(?<![a-z])(?:hi[\s_-]?hat|hat)", re.IGNORECASE), "HIHATS"),
    (_word_pattern("arp"), "ARPS"),
    (_word_pattern("chord"), "CHORDS"),
    (_word_pattern("drum"), "DRUMS"),
    (_word_pattern("top"), "TOPS"),
    (_word_pattern("atmos"), "ATMOSPHERES"),
]

FORMAT_PATTERNS: List[Tuple["re.Pattern[str]", str]] = [
    (re.compile(r"(?<![a-z])one[\s_-]?shot", re.IGNORECASE), "OneShot"),
    (_word_pattern("loop"), "Loop"),
    (_word_pattern("midi"), "MIDI"),
    (_word_pattern("preset"), "Preset"),
    (_word_pattern("stem"), "Stem"),
    (_word_pattern("multi"), "Multi"),
    (_word_pattern("layer"), "Layer"),
    (_word_pattern("fill"), "Fill"),
    (_word_pattern("break"), "Break"),
]

VARIANT_PATTERNS: List[Tuple["re.Pattern[str]", str]] = [
    (_word_pattern(word.lower()), word)
    for word in ("Clean", "Dirty", "Wet", "Dry", "Hard", "Soft", "Dark", "Bright", "Punchy", "Fat")
]

_ILLEGAL_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def _first_match(patterns: Iterable[Tuple["re.Pattern[str]", str]], text: str) -> Optional[str]:
    for pattern, label in patterns:
        if pattern.search(text):
            return label
    return None


def detect_type(path: str) -> str:
    return _first_match(TYPE_PATTERNS, path) or "OTHER"


def detect_format(name: str, path: str) -> Optional[str]:
    return _first_match(FORMAT_PATTERNS, f"{name} {path}")


def detect_variant(name: str) -> Optional[str]:
    return _first_match(VARIANT_PATTERNS, name)


def sanitize_segment(text: str) -> str:
    """Make ``text`` safe as a single folder name."""
    text = _ILLEGAL_CHARS_RE.sub("_", text.strip())
    text = re.sub(r"\s+", "_", text)
    text = re.sub(r"_+", "_", text)
    return text.strip("_") or "Unnamed"


def extract_folder_paths(packs: Sequence[Pack]) -> List[FolderPath]:
    """Collect the clustering units from the packs' internal structure.

    Packs without a detected structure contribute their own name as a
    single top-level folder.
    """
    folders: List[FolderPath] = []
    seen = set()
    for pack in packs:
        detected = pack.internal_structure.detected_types if pack.internal_structure else {}
        paths_in_pack: List[Tuple[str, int]] = []
        for bucket in detected.values():
            for path in bucket.paths:
                paths_in_pack.append((path, bucket.file_count if len(bucket.paths) == 1 else 0))

        if not paths_in_pack:
            folder_id = f"{pack.id}:{pack.name}"
            if folder_id not in seen:
                seen.add(folder_id)
                folders.append(
                    FolderPath(
                        id=folder_id,
                        name=pack.name,
                        path=pack.name,
                        pack_id=pack.id,
                        file_count=pack.file_count,
                        context=PathContext(parent_path="", depth=1, siblings=()),
                    )
                )
            continue

        all_paths = [p for p, _ in paths_in_pack]
        for path, file_count in paths_in_pack:
            folder_id = f"{pack.id}:{path}"
            if folder_id in seen:
                continue
            seen.add(folder_id)
            parts = [p for p in path.replace("\\", "/").split("/") if p]
            parent = "/".join(parts[:-1])
            siblings = tuple(
                other.replace("\\", "/").rstrip("/").split("/")[-1]
                for other in all_paths
                if other != path and "/".join(other.replace("\\", "/").split("/")[:-1]) == parent
            )
            folders.append(
                FolderPath(
                    id=folder_id,
                    name=parts[-1] if parts else path,
                    path=path,
                    pack_id=pack.id,
                    file_count=file_count,
                    context=PathContext(parent_path=parent, depth=len(parts), siblings=siblings),
                )
            )
    return folders


@dataclass
class FusionConfig:
    min_packs: int = field(default_factory=lambda: tuning.FUSION_MIN_PACKS)
    min_cohesion: float = field(default_factory=lambda: tuning.FUSION_MIN_COHESION)
    max_group_size: int = field(default_factory=lambda: tuning.FUSION_MAX_GROUP_SIZE)
    include_format: bool = True
    include_variant: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FusionConfig":
        cfg = cls()
        for key, value in (data or {}).items():
            if hasattr(cfg, key):
                setattr(cfg, key, value)
        return cfg


@dataclass
class FusionSource:
    pack_id: str
    pack_name: str
    original_path: str
    file_count: int = 0
    estimated_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pack_id": self.pack_id,
            "pack_name": self.pack_name,
            "original_path": self.original_path,
            "file_count": self.file_count,
            "estimated_size": self.estimated_size,
        }


@dataclass
class FusionGroup:
    id: str
    canonical: str
    target_path: str
    classification: Dict[str, Optional[str]]
    sources: List[FusionSource]
    confidence: float
    cluster_id: str
    avg_similarity: float = 1.0
    cohesion: float = 1.0
    agreement: float = 1.0
    strategy: str = "merge"
    warnings: List[str] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    merged_from: List[str] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return sum(s.file_count for s in self.sources)

    @property
    def expected_file_count(self) -> int:
        return self.total_files

    @property
    def total_size(self) -> int:
        return sum(s.estimated_size for s in self.sources)

    @property
    def pack_ids(self) -> List[str]:
        return list(dict.fromkeys(s.pack_id for s in self.sources))

    def statistics(self) -> Dict[str, Any]:
        packs = len(self.pack_ids)
        sim = self.avg_similarity
        if sim > 0.9:
            duplicate_risk = 0.8
        elif sim > 0.8:
            duplicate_risk = 0.5
        elif sim > 0.7:
            duplicate_risk = 0.3
        else:
            duplicate_risk = 0.1
        return {
            "total_files": self.total_files,
            "total_size": self.total_size,
            "pack_count": packs,
            "source_count": len(self.sources),
            "avg_similarity": round(self.avg_similarity, 4),
            "cohesion": round(self.cohesion, 4),
            "duplicate_risk": duplicate_risk,
            "complexity": round(min(1.0, packs * 0.1 + (1.0 - self.cohesion) * 0.5), 4),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "canonical": self.canonical,
            "target_path": self.target_path,
            "classification": dict(self.classification),
            "sources": [s.to_dict() for s in self.sources],
            "confidence": round(self.confidence, 4),
            "strategy": self.strategy,
            "expected_file_count": self.expected_file_count,
            "statistics": self.statistics(),
            "cluster_id": self.cluster_id,
            "agreement": round(self.agreement, 4),
            "warnings": list(self.warnings),
            "conflicts": list(self.conflicts),
            "merged_from": list(self.merged_from),
        }


def _majority(values: Sequence[str]) -> Tuple[Optional[str], int]:
    if not values:
        return None, 0
    counts = Counter(values)
    # Counter.most_common keeps first-seen order among equal counts
    value, count = counts.most_common(1)[0]
    return value, count


@dataclass
class FusionGroupBuilder:
    config: FusionConfig = field(default_factory=FusionConfig)

    def build(self, clusters: Sequence[FolderCluster], packs: Sequence[Pack]) -> List[FusionGroup]:
        packs_by_id = {p.id: p for p in packs}
        groups: List[FusionGroup] = []
        for cluster in clusters:
            if not self._qualifies(cluster):
                continue
            groups.append(self._build_group(len(groups) + 1, cluster, packs_by_id))
        groups = self.resolve_conflicts(groups)
        logger.debug("Built %d fusion groups from %d clusters", len(groups), len(clusters))
        return groups

    def _qualifies(self, cluster: FolderCluster) -> bool:
        if len(cluster.members) < 2:
            return False
        if cluster.statistics.pack_count >= self.config.min_packs:
            return True
        return cluster.statistics.cohesion > self.config.min_cohesion

    def _classification_for(self, cluster: FolderCluster, packs_by_id: Dict[str, Pack]) -> Tuple[str, str, float, List[str]]:
        warnings: List[str] = []
        classified = [
            packs_by_id[pid].classification
            for pid in cluster.pack_ids
            if pid in packs_by_id and packs_by_id[pid].classification is not None
        ]
        if not classified:
            warnings.append("No classified pack backs this group")
            return "Unclassified", "Unknown", 0.5, warnings

        families = [c.family for c in classified]
        family, family_count = _majority(families)
        agreement = family_count / len(classified)
        styles = [c.style for c in classified if c.family == family]
        style, _ = _majority(styles)
        if agreement < 1.0:
            breakdown = ", ".join(f"{name} ({count})" for name, count in Counter(families).most_common())
            warnings.append(f"Classification disagreement across packs: {breakdown}")
        return family or "Unclassified", style or "Unknown", agreement, warnings

    def _source_for(self, member: FolderPath, packs_by_id: Dict[str, Pack]) -> FusionSource:
        pack = packs_by_id.get(member.pack_id)
        file_count = int(member.file_count or 0)
        if pack is not None and pack.size and pack.file_count:
            size = int(pack.size * file_count / pack.file_count)
        else:
            size = file_count * tuning.ESTIMATED_BYTES_PER_FILE
        return FusionSource(
            pack_id=member.pack_id,
            pack_name=pack.name if pack else member.pack_id,
            original_path=member.path,
            file_count=file_count,
            estimated_size=size,
        )

    def _target_path(self, family: str, type_name: str, style: str, fmt: Optional[str], canonical: str, variant: Optional[str]) -> str:
        segments = [family, type_name, style]
        if fmt and self.config.include_format:
            segments.append(fmt)
        segments.append(canonical)
        if variant and self.config.include_variant:
            segments.append(variant)
        return "/" + "/".join(sanitize_segment(s) for s in segments)

    def _build_group(self, number: int, cluster: FolderCluster, packs_by_id: Dict[str, Pack]) -> FusionGroup:
        family, style, agreement, warnings = self._classification_for(cluster, packs_by_id)
        representative = cluster.members[0].path
        type_name = detect_type(" ".join([cluster.canonical, representative]))
        fmt = detect_format(cluster.canonical, representative)
        variant = detect_variant(cluster.canonical)

        weights = tuning.FUSION_CONFIDENCE_WEIGHTS
        cohesion = cluster.statistics.cohesion
        confidence = cohesion * weights["cohesion"] + agreement * weights["agreement"]
        if agreement < 1.0:
            confidence -= weights["disagreement_penalty"]
        confidence = max(0.0, min(1.0, confidence))

        strategy = "merge"
        if warnings:
            strategy = "merge-review"
        if len(cluster.members) > self.config.max_group_size:
            warnings.append(f"Group exceeds {self.config.max_group_size} sources")
            strategy = "manual"

        return FusionGroup(
            id=f"fusion_{number:04d}",
            canonical=cluster.canonical,
            target_path=self._target_path(family, type_name, style, fmt, cluster.canonical, variant),
            classification={
                "family": family,
                "type": type_name,
                "style": style,
                "format": fmt,
                "variant": variant,
            },
            sources=[self._source_for(m, packs_by_id) for m in cluster.members],
            confidence=confidence,
            cluster_id=cluster.id,
            avg_similarity=cluster.statistics.avg_similarity,
            cohesion=cohesion,
            agreement=agreement,
            strategy=strategy,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Conflicts between groups
    # ------------------------------------------------------------------
    def detect_conflicts(self, groups: Sequence[FusionGroup]) -> List[Dict[str, Any]]:
        params = tuning.FUSION_CONFLICT_PARAMS
        conflicts: List[Dict[str, Any]] = []
        for i in range(len(groups)):
            for j in range(i + 1, len(groups)):
                a, b = groups[i], groups[j]
                if a.target_path == b.target_path:
                    conflicts.append(
                        {"type": "target_collision", "groups": [a.id, b.id], "resolution": "merge",
                         "detail": f"Both groups target {a.target_path}"}
                    )
                    continue
                packs_a, packs_b = set(a.pack_ids), set(b.pack_ids)
                union = packs_a | packs_b
                overlap = len(packs_a & packs_b) / len(union) if union else 0.0
                if overlap > params["overlap_min"] and a.classification.get("type") == b.classification.get("type"):
                    conflicts.append(
                        {
                            "type": "pack_overlap",
                            "groups": [a.id, b.id],
                            "resolution": "merge" if overlap > params["overlap_merge"] else "manual",
                            "detail": f"Pack overlap {overlap:.2f}",
                        }
                    )
                    continue
                distance = Levenshtein.normalized_distance(a.canonical.lower(), b.canonical.lower())
                if distance < params["name_distance_max"]:
                    conflicts.append(
                        {
                            "type": "ambiguous_name",
                            "groups": [a.id, b.id],
                            "resolution": "manual",
                            "detail": f"Canonical names '{a.canonical}' and '{b.canonical}' are close",
                        }
                    )
        return conflicts

    def resolve_conflicts(self, groups: List[FusionGroup]) -> List[FusionGroup]:
        """Apply merge resolutions; flag manual ones on the groups involved."""
        conflicts = self.detect_conflicts(groups)
        by_id = {g.id: g for g in groups}
        absorbed: Dict[str, str] = {}

        def _root(group_id: str) -> str:
            while group_id in absorbed:
                group_id = absorbed[group_id]
            return group_id

        for conflict in conflicts:
            first, second = (_root(g) for g in conflict["groups"])
            if conflict["resolution"] == "merge" and first != second:
                self._absorb(by_id[first], by_id[second])
                absorbed[second] = first
                by_id[first].conflicts.append(conflict)
            elif conflict["resolution"] == "manual":
                for gid in {first, second}:
                    by_id[gid].conflicts.append(conflict)
                    by_id[gid].strategy = "manual"
        return [g for g in groups if g.id not in absorbed]

    @staticmethod
    def _absorb(target: FusionGroup, other: FusionGroup) -> None:
        seen = {(s.pack_id, s.original_path) for s in target.sources}
        target_count = len(target.sources)
        for source in other.sources:
            key = (source.pack_id, source.original_path)
            if key not in seen:
                seen.add(key)
                target.sources.append(source)
        total = max(1, target_count + len(other.sources))
        target.avg_similarity = (target.avg_similarity * target_count + other.avg_similarity * len(other.sources)) / total
        target.cohesion = min(target.cohesion, other.cohesion)
        target.confidence = min(target.confidence, other.confidence)
        target.merged_from.append(other.id)
        target.warnings.extend(w for w in other.warnings if w not in target.warnings)
        if target.strategy == "merge" and other.strategy != "merge":
            target.strategy = other.strategy
