"""Adaptive matrix generation.

Classified packs are grouped under ``family|type|style`` keys.  Each
:class:`MatrixEntry` collects the function / variant / context values
discovered in its packs (see :mod:`pack_taxonomy.patterns`), a running
average of the classification confidence, and whether the family comes
from the taxonomy or was discovered (AI or manual labels outside it).

After the per-pack pass, entries backed by at least two packs are
enriched with the most common collection-wide patterns, entries below
``min_pack_count`` are dropped, and every entry that owns a pack taking
part in a fusion group is tagged with that group.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from . import tuning
from .clustering import FolderCluster
from .errors import StepFailure
from .fusion import FusionGroup
from .models import Pack
from .patterns import (
    CONTEXT,
    FUNCTION,
    VARIANT,
    DiscoveredPattern,
    aggregate_patterns,
    analyze_pack_patterns,
    generate_matrix_key,
)
from .taxonomy import TaxonomyIndex, default_index

logger = logging.getLogger(__name__)


@dataclass
class MatrixConfig:
    min_pack_count: int = field(default_factory=lambda: int(tuning.MATRIX_PARAMS["min_pack_count"]))
    min_pattern_confidence: float = field(default_factory=lambda: tuning.MATRIX_PARAMS["min_pattern_confidence"])
    max_patterns: int = field(default_factory=lambda: int(tuning.MATRIX_PARAMS["max_patterns"]))
    max_examples: int = field(default_factory=lambda: int(tuning.MATRIX_PARAMS["max_examples"]))
    enable_context_detection: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MatrixConfig":
        cfg = cls()
        for key, value in (data or {}).items():
            if hasattr(cfg, key):
                setattr(cfg, key, value)
        return cfg


@dataclass
class MatrixEntry:
    family: str
    type: str
    style: str
    functions: List[str] = field(default_factory=list)
    variants: List[str] = field(default_factory=list)
    contexts: List[str] = field(default_factory=list)
    pack_count: int = 0
    total_files: int = 0
    avg_confidence: float = 0.0
    examples: List[str] = field(default_factory=list)
    pack_ids: List[str] = field(default_factory=list)
    taxonomy_source: bool = False
    discovered: bool = False
    fusion_info: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        return f"{self.family}|{self.type}|{self.style}"

    def add_pack(self, pack: Pack, patterns: Sequence[DiscoveredPattern], config: MatrixConfig) -> None:
        self.pack_count += 1
        self.total_files += pack.file_count
        confidence = pack.classification.confidence if pack.classification else 0.0
        self.avg_confidence = (self.avg_confidence * (self.pack_count - 1) + confidence) / self.pack_count
        self.pack_ids.append(pack.id)
        if len(self.examples) < config.max_examples and pack.id not in self.examples:
            self.examples.append(pack.id)

        for pattern in patterns:
            if pattern.confidence < config.min_pattern_confidence:
                continue
            if pattern.type == FUNCTION and pattern.value not in self.functions:
                self.functions.append(pattern.value)
            elif pattern.type == VARIANT and pattern.value not in self.variants:
                self.variants.append(pattern.value)
            elif pattern.type == CONTEXT and config.enable_context_detection and pattern.value not in self.contexts:
                self.contexts.append(pattern.value)

        if not self.taxonomy_source:
            self.discovered = True

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "key": self.key,
            "family": self.family,
            "type": self.type,
            "style": self.style,
            "functions": list(self.functions),
            "variants": list(self.variants),
            "contexts": list(self.contexts),
            "pack_count": self.pack_count,
            "total_files": self.total_files,
            "avg_confidence": round(self.avg_confidence, 4),
            "examples": list(self.examples),
            "taxonomy_source": self.taxonomy_source,
            "discovered": self.discovered,
        }
        if self.fusion_info is not None:
            data["fusion_info"] = dict(self.fusion_info)
        return data


@dataclass
class MatrixResult:
    entries: "OrderedDict[str, MatrixEntry]"
    statistics: Dict[str, Any]
    global_patterns: Dict[str, List[str]]
    patterns: List[DiscoveredPattern] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return sum(e.total_files for e in self.entries.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": {key: entry.to_dict() for key, entry in self.entries.items()},
            "statistics": dict(self.statistics),
            "global_patterns": {k: list(v) for k, v in self.global_patterns.items()},
        }


def validate_packs(packs: Sequence[Pack]) -> List[str]:
    errors = []
    if not packs:
        errors.append("No classified packs provided")
    valid = [
        p for p in packs
        if p.classification is not None and p.classification.family and p.classification.style
    ]
    if not valid:
        errors.append("No packs with valid classifications found")
    return errors


@dataclass
class MatrixGenerator:
    index: TaxonomyIndex = field(default_factory=default_index)
    config: MatrixConfig = field(default_factory=MatrixConfig)

    def build(
        self,
        packs: Sequence[Pack],
        fusion_groups: Sequence[FusionGroup] = (),
        clusters: Sequence[FolderCluster] = (),
    ) -> MatrixResult:
        """Build the matrix from classified packs.

        Raises :class:`StepFailure` (recoverable) when no pack carries a
        usable classification.
        """
        errors = validate_packs(packs)
        if errors:
            raise StepFailure("MATRIX_INPUT_INVALID", "; ".join(errors))

        entries: "OrderedDict[str, MatrixEntry]" = OrderedDict()
        all_patterns: List[DiscoveredPattern] = []
        for pack in packs:
            if pack.classification is None or not pack.classification.family or not pack.classification.style:
                continue
            key = generate_matrix_key(pack)
            patterns = analyze_pack_patterns(pack)
            all_patterns.extend(patterns)
            entry = entries.get(key.key)
            if entry is None:
                entry = MatrixEntry(
                    family=key.family,
                    type=key.type,
                    style=key.style,
                    taxonomy_source=self.index.find_family(key.family) is not None,
                )
                entries[key.key] = entry
            entry.add_pack(pack, patterns, self.config)

        global_patterns = aggregate_patterns(all_patterns)
        self._enrich(entries, global_patterns)
        entries = self._filter(entries)
        self._attach_fusion(entries, fusion_groups)

        statistics = self.statistics(entries, fusion_groups, clusters)
        logger.debug("Matrix built: %d entries from %d packs", len(entries), len(packs))
        return MatrixResult(entries=entries, statistics=statistics, global_patterns=global_patterns, patterns=all_patterns)

    @staticmethod
    def _enrich(entries: Dict[str, MatrixEntry], global_patterns: Dict[str, List[str]]) -> None:
        for entry in entries.values():
            if entry.pack_count < 2:
                continue
            for value in global_patterns["functions"][:3]:
                if value not in entry.functions and len(entry.functions) < 8:
                    entry.functions.append(value)
            for value in global_patterns["variants"][:2]:
                if value not in entry.variants and len(entry.variants) < 5:
                    entry.variants.append(value)

    def _filter(self, entries: "OrderedDict[str, MatrixEntry]") -> "OrderedDict[str, MatrixEntry]":
        limit = self.config.max_patterns
        kept: "OrderedDict[str, MatrixEntry]" = OrderedDict()
        for key, entry in entries.items():
            if entry.pack_count < self.config.min_pack_count:
                continue
            entry.functions = sorted(entry.functions)[:limit]
            entry.variants = sorted(entry.variants)[:limit]
            entry.contexts = sorted(entry.contexts)
            kept[key] = entry
        return kept

    @staticmethod
    def _attach_fusion(entries: Dict[str, MatrixEntry], fusion_groups: Sequence[FusionGroup]) -> None:
        by_pack: Dict[str, FusionGroup] = {}
        for group in fusion_groups:
            for pack_id in group.pack_ids:
                by_pack.setdefault(pack_id, group)
        if not by_pack:
            return
        for entry in entries.values():
            for pack_id in entry.pack_ids:
                group = by_pack.get(pack_id)
                if group is None:
                    continue
                entry.fusion_info = {
                    "fusion_group_id": group.id,
                    "clustered_paths": [s.original_path for s in group.sources],
                    "canonical_path": group.target_path,
                    "similarity": round(group.confidence, 4),
                    "merged_from_packs": len(group.pack_ids),
                }
                break

    @staticmethod
    def statistics(
        entries: Dict[str, MatrixEntry],
        fusion_groups: Sequence[FusionGroup] = (),
        clusters: Sequence[FolderCluster] = (),
    ) -> Dict[str, Any]:
        values = list(entries.values())
        count = len(values)
        if count:
            avg_functions = sum(len(e.functions) for e in values) / count
            avg_variants = sum(len(e.variants) for e in values) / count
            coverage = sum(1 for e in values if e.taxonomy_source) / count
        else:
            avg_functions = avg_variants = coverage = 0.0
        return {
            "total_entries": count,
            "unique_families": len({e.family for e in values}),
            "unique_types": len({e.type for e in values}),
            "unique_styles": len({e.style for e in values}),
            "discovered_functions": len({f for e in values for f in e.functions}),
            "discovered_variants": len({v for e in values for v in e.variants}),
            "taxonomy_coverage": round(coverage, 4),
            "matrix_complexity": round(min(1.0, avg_functions * avg_variants / 20.0), 4),
            "total_files": sum(e.total_files for e in values),
            "fusion_groups": len(fusion_groups),
            "clusters_detected": len(clusters),
        }
